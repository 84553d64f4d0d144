## generalized matrix transformation operations for 3D homogeneous
## coordinates in horsecad

## Copyright (c) 2020 Richard W. DeVaul
## Copyright (c) 2020 yapCAD contributors
## All rights reserved

# Permission is hereby granted, free of charge, to any person
# obtaining a copy of this software and associated documentation files
# (the "Software"), to deal in the Software without restriction,
# including without limitation the rights to use, copy, modify, merge,
# publish, distribute, sublicense, and/or sell copies of the Software,
# and to permit persons to whom the Software is furnished to do so,
# subject to the following conditions:
#
# The above copyright notice and this permission notice shall be
# included in all copies or substantial portions of the Software.
#
# THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND,
# EXPRESS OR IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF
# MERCHANTABILITY, FITNESS FOR A PARTICULAR PURPOSE AND
# NONINFRINGEMENT. IN NO EVENT SHALL THE AUTHORS OR COPYRIGHT HOLDERS
# BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER LIABILITY, WHETHER IN AN
# ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM, OUT OF OR IN
# CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE
# SOFTWARE.

import math
import numbers

import numpy as np

## a matrix is a 4x4 numpy array of float64.  Vectors are column
## vectors, so M.mul(p) computes Mp and A.mul(B) applies B first.
## Points passed as (x,y,z) are lifted to (x,y,z,1).


class Matrix:
    """4x4 transformation matrix class for transforming homogeneous 3D coordinates"""

    def __init__(self, a=None):
        if a is None:
            m = np.identity(4)
        elif isinstance(a, Matrix):
            m = a.m.copy()
        else:
            try:
                m = np.array(a, dtype=np.float64)
            except (TypeError, ValueError):
                raise ValueError('bad thing used in attempt to initialize matrix: {}'.format(a))
            if m.shape == (16,):
                m = m.reshape(4, 4)
            if m.shape != (4, 4):
                raise ValueError('bad matrix shape: {}'.format(m.shape))
        m.flags.writeable = False
        self.m = m

    def __repr__(self):
        return "Matrix({})".format(self.m.tolist())

    def __eq__(self, other):
        return isinstance(other, Matrix) and np.array_equal(self.m, other.m)

    __hash__ = None

    @property
    def linear(self):
        """the upper-left 3x3 block"""
        return self.m[:3, :3]

    @property
    def offset(self):
        """the translation column"""
        return self.m[:3, 3]

    def is_affine(self):
        return np.array_equal(self.m[3], [0.0, 0.0, 0.0, 1.0])

    # matrix multiply.  If x is a matrix, compute MX.  If x is a
    # vector, compute Mx. If x is a scalar, compute xM.

    def mul(self, x):
        if isinstance(x, Matrix):
            return Matrix(self.m @ x.m)
        if isinstance(x, numbers.Real) and not isinstance(x, bool):
            return Matrix(self.m * x)
        v = np.asarray(x, dtype=np.float64)
        if v.shape == (3,):
            return (self.m @ np.append(v, 1.0)).tolist()
        if v.shape == (4,):
            return (self.m @ v).tolist()
        raise ValueError('bad thing passed to mul(): {}'.format(x))

    def inverse(self):
        try:
            return Matrix(np.linalg.inv(self.m))
        except np.linalg.LinAlgError:
            raise ValueError('matrix is singular')

    def transform_points(self, points):
        """Apply the affine part of this matrix to an (N,3) array of points.

        Computed term by term so each row's result does not depend on the
        rest of the batch.
        """
        pts = np.asarray(points, dtype=np.float64)
        L = self.linear
        return (pts[:, 0:1] * L[:, 0] + pts[:, 1:2] * L[:, 1]
                + pts[:, 2:3] * L[:, 2] + self.offset)

    def transform_boxes(self, lower, upper):
        """Bound the image of each axis-aligned box ``[lower, upper]``.

        Sums the same terms as transform_points, in the same order, so the
        result always contains the transformed corners.
        """
        lower = np.asarray(lower, dtype=np.float64)
        upper = np.asarray(upper, dtype=np.float64)
        L = self.linear
        lo = []
        hi = []
        for j in range(3):
            a = lower[:, j:j+1] * L[:, j]
            b = upper[:, j:j+1] * L[:, j]
            lo.append(np.minimum(a, b))
            hi.append(np.maximum(a, b))
        return (lo[0] + lo[1] + lo[2] + self.offset,
                hi[0] + hi[1] + hi[2] + self.offset)


def compose(*matrices):
    """Return the product of ``matrices``; the last one is applied first."""
    result = Matrix()
    for m in matrices:
        result = result.mul(m)
    return result


# return the generalized 4x4 arbitrary axis rotation matrix
def Rotation(axis, angle, inverse=False):
    u = np.asarray(axis, dtype=np.float64)[:3]
    m = float(np.linalg.norm(u))
    if m < 1e-12:
        raise ValueError('zero-length rotation axis not allowed')
    u = u / m

    if inverse:
        angle *= -1.0
    rad = math.radians(angle % 360.0)

    ux, uy, uz = u
    cang = math.cos(rad)
    cmin = 1.0 - cang
    sang = math.sin(rad)

    # see http://www.opengl-tutorial.org/assets/faq_quaternions/index.html#Q38
    R = [[cang + ux*ux*cmin, ux*uy*cmin - uz*sang, ux*uz*cmin + uy*sang, 0],
         [uy*ux*cmin + uz*sang, cang + uy*uy*cmin, uy*uz*cmin - ux*sang, 0],
         [uz*ux*cmin - uy*sang, uz*uy*cmin + ux*sang, cang + uz*uz*cmin, 0],
         [0, 0, 0, 1]]

    return Matrix(R)


def Translation(delta, inverse=False):
    dx, dy, dz = (float(d) for d in list(delta)[:3])
    if inverse:
        dx, dy, dz = -dx, -dy, -dz
    T = [[1, 0, 0, dx],
         [0, 1, 0, dy],
         [0, 0, 1, dz],
         [0, 0, 0, 1]]
    return Matrix(T)


def Scale(x, y=None, z=None, inverse=False):
    if isinstance(x, numbers.Real) and not isinstance(x, bool):
        if y is not None and z is not None:
            sx, sy, sz = float(x), float(y), float(z)
        else:
            sx = sy = sz = float(x)
    else:
        try:
            sx, sy, sz = (float(v) for v in list(x)[:3])
        except (TypeError, ValueError):
            raise ValueError('bad scaling values passed to Scale')

    if inverse:
        if sx == 0 or sy == 0 or sz == 0:
            raise ValueError('cannot invert a zero scale')
        sx = 1.0/sx
        sy = 1.0/sy
        sz = 1.0/sz

    S = [[sx, 0, 0, 0],
         [0, sy, 0, 0],
         [0, 0, sz, 0],
         [0, 0, 0, 1.0]]
    return Matrix(S)
