#!/usr/bin/env python3
"""
CLI for the horsecad script-to-mesh compiler.

Usage:
    python -m horsecad compile FILE [--depth N] [--scale S] [--center X Y Z] [--output FILE.stl]
    python -m horsecad check FILE
    python -m horsecad info FILE.stl

Examples:
    # Run a script without meshing it
    python -m horsecad check blob.py

    # Mesh at depth 7 and write ASCII STL
    python -m horsecad compile blob.py --depth 7 --ascii -o blob.stl

    # Inspect an STL file
    python -m horsecad info blob.stl
"""

import argparse
import logging
import sys
from pathlib import Path

from .errors import HorseError, ScriptError, ShapeBuildError
from .expr import Context
from .io.stl import read_stl, write_stl
from .mesh import is_watertight
from .pipeline import DEFAULT_DEPTH, compile_script
from .script import run_script


def _read_source(path: Path):
    if not path.exists():
        print(f"Error: File not found: {path}", file=sys.stderr)
        return None
    return path.read_text()


def cmd_check(args):
    """Run a script and report its shape without meshing it."""
    source_path = Path(args.file)
    source = _read_source(source_path)
    if source is None:
        return 1

    try:
        result = run_script(source)
    except ScriptError as e:
        print(f"Error: {e.format()}", file=sys.stderr)
        return 1

    ctx = Context()
    try:
        ctx.import_tree(result.tree)
    except ShapeBuildError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    print(f"OK: {source_path.name} - {len(ctx)} node(s), scale {result.scale}")
    return 0


def cmd_compile(args):
    """Mesh a script and write STL."""
    source_path = Path(args.file)
    source = _read_source(source_path)
    if source is None:
        return 1

    result = compile_script(
        source,
        args.depth,
        scale=args.scale,
        center=args.center,
        threads=not args.serial,
    )
    if not result.success:
        print(f"Error: {result.error}", file=sys.stderr)
        return 1

    output_path = Path(args.output) if args.output else source_path.with_suffix('.stl')
    try:
        if args.ascii:
            mesh = read_stl(result.stl_data, deduplicate=False)
            write_stl(mesh, output_path, binary=False, name=source_path.stem)
        else:
            output_path.write_bytes(result.stl_data)
    except (HorseError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(f"Wrote {result.triangle_count} triangles to {output_path}")
    return 0


def cmd_info(args):
    """Describe an STL file."""
    path = Path(args.file)
    if not path.exists():
        print(f"Error: File not found: {path}", file=sys.stderr)
        return 1

    try:
        mesh = read_stl(path)
    except (ValueError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    lower, upper = mesh.bounds()
    print(f"{path.name}: {len(mesh)} triangles, {len(mesh.vertices)} vertices")
    print(f"  bounds: {lower.tolist()} .. {upper.tolist()}")
    print(f"  watertight: {'yes' if is_watertight(mesh) else 'no'}")
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog='python -m horsecad',
        description='horsecad implicit surface mesher',
    )
    parser.add_argument('-v', '--verbose', action='store_true',
                        help='Log pipeline progress')

    subparsers = parser.add_subparsers(dest='action', required=True)

    # compile command
    compile_parser = subparsers.add_parser('compile', help='Mesh a script to STL')
    compile_parser.add_argument('file', help='Script source file')
    compile_parser.add_argument('-d', '--depth', type=int, default=DEFAULT_DEPTH,
                                help=f'Maximum octree depth (default {DEFAULT_DEPTH})')
    compile_parser.add_argument('-s', '--scale', type=float,
                                help='Display scale (default 1.0)')
    compile_parser.add_argument('-c', '--center', type=float, nargs=3,
                                metavar=('X', 'Y', 'Z'), help='Display center')
    compile_parser.add_argument('-o', '--output', metavar='FILE',
                                help='Output STL file (default: FILE with .stl suffix)')
    compile_parser.add_argument('--ascii', action='store_true',
                                help='Write ASCII instead of binary STL')
    compile_parser.add_argument('--serial', action='store_true',
                                help='Build the octree on one thread')

    # check command
    check_parser = subparsers.add_parser('check', help='Run a script without meshing')
    check_parser.add_argument('file', help='Script source file')

    # info command
    info_parser = subparsers.add_parser('info', help='Describe an STL file')
    info_parser.add_argument('file', help='STL file')

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format='%(asctime)s %(levelname)s [%(name)s] %(message)s',
    )

    if args.action == 'check':
        return cmd_check(args)
    elif args.action == 'compile':
        return cmd_compile(args)
    elif args.action == 'info':
        return cmd_info(args)
    else:
        parser.print_help()
        return 1


if __name__ == '__main__':
    sys.exit(main())
