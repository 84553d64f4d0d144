"""I/O utilities for horsecad."""

from .stl import read_stl, stl_bytes, write_stl

__all__ = ['write_stl', 'stl_bytes', 'read_stl']
