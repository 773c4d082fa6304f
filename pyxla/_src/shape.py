# Copyright 2025 The JAX Authors.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     https://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Array and tuple shapes.

A dimension size ``-n`` (negative) denotes a dynamic dimension whose size is
bounded by ``n``. It prints as ``<=n`` in HLO text, e.g. ``f32[<=2,3]``.
"""

from __future__ import annotations

from collections.abc import Sequence
import math
import re
from typing import Any

from pyxla._src import errors
from pyxla._src.types import ElementType, PrimitiveType, to_element_type


class ArrayShape:
  """The element type and dimensions of an array."""
  __slots__ = ('_ty', '_dims')

  def __init__(self, ty: Any, dims: Sequence[int]):
    self._ty = to_element_type(ty)
    self._dims = tuple(int(d) for d in dims)

  @staticmethod
  def of(host_type: Any, dims: Sequence[int]) -> ArrayShape:
    """Shape of an array of ``host_type`` elements, e.g. ``np.float32``."""
    return ArrayShape(host_type, dims)

  def dims(self) -> tuple[int, ...]:
    return self._dims

  def element_type(self) -> ElementType:
    return self._ty

  def primitive_type(self) -> PrimitiveType:
    return self._ty.primitive_type()

  def rank(self) -> int:
    return len(self._dims)

  def is_dynamic_dimension(self, i: int) -> bool:
    return self._dims[i] < 0

  @property
  def is_static(self) -> bool:
    return all(d >= 0 for d in self._dims)

  def bounded_dims(self) -> tuple[int, ...]:
    """Dimensions with every dynamic dimension replaced by its bound."""
    return tuple(abs(d) for d in self._dims)

  def element_count(self) -> int:
    """Number of elements.

    Raises:
      DynamicShapeError: if a dimension is dynamic.
    """
    if not self.is_static:
      raise errors.DynamicShapeError(self)
    return math.prod(self._dims)

  def max_element_count(self) -> int:
    """Number of elements with every dynamic dimension at its bound."""
    return math.prod(self.bounded_dims())

  def size_bytes(self) -> int:
    return self.element_count() * self._ty.element_size_in_bytes()

  def __eq__(self, other):
    if not isinstance(other, ArrayShape):
      return NotImplemented
    return self._ty == other._ty and self._dims == other._dims

  def __hash__(self):
    return hash((self._ty, self._dims))

  def __repr__(self):
    return f'ArrayShape({self._ty.name}, {list(self._dims)})'

  def __str__(self):
    dims = ','.join(f'<={-d}' if d < 0 else str(d) for d in self._dims)
    return f'{self._ty.hlo_name()}[{dims}]'


class Shape:
  """Either an array shape or a tuple of shapes."""
  __slots__ = ('_array', '_tuple')

  def __init__(self, array: ArrayShape | None = None,
               tuple_shapes: Sequence[Shape] | None = None):
    if (array is None) == (tuple_shapes is None):
      raise ValueError('a Shape is either an array or a tuple')
    self._array = array
    self._tuple = None if tuple_shapes is None else tuple(tuple_shapes)

  @staticmethod
  def array(ty: Any, dims: Sequence[int]) -> Shape:
    return Shape(array=ArrayShape(ty, dims))

  @staticmethod
  def tuple(shapes: Sequence[Shape]) -> Shape:
    return Shape(tuple_shapes=shapes)

  @staticmethod
  def from_array_shape(array_shape: ArrayShape) -> Shape:
    return Shape(array=array_shape)

  def is_tuple(self) -> bool:
    return self._tuple is not None

  def is_array(self) -> bool:
    return self._array is not None

  def tuple_size(self) -> int | None:
    """Number of elements of a tuple shape, ``None`` for an array shape."""
    return None if self._tuple is None else len(self._tuple)

  def tuple_shapes(self) -> tuple[Shape, ...]:
    if self._tuple is None:
      raise errors.NotATuple(self)
    return self._tuple

  def array_shape(self) -> ArrayShape:
    if self._array is None:
      raise errors.NotAnArray(self)
    return self._array

  def dims(self) -> tuple[int, ...]:
    return self.array_shape().dims()

  def primitive_type(self) -> PrimitiveType:
    if self._array is None:
      return PrimitiveType.TUPLE
    return self._array.primitive_type()

  def leaves(self) -> list[ArrayShape]:
    """Array shapes of this shape in depth-first order."""
    if self._array is not None:
      return [self._array]
    return [leaf for s in self._tuple for leaf in s.leaves()]

  def __eq__(self, other):
    if isinstance(other, ArrayShape):
      return self._array == other
    if not isinstance(other, Shape):
      return NotImplemented
    return self._array == other._array and self._tuple == other._tuple

  def __hash__(self):
    return hash((self._array, self._tuple))

  def __repr__(self):
    if self._array is not None:
      return f'Shape({self._array!r})'
    return f'Shape.tuple({list(self._tuple)!r})'

  def __str__(self):
    if self._array is not None:
      return str(self._array)
    return '(' + ', '.join(str(s) for s in self._tuple) + ')'


def as_shape(shape: Shape | ArrayShape) -> Shape:
  if isinstance(shape, ArrayShape):
    return Shape.from_array_shape(shape)
  return shape


_ARRAY_SHAPE_RE = re.compile(
    r'\s*([a-z][a-z0-9]*)\[([^\]]*)\](\{[^}]*\})?')


class _ShapeParser:

  def __init__(self, text: str):
    self.text = text
    self.pos = 0

  def error(self, msg: str) -> ValueError:
    return ValueError(f'{msg} at position {self.pos} in shape {self.text!r}')

  def skip_ws(self):
    while self.pos < len(self.text) and self.text[self.pos].isspace():
      self.pos += 1

  def parse(self) -> Shape:
    self.skip_ws()
    if self.text.startswith('(', self.pos):
      self.pos += 1
      children = []
      self.skip_ws()
      if self.text.startswith(')', self.pos):
        self.pos += 1
        return Shape.tuple(children)
      while True:
        children.append(self.parse())
        self.skip_ws()
        if self.text.startswith(',', self.pos):
          self.pos += 1
        elif self.text.startswith(')', self.pos):
          self.pos += 1
          return Shape.tuple(children)
        else:
          raise self.error('expected "," or ")"')
    m = _ARRAY_SHAPE_RE.match(self.text, self.pos)
    if not m:
      raise self.error('expected an array shape')
    self.pos = m.end()
    ty = ElementType.from_hlo_name(m.group(1))
    dims = []
    for d in m.group(2).split(','):
      d = d.strip()
      if not d:
        continue
      if d.startswith('<='):
        dims.append(-int(d[2:]))
      elif d == '?':
        raise self.error('unbounded dynamic dimensions are not supported')
      else:
        dims.append(int(d))
    return Shape.array(ty, dims)


def parse_shape(text: str) -> Shape:
  """Parses an HLO shape string such as ``f32[2,3]{1,0}`` or ``(s32[], f32[4])``.

  Layouts are accepted and ignored.
  """
  parser = _ShapeParser(text)
  shape = parser.parse()
  parser.skip_ws()
  if parser.pos != len(text):
    raise parser.error('trailing characters')
  return shape


def parse_shape_prefix(text: str) -> tuple[Shape, int]:
  """Parses the shape at the start of ``text``; returns it and its length."""
  parser = _ShapeParser(text)
  shape = parser.parse()
  return shape, parser.pos
