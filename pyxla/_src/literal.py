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

"""Host-resident values: arrays and (nested) tuples of arrays."""

from __future__ import annotations

from collections.abc import Sequence
import logging
from typing import Any

import numpy as np

from pyxla._src import errors
from pyxla._src import handles
from pyxla._src.shape import ArrayShape, Shape
from pyxla._src import types

logger = logging.getLogger(__name__)


class _TupleData:
  """Storage of a tuple literal: the storage of each element, in order."""
  __slots__ = ('elements',)

  def __init__(self, elements: Sequence[Any]):
    self.elements = list(elements)


def _shape_of(data: Any) -> Shape:
  if isinstance(data, _TupleData):
    return Shape.tuple([_shape_of(e) for e in data.elements])
  return Shape.array(types.ElementType.from_dtype(data.dtype), data.shape)


class Literal(handles.NativeHandle):
  """A value resident in host memory.

  A literal owns its storage. Array literals wrap a contiguous NumPy array;
  tuple literals own their elements.
  """
  _kind = 'literal'

  def __init__(self, data: Any):
    if isinstance(data, np.ndarray):
      types.ElementType.from_dtype(data.dtype)
    elif not isinstance(data, _TupleData):
      raise TypeError(f'unexpected literal storage {type(data).__name__}')
    super().__init__(data)

  def __repr__(self):
    if self.is_released:
      return 'Literal(<released>)'
    return f'Literal({self.shape()})'

  # Constructors

  @staticmethod
  def scalar(v: Any, ty: Any = None) -> Literal:
    """A rank-0 literal. ``ty`` defaults to the type inferred from ``v``."""
    native = types.NativeType.of(ty or types.infer_host_type(v))
    return Literal(native.create_r0(v))

  @staticmethod
  def vec1(values: Sequence[Any], ty: Any = None) -> Literal:
    native = types.NativeType.of(ty or types.infer_host_type(values))
    return Literal(native.create_r1(values))

  @staticmethod
  def vec2(rows: Sequence[Sequence[Any]], ty: Any = None) -> Literal:
    """A rank-2 literal.

    Raises:
      RaggedArrayError: if the rows do not all have the same length.
    """
    native = types.NativeType.of(ty or types.infer_host_type(rows))
    return Literal(native.create_r2(rows))

  @staticmethod
  def from_array(array: Any) -> Literal:
    """A literal holding a copy of ``array``.

    Any element type with an :class:`ElementType` is accepted, including
    ``bool``, ``float16`` and ``bfloat16``.
    """
    array = np.array(array, copy=True, order='C')
    return Literal(array)

  @staticmethod
  def tuple(elements: Sequence[Literal]) -> Literal:
    """A tuple literal owning ``elements``.

    The elements are moved into the tuple and must not be used afterwards.

    Raises:
      ReleasedHandleError: if an element is already released or appears more
        than once. No element is moved in that case.
    """
    elements = list(elements)
    seen = set()
    for i, e in enumerate(elements):
      e.native
      if id(e) in seen:
        raise errors.ReleasedHandleError(
            f'element {i} would be moved into the tuple twice')
      seen.add(id(e))
    return Literal(_TupleData([e._take() for e in elements]))

  @staticmethod
  def create_from_shape(ty: Any, dims: Sequence[int]) -> Literal:
    """A zero-filled array literal."""
    shape = ArrayShape(ty, dims)
    return Literal(np.zeros(shape.dims(), shape.element_type().numpy_dtype()))

  @staticmethod
  def create_from_shape_and_untyped_data(ty: Any, dims: Sequence[int],
                                         data: bytes) -> Literal:
    """An array literal initialized from raw bytes in host byte order.

    Raises:
      WrongElementCount: if ``data`` is not exactly the size of the shape.
    """
    shape = ArrayShape(ty, dims)
    size = shape.element_type().element_size_in_bytes()
    if len(data) != shape.size_bytes():
      raise errors.WrongElementCount(shape.dims(), len(data) // size)
    array = np.frombuffer(bytes(data), shape.element_type().numpy_dtype())
    return Literal(array.reshape(shape.dims()).copy())

  # Readers

  def _array(self) -> np.ndarray:
    data = self.native
    if isinstance(data, _TupleData):
      raise errors.NotAnArray(_shape_of(data))
    return data

  def shape(self) -> Shape:
    return _shape_of(self.native)

  def array_shape(self) -> ArrayShape:
    return self.shape().array_shape()

  def element_type(self) -> types.ElementType:
    return types.ElementType.from_dtype(self._array().dtype)

  def primitive_type(self) -> types.PrimitiveType:
    return self.shape().primitive_type()

  def element_count(self) -> int:
    return self._array().size

  def size_bytes(self) -> int:
    return self._array().nbytes

  def to_vec(self, host_type: Any) -> np.ndarray:
    """The elements as a flat array of ``host_type`` values.

    Raises:
      ElementTypeMismatch: if ``host_type`` is not the literal's element type.
    """
    array = self._array()
    element = types.ArrayElement.of(host_type)
    ty = self.element_type()
    if element.ty != ty:
      raise errors.ElementTypeMismatch(ty, element.ty)
    return array.reshape(-1).copy()

  def get_first_element(self, host_type: Any) -> Any:
    array = self._array()
    native = types.NativeType.of(host_type)
    ty = self.element_type()
    if native.ty != ty:
      raise errors.ElementTypeMismatch(ty, native.ty)
    return native.literal_get_first_element(array)

  def to_numpy(self) -> np.ndarray:
    return self._array().copy()

  def to_py(self) -> Any:
    """Arrays as NumPy arrays, tuples as (nested) Python tuples."""
    def rec(data):
      if isinstance(data, _TupleData):
        return tuple(rec(e) for e in data.elements)
      return data.copy()
    return rec(self.native)

  def copy_raw_to(self, dst: np.ndarray) -> None:
    """Copies the elements into ``dst``, which must match in type and size."""
    array = self._array()
    if dst.dtype != array.dtype:
      raise errors.ElementTypeMismatch(
          self.element_type(), types.ElementType.from_dtype(dst.dtype))
    if dst.size != array.size:
      raise errors.WrongElementCount(array.shape, dst.size)
    dst.reshape(-1)[:] = array.reshape(-1)

  def copy_raw_from(self, src: np.ndarray) -> None:
    """Overwrites the elements from ``src``, which must match in type and size."""
    array = self._array()
    src = np.asarray(src)
    if src.dtype != array.dtype:
      raise errors.ElementTypeMismatch(
          self.element_type(), types.ElementType.from_dtype(src.dtype))
    if src.size != array.size:
      raise errors.WrongElementCount(array.shape, src.size)
    array.reshape(-1)[:] = src.reshape(-1)

  # Transforms

  def reshape(self, dims: Sequence[int]) -> Literal:
    array = self._array()
    dims = tuple(dims)
    if int(np.prod(dims, dtype=np.int64)) != array.size:
      raise errors.WrongElementCount(dims, array.size)
    return Literal(array.reshape(dims).copy())

  def convert(self, ty: Any) -> Literal:
    ty = types.to_element_type(ty)
    return Literal(self._array().astype(ty.numpy_dtype()))

  def decompose_tuple(self) -> list[Literal]:
    """Splits a tuple literal into its elements.

    The literal is consumed: the returned literals own the elements and this
    literal is released.

    Raises:
      NotATuple: if the literal is an array.
    """
    data = self.native
    if not isinstance(data, _TupleData):
      raise errors.NotATuple(_shape_of(data))
    self._take()
    return [Literal(e) for e in data.elements]


def literal_from_data(data: Any) -> Literal:
  """A literal owning ``data``: an array, or a (nested) tuple of arrays."""
  if isinstance(data, (tuple, list)):
    return Literal(_TupleData([_storage(d) for d in data]))
  return Literal(np.asarray(data))


def _storage(data: Any) -> Any:
  if isinstance(data, (tuple, list)):
    return _TupleData([_storage(d) for d in data])
  return np.asarray(data)
