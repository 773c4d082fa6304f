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

"""Mapping between host numeric types and XLA primitive types.

:class:`PrimitiveType` lists every type tag of the runtime, including the
structural ones (tuple, token, opaque). :class:`ElementType` is the subset that
can be the element type of an array. Host numeric types are tied to element
types by two capabilities:

* :class:`ArrayElement`: the element type, size and zero of a host type. Every
  supported host type has one.
* :class:`NativeType`: the constructors that turn host values into constant
  arrays (scalars, vectors, broadcast vectors, matrices) and read the first
  element back. Only host types with a direct host representation have one;
  the 16-bit float markers :class:`F16` and :class:`Bf16` do not.
"""

from __future__ import annotations

from collections.abc import Sequence
import enum
from typing import Any, Generic, TypeVar

import ml_dtypes
import numpy as np

from pyxla._src import errors

_T = TypeVar('_T')


class PrimitiveType(enum.IntEnum):
  """The primitive types of XLA, with the runtime's codes.

  ``S8`` is a signed 1 byte integer, ``U32`` an unsigned 4 byte integer, etc.
  """
  INVALID = 0
  PRED = 1
  S8 = 2
  S16 = 3
  S32 = 4
  S64 = 5
  U8 = 6
  U16 = 7
  U32 = 8
  U64 = 9
  F16 = 10
  F32 = 11
  BF16 = 16
  F64 = 12
  C64 = 15
  C128 = 18
  TUPLE = 13
  OPAQUE_TYPE = 14
  TOKEN = 17

  def element_type(self) -> ElementType:
    """The element type with the same code.

    Raises:
      NotAnElementType: for TUPLE, OPAQUE_TYPE, TOKEN and INVALID.
    """
    try:
      return ElementType[self.name]
    except KeyError:
      raise errors.NotAnElementType(self) from None


class ElementType(enum.Enum):
  """Primitive types that can be the element type of an array."""
  PRED = 1
  S8 = 2
  S16 = 3
  S32 = 4
  S64 = 5
  U8 = 6
  U16 = 7
  U32 = 8
  U64 = 9
  F16 = 10
  F32 = 11
  BF16 = 16
  F64 = 12
  C64 = 15
  C128 = 18

  def element_size_in_bytes(self) -> int:
    """The size for this element type in bytes."""
    return _element_sizes[self]

  def primitive_type(self) -> PrimitiveType:
    return PrimitiveType(self.value)

  def numpy_dtype(self) -> np.dtype:
    return _numpy_dtypes[self]

  def hlo_name(self) -> str:
    """The spelling of this type in HLO text, e.g. ``f32`` or ``pred``."""
    return self.name.lower()

  def is_floating(self) -> bool:
    return self in (ElementType.F16, ElementType.BF16, ElementType.F32,
                    ElementType.F64)

  def is_integral(self) -> bool:
    return self in _integral_types

  def is_complex(self) -> bool:
    return self in (ElementType.C64, ElementType.C128)

  @staticmethod
  def from_dtype(dtype: Any) -> ElementType:
    """The element type of a NumPy dtype (or anything ``np.dtype`` accepts)."""
    dtype = np.dtype(dtype)
    try:
      return _dtype_to_element_type[dtype]
    except KeyError:
      raise TypeError(f'no element type for dtype {dtype}') from None

  @staticmethod
  def from_hlo_name(name: str) -> ElementType:
    try:
      return ElementType[name.upper()]
    except KeyError:
      if name.lower() in ('tuple', 'token', 'opaque'):
        raise errors.NotAnElementType(name) from None
      raise ValueError(f'unknown HLO element type {name!r}') from None


_element_sizes: dict[ElementType, int] = {
    ElementType.PRED: 1,
    ElementType.S8: 1,
    ElementType.S16: 2,
    ElementType.S32: 4,
    ElementType.S64: 8,
    ElementType.U8: 1,
    ElementType.U16: 2,
    ElementType.U32: 4,
    ElementType.U64: 8,
    ElementType.F16: 2,
    ElementType.F32: 4,
    ElementType.BF16: 2,
    ElementType.F64: 8,
    ElementType.C64: 8,
    ElementType.C128: 16,
}

_numpy_dtypes: dict[ElementType, np.dtype] = {
    ElementType.PRED: np.dtype(np.bool_),
    ElementType.S8: np.dtype(np.int8),
    ElementType.S16: np.dtype(np.int16),
    ElementType.S32: np.dtype(np.int32),
    ElementType.S64: np.dtype(np.int64),
    ElementType.U8: np.dtype(np.uint8),
    ElementType.U16: np.dtype(np.uint16),
    ElementType.U32: np.dtype(np.uint32),
    ElementType.U64: np.dtype(np.uint64),
    ElementType.F16: np.dtype(np.float16),
    ElementType.F32: np.dtype(np.float32),
    ElementType.BF16: np.dtype(ml_dtypes.bfloat16),
    ElementType.F64: np.dtype(np.float64),
    ElementType.C64: np.dtype(np.complex64),
    ElementType.C128: np.dtype(np.complex128),
}

_dtype_to_element_type = {v: k for k, v in _numpy_dtypes.items()}

_integral_types = frozenset([
    ElementType.S8, ElementType.S16, ElementType.S32, ElementType.S64,
    ElementType.U8, ElementType.U16, ElementType.U32, ElementType.U64])


# Dummy F16 type: 16-bit IEEE floats have no host constant constructors.
class F16:
  __slots__ = ()

  def __repr__(self):
    return 'F16()'

  def __eq__(self, other):
    return isinstance(other, F16)

  def __hash__(self):
    return hash(F16)


# Dummy BF16 type.
class Bf16:
  __slots__ = ()

  def __repr__(self):
    return 'Bf16()'

  def __eq__(self, other):
    return isinstance(other, Bf16)

  def __hash__(self):
    return hash(Bf16)


class ArrayElement(Generic[_T]):
  """Binds a host numeric type to its element type.

  Attributes:
    host_type: the host type, e.g. ``np.float32`` or the marker ``F16``.
    ty: the corresponding :class:`ElementType`.
    element_size_in_bytes: size of one element.
    zero: the additive identity as a host value.
  """

  def __init__(self, host_type: type[_T], ty: ElementType, zero: _T):
    self.host_type = host_type
    self.ty = ty
    self.element_size_in_bytes = ty.element_size_in_bytes()
    self.zero = zero

  def __repr__(self):
    return f'ArrayElement({self.host_type.__name__}, {self.ty.name})'

  @staticmethod
  def of(host_type: Any) -> ArrayElement:
    """The capability of ``host_type``.

    ``host_type`` may be a host type (``np.int32``, ``F16``), a dtype or a
    dtype name.

    Raises:
      TypeError: if the type is not a supported array element.
    """
    if isinstance(host_type, ArrayElement):
      return host_type
    key = _normalize_host_type(host_type)
    try:
      return _array_elements[key]
    except KeyError:
      raise TypeError(f'{host_type!r} is not a supported array element type'
                      ) from None


def _normalize_host_type(host_type: Any) -> Any:
  if host_type is F16 or host_type is Bf16:
    return host_type
  if isinstance(host_type, PrimitiveType):
    host_type = host_type.element_type()
  if isinstance(host_type, ElementType):
    return _element_type_hosts.get(host_type, host_type)
  if isinstance(host_type, type) and issubclass(host_type, np.generic):
    return host_type
  try:
    return np.dtype(host_type).type
  except TypeError:
    return host_type


_array_elements: dict[Any, ArrayElement] = {}

def _register_array_element(host_type, ty: ElementType, zero) -> None:
  _array_elements[host_type] = ArrayElement(host_type, ty, zero)

_register_array_element(np.bool_, ElementType.PRED, np.bool_(False))
for _host_type in (np.int8, np.int16, np.int32, np.int64,
                   np.uint8, np.uint16, np.uint32, np.uint64,
                   np.float32, np.float64):
  _register_array_element(
      _host_type, ElementType.from_dtype(_host_type), _host_type(0))
_register_array_element(F16, ElementType.F16, F16())
_register_array_element(Bf16, ElementType.BF16, Bf16())
del _host_type

_element_type_hosts = {e.ty: h for h, e in _array_elements.items()}


class NativeType(Generic[_T]):
  """Constant and literal constructors for a host numeric type.

  One generic implementation serves every host type that has a direct host
  representation; the result of each constructor is a host array that the
  builder stages as a constant or a literal takes ownership of.
  """

  def __init__(self, element: ArrayElement):
    self.element = element
    self.dtype = element.ty.numpy_dtype()

  def __repr__(self):
    return f'NativeType({self.element.host_type.__name__})'

  @property
  def ty(self) -> ElementType:
    return self.element.ty

  def constant_r0(self, v: Any) -> np.ndarray:
    return np.asarray(v, dtype=self.dtype).reshape(())

  def constant_r1(self, values: Sequence[Any]) -> np.ndarray:
    return np.asarray(values, dtype=self.dtype).reshape(-1)

  def constant_r1c(self, v: Any, length: int) -> np.ndarray:
    if length < 0:
      raise ValueError(f'negative length {length}')
    return np.full((length,), v, dtype=self.dtype)

  def constant_r2(self, rows: Sequence[Sequence[Any]]) -> np.ndarray:
    rows = list(rows)
    num_cols = len(rows[0]) if rows else 0
    if any(len(row) != num_cols for row in rows):
      raise errors.RaggedArrayError()
    return np.asarray(rows, dtype=self.dtype).reshape(len(rows), num_cols)

  create_r0 = constant_r0
  create_r1 = constant_r1
  create_r2 = constant_r2

  def literal_get_first_element(self, array: np.ndarray) -> Any:
    if array.size == 0:
      raise IndexError('empty literal has no first element')
    return self.element.host_type(array.reshape(-1)[0])

  @staticmethod
  def of(host_type: Any) -> NativeType:
    """The capability of ``host_type``.

    Raises:
      TypeError: if constants of ``host_type`` cannot be built on the host.
    """
    element = ArrayElement.of(host_type)
    try:
      return _native_types[element.host_type]
    except KeyError:
      raise TypeError(
          f'{element.host_type.__name__} values cannot be constructed on the '
          'host') from None


_native_types: dict[Any, NativeType] = {
    t: NativeType(_array_elements[t])
    for t in (np.int32, np.int64, np.uint32, np.uint64, np.float32,
              np.float64)
}


def infer_host_type(value: Any) -> type:
  """Host type used for an untyped host value.

  NumPy scalars and arrays keep their own type. Python ints map to int32 and
  Python floats to float32, following jax's default (non-x64) types; nested
  sequences take the type of their first element.
  """
  if isinstance(value, (np.ndarray, np.generic)):
    return value.dtype.type
  if isinstance(value, bool):
    raise TypeError('bool values have no native constant type')
  if isinstance(value, int):
    return np.int32
  if isinstance(value, float):
    return np.float32
  if isinstance(value, (list, tuple)):
    for item in value:
      return infer_host_type(item)
    return np.float32
  raise TypeError(f'cannot infer a host type for {type(value).__name__}')


def to_element_type(ty: Any) -> ElementType:
  """Coerces an element type, primitive type or host type to ElementType."""
  if isinstance(ty, ElementType):
    return ty
  if isinstance(ty, PrimitiveType):
    return ty.element_type()
  try:
    return ArrayElement.of(ty).ty
  except TypeError:
    # Element types without a host type, e.g. bfloat16 or complex64.
    return ElementType.from_dtype(ty)
