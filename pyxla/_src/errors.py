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

"""Exceptions raised by pyxla.

There are two families. Subclasses of :class:`Error` are recoverable: they
describe a condition the caller is expected to handle (a runtime failure, an
element type mismatch, a malformed module). Subclasses of
:class:`InvariantViolation` signal a programming error in the caller (ragged
matrix input, mixing op handles of different builders, using a released
resource). They intentionally do not derive from :class:`Error` so that an
``except pyxla.Error`` clause never hides them.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any


class _PyxlaErrorMixin:
  """Mixin for pyxla-specific errors"""
  _module_name = "pyxla.errors"

  def __init__(self, message: str):
    module_name = self._module_name
    class_name = self.__class__.__name__
    error_msg = f'{message} ({module_name}.{class_name})'
    # https://github.com/python/mypy/issues/5887
    super().__init__(error_msg)  # type: ignore


class Error(_PyxlaErrorMixin, Exception):
  """Base class for recoverable pyxla errors."""


class NotAnElementType(Error):
  """A structural primitive type was used where an element type is needed.

  Tuple, token, opaque and invalid primitive types describe the structure of
  a value rather than the type of the elements of an array.
  """

  def __init__(self, got: Any):
    self.got = got
    super().__init__(f'not an element type: {got!r}')


class ElementTypeMismatch(Error):
  """The element type of a value differs from the requested host type."""

  def __init__(self, on_device: Any, on_host: Any):
    self.on_device = on_device
    self.on_host = on_host
    super().__init__(
        f'element type mismatch, on-device: {on_device!r}, '
        f'on-host: {on_host!r}')


class NotAnArray(Error):
  """An array value was expected but a tuple was found."""

  def __init__(self, got: Any):
    self.got = got
    super().__init__(f'not an array: {got}')


class NotATuple(Error):
  """A tuple value was expected but an array was found."""

  def __init__(self, got: Any):
    self.got = got
    super().__init__(f'not a tuple: {got}')


class DynamicShapeError(Error):
  """A static quantity was requested for a shape with dynamic dimensions.

  A negative dimension size ``-n`` marks a dynamic dimension bounded by ``n``;
  the number of elements of such a shape is only known at run time.
  """

  def __init__(self, shape: Any):
    self.shape = shape
    super().__init__(f'shape has dynamic dimensions: {shape}')


class MatMulIncorrectDims(Error):

  def __init__(self, lhs_dims: Sequence[int], rhs_dims: Sequence[int],
               msg: str):
    self.lhs_dims = tuple(lhs_dims)
    self.rhs_dims = tuple(rhs_dims)
    super().__init__(
        f'incorrect dimensions for matmul, lhs: {list(lhs_dims)}, '
        f'rhs: {list(rhs_dims)}: {msg}')


class WrongElementCount(Error):

  def __init__(self, dims: Sequence[int], element_count: int):
    self.dims = tuple(dims)
    self.element_count = element_count
    super().__init__(
        f'wrong element count {element_count} for dims {list(dims)}')


class XlaError(Error):
  """A runtime call reported a failure.

  Attributes:
    msg: the diagnostic message reported by the runtime.
    backtrace: the Python call stack at the point the failure was observed.
    partial_results: owning wrappers of the resources the failing call had
      already handed over; the caller is responsible for them.
  """

  def __init__(self, msg: str, backtrace: str = '',
               partial_results: Sequence[Any] = ()):
    self.msg = msg
    self.backtrace = backtrace
    self.partial_results = list(partial_results)
    super().__init__(msg)


class InvariantViolation(_PyxlaErrorMixin, Exception):
  """Base class for programming errors detected by pyxla."""


class RaggedArrayError(InvariantViolation):
  """Rows of a rank-2 input do not all have the same length."""

  def __init__(self, msg: str = 'all rows must have the same number of columns!'):
    super().__init__(msg)


class WrongBuilderError(InvariantViolation):
  """Op handles from different builders were combined."""


class ReleasedHandleError(InvariantViolation):
  """A runtime resource was used after it had been released."""
