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

"""Graph construction: :class:`XlaBuilder` and :class:`XlaOp`.

A builder accumulates HLO instructions in the order they are created. Each
:class:`XlaOp` refers to one instruction and to the builder that created it;
ops of different builders cannot be combined. Shapes are inferred eagerly, so
an ill-formed operation raises :class:`~pyxla.errors.XlaError` at the call
that creates it rather than when the graph is built.

Element-wise operations broadcast implicitly. Operands of equal shape are
used as they are; a rank-0 operand is broadcast to the shape of the other;
operands of equal rank are broadcast along the dimensions where one of them
has size 1. The broadcasts are explicit ``broadcast`` instructions in the
built module.
"""

from __future__ import annotations

from collections.abc import Sequence
import copy
import itertools
import logging
import math
from typing import Any

import numpy as np

from pyxla._src import computation as computation_lib
from pyxla._src import errors
from pyxla._src import handles
from pyxla._src import hlo
from pyxla._src import literal as literal_lib
from pyxla._src.shape import ArrayShape, Shape, as_shape
from pyxla._src import status
from pyxla._src import types

logger = logging.getLogger(__name__)

# Ids are unique across builders so that the regions of one builder can be
# embedded in the module of another.
_instruction_ids = itertools.count(1)


def _invalid_argument(msg: str):
  status.handle_status(ValueError(msg))


class _GraphContext:
  """The state of a builder: instructions and called regions."""

  def __init__(self, name: str):
    self.name = name
    self.instructions: list[hlo.Instruction] = []
    self.by_name: dict[str, hlo.Instruction] = {}
    self.parameters: dict[int, hlo.Instruction] = {}
    self.regions: dict[str, hlo.Computation] = {}

  def clear(self):
    self.instructions.clear()
    self.by_name.clear()
    self.parameters.clear()
    self.regions.clear()


class XlaBuilder(handles.NativeHandle):
  """Accumulates the instructions of a computation.

  Example::

    builder = XlaBuilder('add_one')
    x = builder.parameter(0, np.float32, [2], 'x')
    computation = (x + 1.0).build()
  """
  _kind = 'builder'

  def __init__(self, name: str):
    super().__init__(_GraphContext(name))
    logger.debug('Created builder %s', name)

  @staticmethod
  def _release_native(native: _GraphContext) -> None:
    native.clear()

  def __repr__(self):
    return f'XlaBuilder({self.native.name!r})'

  def name(self) -> str:
    return self.native.name

  def _add(self, opcode: str, shape: Shape | ArrayShape,
           operands: Sequence[XlaOp] = (),
           attributes: dict[str, str] | None = None,
           literal: np.ndarray | None = None,
           parameter_number: int | None = None,
           name: str | None = None) -> XlaOp:
    ctx = self.native
    for op in operands:
      if op._builder is not self:
        raise errors.WrongBuilderError(
            f'op of builder {op._builder.name()!r} used with builder '
            f'{ctx.name!r}')
    instr = hlo.Instruction(
        name=f'{name or opcode}.{next(_instruction_ids)}',
        opcode=opcode,
        shape=as_shape(shape),
        operands=[op._instr.name for op in operands],
        attributes=dict(attributes or {}),
        literal=literal,
        parameter_number=parameter_number)
    ctx.instructions.append(instr)
    ctx.by_name[instr.name] = instr
    return XlaOp(self, instr)

  def _add_region(self, comp: computation_lib.XlaComputation) -> str:
    """Embeds the computations of ``comp``; returns the name of its entry."""
    ctx = self.native
    module = comp.native
    renames = {}
    for c in module.computations:
      name = c.name
      while name in ctx.regions or name == ctx.name:
        name = f'{c.name}.{next(_instruction_ids)}'
      renames[c.name] = name
    for c in module.computations:
      region = copy.deepcopy(c)
      region.name = renames[c.name]
      region.is_entry = False
      for instr in region.instructions:
        if 'to_apply' in instr.attributes:
          instr.attributes['to_apply'] = renames[instr.attributes['to_apply']]
      ctx.regions[region.name] = region
    return renames[module.entry().name]

  def _check(self, *ops: Any) -> None:
    for op in ops:
      if not isinstance(op, XlaOp):
        raise TypeError(f'expected an XlaOp, got {type(op).__name__}')
      if op._builder is not self:
        raise errors.WrongBuilderError(
            f'op of builder {op._builder.name()!r} used with builder '
            f'{self.name()!r}')

  # Constants

  def constant_array(self, array: Any) -> XlaOp:
    """A constant holding a copy of ``array``, of any supported element type."""
    array = np.array(array, copy=True, order='C')
    shape = Shape.array(types.ElementType.from_dtype(array.dtype), array.shape)
    return self._add('constant', shape, literal=array)

  def constant_r0(self, v: Any, ty: Any = None) -> XlaOp:
    native = types.NativeType.of(ty or types.infer_host_type(v))
    return self.constant_array(native.constant_r0(v))

  def c0(self, v: Any, ty: Any = None) -> XlaOp:
    return self.constant_r0(v, ty)

  def constant_r1(self, values: Sequence[Any], ty: Any = None) -> XlaOp:
    native = types.NativeType.of(ty or types.infer_host_type(values))
    return self.constant_array(native.constant_r1(values))

  def constant_r1c(self, v: Any, length: int, ty: Any = None) -> XlaOp:
    """A 1-D constant of ``length`` elements, all equal to ``v``."""
    native = types.NativeType.of(ty or types.infer_host_type(v))
    return self.constant_array(native.constant_r1c(v, length))

  def constant_r2(self, rows: Sequence[Sequence[Any]], ty: Any = None) -> XlaOp:
    """A 2-D constant from a sequence of rows.

    Raises:
      RaggedArrayError: if the rows do not all have the same length. Nothing
        is added to the graph in that case.
    """
    native = types.NativeType.of(ty or types.infer_host_type(rows))
    return self.constant_array(native.constant_r2(rows))

  def constant_literal(self, literal: literal_lib.Literal) -> XlaOp:
    """A constant with the value of ``literal``; tuples become ``tuple`` ops."""
    value = literal.to_py()
    def rec(v):
      if isinstance(v, tuple):
        return self.tuple([rec(e) for e in v])
      return self.constant_array(v)
    return rec(value)

  def zero(self, ty: Any) -> XlaOp:
    ty = types.to_element_type(ty)
    return self.constant_array(np.zeros((), ty.numpy_dtype()))

  def one(self, ty: Any) -> XlaOp:
    ty = types.to_element_type(ty)
    return self.constant_array(np.ones((), ty.numpy_dtype()))

  def min_value(self, ty: Any) -> XlaOp:
    """The smallest value of ``ty``; ``-inf`` for floating point types."""
    return self.constant_array(_extremum(types.to_element_type(ty), False))

  def max_value(self, ty: Any) -> XlaOp:
    """The largest value of ``ty``; ``inf`` for floating point types."""
    return self.constant_array(_extremum(types.to_element_type(ty), True))

  def iota(self, ty: Any, dims: Sequence[int], iota_dimension: int) -> XlaOp:
    ty = types.to_element_type(ty)
    dims = list(dims)
    if not 0 <= iota_dimension < len(dims):
      _invalid_argument(
          f'iota dimension {iota_dimension} out of range for dims {dims}')
    return self._add('iota', Shape.array(ty, dims),
                     attributes={'iota_dimension': str(iota_dimension)})

  def iota1(self, ty: Any, size: int) -> XlaOp:
    return self.iota(ty, [size], 0)

  # Parameters

  def parameter(self, parameter_number: int, ty: Any, dims: Sequence[int],
                name: str = '') -> XlaOp:
    """Declares parameter ``parameter_number`` of the computation.

    A negative dimension ``-n`` declares a dimension bounded by ``n``. It is
    compiled at its bound, so arguments must have the bound's element count.
    It is not implicitly broadcast against a static ``n``.
    """
    return self.parameter_s(parameter_number, Shape.array(ty, dims), name)

  def parameter_s(self, parameter_number: int, shape: Shape | ArrayShape,
                  name: str = '') -> XlaOp:
    ctx = self.native
    if parameter_number < 0:
      _invalid_argument(f'negative parameter number {parameter_number}')
    if parameter_number in ctx.parameters:
      _invalid_argument(
          f'parameter {parameter_number} already declared as '
          f'{ctx.parameters[parameter_number].name}')
    op = self._add('parameter', shape, parameter_number=parameter_number,
                   name=name or 'parameter')
    ctx.parameters[parameter_number] = op._instr
    return op

  # Tuples

  def tuple(self, ops: Sequence[XlaOp]) -> XlaOp:
    self._check(*ops)
    shape = Shape.tuple([op.shape() for op in ops])
    return self._add('tuple', shape, ops)

  # Building

  def build(self, root: XlaOp) -> computation_lib.XlaComputation:
    """Builds the computation rooted at ``root``.

    The computation holds every parameter of the builder and the instructions
    ``root`` depends on, in creation order. The builder can still be used to
    build other computations afterwards.

    Raises:
      XlaError: if the parameters are not numbered ``0..n-1``.
    """
    self._check(root)
    ctx = self.native
    numbers = sorted(ctx.parameters)
    if numbers != list(range(len(numbers))):
      _invalid_argument(
          f'parameter numbers of {ctx.name} must be 0..{len(numbers) - 1}, '
          f'got {numbers}')
    reachable = set()
    stack = [root._instr.name]
    while stack:
      name = stack.pop()
      if name in reachable:
        continue
      reachable.add(name)
      stack.extend(ctx.by_name[name].operands)
    instructions = []
    for instr in ctx.instructions:
      if instr.name in reachable or instr.opcode == 'parameter':
        instr = copy.deepcopy(instr)
        instr.is_root = instr.name == root._instr.name
        instructions.append(instr)
    entry = hlo.Computation(ctx.name, instructions, is_entry=True)
    regions = self._called_regions(instructions)
    module = hlo.Module(ctx.name, [*regions, entry])
    logger.debug('Built %s with %d instructions', ctx.name, len(instructions))
    return computation_lib.XlaComputation(module)

  def _called_regions(self,
                      instructions: list[hlo.Instruction]
                      ) -> list[hlo.Computation]:
    ctx = self.native
    needed = set()
    stack = [i.attributes['to_apply'] for i in instructions
             if 'to_apply' in i.attributes]
    while stack:
      name = stack.pop()
      if name in needed:
        continue
      needed.add(name)
      stack.extend(i.attributes['to_apply']
                   for i in ctx.regions[name].instructions
                   if 'to_apply' in i.attributes)
    return [copy.deepcopy(c) for name, c in ctx.regions.items()
            if name in needed]

  def get_program_shape(self) -> tuple[list[Shape], Shape]:
    """Parameter shapes and the shape of the most recent instruction."""
    ctx = self.native
    if not ctx.instructions:
      _invalid_argument(f'builder {ctx.name} has no instructions')
    params = [ctx.parameters[n].shape for n in sorted(ctx.parameters)]
    return params, ctx.instructions[-1].shape

  def get_current_status(self) -> None:
    """Raises the first deferred error of the builder, if any.

    Errors are raised when the failing op is created, so this only checks
    that the builder has not been released.
    """
    self.native


def _extremum(ty: types.ElementType, largest: bool) -> np.ndarray:
  dtype = ty.numpy_dtype()
  if ty == types.ElementType.PRED:
    return np.array(largest, dtype)
  if ty.is_floating():
    return np.array(np.inf if largest else -np.inf, dtype)
  if ty.is_integral():
    info = np.iinfo(dtype)
    return np.array(info.max if largest else info.min, dtype)
  _invalid_argument(f'{ty.name} has no extremum')


def _broadcast_dims(lhs: tuple[int, ...],
                    rhs: tuple[int, ...]) -> tuple[int, ...] | None:
  if lhs == rhs:
    return lhs
  if not lhs:
    return rhs
  if not rhs:
    return lhs
  if len(lhs) != len(rhs):
    return None
  out = []
  for l, r in zip(lhs, rhs):
    if l == r or r == 1:
      out.append(l)
    elif l == 1:
      out.append(r)
    else:
      return None
  return tuple(out)


def _normalize_dim(dim: int, rank: int) -> int:
  if not -rank <= dim < rank:
    _invalid_argument(f'dimension {dim} out of range for rank {rank}')
  return dim % rank if rank else dim


_FLOAT_UNARY = {
    'exp': 'exponential',
    'expm1': 'exponential-minus-one',
    'log': 'log',
    'log1p': 'log-plus-one',
    'logistic': 'logistic',
    'cos': 'cosine',
    'sin': 'sine',
    'tanh': 'tanh',
    'sqrt': 'sqrt',
    'rsqrt': 'rsqrt',
    'cbrt': 'cbrt',
    'floor': 'floor',
    'ceil': 'ceil',
    'round': 'round-nearest-afz',
}


class XlaOp:
  """One instruction of a builder's graph.

  Ops are created by :class:`XlaBuilder` and by the methods of other ops. An
  op is only valid while its builder is alive, and can only be combined with
  ops of the same builder.
  """
  __slots__ = ('_builder', '_instr')

  def __init__(self, builder: XlaBuilder, instr: hlo.Instruction):
    self._builder = builder
    self._instr = instr

  def __repr__(self):
    return f'XlaOp({self._instr.name}: {self._instr.shape})'

  # Introspection

  def builder(self) -> XlaBuilder:
    return self._builder

  def name(self) -> str:
    return self._instr.name

  def shape(self) -> Shape:
    self._builder.native
    return self._instr.shape

  def array_shape(self) -> ArrayShape:
    return self.shape().array_shape()

  def dims(self) -> tuple[int, ...]:
    return self.array_shape().dims()

  def rank(self) -> int:
    return self.array_shape().rank()

  def element_type(self) -> types.ElementType:
    return self.array_shape().element_type()

  def primitive_type(self) -> types.PrimitiveType:
    return self.shape().primitive_type()

  def build(self) -> computation_lib.XlaComputation:
    return self._builder.build(self)

  # Helpers

  def _add(self, opcode, shape, operands=None, attributes=None) -> XlaOp:
    return self._builder._add(
        opcode, shape, [self] if operands is None else operands, attributes)

  def _coerce(self, other: Any) -> XlaOp:
    if isinstance(other, XlaOp):
      self._builder._check(other)
      return other
    ty = self.element_type()
    return self._builder.constant_array(np.asarray(other, ty.numpy_dtype()))

  def broadcast_to(self, dims: Sequence[int]) -> XlaOp:
    """Broadcasts to ``dims`` following the implicit broadcasting rules."""
    dims = tuple(dims)
    own = self.dims()
    if own == dims:
      return self
    if _broadcast_dims(own, dims) != dims:
      _invalid_argument(f'cannot broadcast {self.array_shape()} to {list(dims)}')
    if not own:
      return self.broadcast_in_dim(dims, [])
    kept = [i for i, (d, t) in enumerate(zip(own, dims)) if d == t]
    op = self
    if len(kept) != len(own):
      op = self.reshape([own[i] for i in kept])
    return op.broadcast_in_dim(dims, kept)

  def _binary(self, opcode: str, rhs: Any,
              result_ty: types.ElementType | None = None,
              attributes: dict[str, str] | None = None) -> XlaOp:
    rhs = self._coerce(rhs)
    lhs_shape, rhs_shape = self.array_shape(), rhs.array_shape()
    if lhs_shape.element_type() != rhs_shape.element_type():
      _invalid_argument(
          f'{opcode}: element types differ: {lhs_shape} vs {rhs_shape}')
    dims = _broadcast_dims(lhs_shape.dims(), rhs_shape.dims())
    if dims is None:
      _invalid_argument(
          f'{opcode}: shapes cannot be broadcast together: {lhs_shape} vs '
          f'{rhs_shape}')
    lhs, rhs = self.broadcast_to(dims), rhs.broadcast_to(dims)
    ty = result_ty or lhs_shape.element_type()
    return self._add(opcode, Shape.array(ty, dims), [lhs, rhs], attributes)

  def _rbinary(self, opcode: str, lhs: Any) -> XlaOp:
    return self._coerce(lhs)._binary(opcode, self)

  def _unary(self, opcode: str, result_ty: types.ElementType | None = None
             ) -> XlaOp:
    shape = self.array_shape()
    return self._add(opcode,
                     Shape.array(result_ty or shape.element_type(),
                                 shape.dims()))

  def _require(self, opcode: str, ok: bool) -> None:
    if not ok:
      _invalid_argument(
          f'{opcode} does not support element type {self.element_type().name}')

  # Element-wise binary operations

  def add(self, rhs: Any) -> XlaOp:
    return self._binary('add', rhs)

  def sub(self, rhs: Any) -> XlaOp:
    return self._binary('subtract', rhs)

  def mul(self, rhs: Any) -> XlaOp:
    return self._binary('multiply', rhs)

  def div(self, rhs: Any) -> XlaOp:
    return self._binary('divide', rhs)

  def rem(self, rhs: Any) -> XlaOp:
    return self._binary('remainder', rhs)

  def pow(self, rhs: Any) -> XlaOp:
    return self._binary('power', rhs)

  def max(self, rhs: Any) -> XlaOp:
    return self._binary('maximum', rhs)

  def min(self, rhs: Any) -> XlaOp:
    return self._binary('minimum', rhs)

  def atan2(self, rhs: Any) -> XlaOp:
    self._require('atan2', self.element_type().is_floating())
    return self._binary('atan2', rhs)

  def _logical(self, opcode: str, rhs: Any) -> XlaOp:
    ty = self.element_type()
    self._require(opcode, ty == types.ElementType.PRED or ty.is_integral())
    return self._binary(opcode, rhs)

  def and_(self, rhs: Any) -> XlaOp:
    return self._logical('and', rhs)

  def or_(self, rhs: Any) -> XlaOp:
    return self._logical('or', rhs)

  def xor(self, rhs: Any) -> XlaOp:
    return self._logical('xor', rhs)

  def _compare(self, direction: str, rhs: Any) -> XlaOp:
    return self._binary('compare', rhs, types.ElementType.PRED,
                        {'direction': direction})

  def eq(self, rhs: Any) -> XlaOp:
    return self._compare('EQ', rhs)

  def ne(self, rhs: Any) -> XlaOp:
    return self._compare('NE', rhs)

  def ge(self, rhs: Any) -> XlaOp:
    return self._compare('GE', rhs)

  def gt(self, rhs: Any) -> XlaOp:
    return self._compare('GT', rhs)

  def le(self, rhs: Any) -> XlaOp:
    return self._compare('LE', rhs)

  def lt(self, rhs: Any) -> XlaOp:
    return self._compare('LT', rhs)

  __add__ = add
  __sub__ = sub
  __mul__ = mul
  __truediv__ = div
  __mod__ = rem
  __pow__ = pow

  def __radd__(self, lhs):
    return self._rbinary('add', lhs)

  def __rsub__(self, lhs):
    return self._rbinary('subtract', lhs)

  def __rmul__(self, lhs):
    return self._rbinary('multiply', lhs)

  def __rtruediv__(self, lhs):
    return self._rbinary('divide', lhs)

  def __rmod__(self, lhs):
    return self._rbinary('remainder', lhs)

  def __rpow__(self, lhs):
    return self._rbinary('power', lhs)

  def __neg__(self):
    return self.neg()

  # Element-wise unary operations

  def neg(self) -> XlaOp:
    return self._unary('negate')

  def abs(self) -> XlaOp:
    return self._unary('abs')

  def sign(self) -> XlaOp:
    return self._unary('sign')

  def copy(self) -> XlaOp:
    return self._unary('copy')

  def sqr(self) -> XlaOp:
    return self.mul(self)

  def not_(self) -> XlaOp:
    ty = self.element_type()
    self._require('not', ty == types.ElementType.PRED or ty.is_integral())
    return self._unary('not')

  def is_finite(self) -> XlaOp:
    self._require('is-finite', self.element_type().is_floating())
    return self._unary('is-finite', types.ElementType.PRED)

  def _float_unary(self, method: str) -> XlaOp:
    opcode = _FLOAT_UNARY[method]
    ty = self.element_type()
    self._require(opcode, ty.is_floating() or ty.is_complex())
    return self._unary(opcode)

  def exp(self) -> XlaOp:
    return self._float_unary('exp')

  def expm1(self) -> XlaOp:
    return self._float_unary('expm1')

  def log(self) -> XlaOp:
    return self._float_unary('log')

  def log1p(self) -> XlaOp:
    return self._float_unary('log1p')

  def logistic(self) -> XlaOp:
    return self._float_unary('logistic')

  def cos(self) -> XlaOp:
    return self._float_unary('cos')

  def sin(self) -> XlaOp:
    return self._float_unary('sin')

  def tanh(self) -> XlaOp:
    return self._float_unary('tanh')

  def sqrt(self) -> XlaOp:
    return self._float_unary('sqrt')

  def rsqrt(self) -> XlaOp:
    return self._float_unary('rsqrt')

  def cbrt(self) -> XlaOp:
    return self._float_unary('cbrt')

  def floor(self) -> XlaOp:
    return self._float_unary('floor')

  def ceil(self) -> XlaOp:
    return self._float_unary('ceil')

  def round(self) -> XlaOp:
    """Rounds to the nearest integer, halfway cases away from zero."""
    return self._float_unary('round')

  # Structural operations

  def convert(self, ty: Any) -> XlaOp:
    return self._unary('convert', types.to_element_type(ty))

  def reshape(self, dims: Sequence[int]) -> XlaOp:
    """Reshapes to ``dims``; dynamic dimensions count at their bound."""
    shape = self.array_shape()
    dims = list(dims)
    if math.prod(abs(d) for d in dims) != shape.max_element_count():
      _invalid_argument(f'cannot reshape {shape} to {dims}')
    return self._add('reshape', Shape.array(shape.element_type(), dims))

  def broadcast(self, dims: Sequence[int]) -> XlaOp:
    """Adds the leading dimensions ``dims``."""
    shape = self.array_shape()
    dims = list(dims)
    out = dims + list(shape.dims())
    return self.broadcast_in_dim(
        out, range(len(dims), len(dims) + shape.rank()))

  def broadcast_in_dim(self, out_dims: Sequence[int],
                       broadcast_dims: Sequence[int]) -> XlaOp:
    """Broadcasts to ``out_dims``, operand dimension ``i`` becoming
    ``broadcast_dims[i]``."""
    shape = self.array_shape()
    out_dims, broadcast_dims = list(out_dims), list(broadcast_dims)
    if len(broadcast_dims) != shape.rank():
      _invalid_argument(
          f'broadcast dimensions {broadcast_dims} do not match {shape}')
    for i, d in enumerate(broadcast_dims):
      if not 0 <= d < len(out_dims):
        _invalid_argument(f'broadcast dimension {d} out of range')
      if shape.dims()[i] not in (1, out_dims[d]):
        _invalid_argument(f'cannot broadcast {shape} to {out_dims}')
    return self._add('broadcast',
                     Shape.array(shape.element_type(), out_dims),
                     attributes={'dimensions':
                                 hlo.format_int_list(broadcast_dims)})

  def transpose(self, permutation: Sequence[int]) -> XlaOp:
    shape = self.array_shape()
    permutation = list(permutation)
    if sorted(permutation) != list(range(shape.rank())):
      _invalid_argument(f'{permutation} is not a permutation of {shape}')
    dims = [shape.dims()[p] for p in permutation]
    return self._add('transpose', Shape.array(shape.element_type(), dims),
                     attributes={'dimensions':
                                 hlo.format_int_list(permutation)})

  def swap_dims(self, dim1: int, dim2: int) -> XlaOp:
    rank = self.rank()
    dim1, dim2 = _normalize_dim(dim1, rank), _normalize_dim(dim2, rank)
    permutation = list(range(rank))
    permutation[dim1], permutation[dim2] = dim2, dim1
    return self.transpose(permutation)

  def collapse(self, dims: Sequence[int]) -> XlaOp:
    """Merges the consecutive dimensions ``dims`` into one."""
    shape = self.array_shape()
    dims = [_normalize_dim(d, shape.rank()) for d in dims]
    if not dims:
      return self
    if dims != list(range(dims[0], dims[0] + len(dims))):
      _invalid_argument(f'collapsed dimensions {dims} are not consecutive')
    own = shape.dims()
    merged = math.prod(abs(own[d]) for d in dims)
    if any(shape.is_dynamic_dimension(d) for d in dims):
      merged = -merged
    return self.reshape([*own[:dims[0]], merged, *own[dims[-1] + 1:]])

  def slice(self, start_indices: Sequence[int], limit_indices: Sequence[int],
            strides: Sequence[int] | None = None) -> XlaOp:
    shape = self.array_shape()
    start, limit = list(start_indices), list(limit_indices)
    strides = [1] * len(start) if strides is None else list(strides)
    if not len(start) == len(limit) == len(strides) == shape.rank():
      _invalid_argument(f'slice indices do not match {shape}')
    dims = []
    for a, b, s, d in zip(start, limit, strides, shape.dims()):
      if not (0 <= a <= b <= d and s > 0):
        _invalid_argument(f'invalid slice [{a}:{b}:{s}] of dimension {d}')
      dims.append((b - a + s - 1) // s)
    return self._add('slice', Shape.array(shape.element_type(), dims),
                     attributes={'slice': hlo.format_slice(start, limit,
                                                           strides)})

  def slice_in_dim(self, start_index: int, stop_index: int, stride: int,
                   dim: int) -> XlaOp:
    shape = self.array_shape()
    dim = _normalize_dim(dim, shape.rank())
    start = [0] * shape.rank()
    limit = list(shape.dims())
    strides = [1] * shape.rank()
    start[dim], limit[dim], strides[dim] = start_index, stop_index, stride
    return self.slice(start, limit, strides)

  def concat_in_dim(self, others: Sequence[XlaOp], dim: int) -> XlaOp:
    ops = [self, *others]
    self._builder._check(*others)
    shape = self.array_shape()
    dim = _normalize_dim(dim, shape.rank())
    dims = list(shape.dims())
    for op in others:
      s = op.array_shape()
      if (s.element_type() != shape.element_type() or s.rank() != shape.rank()
          or any(a != b for i, (a, b) in enumerate(zip(s.dims(), shape.dims()))
                 if i != dim)):
        _invalid_argument(f'cannot concatenate {s} with {shape} along {dim}')
      dims[dim] += s.dims()[dim]
    return self._add('concatenate', Shape.array(shape.element_type(), dims),
                     ops, {'dimensions': hlo.format_int_list([dim])})

  def select(self, on_true: Any, on_false: Any) -> XlaOp:
    """Element-wise ``on_true if self else on_false``; ``self`` is a predicate."""
    self._require('select', self.element_type() == types.ElementType.PRED)
    on_true = self._coerce_like(on_true, on_false)
    on_false = on_true._coerce(on_false)
    if on_true.element_type() != on_false.element_type():
      _invalid_argument('select: branches have different element types')
    dims = _broadcast_dims(on_true.dims(), on_false.dims())
    dims = dims if dims is None else _broadcast_dims(self.dims(), dims)
    if dims is None:
      _invalid_argument('select: shapes cannot be broadcast together')
    ops = [self.broadcast_to(dims), on_true.broadcast_to(dims),
           on_false.broadcast_to(dims)]
    return self._add('select', Shape.array(on_true.element_type(), dims), ops)

  def _coerce_like(self, value: Any, other: Any) -> XlaOp:
    if isinstance(value, XlaOp):
      self._builder._check(value)
      return value
    if isinstance(other, XlaOp):
      return other._coerce(value)
    _invalid_argument('select needs at least one branch to be an XlaOp')

  def clamp(self, min_value: Any, max_value: Any) -> XlaOp:
    lo, hi = self._coerce(min_value), self._coerce(max_value)
    for bound in (lo, hi):
      if bound.element_type() != self.element_type():
        _invalid_argument('clamp: bounds have a different element type')
    dims = self.dims()
    ops = [lo.broadcast_to(dims), self, hi.broadcast_to(dims)]
    return self._add('clamp', self.array_shape(), ops)

  def _triangle(self, lower: bool) -> XlaOp:
    shape = self.array_shape()
    if shape.rank() < 2:
      _invalid_argument(f'triangle of {shape} needs rank 2 or more')
    dims = shape.dims()
    rows = self._builder.iota(types.ElementType.S32, dims, shape.rank() - 2)
    cols = self._builder.iota(types.ElementType.S32, dims, shape.rank() - 1)
    mask = rows.ge(cols) if lower else rows.le(cols)
    return mask.select(self, self._builder.zero(shape.element_type()))

  def lower_triangle(self) -> XlaOp:
    """Keeps the diagonal and the elements below it, zeroing the rest."""
    return self._triangle(True)

  def upper_triangle(self) -> XlaOp:
    return self._triangle(False)

  def get_tuple_element(self, index: int) -> XlaOp:
    shapes = self.shape().tuple_shapes()
    if not 0 <= index < len(shapes):
      _invalid_argument(
          f'tuple index {index} out of range for {len(shapes)} elements')
    return self._add('get-tuple-element', shapes[index],
                     attributes={'index': str(index)})

  # Linear algebra

  def dot_general(self, rhs: XlaOp, lhs_contracting_dims: Sequence[int],
                  rhs_contracting_dims: Sequence[int],
                  lhs_batch_dims: Sequence[int] = (),
                  rhs_batch_dims: Sequence[int] = ()) -> XlaOp:
    self._builder._check(rhs)
    lhs_shape, rhs_shape = self.array_shape(), rhs.array_shape()
    if lhs_shape.element_type() != rhs_shape.element_type():
      _invalid_argument(
          f'dot: element types differ: {lhs_shape} vs {rhs_shape}')
    lc, rc = list(lhs_contracting_dims), list(rhs_contracting_dims)
    lb, rb = list(lhs_batch_dims), list(rhs_batch_dims)
    ld, rd = lhs_shape.dims(), rhs_shape.dims()
    if len(lc) != len(rc) or len(lb) != len(rb):
      _invalid_argument('dot: contracting or batch dimension counts differ')
    try:
      for l, r in [*zip(lc, rc), *zip(lb, rb)]:
        if ld[l] != rd[r]:
          _invalid_argument(
              f'dot: dimension {l} of {lhs_shape} does not match dimension '
              f'{r} of {rhs_shape}')
    except IndexError:
      _invalid_argument(f'dot: dimension out of range for {lhs_shape} or '
                        f'{rhs_shape}')
    dims = ([ld[i] for i in lb]
            + [d for i, d in enumerate(ld) if i not in lb and i not in lc]
            + [d for i, d in enumerate(rd) if i not in rb and i not in rc])
    attributes = {
        'lhs_batch_dims': hlo.format_int_list(lb),
        'lhs_contracting_dims': hlo.format_int_list(lc),
        'rhs_batch_dims': hlo.format_int_list(rb),
        'rhs_contracting_dims': hlo.format_int_list(rc),
    }
    return self._add('dot', Shape.array(lhs_shape.element_type(), dims),
                     [self, rhs], attributes)

  def dot(self, rhs: XlaOp) -> XlaOp:
    """Vector and matrix products of operands of rank 1 or 2."""
    lhs_rank, rhs_rank = self.rank(), rhs.rank()
    if lhs_rank not in (1, 2) or rhs_rank not in (1, 2):
      _invalid_argument(f'dot needs operands of rank 1 or 2, got '
                        f'{self.array_shape()} and {rhs.array_shape()}')
    return self.dot_general(rhs, [lhs_rank - 1], [0])

  def matmul(self, rhs: XlaOp) -> XlaOp:
    """Matrix product over the last two dimensions, batching the others.

    Raises:
      MatMulIncorrectDims: if the operands cannot be multiplied.
    """
    lhs_dims, rhs_dims = self.dims(), rhs.dims()
    lhs_rank, rhs_rank = len(lhs_dims), len(rhs_dims)
    if lhs_rank < 1 or rhs_rank < 1:
      raise errors.MatMulIncorrectDims(lhs_dims, rhs_dims, 'empty dimension')
    rhs_contracting = rhs_rank - 2 if rhs_rank > 1 else 0
    lhs_batch = max(lhs_rank - 2, 0)
    rhs_batch = max(rhs_rank - 2, 0)
    if lhs_batch != rhs_batch:
      raise errors.MatMulIncorrectDims(lhs_dims, rhs_dims,
                                       'different number of batch dimensions')
    if lhs_dims[:lhs_batch] != rhs_dims[:rhs_batch]:
      raise errors.MatMulIncorrectDims(lhs_dims, rhs_dims,
                                       'incompatible batch dimensions')
    if lhs_dims[-1] != rhs_dims[rhs_contracting]:
      raise errors.MatMulIncorrectDims(lhs_dims, rhs_dims,
                                       'contracted dimensions differ')
    batch = list(range(lhs_batch))
    return self.dot_general(rhs, [lhs_rank - 1], [rhs_contracting], batch,
                            batch)

  def triangular_solve(self, b: XlaOp, left_side: bool, lower: bool,
                       unit_diagonal: bool, transpose_a: int) -> XlaOp:
    """Solves ``op(a) x = b`` (left side) or ``x op(a) = b`` for ``x``.

    ``self`` is ``a``; only its ``lower`` (or upper) triangle is read.
    ``transpose_a`` selects ``op``: 1 for no transpose, 2 for transpose, 3 for
    the adjoint.
    """
    self._builder._check(b)
    a_shape, b_shape = self.array_shape(), b.array_shape()
    if a_shape.element_type() != b_shape.element_type():
      _invalid_argument('triangular_solve: element types differ')
    if a_shape.rank() < 2 or a_shape.rank() != b_shape.rank():
      _invalid_argument(
          f'triangular_solve: incompatible ranks {a_shape} and {b_shape}')
    m = a_shape.dims()[-1]
    if a_shape.dims()[-2] != m:
      _invalid_argument(f'triangular_solve: {a_shape} is not square')
    if b_shape.dims()[-2 if left_side else -1] != m:
      _invalid_argument(
          f'triangular_solve: {a_shape} and {b_shape} do not match')
    try:
      transpose = _TRANSPOSE_A[transpose_a]
    except KeyError:
      _invalid_argument(f'triangular_solve: invalid transpose_a {transpose_a}')
    attributes = {
        'left_side': hlo.format_bool(left_side),
        'lower': hlo.format_bool(lower),
        'unit_diagonal': hlo.format_bool(unit_diagonal),
        'transpose_a': transpose,
    }
    return self._add('triangular-solve', b_shape, [self, b], attributes)

  def cholesky(self, lower: bool = True) -> XlaOp:
    shape = self.array_shape()
    if shape.rank() < 2 or shape.dims()[-1] != shape.dims()[-2]:
      _invalid_argument(f'cholesky of non-square {shape}')
    return self._add('cholesky', shape,
                     attributes={'lower': hlo.format_bool(lower)})

  # Reductions

  def reduce(self, init_value: XlaOp, comp: computation_lib.XlaComputation,
             dims: Sequence[int], keep_dims: bool = False) -> XlaOp:
    """Reduces ``dims`` with the binary computation ``comp``.

    Args:
      init_value: the rank-0 initial value of the reduction.
      comp: a computation of two scalar parameters of the element type.
      dims: the dimensions to reduce.
      keep_dims: keep the reduced dimensions with size 1.
    """
    self._builder._check(init_value)
    shape = self.array_shape()
    if init_value.dims() or init_value.element_type() != shape.element_type():
      _invalid_argument(
          f'reduce: init value {init_value.array_shape()} does not match '
          f'{shape}')
    params, result = comp.program_shape()
    scalar = Shape.array(shape.element_type(), [])
    if params != [scalar, scalar] or result != scalar:
      _invalid_argument(f'reduce: {comp.name()} is not a binary scalar '
                        'computation')
    dims = sorted({_normalize_dim(d, shape.rank()) for d in dims})
    out = [d for i, d in enumerate(shape.dims()) if i not in dims]
    region = self._builder._add_region(comp)
    op = self._add('reduce', Shape.array(shape.element_type(), out),
                   [self, init_value],
                   {'dimensions': hlo.format_int_list(dims),
                    'to_apply': region})
    if keep_dims:
      kept = [1 if i in dims else d for i, d in enumerate(shape.dims())]
      op = op.reshape(kept)
    return op

  def _reduce_with(self, opcode: str, init_value: XlaOp, dims: Sequence[int],
                   keep_dims: bool) -> XlaOp:
    ty = self.element_type()
    sub = XlaBuilder(f'{opcode}_region')
    try:
      x = sub.parameter(0, ty, [], 'x')
      y = sub.parameter(1, ty, [], 'y')
      comp = x._binary(opcode, y).build()
    finally:
      sub.close()
    with comp:
      return self.reduce(init_value, comp, dims, keep_dims)

  def reduce_sum(self, dims: Sequence[int], keep_dims: bool = False) -> XlaOp:
    return self._reduce_with('add', self._builder.zero(self.element_type()),
                             dims, keep_dims)

  def reduce_max(self, dims: Sequence[int], keep_dims: bool = False) -> XlaOp:
    ty = self.element_type()
    return self._reduce_with('maximum', self._builder.min_value(ty), dims,
                             keep_dims)

  def reduce_min(self, dims: Sequence[int], keep_dims: bool = False) -> XlaOp:
    ty = self.element_type()
    return self._reduce_with('minimum', self._builder.max_value(ty), dims,
                             keep_dims)

  def reduce_mean(self, dims: Sequence[int], keep_dims: bool = False) -> XlaOp:
    """Mean over ``dims``; dynamic dimensions count at their bound."""
    shape = self.array_shape()
    bounded = shape.bounded_dims()
    count = math.prod(bounded[d] for d in
                      {_normalize_dim(d, shape.rank()) for d in dims})
    total = self.reduce_sum(dims, keep_dims)
    return total.div(count)

  def softmax(self, dim: int) -> XlaOp:
    """``exp(x) / sum(exp(x))`` along ``dim``, shifted by the maximum."""
    shifted = self.sub(self.reduce_max([dim], keep_dims=True))
    e = shifted.exp()
    return e.div(e.reduce_sum([dim], keep_dims=True))


_TRANSPOSE_A = {1: 'NO_TRANSPOSE', 2: 'TRANSPOSE', 3: 'ADJOINT'}
