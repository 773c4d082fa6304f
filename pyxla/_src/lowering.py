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

"""Binding of HLO instructions to the runtime's operations.

An HLO module is turned into a Python function of :mod:`jax.lax` operations
that the runtime traces and compiles. Each opcode has a lowering rule; a rule
receives the lowering context, the instruction and the values of its operands
and returns the value of the instruction. Nothing is optimized here: every
instruction becomes the corresponding runtime operation.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
import dataclasses
import functools
from typing import Any, Dict

import jax
from jax import lax
from jax.lax import linalg as lax_linalg
import jax.numpy as jnp

from pyxla._src import config
from pyxla._src import hlo
from pyxla._src.shape import Shape

LoweringRule = Callable[..., Any]

_lowerings: Dict[str, LoweringRule] = {}


def register_lowering(opcode: str, rule: LoweringRule) -> LoweringRule:
  _lowerings[opcode] = rule
  return rule


def supported_opcodes() -> list[str]:
  return sorted(_lowerings)


@dataclasses.dataclass
class LoweringContext:
  module: hlo.Module

  def call(self, computation_name: str, *args) -> Any:
    return eval_computation(self, self.module.computation(computation_name),
                            args)


def eval_computation(ctx: LoweringContext, comp: hlo.Computation,
                     args: Sequence[Any]) -> Any:
  """Evaluates ``comp`` on ``args`` with the registered lowering rules.

  Raises:
    NotImplementedError: if ``comp`` has an instruction without a rule.
    TypeError: if the number of arguments does not match the parameters.
  """
  params = comp.parameters()
  if len(args) != len(params):
    raise TypeError(f'{comp.name} takes {len(params)} arguments, got '
                    f'{len(args)}')
  env: dict[str, Any] = {}
  for instr in comp.instructions:
    if instr.opcode == 'parameter':
      env[instr.name] = args[instr.parameter_number]
      continue
    try:
      rule = _lowerings[instr.opcode]
    except KeyError:
      raise NotImplementedError(
          f'HLO opcode {instr.opcode!r} ({instr.name}) is not supported'
      ) from None
    env[instr.name] = rule(ctx, instr, *(env[o] for o in instr.operands))
  return env[comp.root().name]


def lower_module(module: hlo.Module) -> Callable[..., Any]:
  """A function of the entry computation's parameters evaluating ``module``."""
  config.configure_runtime()
  ctx = LoweringContext(module)
  entry = module.entry()

  def fn(*args):
    return eval_computation(ctx, entry, args)
  fn.__name__ = entry.name.replace('.', '_').replace('-', '_')
  return fn


def abstract_value(shape: Shape, sharding: Any = None) -> Any:
  """The abstract argument the runtime traces a parameter of ``shape`` as.

  Dynamic dimensions are laid out at their bound.
  """
  if shape.is_tuple():
    return tuple(abstract_value(s, sharding) for s in shape.tuple_shapes())
  array_shape = shape.array_shape()
  return jax.ShapeDtypeStruct(array_shape.bounded_dims(),
                              array_shape.element_type().numpy_dtype(),
                              sharding=sharding)


def serialize_module(module: hlo.Module) -> bytes:
  """``module`` lowered by the runtime, as a binary ``HloModuleProto``.

  Raises:
    NotImplementedError: if ``module`` has an instruction without a rule.
  """
  params, _ = module.entry().program_shape()
  lowered = jax.jit(lower_module(module)).lower(
      *(abstract_value(p) for p in params))
  return lowered.compiler_ir('hlo').as_serialized_hlo_module_proto()


def _bounded_dims(shape: Shape) -> tuple[int, ...]:
  return shape.array_shape().bounded_dims()


def _dtype(shape: Shape):
  return shape.array_shape().element_type().numpy_dtype()


def _nary_lowering(fun, ctx, instr, *args):
  del ctx, instr
  return fun(*args)

for _opcode, _fun in [
    ('add', lax.add),
    ('subtract', lax.sub),
    ('multiply', lax.mul),
    ('divide', lax.div),
    ('remainder', lax.rem),
    ('maximum', lax.max),
    ('minimum', lax.min),
    ('power', lax.pow),
    ('atan2', lax.atan2),
    ('and', lax.bitwise_and),
    ('or', lax.bitwise_or),
    ('xor', lax.bitwise_xor),
    ('not', lax.bitwise_not),
    ('negate', lax.neg),
    ('abs', lax.abs),
    ('sign', lax.sign),
    ('exponential', lax.exp),
    ('exponential-minus-one', lax.expm1),
    ('log', lax.log),
    ('log-plus-one', lax.log1p),
    ('logistic', lax.logistic),
    ('sqrt', lax.sqrt),
    ('rsqrt', lax.rsqrt),
    ('cbrt', lax.cbrt),
    ('tanh', lax.tanh),
    ('sine', lax.sin),
    ('cosine', lax.cos),
    ('floor', lax.floor),
    ('ceil', lax.ceil),
    ('is-finite', lax.is_finite),
    ('select', lax.select),
    ('clamp', lax.clamp),
]:
  register_lowering(_opcode, functools.partial(_nary_lowering, _fun))
del _opcode, _fun


def _round_lowering(method, ctx, instr, x):
  del ctx, instr
  return lax.round(x, method)

register_lowering('round-nearest-afz', functools.partial(
    _round_lowering, lax.RoundingMethod.AWAY_FROM_ZERO))
register_lowering('round-nearest-even', functools.partial(
    _round_lowering, lax.RoundingMethod.TO_NEAREST_EVEN))


_COMPARISONS = {
    'EQ': lax.eq,
    'NE': lax.ne,
    'GE': lax.ge,
    'GT': lax.gt,
    'LE': lax.le,
    'LT': lax.lt,
}


def _compare_lowering(ctx, instr, lhs, rhs):
  del ctx
  return _COMPARISONS[instr.attributes['direction']](lhs, rhs)

register_lowering('compare', _compare_lowering)


def _constant_lowering(ctx, instr):
  del ctx
  return jnp.asarray(instr.literal)

register_lowering('constant', _constant_lowering)


def _copy_lowering(ctx, instr, x):
  del ctx, instr
  return x

register_lowering('copy', _copy_lowering)


def _convert_lowering(ctx, instr, x):
  del ctx
  return lax.convert_element_type(x, _dtype(instr.shape))

register_lowering('convert', _convert_lowering)


def _broadcast_lowering(ctx, instr, x):
  del ctx
  dims = hlo.parse_int_list(instr.attributes.get('dimensions', '{}'))
  return lax.broadcast_in_dim(x, _bounded_dims(instr.shape), dims)

register_lowering('broadcast', _broadcast_lowering)


def _reshape_lowering(ctx, instr, x):
  del ctx
  return lax.reshape(x, _bounded_dims(instr.shape))

register_lowering('reshape', _reshape_lowering)


def _transpose_lowering(ctx, instr, x):
  del ctx
  return lax.transpose(x, hlo.parse_int_list(instr.attributes['dimensions']))

register_lowering('transpose', _transpose_lowering)


def _slice_lowering(ctx, instr, x):
  del ctx
  start, limit, strides = zip(*hlo.parse_slice(instr.attributes['slice']))
  return lax.slice(x, start, limit, strides)

register_lowering('slice', _slice_lowering)


def _concatenate_lowering(ctx, instr, *xs):
  del ctx
  dim, = hlo.parse_int_list(instr.attributes['dimensions'])
  return lax.concatenate(xs, dim)

register_lowering('concatenate', _concatenate_lowering)


def _iota_lowering(ctx, instr):
  del ctx
  return lax.broadcasted_iota(_dtype(instr.shape), _bounded_dims(instr.shape),
                              int(instr.attributes['iota_dimension']))

register_lowering('iota', _iota_lowering)


def _tuple_lowering(ctx, instr, *xs):
  del ctx, instr
  return tuple(xs)

register_lowering('tuple', _tuple_lowering)


def _get_tuple_element_lowering(ctx, instr, x):
  del ctx
  return x[int(instr.attributes['index'])]

register_lowering('get-tuple-element', _get_tuple_element_lowering)


def _dot_lowering(ctx, instr, lhs, rhs):
  del ctx
  attr = lambda k: tuple(hlo.parse_int_list(instr.attributes.get(k, '{}')))
  dimension_numbers = (
      (attr('lhs_contracting_dims'), attr('rhs_contracting_dims')),
      (attr('lhs_batch_dims'), attr('rhs_batch_dims')))
  return lax.dot_general(lhs, rhs, dimension_numbers,
                         preferred_element_type=_dtype(instr.shape))

register_lowering('dot', _dot_lowering)


def _triangular_solve_lowering(ctx, instr, a, b):
  del ctx
  attr = lambda k: hlo.parse_bool(instr.attributes.get(k, 'false'))
  transpose_a = instr.attributes.get('transpose_a', 'NO_TRANSPOSE')
  return lax_linalg.triangular_solve(
      a, b, left_side=attr('left_side'), lower=attr('lower'),
      transpose_a=transpose_a in ('TRANSPOSE', 'ADJOINT'),
      conjugate_a=transpose_a == 'ADJOINT',
      unit_diagonal=attr('unit_diagonal'))

register_lowering('triangular-solve', _triangular_solve_lowering)


def _cholesky_lowering(ctx, instr, x):
  del ctx
  l = lax_linalg.cholesky(x, symmetrize_input=False)
  if hlo.parse_bool(instr.attributes.get('lower', 'true')):
    return l
  return jnp.conj(jnp.swapaxes(l, -1, -2))

register_lowering('cholesky', _cholesky_lowering)


def _reduce_lowering(ctx, instr, *args):
  n = len(args) // 2
  operands, init_values = args[:n], args[n:]
  dims = tuple(hlo.parse_int_list(instr.attributes['dimensions']))
  if not dims:
    return operands[0] if n == 1 else tuple(operands)
  region = instr.attributes['to_apply']
  if n == 1:
    return lax.reduce(operands[0], init_values[0],
                      lambda x, y: ctx.call(region, x, y), dims)
  def computation(xs, ys):
    return ctx.call(region, *xs, *ys)
  return tuple(lax.reduce(tuple(operands), tuple(init_values), computation,
                          dims))

register_lowering('reduce', _reduce_lowering)


def _call_lowering(ctx, instr, *args):
  return ctx.call(instr.attributes['to_apply'], *args)

register_lowering('call', _call_lowering)
