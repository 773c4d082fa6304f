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

"""HLO modules: records, text form and read-only introspection handles.

An HLO module is a list of computations; one of them is the entry
computation. A computation is a list of instructions in dependency order and
exactly one of them is its root. The module's persistent form is HLO text::

  HloModule add_one

  ENTRY add_one {
    x.1 = f32[2] parameter(0)
    constant.2 = f32[] constant(1)
    broadcast.3 = f32[2] broadcast(constant.2), dimensions={}
    ROOT add.4 = f32[2] add(x.1, broadcast.3)
  }

:func:`parse_hlo_text` accepts the text printed by :func:`to_hlo_text` as well
as the text printed by XLA itself (``%`` name prefixes, typed operands,
layouts, computation signatures and ``/*index=...*/`` comments). Binary
``HloModuleProto`` messages are decoded by the runtime.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
import copy
import dataclasses
import logging
import os
import re
from typing import Any

import numpy as np

from jax._src.lib import xla_client

from pyxla._src import errors
from pyxla._src import handles
from pyxla._src import status
from pyxla._src.shape import Shape, parse_shape_prefix
from pyxla._src import types

logger = logging.getLogger(__name__)


@dataclasses.dataclass
class Instruction:
  name: str
  opcode: str
  shape: Shape
  operands: list[str] = dataclasses.field(default_factory=list)
  # Attribute values are kept in their HLO text spelling, e.g.
  # ``{"dimensions": "{0,1}", "to_apply": "region.3"}``.
  attributes: dict[str, str] = dataclasses.field(default_factory=dict)
  literal: np.ndarray | None = None
  parameter_number: int | None = None
  is_root: bool = False


@dataclasses.dataclass
class Computation:
  name: str
  instructions: list[Instruction] = dataclasses.field(default_factory=list)
  is_entry: bool = False

  def root(self) -> Instruction:
    for instr in self.instructions:
      if instr.is_root:
        return instr
    if not self.instructions:
      raise ValueError(f'computation {self.name} has no instructions')
    return self.instructions[-1]

  def parameters(self) -> list[Instruction]:
    params = [i for i in self.instructions if i.opcode == 'parameter']
    return sorted(params, key=lambda i: i.parameter_number)

  def program_shape(self) -> tuple[list[Shape], Shape]:
    return [p.shape for p in self.parameters()], self.root().shape


@dataclasses.dataclass
class Module:
  name: str
  computations: list[Computation] = dataclasses.field(default_factory=list)

  def entry(self) -> Computation:
    for comp in self.computations:
      if comp.is_entry:
        return comp
    if not self.computations:
      raise ValueError(f'module {self.name} has no computations')
    return self.computations[-1]

  def computation(self, name: str) -> Computation:
    for comp in self.computations:
      if comp.name == name:
        return comp
    raise ValueError(f'module {self.name} has no computation named {name!r}')


# Printing

def _format_scalar(x: Any, ty: types.ElementType) -> str:
  if ty == types.ElementType.PRED:
    return 'true' if x else 'false'
  if ty.is_floating():
    x = float(x)
    if np.isnan(x):
      return 'nan'
    if np.isinf(x):
      return 'inf' if x > 0 else '-inf'
    return repr(x)
  if ty.is_complex():
    return f'({float(x.real)!r}, {float(x.imag)!r})'
  return str(int(x))


def format_literal(array: np.ndarray) -> str:
  ty = types.ElementType.from_dtype(array.dtype)
  if array.ndim == 0:
    return _format_scalar(array[()], ty)
  def rec(a):
    if a.ndim == 1:
      return '{' + ', '.join(_format_scalar(x, ty) for x in a) + '}'
    return '{ ' + ', '.join(rec(sub) for sub in a) + ' }'
  return rec(array)


def _format_instruction(instr: Instruction) -> str:
  if instr.opcode == 'constant':
    payload = format_literal(instr.literal)
  elif instr.opcode == 'parameter':
    payload = str(instr.parameter_number)
  else:
    payload = ', '.join(instr.operands)
  line = f'{instr.name} = {instr.shape} {instr.opcode}({payload})'
  for k, v in instr.attributes.items():
    line += f', {k}={v}'
  return ('ROOT ' if instr.is_root else '') + line


def to_hlo_text(module: Module) -> str:
  lines = [f'HloModule {module.name}', '']
  for comp in module.computations:
    lines.append(f'{"ENTRY " if comp.is_entry else ""}{comp.name} {{')
    for instr in comp.instructions:
      lines.append('  ' + _format_instruction(instr))
    lines.append('}')
    lines.append('')
  return '\n'.join(lines)


# Parsing

_COMMENT_RE = re.compile(r'/\*.*?\*/')
_MODULE_RE = re.compile(r'^HloModule\s+%?([\w.\-]+)')
_COMPUTATION_RE = re.compile(r'^(ENTRY\s+)?%?([\w.\-]+)\s*(\(.*\)\s*->\s*.*)?\{$')
_INSTRUCTION_RE = re.compile(r'^(ROOT\s+)?%?([\w.\-]+)\s*=\s*')
_OPCODE_RE = re.compile(r'\s*([\w\-]+)\(')


def split_top_level(text: str, sep: str = ',') -> list[str]:
  """Splits ``text`` at ``sep`` outside of brackets and string literals."""
  parts, depth, quote, start = [], 0, False, 0
  for i, ch in enumerate(text):
    if quote:
      if ch == '"' and text[i - 1] != '\\':
        quote = False
    elif ch == '"':
      quote = True
    elif ch in '([{':
      depth += 1
    elif ch in ')]}':
      depth -= 1
    elif ch == sep and depth == 0:
      parts.append(text[start:i])
      start = i + 1
  parts.append(text[start:])
  return [p.strip() for p in parts if p.strip()]


def _matching_paren(text: str, open_pos: int) -> int:
  depth, quote = 0, False
  for i in range(open_pos, len(text)):
    ch = text[i]
    if quote:
      if ch == '"' and text[i - 1] != '\\':
        quote = False
    elif ch == '"':
      quote = True
    elif ch in '([{':
      depth += 1
    elif ch in ')]}':
      depth -= 1
      if depth == 0:
        return i
  raise ValueError(f'unbalanced parentheses in {text!r}')


def _parse_scalar(token: str, ty: types.ElementType) -> Any:
  if ty == types.ElementType.PRED:
    if token in ('true', 'false'):
      return token == 'true'
    return bool(int(token))
  if ty.is_floating():
    return float(token)
  return int(token)


def parse_literal(text: str, shape: Shape) -> np.ndarray:
  """Parses the payload of a ``constant`` instruction."""
  if not shape.is_array():
    raise ValueError('tuple constants are not supported')
  array_shape = shape.array_shape()
  ty = array_shape.element_type()
  if ty.is_complex():
    raise ValueError('complex constants are not supported')
  if '...' in text:
    raise ValueError('constant values were elided when the module was printed')
  tokens = [t for t in re.split(r'[\s,{}]+', text) if t]
  values = [_parse_scalar(t, ty) for t in tokens]
  dims = array_shape.bounded_dims()
  count = int(np.prod(dims, dtype=np.int64))
  if len(values) != count:
    raise ValueError(
        f'constant has {len(values)} values, shape {array_shape} needs {count}')
  return np.array(values, dtype=ty.numpy_dtype()).reshape(dims)


def _parse_instruction(line: str, is_root: bool, name: str) -> Instruction:
  shape, end = parse_shape_prefix(line)
  m = _OPCODE_RE.match(line, end)
  if not m:
    raise ValueError(f'expected an opcode in {line!r}')
  opcode = m.group(1)
  open_pos = m.end() - 1
  close_pos = _matching_paren(line, open_pos)
  payload = line[open_pos + 1:close_pos]
  instr = Instruction(name=name, opcode=opcode, shape=shape, is_root=is_root)
  if opcode == 'constant':
    instr.literal = parse_literal(payload, shape)
  elif opcode == 'parameter':
    instr.parameter_number = int(payload)
  else:
    # XLA prints operands with their shapes, e.g. ``f32[2]{0} %x``.
    instr.operands = [op.split()[-1].lstrip('%')
                      for op in split_top_level(payload)]
  for attr in split_top_level(line[close_pos + 1:]):
    key, sep, value = attr.partition('=')
    if not sep:
      raise ValueError(f'malformed attribute {attr!r}')
    value = value.strip()
    if key.strip() in ('to_apply', 'calls'):
      value = value.lstrip('%')
    instr.attributes[key.strip()] = value
  return instr


def parse_hlo_text(text: str) -> Module:
  """Parses an HLO module from its text form.

  Raises:
    ValueError: if ``text`` is not a well-formed HLO module.
  """
  module = None
  comp = None
  for lineno, raw_line in enumerate(text.splitlines(), 1):
    line = _COMMENT_RE.sub('', raw_line).strip()
    if not line or line.startswith('//'):
      continue
    try:
      if module is None:
        m = _MODULE_RE.match(line)
        if not m:
          raise ValueError('expected "HloModule <name>"')
        module = Module(m.group(1))
      elif comp is None:
        m = _COMPUTATION_RE.match(line)
        if not m:
          raise ValueError('expected a computation')
        comp = Computation(m.group(2), is_entry=bool(m.group(1)))
      elif line == '}':
        if not comp.instructions:
          raise ValueError(f'computation {comp.name} is empty')
        module.computations.append(comp)
        comp = None
      else:
        m = _INSTRUCTION_RE.match(line)
        if not m:
          raise ValueError('expected an instruction')
        comp.instructions.append(
            _parse_instruction(line[m.end():], bool(m.group(1)), m.group(2)))
    except (ValueError, errors.Error) as e:
      raise ValueError(f'line {lineno}: {raw_line.strip()!r}: {e}') from e
  if module is None:
    raise ValueError('empty HLO module')
  if comp is not None:
    raise ValueError(f'computation {comp.name} is not terminated')
  if not module.computations:
    raise ValueError(f'module {module.name} has no computations')
  if not any(c.is_entry for c in module.computations):
    module.computations[-1].is_entry = True
  return module


def decode_module_proto(data: bytes) -> str:
  """HLO text of a serialized binary ``HloModuleProto``, decoded by the runtime."""
  return xla_client.XlaComputation(bytes(data)).as_hlo_text()


# Introspection handles

def _bulk_fetch(count: Callable[[], int],
                fetch: Callable[[int], Any],
                wrap: Callable[[Any], handles.NativeHandle]) -> list[Any]:
  """Enumerates ``count()`` children, fetching each one by index.

  Each fetched child is wrapped in its owning handle before the status of the
  enumeration is checked, so that an error leaks nothing: the wrapped
  children travel with the raised ``XlaError`` as ``partial_results``.
  """
  n = count()
  natives, failure = [], None
  for i in range(n):
    try:
      natives.append(fetch(i))
    except (IndexError, ValueError, RuntimeError) as e:
      failure = e
      break
  wrapped = [wrap(native) for native in natives]
  status.handle_status(failure, partial_results=wrapped)
  return wrapped


class HloInstructionProto(handles.NativeHandle):
  _kind = 'hlo_instruction'

  def __repr__(self):
    return f'HloInstructionProto({self.native.name!r}, {self.native.opcode})'

  def name(self) -> str:
    return self.native.name

  def opcode(self) -> str:
    return self.native.opcode

  def shape(self) -> Shape:
    return self.native.shape

  def operand_names(self) -> list[str]:
    return list(self.native.operands)

  def attributes(self) -> dict[str, str]:
    return dict(self.native.attributes)

  def is_root(self) -> bool:
    return self.native.is_root

  def parameter_number(self) -> int | None:
    return self.native.parameter_number

  def literal(self) -> np.ndarray | None:
    lit = self.native.literal
    return None if lit is None else lit.copy()

  def to_text(self) -> str:
    return _format_instruction(self.native)


class HloComputationProto(handles.NativeHandle):
  _kind = 'hlo_computation'

  def __repr__(self):
    return f'HloComputationProto({self.native.name!r})'

  def name(self) -> str:
    return self.native.name

  def is_entry(self) -> bool:
    return self.native.is_entry

  def get_instructions_size(self) -> int:
    return len(self.native.instructions)

  def instructions(self) -> list[HloInstructionProto]:
    """The instructions of the computation in dependency order.

    Raises:
      XlaError: if enumeration fails part way. The instructions fetched
        before the failure are in ``partial_results`` of the error.
    """
    comp = self.native
    return _bulk_fetch(self.get_instructions_size,
                       lambda i: comp.instructions[i],
                       HloInstructionProto)

  def program_shape(self) -> tuple[list[Shape], Shape]:
    return self.native.program_shape()


class HloModuleProto(handles.NativeHandle):
  """A read-only view of an HLO module.

  The module is decomposed into :class:`HloComputationProto` and
  :class:`HloInstructionProto` handles. Each handle is released on its own;
  releasing a module does not invalidate children already enumerated.
  """
  _kind = 'hlo_module'

  def __repr__(self):
    return f'HloModuleProto({self.native.name!r})'

  @staticmethod
  def from_text_file(path: str | os.PathLike[str]) -> HloModuleProto:
    """Loads a module from a file of HLO text.

    Raises:
      OSError: if the file cannot be read.
      XlaError: if the file does not contain a well-formed module.
    """
    with open(path) as f:
      text = f.read()
    logger.debug('Loaded HLO text from %s', path)
    return HloModuleProto.parse_and_return_unverified_module(text)

  @staticmethod
  def from_proto_file(path: str | os.PathLike[str],
                      binary: bool) -> HloModuleProto:
    """Loads a module from a serialized ``HloModuleProto`` file.

    Raises:
      OSError: if the file cannot be read.
      XlaError: if the file does not contain a well-formed module.
    """
    with open(path, 'rb') as f:
      data = f.read()
    logger.debug('Loaded HLO proto from %s (binary=%s)', path, binary)
    return HloModuleProto.parse_proto(data, binary)

  @staticmethod
  def parse_and_return_unverified_module(data: str | bytes) -> HloModuleProto:
    """Parses HLO text without verifying the module."""
    if isinstance(data, (bytes, bytearray, memoryview)):
      data = bytes(data).decode('utf-8', errors='replace')
    with status.translate(catch=(ValueError,)):
      return HloModuleProto(parse_hlo_text(data))

  @staticmethod
  def parse_proto(data: bytes, binary: bool) -> HloModuleProto:
    """Parses a serialized ``HloModuleProto``.

    Args:
      data: the serialized module.
      binary: whether ``data`` is in the binary wire format. Otherwise it must
        hold the module's HLO text.
    """
    if binary:
      with status.translate(catch=(RuntimeError, ValueError, TypeError)):
        text = decode_module_proto(data)
      return HloModuleProto.parse_and_return_unverified_module(text)
    text = bytes(data).decode('utf-8', errors='replace')
    if not text.lstrip().startswith('HloModule'):
      status.handle_status(ValueError(
          'text protos are only supported in HLO text form'))
    return HloModuleProto.parse_and_return_unverified_module(text)

  def name(self) -> str:
    return self.native.name

  def entry_computation_name(self) -> str:
    return self.native.entry().name

  def get_computations_size(self) -> int:
    return len(self.native.computations)

  def computations(self) -> list[HloComputationProto]:
    """The computations of the module, callees before callers.

    Raises:
      XlaError: if enumeration fails part way. The computations fetched
        before the failure are in ``partial_results`` of the error.
    """
    module = self.native
    return _bulk_fetch(self.get_computations_size,
                       lambda i: module.computations[i],
                       HloComputationProto)

  def program_shape(self) -> tuple[list[Shape], Shape]:
    return self.native.entry().program_shape()

  def to_text(self) -> str:
    return to_hlo_text(self.native)

  def to_bytes(self) -> bytes:
    """The module as a serialized binary ``HloModuleProto``.

    The runtime lowers the module to produce the message, so the bytes hold
    the runtime's rendition of it: instruction names and the module name
    differ from this module's, and tuple parameters are flattened.
    :meth:`parse_proto` with ``binary=True`` reads them back.

    Raises:
      XlaError: if the runtime cannot lower the module.
    """
    # lowering depends on this module.
    from pyxla._src import lowering  # pylint: disable=g-import-not-at-top
    with status.translate(catch=status.COMPILE_STATUS_ERRORS):
      return lowering.serialize_module(self.native)

  def write_text_file(self, path: str | os.PathLike[str]) -> None:
    with open(path, 'w') as f:
      f.write(self.to_text())

  def write_proto_file(self, path: str | os.PathLike[str]) -> None:
    """Writes :meth:`to_bytes`, readable with ``from_proto_file(path, True)``."""
    data = self.to_bytes()
    with open(path, 'wb') as f:
      f.write(data)

  def module(self) -> Module:
    """A deep copy of the module record."""
    return copy.deepcopy(self.native)


# Attribute spellings

def format_int_list(values: Sequence[int]) -> str:
  return '{' + ','.join(str(int(v)) for v in values) + '}'


def parse_int_list(text: str) -> list[int]:
  text = text.strip()
  if not (text.startswith('{') and text.endswith('}')):
    raise ValueError(f'expected an integer list, got {text!r}')
  return [int(t) for t in text[1:-1].split(',') if t.strip()]


def format_slice(start: Sequence[int], limit: Sequence[int],
                 stride: Sequence[int]) -> str:
  return '{' + ', '.join(f'[{a}:{b}:{s}]'
                         for a, b, s in zip(start, limit, stride)) + '}'


_SLICE_RE = re.compile(r'\[\s*(-?\d+)\s*:\s*(-?\d+)\s*(?::\s*(-?\d+)\s*)?\]')


def parse_slice(text: str) -> list[tuple[int, int, int]]:
  return [(int(a), int(b), int(s) if s else 1)
          for a, b, s in _SLICE_RE.findall(text)]


def format_bool(value: bool) -> str:
  return 'true' if value else 'false'


def parse_bool(text: str) -> bool:
  if text not in ('true', 'false'):
    raise ValueError(f'expected true or false, got {text!r}')
  return text == 'true'
