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

from __future__ import annotations

import copy
from typing import Any

from pyxla._src import handles
from pyxla._src import hlo
from pyxla._src.shape import Shape


class XlaComputation(handles.NativeHandle):
  """A finalized computation, owning its HLO module."""
  _kind = 'computation'

  def __init__(self, module: hlo.Module):
    super().__init__(module)

  def __repr__(self):
    if self.is_released:
      return 'XlaComputation(<released>)'
    return f'XlaComputation({self.name()!r})'

  @staticmethod
  def from_proto(proto: hlo.HloModuleProto) -> XlaComputation:
    """A computation with a copy of the module of ``proto``."""
    return XlaComputation(proto.module())

  @staticmethod
  def from_hlo_text(text: str) -> XlaComputation:
    with hlo.HloModuleProto.parse_and_return_unverified_module(text) as proto:
      return XlaComputation.from_proto(proto)

  def name(self) -> str:
    return self.native.name

  def proto(self) -> hlo.HloModuleProto:
    """The module of the computation, as a new introspection handle."""
    return hlo.HloModuleProto(copy.deepcopy(self.native))

  def program_shape(self) -> tuple[list[Shape], Shape]:
    """The parameter shapes and the result shape of the entry computation."""
    return self.native.entry().program_shape()

  def to_hlo_text(self) -> str:
    return hlo.to_hlo_text(self.native)

  def compile(self, client: Any, devices: Any = None):
    """Compiles for ``client``; see :meth:`PjRtClient.compile`."""
    return client.compile(self, devices)
