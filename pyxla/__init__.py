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

"""A safe Python interface to building, compiling and running XLA programs."""

# Note: import <name> as <name> is required for names to be exported.
# See PEP 484 & https://github.com/jax-ml/jax/issues/7570

from pyxla.version import __version__ as __version__
from pyxla.version import __version_info__ as __version_info__

from pyxla._src.config import config as config

from pyxla._src.types import (
  ArrayElement as ArrayElement,
  Bf16 as Bf16,
  ElementType as ElementType,
  F16 as F16,
  NativeType as NativeType,
  PrimitiveType as PrimitiveType,
)
from pyxla._src.shape import (
  ArrayShape as ArrayShape,
  Shape as Shape,
  parse_shape as parse_shape,
)
from pyxla._src.errors import (
  Error as Error,
  InvariantViolation as InvariantViolation,
  XlaError as XlaError,
)
from pyxla._src.handles import (
  handle_counts as handle_counts,
  live_handles as live_handles,
)
from pyxla._src.literal import Literal as Literal
from pyxla._src.builder import (
  XlaBuilder as XlaBuilder,
  XlaOp as XlaOp,
)
from pyxla._src.computation import XlaComputation as XlaComputation
from pyxla._src.hlo import (
  HloComputationProto as HloComputationProto,
  HloInstructionProto as HloInstructionProto,
  HloModuleProto as HloModuleProto,
)
from pyxla._src.pjrt import (
  PendingLiteral as PendingLiteral,
  PjRtBuffer as PjRtBuffer,
  PjRtClient as PjRtClient,
  PjRtDevice as PjRtDevice,
  PjRtLoadedExecutable as PjRtLoadedExecutable,
)

from pyxla import errors as errors
