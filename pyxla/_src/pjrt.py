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

"""Runtime clients, devices, loaded executables and device buffers.

A :class:`PjRtClient` is a connection to the runtime of one platform. It
compiles computations into :class:`PjRtLoadedExecutable` objects and stages
host values into :class:`PjRtBuffer` objects on its devices. Executables and
buffers keep a reference to the client that produced them, so a client is
never released while they are alive.
"""

from __future__ import annotations

from collections.abc import Sequence
import copy
import dataclasses
import logging
import os
from typing import Any

import numpy as np

import jax
import jax.extend.backend as jax_backend
from jax.sharding import SingleDeviceSharding

from pyxla._src import computation as computation_lib
from pyxla._src import config
from pyxla._src import handles
from pyxla._src import literal as literal_lib
from pyxla._src import lowering
from pyxla._src.shape import Shape
from pyxla._src import status
from pyxla._src import types

logger = logging.getLogger(__name__)


class PjRtDevice:
  """A device of a client. Devices are borrowed from their client."""
  __slots__ = ('_device', '_client')

  def __init__(self, device: Any, client: PjRtClient):
    self._device = device
    self._client = client

  def __repr__(self):
    return f'PjRtDevice({self.to_string()})'

  def __eq__(self, other):
    if not isinstance(other, PjRtDevice):
      return NotImplemented
    return self._device == other._device

  def __hash__(self):
    return hash(self._device)

  @property
  def native(self) -> Any:
    self._client.native
    return self._device

  def id(self) -> int:
    return self.native.id

  def process_index(self) -> int:
    return self.native.process_index

  def platform(self) -> str:
    return self.native.platform

  def kind(self) -> str:
    return self.native.device_kind

  def to_string(self) -> str:
    return str(self._device)

  def client(self) -> PjRtClient:
    return self._client


class PjRtClient(handles.NativeHandle):
  """A connection to the runtime of one platform.

  Example::

    client = PjRtClient.cpu()
    executable = client.compile(computation)
    result, = executable.execute([Literal.vec1([1.0, 2.0])])[0]
    print(result.to_literal_sync().to_numpy())
  """
  _kind = 'client'

  def __init__(self, backend: Any):
    super().__init__(backend)
    logger.debug('Created %s client (%s) with %d devices', backend.platform,
                 backend.platform_version, backend.device_count())

  def __repr__(self):
    if self.is_released:
      return 'PjRtClient(<released>)'
    return f'PjRtClient({self.platform_name()!r})'

  @staticmethod
  def for_platform(platform: str) -> PjRtClient:
    """A client for ``platform``, e.g. ``"cpu"``, ``"gpu"`` or ``"tpu"``.

    Raises:
      XlaError: if the platform is not available.
    """
    config.configure_runtime()
    with status.translate():
      backend = jax_backend.get_backend(platform)
    return PjRtClient(backend)

  @staticmethod
  def cpu() -> PjRtClient:
    return PjRtClient.for_platform('cpu')

  @staticmethod
  def gpu(memory_fraction: float = 0.95, preallocate: bool = False
          ) -> PjRtClient:
    """A GPU client.

    Args:
      memory_fraction: fraction of the device memory the client may use.
      preallocate: whether the client reserves its memory up front.

    The options apply when the GPU runtime is first initialized in the
    process; later calls share the existing runtime.
    """
    os.environ['XLA_PYTHON_CLIENT_MEM_FRACTION'] = str(memory_fraction)
    os.environ['XLA_PYTHON_CLIENT_PREALLOCATE'] = str(preallocate).lower()
    return PjRtClient.for_platform('gpu')

  @staticmethod
  def tpu() -> PjRtClient:
    return PjRtClient.for_platform('tpu')

  @staticmethod
  def default() -> PjRtClient:
    """A client for the platform selected by ``pyxla_default_platform``."""
    return PjRtClient.for_platform(config.default_platform.value)

  def platform_name(self) -> str:
    return self.native.platform

  def platform_version(self) -> str:
    return self.native.platform_version

  def device_count(self) -> int:
    return self.native.device_count()

  def addressable_device_count(self) -> int:
    return self.native.local_device_count()

  def devices(self) -> list[PjRtDevice]:
    return [PjRtDevice(d, self) for d in self.native.devices()]

  def addressable_devices(self) -> list[PjRtDevice]:
    return [PjRtDevice(d, self) for d in self.native.local_devices()]

  def _default_device(self) -> PjRtDevice:
    return self.addressable_devices()[0]

  def _check_device(self, device: PjRtDevice | None) -> PjRtDevice:
    if device is None:
      return self._default_device()
    if device.client() is not self:
      status.handle_status(ValueError(
          f'{device.to_string()} does not belong to this client'))
    return device

  def compile(self, computation: computation_lib.XlaComputation,
              devices: Sequence[PjRtDevice] | None = None
              ) -> PjRtLoadedExecutable:
    """Compiles ``computation`` for each of ``devices``.

    Args:
      computation: the computation to compile.
      devices: one device per replica; the first addressable device when
        ``None``.

    Raises:
      XlaError: if the runtime cannot compile the computation.
    """
    devices = [self._check_device(d) for d in (devices or [None])]
    module = copy.deepcopy(computation.native)
    with status.translate(catch=status.COMPILE_STATUS_ERRORS):
      params, result = module.entry().program_shape()
      fn = lowering.lower_module(module)
      compiled = []
      for device in devices:
        sharding = SingleDeviceSharding(device.native)
        specs = [lowering.abstract_value(p, sharding) for p in params]
        compiled.append(
            jax.jit(fn, out_shardings=sharding).lower(*specs).compile())
    log_priority = logging.WARNING if config.log_compiles.value else logging.DEBUG
    logger.log(log_priority, 'Compiled %s for %s', module.name,
               ', '.join(d.to_string() for d in devices))
    program = _LoadedProgram(module.name, params, result, compiled,
                             list(devices))
    return PjRtLoadedExecutable(program, self)

  def buffer_from_host_literal(self, device: PjRtDevice | None,
                               literal: literal_lib.Literal) -> PjRtBuffer:
    """Copies ``literal`` to ``device`` (the default device when ``None``)."""
    device = self._check_device(device)
    with status.translate():
      native = jax.tree.map(lambda x: jax.device_put(x, device.native),
                            literal.to_py())
    logger.debug('Transferred %s to %s', literal.shape(), device.to_string())
    return PjRtBuffer(native, device)

  def buffer_from_host_buffer(self, data: Any, dims: Sequence[int] | None = None,
                              device: PjRtDevice | None = None) -> PjRtBuffer:
    """Copies host array data, reshaped to ``dims``, to ``device``."""
    array = np.asarray(data)
    types.ElementType.from_dtype(array.dtype)
    if dims is not None:
      array = array.reshape(tuple(dims))
    with literal_lib.Literal.from_array(array) as literal:
      return self.buffer_from_host_literal(device, literal)


@dataclasses.dataclass
class _LoadedProgram:
  name: str
  parameter_shapes: list[Shape]
  result_shape: Shape
  compiled: list[Any]
  devices: list[PjRtDevice]


def _stage(value: Any, shape: Shape, device: PjRtDevice, position: str) -> Any:
  """Places one argument on ``device`` with the layout of ``shape``."""
  if shape.is_tuple():
    if not isinstance(value, tuple) or len(value) != shape.tuple_size():
      status.handle_status(ValueError(f'argument {position} is not a tuple of '
                                      f'{shape.tuple_size()} elements'))
    return tuple(_stage(v, s, device, f'{position}.{i}')
                 for i, (v, s) in enumerate(zip(value, shape.tuple_shapes())))
  array_shape = shape.array_shape()
  dtype = array_shape.element_type().numpy_dtype()
  if isinstance(value, tuple) or value.dtype != dtype:
    status.handle_status(ValueError(
        f'argument {position} does not match parameter shape {shape}'))
  dims = array_shape.bounded_dims()
  if tuple(value.shape) != dims:
    # Values of dynamic parameters are laid out at the bound.
    if array_shape.is_static or int(np.prod(value.shape)) != int(np.prod(dims)):
      status.handle_status(ValueError(
          f'argument {position} of shape {list(value.shape)} does not match '
          f'parameter shape {shape}'))
    value = value.reshape(dims)
  return jax.device_put(value, device.native)


class PjRtLoadedExecutable(handles.NativeHandle):
  """A computation compiled for one or more devices of a client."""
  _kind = 'executable'

  def __init__(self, program: _LoadedProgram, client: PjRtClient):
    self._client = client
    super().__init__(program)

  @staticmethod
  def _release_native(native: _LoadedProgram) -> None:
    native.compiled.clear()

  def __repr__(self):
    if self.is_released:
      return 'PjRtLoadedExecutable(<released>)'
    return f'PjRtLoadedExecutable({self.native.name!r})'

  def name(self) -> str:
    return self.native.name

  def client(self) -> PjRtClient:
    return self._client

  def devices(self) -> list[PjRtDevice]:
    return list(self.native.devices)

  def execute(self, inputs: Sequence[literal_lib.Literal | PjRtBuffer]
              ) -> list[list[PjRtBuffer]]:
    """Runs the executable on every device it was compiled for.

    Args:
      inputs: one value per parameter; literals are copied to each device,
        buffers are used in place or copied if they live elsewhere.

    Returns:
      The outputs indexed by ``[replica][output]``. A computation has one
      output; a tuple result is a single tuple-shaped buffer.

    Raises:
      XlaError: if the inputs do not match the parameters, or the runtime
        reports a failure.
    """
    program = self.native
    if len(inputs) != len(program.parameter_shapes):
      status.handle_status(ValueError(
          f'{program.name} takes {len(program.parameter_shapes)} arguments, '
          f'got {len(inputs)}'))
    host_values = []
    for x in inputs:
      if isinstance(x, PjRtBuffer):
        host_values.append(None)
      elif isinstance(x, literal_lib.Literal):
        host_values.append(x.to_py())
      else:
        raise TypeError(f'expected a Literal or a PjRtBuffer, got '
                        f'{type(x).__name__}')
    results = []
    for device, compiled in zip(program.devices, program.compiled):
      with status.translate(catch=status.COMPILE_STATUS_ERRORS):
        args = []
        for i, (x, host, shape) in enumerate(
            zip(inputs, host_values, program.parameter_shapes)):
          value = x.native if host is None else host
          args.append(_stage(value, shape, device, str(i)))
        out = compiled(*args)
      results.append([PjRtBuffer(out, device)])
    logger.debug('Executed %s on %d replicas', program.name, len(results))
    return results

  def execute_b(self, buffers: Sequence[PjRtBuffer]) -> list[list[PjRtBuffer]]:
    """Runs the executable on device buffers only."""
    for b in buffers:
      if not isinstance(b, PjRtBuffer):
        raise TypeError(f'expected a PjRtBuffer, got {type(b).__name__}')
    return self.execute(buffers)


class PendingLiteral:
  """The result of an asynchronous device to host transfer."""

  def __init__(self, buffer: PjRtBuffer):
    self._buffer = buffer
    self._literal: literal_lib.Literal | None = None

  def done(self) -> bool:
    """Whether the transfer has completed, i.e. :meth:`result` won't block."""
    if self._literal is not None:
      return True
    with status.translate():
      return all(leaf.is_ready()
                 for leaf in jax.tree.leaves(self._buffer.native))

  def result(self) -> literal_lib.Literal:
    """Blocks until the transfer completes; returns the literal.

    The literal is created once; later calls return the same object.
    """
    if self._literal is None:
      self._literal = self._buffer.to_literal_sync()
      self._buffer = None
    return self._literal


class PjRtBuffer(handles.NativeHandle):
  """An array, or a tuple of arrays, resident on a device."""
  _kind = 'buffer'

  def __init__(self, native: Any, device: PjRtDevice):
    self._device = device
    self._client = device.client()
    super().__init__(native)

  @staticmethod
  def _release_native(native: Any) -> None:
    for leaf in jax.tree.leaves(native):
      if not leaf.is_deleted():
        leaf.delete()

  @property
  def native(self) -> Any:
    # A buffer is unusable once its client is released.
    self._client.native
    return super().native

  def __repr__(self):
    if self.is_released or self._client.is_released:
      return 'PjRtBuffer(<released>)'
    return f'PjRtBuffer({self.on_device_shape()} on {self._device.to_string()})'

  def device(self) -> PjRtDevice:
    return self._device

  def client(self) -> PjRtClient:
    return self._client

  def is_tuple(self) -> bool:
    return isinstance(self.native, tuple)

  def on_device_shape(self) -> Shape:
    def rec(x):
      if isinstance(x, tuple):
        return Shape.tuple([rec(e) for e in x])
      return Shape.array(types.ElementType.from_dtype(x.dtype), x.shape)
    return rec(self.native)

  def to_literal_sync(self) -> literal_lib.Literal:
    """Copies the buffer to the host, blocking until the copy completes."""
    native = self.native
    with status.translate():
      data = jax.tree.map(lambda x: np.array(np.asarray(x)), native)
    logger.debug('Transferred %s to host', self.on_device_shape())
    return literal_lib.literal_from_data(data)

  def to_literal_async(self) -> PendingLiteral:
    """Starts copying the buffer to the host."""
    with status.translate():
      for leaf in jax.tree.leaves(self.native):
        leaf.copy_to_host_async()
    return PendingLiteral(self)

  def copy_to_device(self, device: PjRtDevice) -> PjRtBuffer:
    device = self._client._check_device(device)
    with status.translate():
      native = jax.tree.map(lambda x: jax.device_put(x, device.native),
                            self.native)
    return PjRtBuffer(native, device)
