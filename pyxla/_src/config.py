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

import itertools
import logging
import os
import sys
from typing import Any, Callable, Generic, Optional, TypeVar

import jax

from pyxla._src import logging_config

logger = logging.getLogger(__name__)

_T = TypeVar('_T')


def bool_env(varname: str, default: bool) -> bool:
  """Read an environment variable and interpret it as a boolean.

  True values are (case insensitive): 'y', 'yes', 't', 'true', 'on', and '1';
  false values are 'n', 'no', 'f', 'false', 'off', and '0'.

  Args:
    varname: the name of the variable
    default: the default boolean value
  Raises: ValueError if the environment variable is anything else.
  """
  val = os.getenv(varname, str(default))
  val = val.lower()
  if val in ('y', 'yes', 't', 'true', 'on', '1'):
    return True
  elif val in ('n', 'no', 'f', 'false', 'off', '0'):
    return False
  else:
    raise ValueError(f"invalid truth value {val!r} for environment {varname!r}")


class FlagHolder(Generic[_T]):
  def __init__(self, flags: NameSpace, name: str):
    self._flags = flags
    self._name = name

  @property
  def value(self) -> _T:
    return getattr(self._flags, self._name)


class Config:
  _HAS_DYNAMIC_ATTRIBUTES = True

  def __init__(self):
    self.values = {}
    self.meta = {}
    self.FLAGS = NameSpace(self.read, self.update)
    self.use_absl = False
    self._update_hooks = {}

  def update(self, name, val):
    self.check_exists(name)
    self.values[name] = val

    hook = self._update_hooks.get(name, None)
    if hook:
      hook(val)

  def read(self, name):
    try:
      return self.values[name]
    except KeyError:
      raise AttributeError(f"Unrecognized config option: {name}")

  def add_option(self, name, default, opt_type, meta_args, meta_kwargs,
                 update_hook: Optional[Callable[[Any], None]] = None):
    if name in self.values:
      raise Exception(f"Config option {name} already defined")
    self.values[name] = default
    self.meta[name] = (opt_type, meta_args, meta_kwargs)
    if update_hook:
      self._update_hooks[name] = update_hook
      update_hook(default)

  def check_exists(self, name):
    if name not in self.values:
      raise AttributeError(f"Unrecognized config option: {name}")

  def DEFINE_bool(self, name, default, *args, **kwargs) -> FlagHolder[bool]:
    update_hook = kwargs.pop("update_hook", None)
    self.add_option(name, default, bool, args, kwargs, update_hook=update_hook)
    return FlagHolder(self.FLAGS, name)

  def DEFINE_string(self, name, default, *args, **kwargs) -> FlagHolder[str]:
    update_hook = kwargs.pop("update_hook", None)
    self.add_option(name, default, str, args, kwargs, update_hook=update_hook)
    return FlagHolder(self.FLAGS, name)

  def config_with_absl(self):
    # Run this before calling `app.run(main)` etc
    from absl import app, flags as absl_flags  # pytype: disable=import-error

    self.use_absl = True
    self.absl_flags = absl_flags
    absl_defs = { bool: absl_flags.DEFINE_bool,
                  str:  absl_flags.DEFINE_string }

    for name, val in self.values.items():
      if name in absl_flags.FLAGS:
        continue
      flag_type, meta_args, meta_kwargs = self.meta[name]
      absl_defs[flag_type](name, val, *meta_args, **meta_kwargs)
    app.call_after_init(lambda: self.complete_absl_config(absl_flags))

  def complete_absl_config(self, absl_flags):
    for name, _ in self.values.items():
      try:
        flag = absl_flags.FLAGS[name]
      except KeyError:
        # The option was defined after config_with_absl() ran.
        continue
      if flag.present:
        self.update(name, flag.value)

  def parse_flags_with_absl(self):
    global already_configured_with_absl
    if not already_configured_with_absl:
      # Extract just the --pyxla... flags (before the first --) from argv.
      pyxla_argv = itertools.takewhile(lambda a: a != '--', sys.argv)
      pyxla_argv = ['', *(a for a in pyxla_argv if a.startswith('--pyxla'))]

      import absl.flags  # pytype: disable=import-error
      self.config_with_absl()
      absl.flags.FLAGS(pyxla_argv, known_only=True)
      self.complete_absl_config(absl.flags)
      already_configured_with_absl = True


class NameSpace:
  def __init__(self, getter, setter):
    # must use super because we override this class's __setattr__, see
    # https://docs.python.org/3/reference/datamodel.html#object.__setattr__
    super().__setattr__('_getter', getter)
    super().__setattr__('_setter', setter)

  def __getattr__(self, name):
    return self._getter(name)

  def __setattr__(self, name, val):
    self._setter(name, val)


config = Config()
flags = config
FLAGS = flags.FLAGS

already_configured_with_absl = False


def parse_flags_with_absl():
  config.parse_flags_with_absl()


def update(name: str, val: Any) -> None:
  config.update(name, val)


default_platform = config.DEFINE_string(
    'pyxla_default_platform',
    os.getenv('PYXLA_DEFAULT_PLATFORM', 'cpu'),
    help='Platform used by PjRtClient.default(), e.g. "cpu", "gpu" or "tpu".')


_runtime_configured = False


def _update_x64(val: bool) -> None:
  # S64, U64 and F64 values are silently narrowed to 32 bits unless the
  # runtime has 64-bit types enabled.
  if _runtime_configured:
    jax.config.update('jax_enable_x64', val)

enable_x64 = config.DEFINE_bool(
    'pyxla_enable_x64',
    bool_env('PYXLA_ENABLE_X64', True),
    help=('Enable 64-bit element types in the runtime. Applied to the '
          'process-wide jax_enable_x64 option when pyxla first creates a '
          'client or lowers a computation, not on import.'),
    update_hook=_update_x64)


def configure_runtime() -> None:
  """Applies runtime-wide options before pyxla first uses the runtime.

  Importing pyxla leaves ``jax_enable_x64`` alone. The first client or
  lowering applies ``pyxla_enable_x64`` to it, and later updates of
  ``pyxla_enable_x64`` follow.
  """
  global _runtime_configured
  if _runtime_configured:
    return
  _runtime_configured = True
  _update_x64(enable_x64.value)


log_compiles = config.DEFINE_bool(
    'pyxla_log_compiles',
    bool_env('PYXLA_LOG_COMPILES', False),
    help=('Log a message each time a computation is compiled, at WARNING '
          'level instead of DEBUG.'))

track_handles = config.DEFINE_bool(
    'pyxla_track_handles',
    bool_env('PYXLA_TRACK_HANDLES', True),
    help=('Count acquisitions and releases of runtime resources so that '
          'leaks can be detected with pyxla.live_handles().'))

debug_log_modules = config.DEFINE_string(
    'pyxla_debug_log_modules',
    os.getenv('PYXLA_DEBUG_LOG_MODULES', ''),
    help=('Comma-separated list of module names (e.g. "pyxla" or '
          '"pyxla._src.pjrt,pyxla._src.handles") to enable debug logging '
          'for.'),
    update_hook=logging_config.set_debug_log_modules)
