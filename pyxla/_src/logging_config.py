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

"""Debug logging for pyxla modules, selected by ``pyxla_debug_log_modules``."""

from __future__ import annotations

import logging
import sys

_debug_handler = logging.StreamHandler(sys.stderr)
_debug_handler.setLevel(logging.DEBUG)
# Example log message:
# [pyxla] DEBUG 2025-06-07 00:14:40,280 pyxla._src.pjrt:211 Compiled add_one for cpu:0
_debug_handler.setFormatter(logging.Formatter(
    "[pyxla] {levelname} {asctime} {name}:{lineno} {message}", style='{'))

# Logger name -> level it had before debug logging was enabled.
_saved_levels: dict[str, int] = {}


def parse_module_names(module_names_str: str | None) -> list[str]:
  """Splits a comma-separated module list, dropping blanks and repeats."""
  names = []
  for name in (module_names_str or '').split(','):
    name = name.strip()
    if name and name not in names:
      names.append(name)
  return names


def enable_debug_logging(logger_name: str) -> None:
  """Makes the specified logger log everything to stderr.

  Args:
    logger_name: the name of the logger, e.g. "pyxla._src.pjrt".
  """
  if logger_name in _saved_levels:
    return
  logger = logging.getLogger(logger_name)
  _saved_levels[logger_name] = logger.level
  logger.addHandler(_debug_handler)
  logger.setLevel(logging.DEBUG)


def disable_debug_logging(logger_name: str) -> None:
  """Restores the level ``logger_name`` had before debug logging."""
  level = _saved_levels.pop(logger_name, None)
  if level is None:
    return
  logger = logging.getLogger(logger_name)
  logger.removeHandler(_debug_handler)
  logger.setLevel(level)


def debug_logging_modules() -> list[str]:
  return list(_saved_levels)


def set_debug_log_modules(module_names_str: str | None) -> None:
  """Enables debug logging for exactly the listed modules.

  Modules enabled by an earlier call but missing from ``module_names_str`` get
  their previous level back.
  """
  wanted = parse_module_names(module_names_str)
  for name in debug_logging_modules():
    if name not in wanted:
      disable_debug_logging(name)
  for name in wanted:
    enable_debug_logging(name)
