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

"""Translation of runtime status into pyxla errors.

The runtime reports a failed call by raising; in XLA terms the exception is a
non-OK ``Status``. Every call that crosses into the runtime goes through
:func:`call` or :func:`translate`, which turn such a status into an
:class:`~pyxla.errors.XlaError` carrying the runtime's message and the Python
call stack at the failure point. No raw runtime exception escapes this
module.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator, Sequence
import contextlib
import logging
import traceback
from typing import Any, TypeVar

from pyxla._src import errors

logger = logging.getLogger(__name__)

_T = TypeVar('_T')

# Exception types the runtime uses to report a non-OK status. jaxlib's
# XlaRuntimeError/JaxRuntimeError both derive from RuntimeError.
RUNTIME_STATUS_ERRORS: tuple[type[BaseException], ...] = (RuntimeError,)

# Compilation and execution additionally report malformed programs and
# arguments through the exceptions raised while tracing them.
COMPILE_STATUS_ERRORS: tuple[type[BaseException], ...] = (
    RuntimeError, TypeError, ValueError)


def status_message(status: BaseException) -> str:
  msg = str(status)
  return msg or type(status).__name__


def handle_status(status: BaseException | None,
                  partial_results: Sequence[Any] = ()) -> None:
  """Raises an ``XlaError`` for a non-OK status.

  Args:
    status: ``None`` for OK, otherwise the exception the runtime raised.
    partial_results: owning wrappers already created by the failing call.
      They are attached to the raised error so the caller can release them.
  """
  if status is None:
    return
  msg = status_message(status)
  # Drop this frame from the captured stack.
  backtrace = ''.join(traceback.format_stack()[:-1])
  logger.debug('Runtime reported an error: %s', msg)
  raise errors.XlaError(msg, backtrace, partial_results) from status


@contextlib.contextmanager
def translate(
    catch: tuple[type[BaseException], ...] = RUNTIME_STATUS_ERRORS
) -> Iterator[None]:
  """Context manager turning runtime failures raised in its body into errors."""
  try:
    yield
  except (errors.Error, errors.InvariantViolation):
    raise
  except catch as status:
    handle_status(status)


def call(fn: Callable[..., _T], *args, **kwargs) -> _T:
  """Calls into the runtime, translating a failure into an ``XlaError``."""
  with translate():
    return fn(*args, **kwargs)
