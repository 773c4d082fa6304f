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

"""Ownership of runtime resources.

Each runtime resource (builder context, computation, literal, client,
executable, buffer, HLO module nodes) is held by exactly one
:class:`NativeHandle`. The handle acquires the resource when constructed and
releases it exactly once: on an explicit :meth:`NativeHandle.close`, on exit
from a ``with`` block, or when the wrapper is garbage collected, whichever
happens first. Using a handle after its release raises
:class:`~pyxla.errors.ReleasedHandleError`.

Acquisitions and releases are counted per resource kind so that leaks and
double releases are observable through :func:`live_handles`.
"""

from __future__ import annotations

import collections
from collections.abc import Callable
import logging
import threading
from typing import Any
import weakref

from pyxla._src import config
from pyxla._src import errors

logger = logging.getLogger(__name__)


class HandleRegistry:
  """Counts acquired and released runtime resources per kind."""

  def __init__(self):
    self._lock = threading.Lock()
    self._acquired: collections.Counter[str] = collections.Counter()
    self._released: collections.Counter[str] = collections.Counter()

  def acquired(self, kind: str) -> None:
    if not config.track_handles.value:
      return
    with self._lock:
      self._acquired[kind] += 1

  def released(self, kind: str) -> None:
    if not config.track_handles.value:
      return
    with self._lock:
      self._released[kind] += 1

  def live(self, kind: str | None = None) -> int:
    with self._lock:
      if kind is not None:
        return self._acquired[kind] - self._released[kind]
      return sum(self._acquired.values()) - sum(self._released.values())

  def counts(self) -> dict[str, tuple[int, int]]:
    """Returns ``{kind: (acquired, released)}``."""
    with self._lock:
      kinds = set(self._acquired) | set(self._released)
      return {k: (self._acquired[k], self._released[k]) for k in sorted(kinds)}


registry = HandleRegistry()


def live_handles(kind: str | None = None) -> int:
  """Number of runtime resources acquired but not yet released.

  Args:
    kind: restrict the count to one resource kind, e.g. ``"literal"`` or
      ``"buffer"``. Counts every kind when ``None``.
  """
  return registry.live(kind)


def handle_counts() -> dict[str, tuple[int, int]]:
  return registry.counts()


def _release(kind: str, native: Any,
             release_fn: Callable[[Any], None] | None) -> None:
  # Runs at most once per handle: weakref.finalize guarantees it.
  try:
    if release_fn is not None:
      release_fn(native)
  finally:
    registry.released(kind)
    logger.debug('Released %s handle', kind)


class NativeHandle:
  """Base class of wrappers that exclusively own one runtime resource.

  Subclasses set ``_kind`` and may override ``_release_native`` with the
  matching release call. Subclasses reach the resource through
  :attr:`native`, which rejects use after release.
  """
  _kind = 'handle'

  def __init__(self, native: Any):
    self._native = native
    registry.acquired(self._kind)
    # The finalizer must not reference self, or the wrapper is never
    # collected.
    self._finalizer = weakref.finalize(
        self, _release, self._kind, native, type(self)._release_native)

  @staticmethod
  def _release_native(native: Any) -> None:
    del native

  @property
  def native(self) -> Any:
    if not self._finalizer.alive:
      raise errors.ReleasedHandleError(
          f'{type(self).__name__} has already been released')
    return self._native

  @property
  def is_released(self) -> bool:
    return not self._finalizer.alive

  def close(self) -> None:
    """Releases the resource. Calling ``close`` again has no effect."""
    self._finalizer()
    self._native = None

  def _take(self) -> Any:
    """Transfers the resource out of this handle without releasing it.

    The handle counts as released; the caller becomes responsible for the
    returned resource, typically by wrapping it in a new handle.
    """
    native = self.native
    self._finalizer.detach()
    registry.released(self._kind)
    self._native = None
    return native

  def __enter__(self):
    return self

  def __exit__(self, exc_type, exc_value, tb):
    self.close()
