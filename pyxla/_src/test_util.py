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

from collections.abc import Sequence
import contextlib
import gc
from typing import Any

from absl.testing import parameterized
import numpy as np

from pyxla._src import config
from pyxla._src import handles
from pyxla._src import literal as literal_lib
from pyxla._src import pjrt


@contextlib.contextmanager
def config_value(name: str, value: Any):
  """Temporarily sets a pyxla config option."""
  original = config.config.read(name)
  config.update(name, value)
  try:
    yield
  finally:
    config.update(name, original)


class PyxlaTestCase(parameterized.TestCase):
  """Base class for pyxla tests including numerical checks and boilerplate."""
  _default_config = {
    'pyxla_track_handles': True,
  }

  def setUp(self):
    super().setUp()
    self._original_config = {}
    for key, value in self._default_config.items():
      self._original_config[key] = config.config.read(key)
      config.update(key, value)

  def tearDown(self):
    for key, value in self._original_config.items():
      config.update(key, value)
    super().tearDown()

  def cpu_client(self) -> pjrt.PjRtClient:
    client = pjrt.PjRtClient.cpu()
    self.addCleanup(client.close)
    return client

  def run_computation(self, computation, inputs: Sequence[Any] = (),
                      client: pjrt.PjRtClient | None = None
                      ) -> literal_lib.Literal:
    """Compiles and runs ``computation``; returns the first replica's output."""
    client = client or self.cpu_client()
    with client.compile(computation) as executable:
      result = executable.execute(list(inputs))
    with result[0][0] as buffer:
      return buffer.to_literal_sync()

  @contextlib.contextmanager
  def assertNoLeakedHandles(self, kind: str | None = None):
    """Asserts that the block releases every resource it acquires."""
    gc.collect()
    before = handles.live_handles(kind)
    yield
    gc.collect()
    self.assertEqual(handles.live_handles(kind), before,
                     msg=f'leaked handles: {handles.handle_counts()}')

  def assertArraysEqual(self, x, y, *, check_dtypes=True, err_msg=''):
    """Assert that x and y arrays are exactly equal."""
    x, y = np.asarray(x), np.asarray(y)
    if check_dtypes:
      self.assertEqual(x.dtype, y.dtype, msg=err_msg)
    self.assertEqual(x.shape, y.shape, msg=err_msg)
    np.testing.assert_array_equal(x, y, err_msg=err_msg)

  def assertAllClose(self, x, y, *, check_dtypes=True, atol=None, rtol=None,
                     err_msg=''):
    """Assert that x and y, either arrays or nested tuples/lists, are close."""
    if isinstance(x, (tuple, list)):
      self.assertTrue(isinstance(y, (tuple, list)))
      self.assertEqual(len(x), len(y))
      for x_elt, y_elt in zip(x, y):
        self.assertAllClose(x_elt, y_elt, check_dtypes=check_dtypes, atol=atol,
                            rtol=rtol, err_msg=err_msg)
      return
    x, y = np.asarray(x), np.asarray(y)
    if check_dtypes:
      self.assertEqual(x.dtype, y.dtype, msg=err_msg)
    self.assertEqual(x.shape, y.shape, msg=err_msg)
    default_tol = 1e-2 if x.dtype.itemsize <= 2 else 1e-6
    np.testing.assert_allclose(
        x.astype(np.float64) if x.dtype.itemsize <= 2 else x,
        y.astype(np.float64) if y.dtype.itemsize <= 2 else y,
        atol=default_tol if atol is None else atol,
        rtol=default_tol if rtol is None else rtol,
        err_msg=err_msg)
