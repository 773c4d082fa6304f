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

import gc
import threading

from absl.testing import absltest

import numpy as np

import pyxla
from pyxla import errors
from pyxla._src import config
from pyxla._src import handles
from pyxla._src import test_util as ptu

config.parse_flags_with_absl()


class _Resource:

  def __init__(self):
    self.released = 0


class _ResourceHandle(handles.NativeHandle):
  _kind = 'test_resource'

  @staticmethod
  def _release_native(native):
    native.released += 1


class NativeHandleTest(ptu.PyxlaTestCase):

  def test_close_releases_once(self):
    resource = _Resource()
    handle = _ResourceHandle(resource)
    self.assertIs(handle.native, resource)
    handle.close()
    handle.close()
    self.assertEqual(resource.released, 1)
    self.assertTrue(handle.is_released)
    with self.assertRaises(errors.ReleasedHandleError):
      handle.native

  def test_context_manager(self):
    resource = _Resource()
    with _ResourceHandle(resource) as handle:
      self.assertFalse(handle.is_released)
    self.assertEqual(resource.released, 1)

  def test_released_on_collection(self):
    resource = _Resource()
    _ResourceHandle(resource)
    gc.collect()
    self.assertEqual(resource.released, 1)

  def test_take_transfers_without_release(self):
    resource = _Resource()
    with self.assertNoLeakedHandles('test_resource'):
      handle = _ResourceHandle(resource)
      self.assertIs(handle._take(), resource)
      self.assertTrue(handle.is_released)
      handle.close()
      del handle
      gc.collect()
    self.assertEqual(resource.released, 0)

  def test_counts(self):
    before = handles.handle_counts().get('test_resource', (0, 0))
    with self.assertNoLeakedHandles('test_resource'):
      a = _ResourceHandle(_Resource())
      b = _ResourceHandle(_Resource())
      self.assertEqual(pyxla.live_handles('test_resource'), 2)
      a.close()
      b.close()
    after = handles.handle_counts()['test_resource']
    self.assertEqual(after, (before[0] + 2, before[1] + 2))

  def test_concurrent_release(self):
    resource = _Resource()
    handle = _ResourceHandle(resource)
    threads = [threading.Thread(target=handle.close) for _ in range(8)]
    for t in threads:
      t.start()
    for t in threads:
      t.join()
    self.assertEqual(resource.released, 1)


class RegistryTest(ptu.PyxlaTestCase):

  def test_live_counts_by_kind(self):
    registry = handles.HandleRegistry()
    registry.acquired('literal')
    registry.acquired('literal')
    registry.acquired('buffer')
    registry.released('literal')
    self.assertEqual(registry.live('literal'), 1)
    self.assertEqual(registry.live('buffer'), 1)
    self.assertEqual(registry.live(), 2)
    self.assertEqual(registry.counts(),
                     {'buffer': (1, 0), 'literal': (2, 1)})


class NoLeakTest(ptu.PyxlaTestCase):

  def test_full_workflow_releases_everything(self):
    with self.assertNoLeakedHandles():
      client = pyxla.PjRtClient.cpu()
      with pyxla.XlaBuilder('test') as b:
        x = b.parameter(0, np.float32, [3], 'x')
        comp = x.mul(x).reduce_sum([0]).build()
      executable = client.compile(comp)
      literal = pyxla.Literal.vec1([1., 2., 3.])
      result = executable.execute([literal])
      value = result[0][0].to_literal_sync().get_first_element(np.float32)
      del client, comp, executable, literal, result, b, x
    self.assertEqual(value, 14.)

  def test_error_paths_release_everything(self):
    with self.assertNoLeakedHandles():
      with pyxla.XlaBuilder('test') as b:
        with self.assertRaises(errors.RaggedArrayError):
          b.constant_r2([[1., 2.], [3.]])
        with self.assertRaises(pyxla.XlaError):
          b.constant_r1([1., 2.]) + b.constant_r1([1., 2., 3.])
      with self.assertRaises(pyxla.XlaError):
        pyxla.HloModuleProto.parse_and_return_unverified_module('HloModule m')


if __name__ == '__main__':
  absltest.main()
