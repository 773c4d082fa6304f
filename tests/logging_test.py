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

import contextlib
import io
import logging
import platform
import subprocess
import sys
import textwrap
import unittest

import numpy as np

import pyxla
from pyxla._src import config
from pyxla._src import logging_config
from pyxla._src import test_util as ptu

from absl.testing import absltest
config.parse_flags_with_absl()


@contextlib.contextmanager
def pyxla_debug_log_modules(value):
  # pyxla_debug_log_modules doesn't have a context manager, because it's
  # not thread-safe. But since tests are always single-threaded, we
  # can define one here.
  original_value = config.config.read('pyxla_debug_log_modules')
  config.update('pyxla_debug_log_modules', value)
  try:
    yield
  finally:
    config.update('pyxla_debug_log_modules', original_value)


@contextlib.contextmanager
def capture_pyxla_logs():
  log_output = io.StringIO()

  handler = logging.StreamHandler(log_output)
  logger = logging.getLogger('pyxla')

  logger.addHandler(handler)
  try:
    yield log_output
  finally:
    logger.removeHandler(handler)


def _compile_and_run(client):
  with pyxla.XlaBuilder('add_one') as b:
    comp = (b.parameter(0, np.float32, [2], 'x') + 1.).build()
  with comp, client.compile(comp) as executable:
    result = executable.execute([pyxla.Literal.vec1([1., 2.])])
  with result[0][0] as buffer:
    buffer.to_literal_sync().close()


class LoggingTest(ptu.PyxlaTestCase):

  @unittest.skipIf(platform.system() == 'Windows',
                   "Subprocess test doesn't work on Windows")
  def test_no_log_spam(self):
    if sys.executable is None:
      raise self.skipTest('test requires access to python binary')

    program = textwrap.dedent("""
        import numpy as np
        import pyxla
        client = pyxla.PjRtClient.cpu()
        b = pyxla.XlaBuilder('add_one')
        comp = (b.parameter(0, np.float32, [2], 'x') + 1.).build()
        out = client.compile(comp).execute([pyxla.Literal.vec1([1., 2.])])
        out[0][0].to_literal_sync()
    """)
    p = subprocess.run([sys.executable, '-c', program], capture_output=True,
                       text=True)
    self.assertEqual(p.returncode, 0, msg=p.stderr)
    lines = p.stdout.splitlines() + p.stderr.splitlines()
    self.assertEmpty([l for l in lines if 'pyxla' in l])

  def test_debug_logging(self):
    client = self.cpu_client()
    _compile_and_run(client)

    # Nothing logged by default.
    with capture_pyxla_logs() as log_output:
      _compile_and_run(client)
    self.assertEmpty(log_output.getvalue())

    # Turn on all debug logging.
    with pyxla_debug_log_modules('pyxla'):
      with capture_pyxla_logs() as log_output:
        _compile_and_run(client)
      self.assertIn('Compiled add_one', log_output.getvalue())
      self.assertIn('Released buffer handle', log_output.getvalue())

    # Turn off all debug logging.
    with pyxla_debug_log_modules(''):
      with capture_pyxla_logs() as log_output:
        _compile_and_run(client)
      self.assertEmpty(log_output.getvalue())

    # Turn on one module.
    with pyxla_debug_log_modules('pyxla._src.handles'):
      with capture_pyxla_logs() as log_output:
        _compile_and_run(client)
      self.assertIn('Released executable handle', log_output.getvalue())
      self.assertNotIn('Compiled add_one', log_output.getvalue())

  def test_debug_log_modules_parsing(self):
    modules = ' pyxla._src.hlo, ,pyxla._src.hlo,pyxla._src.status '
    with pyxla_debug_log_modules(modules):
      self.assertEqual(logging_config.debug_logging_modules(),
                       ['pyxla._src.hlo', 'pyxla._src.status'])
    self.assertEmpty(logging_config.debug_logging_modules())

  def test_disabling_restores_previous_level(self):
    logger = logging.getLogger('pyxla._src.builder')
    logger.setLevel(logging.INFO)
    self.addCleanup(logger.setLevel, logging.NOTSET)
    with pyxla_debug_log_modules('pyxla._src.builder,pyxla._src.hlo'):
      self.assertEqual(logger.level, logging.DEBUG)
      with pyxla_debug_log_modules('pyxla._src.hlo'):
        self.assertEqual(logger.level, logging.INFO)
        self.assertEqual(logging.getLogger('pyxla._src.hlo').level,
                         logging.DEBUG)
    self.assertEqual(logger.level, logging.INFO)

  def test_debug_message_format(self):
    stream = io.StringIO()
    handler = logging_config._debug_handler
    original_stream = handler.setStream(stream)
    self.addCleanup(handler.setStream, original_stream)
    with pyxla_debug_log_modules('pyxla._src.builder'):
      pyxla.XlaBuilder('fmt').close()
    self.assertRegex(stream.getvalue(),
                     r'\[pyxla\] DEBUG .* pyxla\._src\.builder:\d+ '
                     r'Created builder fmt')

  def test_log_compiles(self):
    client = self.cpu_client()
    with ptu.config_value('pyxla_log_compiles', True):
      with capture_pyxla_logs() as log_output:
        _compile_and_run(client)
    self.assertIn('Compiled add_one', log_output.getvalue())

  def test_runtime_errors_are_logged_at_debug(self):
    with pyxla_debug_log_modules('pyxla._src.status'):
      with capture_pyxla_logs() as log_output:
        with self.assertRaises(pyxla.XlaError):
          pyxla.PjRtClient.for_platform('no_such_platform')
    self.assertIn('Runtime reported an error', log_output.getvalue())


if __name__ == '__main__':
  absltest.main()
