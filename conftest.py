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
"""pytest configuration"""

import os
import pytest


@pytest.fixture(autouse=True)
def add_imports(doctest_namespace):
  import numpy
  import pyxla

  doctest_namespace["pyxla"] = pyxla
  doctest_namespace["np"] = numpy


# Runs before test collection, in every xdist worker, so that the device
# visibility is set before any runtime client is created.
#
# PYXLA_ENABLE_CUDA_XDIST holds the number of CUDA devices; workers are
# assigned to them round robin.
def pytest_collection() -> None:
  num_cuda_devices = os.environ.get("PYXLA_ENABLE_CUDA_XDIST", None)
  if not num_cuda_devices:
    return
  # When running as an xdist worker, will be something like "gw0"
  xdist_worker_name = os.environ.get("PYTEST_XDIST_WORKER", "")
  if not xdist_worker_name.startswith("gw"):
    return
  xdist_worker_number = int(xdist_worker_name[len("gw") :])
  os.environ.setdefault(
      "CUDA_VISIBLE_DEVICES", str(xdist_worker_number % int(num_cuda_devices))
  )
