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

import importlib.util
import os

from setuptools import setup, find_packages

project_name = 'pyxla'

def load_version_module(pkg_path):
  spec = importlib.util.spec_from_file_location(
    'version', os.path.join(pkg_path, 'version.py'))
  module = importlib.util.module_from_spec(spec)
  spec.loader.exec_module(module)
  return module

_version_module = load_version_module(project_name)
__version__ = _version_module.__version__
_minimum_jax_version = _version_module._minimum_jax_version

with open('README.md', encoding='utf-8') as f:
  _long_description = f.read()

setup(
    name=project_name,
    version=__version__,
    description='Build, compile and run XLA computations safely from Python.',
    long_description=_long_description,
    long_description_content_type='text/markdown',
    author='JAX team',
    author_email='jax-dev@google.com',
    packages=find_packages(include=['pyxla', 'pyxla.*']),
    python_requires='>=3.10',
    install_requires=[
        f'jax>={_minimum_jax_version}',
        f'jaxlib>={_minimum_jax_version}',
        'ml_dtypes>=0.5.0',
        'numpy>=1.26',
    ],
    extras_require={
        'test': [
          'absl-py',
          'pytest',
        ],

        # GPU support through the runtime's CUDA plugin.
        'cuda12': [
          f'jax[cuda12]>={_minimum_jax_version}',
        ],

        # Cloud TPU VM support.
        'tpu': [
          f'jax[tpu]>={_minimum_jax_version}',
        ],
    },
    license='Apache-2.0',
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Programming Language :: Python :: 3.13",
    ],
    zip_safe=False,
)
