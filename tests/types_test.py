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

from absl.testing import absltest
from absl.testing import parameterized

import ml_dtypes
import numpy as np

import pyxla
from pyxla import errors
from pyxla._src import config
from pyxla._src import test_util as ptu
from pyxla._src import types

config.parse_flags_with_absl()


class PrimitiveTypeTest(ptu.PyxlaTestCase):

  @parameterized.parameters(
      'PRED', 'S8', 'S16', 'S32', 'S64', 'U8', 'U16', 'U32', 'U64', 'F16',
      'F32', 'BF16', 'F64', 'C64', 'C128')
  def test_element_type_round_trip(self, name):
    ty = pyxla.PrimitiveType[name]
    elt = ty.element_type()
    self.assertEqual(elt.name, name)
    self.assertEqual(elt.primitive_type(), ty)
    self.assertEqual(elt.value, int(ty))

  @parameterized.parameters('TUPLE', 'TOKEN', 'OPAQUE_TYPE', 'INVALID')
  def test_structural_types_are_not_element_types(self, name):
    ty = pyxla.PrimitiveType[name]
    with self.assertRaises(errors.NotAnElementType) as cm:
      ty.element_type()
    self.assertEqual(cm.exception.got, ty)
    self.assertIsInstance(cm.exception, errors.Error)

  def test_codes_match_runtime(self):
    self.assertEqual(int(pyxla.PrimitiveType.PRED), 1)
    self.assertEqual(int(pyxla.PrimitiveType.F32), 11)
    self.assertEqual(int(pyxla.PrimitiveType.BF16), 16)
    self.assertEqual(int(pyxla.PrimitiveType.TUPLE), 13)
    self.assertEqual(int(pyxla.PrimitiveType.TOKEN), 17)
    self.assertEqual(int(pyxla.PrimitiveType.C128), 18)


class ElementTypeTest(ptu.PyxlaTestCase):

  @parameterized.parameters(
      ('PRED', 1), ('S8', 1), ('S16', 2), ('S32', 4), ('S64', 8), ('U8', 1),
      ('U16', 2), ('U32', 4), ('U64', 8), ('F16', 2), ('F32', 4), ('BF16', 2),
      ('F64', 8), ('C64', 8), ('C128', 16))
  def test_element_size(self, name, size):
    ty = pyxla.ElementType[name]
    self.assertEqual(ty.element_size_in_bytes(), size)
    self.assertEqual(ty.numpy_dtype().itemsize, size)

  def test_dtype_mapping(self):
    self.assertEqual(pyxla.ElementType.from_dtype(np.float32),
                     pyxla.ElementType.F32)
    self.assertEqual(pyxla.ElementType.from_dtype('int64'),
                     pyxla.ElementType.S64)
    self.assertEqual(pyxla.ElementType.from_dtype(ml_dtypes.bfloat16),
                     pyxla.ElementType.BF16)
    self.assertEqual(pyxla.ElementType.from_dtype(np.bool_),
                     pyxla.ElementType.PRED)
    with self.assertRaises(TypeError):
      pyxla.ElementType.from_dtype(np.dtype('U4'))

  def test_hlo_names(self):
    self.assertEqual(pyxla.ElementType.F32.hlo_name(), 'f32')
    self.assertEqual(pyxla.ElementType.PRED.hlo_name(), 'pred')
    self.assertEqual(pyxla.ElementType.from_hlo_name('bf16'),
                     pyxla.ElementType.BF16)
    with self.assertRaises(errors.NotAnElementType):
      pyxla.ElementType.from_hlo_name('token')
    with self.assertRaises(ValueError):
      pyxla.ElementType.from_hlo_name('f31')


class ArrayElementTest(ptu.PyxlaTestCase):

  @parameterized.parameters(
      (np.int8, 'S8'), (np.int16, 'S16'), (np.int32, 'S32'), (np.int64, 'S64'),
      (np.uint8, 'U8'), (np.uint16, 'U16'), (np.uint32, 'U32'),
      (np.uint64, 'U64'), (np.float32, 'F32'), (np.float64, 'F64'))
  def test_numeric_host_types(self, host_type, name):
    element = pyxla.ArrayElement.of(host_type)
    self.assertEqual(element.ty, pyxla.ElementType[name])
    self.assertEqual(element.element_size_in_bytes,
                     np.dtype(host_type).itemsize)
    self.assertEqual(element.zero, 0)
    self.assertIsInstance(element.zero, host_type)

  def test_half_precision_markers(self):
    f16 = pyxla.ArrayElement.of(pyxla.F16)
    bf16 = pyxla.ArrayElement.of(pyxla.Bf16)
    self.assertEqual(f16.ty, pyxla.ElementType.F16)
    self.assertEqual(bf16.ty, pyxla.ElementType.BF16)
    self.assertEqual(f16.element_size_in_bytes, 2)
    self.assertEqual(bf16.element_size_in_bytes, 2)
    self.assertEqual(f16.zero, pyxla.F16())
    self.assertEqual(bf16.zero, pyxla.Bf16())

  def test_lookup_by_dtype_and_element_type(self):
    self.assertIs(pyxla.ArrayElement.of('float32'),
                  pyxla.ArrayElement.of(np.float32))
    self.assertIs(pyxla.ArrayElement.of(pyxla.ElementType.S64),
                  pyxla.ArrayElement.of(np.int64))

  def test_unsupported_host_type(self):
    with self.assertRaises(TypeError):
      pyxla.ArrayElement.of(str)


class NativeTypeTest(ptu.PyxlaTestCase):

  @parameterized.parameters(np.int32, np.int64, np.uint32, np.uint64,
                            np.float32, np.float64)
  def test_constructors(self, host_type):
    native = pyxla.NativeType.of(host_type)
    self.assertArraysEqual(native.constant_r0(3), np.array(3, host_type))
    self.assertArraysEqual(native.constant_r1([1, 2]),
                           np.array([1, 2], host_type))
    self.assertArraysEqual(native.constant_r1c(7, 3),
                           np.array([7, 7, 7], host_type))
    self.assertArraysEqual(native.constant_r2([[1, 2], [3, 4]]),
                           np.array([[1, 2], [3, 4]], host_type))

  def test_first_element(self):
    native = pyxla.NativeType.of(np.float32)
    value = native.literal_get_first_element(np.array([[2.5, 1.0]], np.float32))
    self.assertEqual(value, 2.5)
    self.assertIsInstance(value, np.float32)

  def test_ragged_rows(self):
    native = pyxla.NativeType.of(np.float32)
    with self.assertRaisesRegex(errors.RaggedArrayError,
                                'all rows must have the same number of '
                                'columns!'):
      native.constant_r2([[1., 2., 3.], [4., 5.]])

  @parameterized.parameters(pyxla.F16, pyxla.Bf16, np.int8, np.uint16)
  def test_no_native_type(self, host_type):
    with self.assertRaises(TypeError):
      pyxla.NativeType.of(host_type)


class InferHostTypeTest(ptu.PyxlaTestCase):

  def test_python_values(self):
    self.assertIs(types.infer_host_type(1), np.int32)
    self.assertIs(types.infer_host_type(1.5), np.float32)
    self.assertIs(types.infer_host_type([[1.5, 2.0]]), np.float32)

  def test_numpy_values(self):
    self.assertIs(types.infer_host_type(np.float64(1)), np.float64)
    self.assertIs(types.infer_host_type(np.zeros(3, np.uint32)), np.uint32)

  def test_bool_has_no_native_type(self):
    with self.assertRaises(TypeError):
      types.infer_host_type(True)


if __name__ == '__main__':
  absltest.main()
