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

import numpy as np

import pyxla
from pyxla import errors
from pyxla._src import config
from pyxla._src import shape as shape_lib
from pyxla._src import test_util as ptu

config.parse_flags_with_absl()


class ArrayShapeTest(ptu.PyxlaTestCase):

  def test_static_shape(self):
    s = pyxla.ArrayShape.of(np.float32, [2, 3])
    self.assertEqual(s.dims(), (2, 3))
    self.assertEqual(s.rank(), 2)
    self.assertEqual(s.element_type(), pyxla.ElementType.F32)
    self.assertEqual(s.primitive_type(), pyxla.PrimitiveType.F32)
    self.assertTrue(s.is_static)
    self.assertEqual(s.element_count(), 6)
    self.assertEqual(s.size_bytes(), 24)
    self.assertEqual(str(s), 'f32[2,3]')

  def test_scalar_shape(self):
    s = pyxla.ArrayShape(pyxla.ElementType.S64, [])
    self.assertEqual(s.rank(), 0)
    self.assertEqual(s.element_count(), 1)
    self.assertEqual(str(s), 's64[]')

  def test_dynamic_dimension(self):
    s = pyxla.ArrayShape(pyxla.ElementType.F32, [-2, 3])
    self.assertFalse(s.is_static)
    self.assertTrue(s.is_dynamic_dimension(0))
    self.assertFalse(s.is_dynamic_dimension(1))
    self.assertEqual(s.bounded_dims(), (2, 3))
    self.assertEqual(s.max_element_count(), 6)
    self.assertEqual(str(s), 'f32[<=2,3]')
    with self.assertRaises(errors.DynamicShapeError):
      s.element_count()

  def test_equality(self):
    a = pyxla.ArrayShape(np.float32, [2])
    self.assertEqual(a, pyxla.ArrayShape(pyxla.ElementType.F32, (2,)))
    self.assertNotEqual(a, pyxla.ArrayShape(np.float64, [2]))
    self.assertNotEqual(a, pyxla.ArrayShape(np.float32, [-2]))
    self.assertEqual(hash(a), hash(pyxla.ArrayShape(np.float32, [2])))


class ShapeTest(ptu.PyxlaTestCase):

  def test_array(self):
    s = pyxla.Shape.array(np.int32, [4])
    self.assertTrue(s.is_array())
    self.assertFalse(s.is_tuple())
    self.assertIsNone(s.tuple_size())
    self.assertEqual(s.dims(), (4,))
    self.assertEqual(s.primitive_type(), pyxla.PrimitiveType.S32)
    self.assertEqual(s, pyxla.ArrayShape(np.int32, [4]))
    with self.assertRaises(errors.NotATuple):
      s.tuple_shapes()

  def test_tuple(self):
    s = pyxla.Shape.tuple([pyxla.Shape.array(np.float32, []),
                           pyxla.Shape.tuple([pyxla.Shape.array(np.int32, [2])])])
    self.assertTrue(s.is_tuple())
    self.assertEqual(s.tuple_size(), 2)
    self.assertEqual(s.primitive_type(), pyxla.PrimitiveType.TUPLE)
    self.assertEqual(str(s), '(f32[], (s32[2]))')
    self.assertEqual(s.leaves(), [pyxla.ArrayShape(np.float32, []),
                                  pyxla.ArrayShape(np.int32, [2])])
    with self.assertRaises(errors.NotAnArray):
      s.array_shape()
    with self.assertRaises(errors.NotAnArray):
      s.dims()

  def test_empty_tuple(self):
    s = pyxla.Shape.tuple([])
    self.assertEqual(s.tuple_size(), 0)
    self.assertEqual(str(s), '()')

  def test_requires_exactly_one_kind(self):
    with self.assertRaises(ValueError):
      pyxla.Shape()


class ParseShapeTest(ptu.PyxlaTestCase):

  @parameterized.parameters(
      ('f32[]', 'f32[]'),
      ('f32[2,3]', 'f32[2,3]'),
      ('f32[2,3]{1,0}', 'f32[2,3]'),
      ('bf16[<=4]', 'bf16[<=4]'),
      ('(s32[], f32[4]{0})', '(s32[], f32[4])'),
      ('((pred[1]), u8[])', '((pred[1]), u8[])'),
      ('()', '()'))
  def test_parse(self, text, expected):
    self.assertEqual(str(pyxla.parse_shape(text)), expected)

  def test_dynamic_bound(self):
    s = pyxla.parse_shape('f32[<=2,3]')
    self.assertEqual(s.dims(), (-2, 3))

  @parameterized.parameters('f32[?]', 'f32[2', 'x99[2]', 'f32[2] junk',
                            '(f32[2]')
  def test_malformed(self, text):
    with self.assertRaises(ValueError):
      pyxla.parse_shape(text)

  def test_prefix(self):
    text = 'f32[2]{0} add(a, b)'
    s, pos = shape_lib.parse_shape_prefix(text)
    self.assertEqual(s, pyxla.ArrayShape(np.float32, [2]))
    self.assertEqual(text[pos:], ' add(a, b)')


if __name__ == '__main__':
  absltest.main()
