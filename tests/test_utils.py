import unittest
from aidl_reverser import camel_case, param_names, looks_like_transaction_code, RenderFilter
from aidl_sources import TypeRef


class TestUtils(unittest.TestCase):

    def test_camel_case(self):
        self.assertEqual(camel_case('START_ACTIVITY'), 'startActivity')
        self.assertEqual(camel_case('GET_TASKS'), 'getTasks')
        self.assertEqual(camel_case('PING'), 'ping')
        self.assertEqual(camel_case('SET__DOUBLE_UNDERSCORE'), 'setDoubleUnderscore')
        self.assertEqual(camel_case(''), '')

    def test_looks_like_transaction_code(self):
        self.assertTrue(looks_like_transaction_code('TRANSACTION_getFoo'))
        self.assertTrue(looks_like_transaction_code('GET_FOO_TRANSACTION'))
        self.assertFalse(looks_like_transaction_code('DESCRIPTOR'))
        self.assertFalse(looks_like_transaction_code('FIRST_TRANSACTION_CODE'))

    def test_param_names(self):
        types = [
            TypeRef('int', 'int', True),
            TypeRef('java.lang.String', 'String'),
            TypeRef('long', 'long', True),
            TypeRef('boolean', 'boolean', True),
            TypeRef('int[]', 'int[]', False, True),
        ]
        self.assertEqual(param_names(types), ['n1', 's2', 'n3', 'p4', 'p5'])
        self.assertEqual(param_names([]), [])

    def test_render_filter(self):
        self.assertFalse(RenderFilter())
        self.assertTrue(RenderFilter(code=0))
        self.assertTrue(RenderFilter(code=3).matches(3, 'x'))
        self.assertFalse(RenderFilter(code=3).matches(4, 'x'))
        self.assertTrue(RenderFilter(method_name='x').matches(9, 'x'))
        with self.assertRaises(ValueError):
            RenderFilter(method_name='x', code=1)


if __name__ == '__main__':
    unittest.main()
