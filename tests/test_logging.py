import json
import logging
import unittest

from poolctl.logging import JsonLogFormatter, configure_logging


class TestJsonLogFormatter(unittest.TestCase):

    def _record(self, **extra):
        record = logging.LogRecord('poolctl.lifecycle_manager', logging.INFO, __file__, 10,
                                   'Created pool %s', ('media',), None)
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_includes_pool_metadata(self):
        payload = json.loads(JsonLogFormatter().format(
            self._record(pool_id='1700000000000', pool_name='media', operation='create')
        ))

        self.assertEqual(payload['message'], 'Created pool media')
        self.assertEqual(payload['level'], 'INFO')
        self.assertEqual(payload['logger'], 'poolctl.lifecycle_manager')
        self.assertEqual(payload['pool_id'], '1700000000000')
        self.assertEqual(payload['operation'], 'create')
        self.assertNotIn('command', payload)


class TestConfigureLogging(unittest.TestCase):

    def setUp(self):
        self.root = logging.getLogger()
        self.saved_handlers = list(self.root.handlers)
        self.saved_level = self.root.level

    def tearDown(self):
        for handler in list(self.root.handlers):
            if handler not in self.saved_handlers:
                self.root.removeHandler(handler)
        self.root.setLevel(self.saved_level)

    def test_replaces_previous_handler(self):
        first = configure_logging('DEBUG')
        second = configure_logging('warning', json_output=False)

        self.assertNotIn(first, self.root.handlers)
        self.assertIn(second, self.root.handlers)
        self.assertEqual(self.root.level, logging.WARNING)
        self.assertNotIsInstance(second.formatter, JsonLogFormatter)

    def test_json_formatter_by_default(self):
        handler = configure_logging()
        self.assertIsInstance(handler.formatter, JsonLogFormatter)


if __name__ == '__main__':
    unittest.main()
