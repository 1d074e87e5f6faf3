"""Tests for ConfigStore."""

import json
import os
import shutil
import tempfile
import unittest
from unittest.mock import patch

from poolctl.config_store import ConfigStore
from poolctl.errors import ConfigError, ValidationError
from poolctl.models import DeviceSlot, PoolRecord, PoolType


def make_record(pool_id='1', name='data', device='/dev/sdb1'):
    return PoolRecord(id=pool_id, name=name, type=PoolType.XFS,
                      data_devices=[DeviceSlot(1, device, 'uuid-' + pool_id, 'xfs')])


class TestConfigStore(unittest.TestCase):
    """Test cases for ConfigStore class."""

    def setUp(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.mkdtemp()
        self.path = os.path.join(self.temp_dir, 'config', 'pools.json')
        self.store = ConfigStore(self.path)

    def tearDown(self):
        """Clean up test fixtures."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_missing_file_is_empty_registry(self):
        self.assertEqual(self.store.load(), [])

    def test_save_and_load(self):
        """Test that records survive a save/load cycle as a JSON array."""
        self.store.save([make_record('1', 'data'), make_record('2', 'backup', '/dev/sdc1')])

        with open(self.path) as f:
            raw = json.load(f)
        self.assertIsInstance(raw, list)
        self.assertEqual([item['name'] for item in raw], ['data', 'backup'])

        loaded = self.store.load()
        self.assertEqual(loaded[1].data_devices[0].device, '/dev/sdc1')
        self.assertEqual(os.listdir(os.path.dirname(self.path)), ['pools.json'])

    def test_corrupt_file(self):
        os.makedirs(os.path.dirname(self.path))
        with open(self.path, 'w') as f:
            f.write('{"not": "a list"')

        with self.assertRaises(ConfigError):
            self.store.load()

    def test_not_an_array(self):
        os.makedirs(os.path.dirname(self.path))
        with open(self.path, 'w') as f:
            json.dump({'pools': []}, f)

        with self.assertRaises(ConfigError):
            self.store.load()

    def test_invalid_record(self):
        os.makedirs(os.path.dirname(self.path))
        with open(self.path, 'w') as f:
            json.dump([{'id': '1', 'name': 'x', 'type': 'zfs'}], f)

        with self.assertRaises(ConfigError):
            self.store.load()

    def test_update_writes_nothing_when_mutation_fails(self):
        self.store.save([make_record()])

        def mutate(records):
            records.clear()
            raise ValidationError("rejected")

        with self.assertRaises(ValidationError):
            self.store.update(mutate)

        self.assertEqual(len(self.store.load()), 1)

    def test_failed_write_keeps_previous_file(self):
        """Test that an interrupted write leaves the old file and no temp files."""
        self.store.save([make_record()])

        with patch('poolctl.config_store.os.replace', side_effect=OSError('disk full')):
            with self.assertRaises(OSError):
                self.store.save([make_record('1'), make_record('2', 'other', '/dev/sdc1')])

        self.assertEqual(len(self.store.load()), 1)
        self.assertEqual(os.listdir(os.path.dirname(self.path)), ['pools.json'])


if __name__ == '__main__':
    unittest.main()
