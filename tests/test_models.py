"""Tests for pool records, option parsing and validators."""

import unittest

from poolctl.errors import ValidationError
from poolctl.models import (
    AddDevicesOptions, CreatePoolOptions, DeviceSlot, DiskType, MergerFSPoolOptions, PathRule,
    PoolConfig, PoolRecord, PoolType, RaidLevel, RemoveDevicesOptions, UnmountOptions,
    slot_matches, validate_device_list, validate_filesystem, validate_pool_name,
)
from poolctl.device_prober import DeviceProber


class TestValidators(unittest.TestCase):

    def test_pool_names(self):
        for name in ('media', 'Backup_01', 'a-b'):
            with self.subTest(name=name):
                self.assertEqual(validate_pool_name(name), name)

        for name in ('', 'has space', 'slash/name', 'remotes', 'REMOTES', 'x' * 256, None):
            with self.subTest(name=name):
                with self.assertRaises(ValidationError):
                    validate_pool_name(name)

    def test_device_list(self):
        self.assertEqual(validate_device_list(['/dev/sdb', '/dev/sdc']), ['/dev/sdb', '/dev/sdc'])

        for devices in ([], None, ['sdb'], ['/dev/sdb', '/dev/sdb'], '/dev/sdb'):
            with self.subTest(devices=devices):
                with self.assertRaises(ValidationError):
                    validate_device_list(devices)

    def test_filesystem(self):
        self.assertEqual(validate_filesystem('ext4'), 'ext4')
        with self.assertRaises(ValidationError) as context:
            validate_filesystem('ntfs')
        self.assertIn('xfs, ext4, btrfs', context.exception.message)


class TestRaidLevel(unittest.TestCase):

    def test_minimum_devices(self):
        self.assertEqual(RaidLevel.RAID10.min_devices, 4)
        for level in (RaidLevel.SINGLE, RaidLevel.RAID0, RaidLevel.RAID1):
            self.assertEqual(level.min_devices, 2)

    def test_redundancy(self):
        self.assertEqual(RaidLevel.RAID1.redundancy, 1)
        self.assertEqual(RaidLevel.RAID0.redundancy, 0)


class TestPoolRecord(unittest.TestCase):

    def setUp(self):
        """Set up test fixtures."""
        self.data = {
            'id': '1700000000000',
            'name': 'media',
            'type': 'mergerfs',
            'automount': False,
            'comment': 'movies',
            'index': 3,
            'created_at': '2024-01-01T00:00:00',
            'data_devices': [
                {'slot': 1, 'device': '/dev/sdb1', 'id': 'aaaa', 'filesystem': 'xfs'},
                {'slot': 3, 'device': '/dev/sdd1', 'id': 'cccc', 'filesystem': 'xfs'},
            ],
            'parity_devices': [{'slot': 1, 'device': '/dev/sde1', 'id': 'eeee', 'filesystem': 'xfs'}],
            'config': {
                'policies': {'create': 'mfs', 'read': 'ff', 'search': 'ff'},
                'category.create': 'mfs',
                'minfreespace': '20G',
                'moveonenospc': True,
                'global_options': ['cache.files=off'],
                'sync': {'enabled': True, 'schedule': '0 3 * * *',
                         'check': {'enabled': False, 'schedule': '0 0 * */3 SUN'}},
                'path_rules': [{'path': '/movies', 'target_devices': [1, 3]}],
                'share_owner': 'nobody',
            },
            'next_data_slot': 4,
            'next_parity_slot': 2,
        }

    def test_round_trip_keeps_unknown_config_keys(self):
        record = PoolRecord.from_dict(self.data)

        self.assertIs(record.type, PoolType.MERGERFS)
        self.assertEqual(record.config.extra, {'share_owner': 'nobody'})
        self.assertEqual(record.to_dict(), self.data)

    def test_next_slot_never_reuses_gaps(self):
        record = PoolRecord.from_dict(self.data)
        self.assertEqual(record.next_slot(), 4)
        self.assertEqual(record.next_slot(DiskType.PARITY), 2)

    def test_next_slot_survives_removal_of_highest_slot(self):
        record = PoolRecord.from_dict(self.data)
        record.add_slots([DeviceSlot(4, '/dev/sdf1', 'ffff', 'xfs')])
        record.data_devices = [slot for slot in record.data_devices if slot.slot != 4]

        stored = PoolRecord.from_dict(record.to_dict())

        self.assertEqual(stored.next_slot(), 5)
        self.assertEqual(stored.next_data_slot, 5)

    def test_next_slot_marks_default_for_older_records(self):
        del self.data['next_data_slot']
        del self.data['next_parity_slot']

        record = PoolRecord.from_dict(self.data)

        self.assertEqual(record.next_data_slot, 4)
        self.assertEqual(record.next_parity_slot, 2)

    def test_created_at_defaults(self):
        record = PoolRecord(id='1', name='x', type=PoolType.XFS)
        self.assertTrue(record.created_at)

    def test_invalid_type_rejected(self):
        self.data['type'] = 'zfs'
        with self.assertRaises(ValidationError):
            PoolRecord.from_dict(self.data)

    def test_config_note(self):
        config = PoolConfig(raid_level=RaidLevel.SINGLE)
        config.add_note("converted")
        data = config.to_dict()
        self.assertEqual(data['raid_level'], 'single')
        self.assertEqual(data['notes'][0]['message'], 'converted')

    def test_path_rule_validation(self):
        self.assertEqual(PathRule.from_dict({'path': '/a', 'target_devices': ['2']}).target_devices, [2])
        for rule in ({}, {'path': '/a', 'target_devices': ['x']}, 'rule'):
            with self.subTest(rule=rule):
                with self.assertRaises(ValidationError):
                    PathRule.from_dict(rule)


class TestOptions(unittest.TestCase):

    def test_defaults_when_omitted(self):
        opts = CreatePoolOptions.from_dict(None)
        self.assertIsNone(opts.format)
        self.assertTrue(opts.automount)

    def test_unknown_keys_rejected(self):
        with self.assertRaises(ValidationError) as context:
            CreatePoolOptions.from_dict({'fromat': True})
        self.assertIn('fromat', context.exception.message)

    def test_format_is_tri_state(self):
        for value in (True, False, None):
            with self.subTest(value=value):
                self.assertEqual(AddDevicesOptions.from_dict({'format': value}).format, value)
        with self.assertRaises(ValidationError):
            AddDevicesOptions.from_dict({'format': 'yes'})

    def test_mergerfs_options(self):
        opts = MergerFSPoolOptions.from_dict({
            'policies': {'create': 'lfs'},
            'snapraid': {'device': '/dev/sde'},
        })
        self.assertEqual(opts.policies.create, 'lfs')
        self.assertEqual(opts.policies.read, 'ff')
        self.assertEqual(opts.snapraid_device, '/dev/sde')
        self.assertEqual(opts.minfreespace, '20G')

    def test_mergerfs_invalid_policy(self):
        with self.assertRaises(ValidationError):
            MergerFSPoolOptions.from_dict({'policies': {'create': 'biggest'}})

    def test_mergerfs_rejects_mount_options(self):
        with self.assertRaises(ValidationError) as context:
            MergerFSPoolOptions.from_dict({'mount_options': 'noatime'})
        self.assertIn('custom_options', context.exception.message)
        self.assertEqual(CreatePoolOptions.from_dict({'mount_options': 'noatime'}).mount_options, 'noatime')

    def test_boolean_options(self):
        with self.assertRaises(ValidationError):
            UnmountOptions.from_dict({'force': 'true'})
        with self.assertRaises(ValidationError):
            RemoveDevicesOptions.from_dict({'unmount': 1})
        self.assertTrue(RemoveDevicesOptions.from_dict({}).unmount)

    def test_add_options_filesystem(self):
        with self.assertRaises(ValidationError):
            AddDevicesOptions.from_dict({'filesystem': 'zfs'})


class TestSlotMatches(unittest.TestCase):

    def test_whole_disk_matches_partition(self):
        slot = DeviceSlot(1, '/dev/sdb1')
        self.assertTrue(slot_matches(slot, ['/dev/sdb'], DeviceProber.parent_disk))
        self.assertTrue(slot_matches(slot, ['/dev/sdb1'], DeviceProber.parent_disk))
        self.assertFalse(slot_matches(slot, ['/dev/sdc'], DeviceProber.parent_disk))


if __name__ == '__main__':
    unittest.main()
