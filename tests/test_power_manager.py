"""Tests for PowerManager."""

import unittest
from unittest.mock import Mock, patch

from fakes import EngineTestCase

from poolctl.errors import CommandError, NotFoundError, ValidationError
from poolctl.models import PowerStatus
from poolctl.power_manager import (
    POOL_POWER_MIXED, POOL_POWER_STANDBY, POOL_POWER_UNKNOWN, POOL_POWER_WAKE, PowerManager,
)
from poolctl.system_executor import CommandResult


class TestQueryPowerStatus(unittest.TestCase):

    def setUp(self):
        self.executor = Mock()
        settings = Mock(power_timeout=10, power_max_workers=4)
        self.manager = PowerManager(Mock(), Mock(), self.executor, settings)

    def _answer(self, returncode, stdout='', stderr=''):
        self.executor.run.return_value = CommandResult(['hdparm', '-C', '/dev/sdb'],
                                                       returncode, stdout, stderr)

    def test_parses_hdparm_states(self):
        cases = {
            '\n/dev/sdb:\n drive state is:  active/idle\n': PowerStatus.ACTIVE,
            '\n/dev/sdb:\n drive state is:  standby\n': PowerStatus.STANDBY,
            '\n/dev/sdb:\n drive state is:  sleeping\n': PowerStatus.SLEEPING,
            '\n/dev/sdb:\n drive state is:  unknown\n': PowerStatus.UNKNOWN,
        }
        for output, expected in cases.items():
            self._answer(0, output)
            self.assertIs(self.manager.query_power_status('/dev/sdb'), expected)

        self.executor.run.assert_called_with(['hdparm', '-C', '/dev/sdb'], timeout=10)

    def test_failed_query(self):
        self._answer(25, stderr='Inappropriate ioctl for device')

        self.assertIs(self.manager.query_power_status('/dev/sdb'), PowerStatus.UNKNOWN)
        self.assertIs(self.manager.query_power_status('/dev/nvme0n1'), PowerStatus.ACTIVE)

    def test_timeout_raises(self):
        self._answer(124, stderr='Command timed out')

        with self.assertRaises(CommandError):
            self.manager.query_power_status('/dev/sdb')


class TestDiskPower(EngineTestCase):

    def setUp(self):
        super().setUp()
        self.data = self.engine.lifecycle.create_single_device_pool('data', '/dev/sdb')
        self.disk_uuid = self.data['data_devices'][0]['id']

    def test_disk_status(self):
        status = self.engine.power.get_disk_status(self.data['id'], self.disk_uuid)

        self.assertEqual(status['device'], '/dev/sdb')
        self.assertEqual(status['powerStatus'], 'active')
        self.assertEqual(status['diskType'], 'data')
        self.assertEqual(status['poolName'], 'data')

    def test_standby_sleep_and_wake(self):
        """Test each action and the state hdparm reports afterwards."""
        result = self.engine.power.control_disk(self.data['id'], self.disk_uuid, 'standby')
        self.assertTrue(result['success'])
        self.assertEqual(result['powerStatus'], 'standby')
        self.assertIn(['hdparm', '-y', '/dev/sdb'], self.host.calls)
        self.assertEqual(self.engine.power.get_disk_status(self.data['id'], self.disk_uuid)['powerStatus'],
                         'standby')

        self.engine.power.control_disk(self.data['id'], self.disk_uuid, 'sleep')
        self.assertIn(['hdparm', '-Y', '/dev/sdb'], self.host.calls)
        self.assertEqual(self.host.power['/dev/sdb'], 'sleeping')

        result = self.engine.power.control_disk(self.data['id'], self.disk_uuid, 'wake')
        self.assertEqual(result['powerStatus'], 'active')
        self.assertIn(['dd', 'if=/dev/sdb', 'of=/dev/null', 'bs=512', 'count=1', 'iflag=direct'],
                      self.host.calls)

    def test_renumbered_device_followed_by_uuid(self):
        self.host.devices['/dev/sdg1'] = self.host.devices.pop('/dev/sdb1')
        self.host.devices['/dev/sdg'] = self.host.devices.pop('/dev/sdb')
        self.host.power['/dev/sdg'] = 'active/idle'

        status = self.engine.power.get_disk_status(self.data['id'], self.disk_uuid)

        self.assertEqual(status['device'], '/dev/sdg')

    def test_unknown_disk_and_action(self):
        with self.assertRaises(NotFoundError):
            self.engine.power.get_disk_status(self.data['id'], 'no-such-uuid')
        with self.assertRaises(ValidationError):
            self.engine.power.control_disk(self.data['id'], self.disk_uuid, 'hibernate')
        with self.assertRaises(NotFoundError):
            self.engine.power.control_disk('1', self.disk_uuid, 'wake')

    def test_failed_command(self):
        self.host.fail(['hdparm', '-y'], stderr='SG_IO: bad/missing sense data')

        with self.assertRaises(CommandError):
            self.engine.power.control_disk(self.data['id'], self.disk_uuid, 'standby')

    def test_nvme_cannot_spin_down(self):
        self.host.add_disk('/dev/nvme0n1')
        fast = self.engine.lifecycle.create_single_device_pool('fast', '/dev/nvme0n1')
        disk_uuid = fast['data_devices'][0]['id']

        with self.assertRaises(ValidationError):
            self.engine.power.control_disk(fast['id'], disk_uuid, 'standby')
        with self.assertRaises(ValidationError):
            self.engine.power.control_disk(fast['id'], disk_uuid, 'sleep')

        self.assertEqual(self.engine.power.get_disk_status(fast['id'], disk_uuid)['powerStatus'],
                         'active')
        self.assertTrue(self.engine.power.control_disk(fast['id'], disk_uuid, 'wake')['success'])


class TestPoolPower(EngineTestCase):

    def setUp(self):
        super().setUp()
        self.media = self.engine.lifecycle.create_mergerfs_pool(
            'media', ['/dev/sdb', '/dev/sdc', '/dev/sdd'], options={'snapraid': {'device': '/dev/sde'}})

    def test_pool_status_covers_data_and_parity(self):
        aggregate = self.engine.power.get_pool_disks_power_status(self.media['id'])

        self.assertEqual(aggregate['totalDisks'], 4)
        self.assertEqual(aggregate['successCount'], 4)
        self.assertEqual([entry['device'] for entry in aggregate['results']],
                         ['/dev/sdb', '/dev/sdc', '/dev/sdd', '/dev/sde'])
        self.assertEqual(aggregate['results'][-1]['diskType'], 'parity')

    def test_one_failing_disk_does_not_fail_pool(self):
        """Test that a failed wake is reported per disk while the others succeed."""
        self.host.fail(['dd', 'if=/dev/sdc'], stderr='Input/output error')

        with self.assertLogs('poolctl.power_manager', level='WARNING'):
            aggregate = self.engine.power.control_pool(self.media['id'], 'wake')

        self.assertEqual(aggregate['action'], 'wake')
        self.assertEqual(aggregate['totalDisks'], 4)
        self.assertEqual(aggregate['successCount'], 3)
        failed = [entry for entry in aggregate['results'] if not entry['success']]
        self.assertEqual(len(failed), 1)
        self.assertEqual(failed[0]['powerStatus'], 'error')
        self.assertEqual(failed[0]['slot'], 2)
        self.assertIn('error', failed[0])

    def test_unexpected_disk_error_is_reported_per_disk(self):
        """Test that an exception other than PoolError stays inside its disk entry."""
        read_sector = self.host._dd

        def dd(args):
            if args[1] == 'if=/dev/sdc':
                raise PermissionError(13, 'Permission denied', '/dev/sdc')
            return read_sector(args)

        with patch.object(self.host, '_dd', side_effect=dd):
            with self.assertLogs('poolctl.power_manager', level='WARNING'):
                aggregate = self.engine.power.control_pool(self.media['id'], 'wake')

        self.assertEqual(aggregate['successCount'], 3)
        failed = [entry for entry in aggregate['results'] if not entry['success']]
        self.assertEqual([entry['slot'] for entry in failed], [2])
        self.assertEqual(failed[0]['powerStatus'], 'error')
        self.assertIn('Permission denied', failed[0]['error'])

    def test_timed_out_disk_does_not_fail_pool(self):
        """Test that one hdparm query timing out only marks that disk."""
        self.host.fail(['hdparm', '-C', '/dev/sdd'], returncode=124, stderr='Command timed out after 10s')

        with self.assertLogs('poolctl.power_manager', level='WARNING'):
            aggregate = self.engine.power.get_pool_disks_power_status(self.media['id'])

        self.assertEqual(aggregate['totalDisks'], 4)
        self.assertEqual(aggregate['successCount'], 3)
        statuses = [(entry['diskType'], entry['slot'], entry['powerStatus']) for entry in aggregate['results']]
        self.assertEqual(statuses, [
            ('data', 1, 'active'),
            ('data', 2, 'active'),
            ('data', 3, 'error'),
            ('parity', 1, 'active'),
        ])

    def test_power_summary(self):
        self.assertEqual(self.engine.power.get_pool_power_summary(self.media['id']), POOL_POWER_WAKE)

        self.engine.power.control_pool(self.media['id'], 'standby')
        self.assertEqual(self.engine.power.get_pool_power_summary(self.media['id']), POOL_POWER_STANDBY)

        disk_uuid = self.media['data_devices'][0]['id']
        self.engine.power.control_disk(self.media['id'], disk_uuid, 'wake')
        self.assertEqual(self.engine.power.get_pool_power_summary(self.media['id']), POOL_POWER_MIXED)

    def test_summary_unknown_when_state_unreadable(self):
        self.host.fail(['hdparm', '-C', '/dev/sdd'], stderr='SG_IO: bad/missing sense data')

        self.assertEqual(self.engine.power.get_pool_power_summary(self.media['id']), POOL_POWER_UNKNOWN)


if __name__ == '__main__':
    unittest.main()
