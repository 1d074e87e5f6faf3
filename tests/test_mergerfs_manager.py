"""Unit tests for MergerFS manager."""

import os
import shutil
import tempfile
import unittest
from unittest.mock import patch

from fakes import FakeHost, make_settings

from poolctl.device_manager import DeviceManager
from poolctl.device_prober import DeviceProber
from poolctl.errors import MountError
from poolctl.mergerfs_manager import POLICY_DESCRIPTIONS, MergerFSManager
from poolctl.models import MergerFSPolicies, MergerFSPolicy, PoolConfig


class TestMergerFSManager(unittest.TestCase):
    """Test cases for MergerFSManager class."""

    def setUp(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.mkdtemp()
        self.host = FakeHost()
        prober = DeviceProber(self.host)
        device_manager = DeviceManager(self.host, prober, make_settings(self.temp_dir))
        self.manager = MergerFSManager(self.host, prober, device_manager)
        self.mount_point = os.path.join(self.temp_dir, 'mnt', 'media')
        self.branches = ['/var/mergerfs/media/disk1', '/var/mergerfs/media/disk2']

        for name in ('disk_partitions', 'disk_usage'):
            patcher = patch(f'poolctl.device_prober.psutil.{name}',
                            side_effect=getattr(self.host, name))
            patcher.start()
            self.addCleanup(patcher.stop)

    def tearDown(self):
        """Clean up test fixtures."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_build_options_defaults(self):
        """Test option string for a default policy block."""
        options = self.manager.build_options(PoolConfig())

        self.assertEqual(options.split(','), [
            'defaults', 'allow_other', 'use_ino', 'cache.files=off', 'dropcacheonclose=true',
            'category.create=epmfs', 'category.search=ff', 'func.open=ff',
        ])

    def test_build_options_full(self):
        """Test option string with policies, space settings and custom options."""
        config = PoolConfig(
            policies=MergerFSPolicies(create='mfs', read='ff', search='all'),
            minfreespace='50G',
            moveonenospc=False,
            global_options=['cache.files=partial', 'category.create=lfs'],
            custom_options='fsname=media, xattr=nosys',
        )

        options = self.manager.build_options(config).split(',')

        self.assertIn('category.create=mfs', options)
        self.assertNotIn('category.create=lfs', options)
        self.assertIn('category.search=all', options)
        self.assertIn('minfreespace=50G', options)
        self.assertIn('moveonenospc=false', options)
        self.assertEqual(options[-2:], ['fsname=media', 'xattr=nosys'])

    def test_generate_mount_command(self):
        cmd = self.manager.generate_mount_command(self.branches, '/mnt/media', PoolConfig())

        self.assertEqual(cmd[0], 'mergerfs')
        self.assertEqual(cmd[1], '-o')
        self.assertEqual(cmd[3], '/var/mergerfs/media/disk1:/var/mergerfs/media/disk2')
        self.assertEqual(cmd[4], '/mnt/media')

    def test_mount_and_read_back(self):
        """Test mounting a union and reading it from the mount table."""
        self.assertTrue(self.manager.mount_pool(self.branches, self.mount_point, PoolConfig()))

        current = self.manager.current_mount(self.mount_point)
        self.assertEqual(current.branches, self.branches)
        self.assertEqual(current.options['category.create'], 'epmfs')
        self.assertEqual(current.options['allow_other'], 'true')

        self.assertFalse(self.manager.mount_pool(self.branches, self.mount_point, PoolConfig()))
        self.assertEqual(len(self.host.commands('mergerfs')), 1)

    def test_mount_without_branches(self):
        with self.assertRaises(MountError):
            self.manager.mount_pool([], self.mount_point, PoolConfig())

    def test_current_mount_ignores_other_filesystems(self):
        self.host.mount_system('/dev/sdb1', self.mount_point, 'xfs')
        self.assertIsNone(self.manager.current_mount(self.mount_point))

    def test_remount_swaps_branches(self):
        self.manager.mount_pool(self.branches, self.mount_point, PoolConfig())
        new_branches = self.branches + ['/var/mergerfs/media/disk3']

        self.manager.remount_pool(self.branches, new_branches, self.mount_point, PoolConfig())

        self.assertEqual(self.manager.current_mount(self.mount_point).branches, new_branches)

    def test_remount_failure_restores_original(self):
        """Test that a failed remount brings the old branch list back."""
        self.manager.mount_pool(self.branches, self.mount_point, PoolConfig())
        new_branches = self.branches + ['/var/mergerfs/media/disk3']
        self.host.fail(['mergerfs', '-o', self.manager.build_options(PoolConfig()),
                        ':'.join(new_branches)], stderr='bad branch')

        with self.assertRaises(MountError) as context:
            self.manager.remount_pool(self.branches, new_branches, self.mount_point, PoolConfig())

        self.assertIn('Original pool restored', context.exception.message)
        self.assertEqual(self.manager.current_mount(self.mount_point).branches, self.branches)

    def test_remount_failure_restore_also_fails(self):
        self.manager.mount_pool(self.branches, self.mount_point, PoolConfig())
        self.host.fail(['mergerfs'], stderr='fuse unavailable')

        with self.assertRaises(MountError) as context:
            self.manager.remount_pool(self.branches, self.branches[:1], self.mount_point, PoolConfig())

        self.assertIn('Restore of the original pool also failed', context.exception.message)
        self.assertIsNone(self.manager.current_mount(self.mount_point))

    def test_policy_descriptions_cover_every_policy(self):
        self.assertEqual(set(POLICY_DESCRIPTIONS), {policy.value for policy in MergerFSPolicy})


if __name__ == '__main__':
    unittest.main()
