"""Device inspection: filesystem, UUID, mount status and capacity. Never mutates."""

import os
import re
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import psutil

from .errors import ProbeError
from .system_executor import CommandExecutor

logger = logging.getLogger(__name__)

PARTITION_TABLE_TYPES = {'dos', 'gpt', 'mbr'}


@dataclass
class FilesystemInfo:
    """Result of a filesystem check on a disk or partition."""
    device: str
    filesystem: Optional[str] = None
    uuid: Optional[str] = None
    partuuid: Optional[str] = None
    actual_device: Optional[str] = None

    @property
    def formatted(self) -> bool:
        return self.filesystem is not None

    @property
    def target(self) -> str:
        """The node that carries the filesystem (a partition or the device itself)."""
        return self.actual_device or self.device

    def to_dict(self) -> Dict:
        return {
            'device': self.device,
            'isFormatted': self.formatted,
            'filesystem': self.filesystem,
            'uuid': self.uuid,
            'partuuid': self.partuuid,
            'actualDevice': self.target,
        }


@dataclass
class SpaceUsage:
    total: int
    used: int
    free: int

    @property
    def usage_percent(self) -> float:
        if self.total == 0:
            return 0.0
        return (self.used / self.total) * 100

    @property
    def free_percent(self) -> float:
        if self.total == 0:
            return 0.0
        return (self.free / self.total) * 100

    def to_dict(self) -> Dict:
        return {
            'totalSpace': self.total,
            'usedSpace': self.used,
            'freeSpace': self.free,
            'usagePercent': round(self.usage_percent),
        }


@dataclass
class DeviceInfo:
    """Probe result for a single block device."""
    device: str
    uuid: Optional[str]
    filesystem: Optional[str]
    mounted: bool
    mountpoint: Optional[str]
    total_bytes: int
    used_bytes: int
    free_bytes: int

    def to_dict(self) -> Dict:
        return {
            'device': self.device,
            'uuid': self.uuid,
            'filesystem': self.filesystem,
            'mounted': self.mounted,
            'mountpoint': self.mountpoint,
            'totalBytes': self.total_bytes,
            'usedBytes': self.used_bytes,
            'freeBytes': self.free_bytes,
        }


@dataclass
class MountEntry:
    device: str
    mountpoint: str
    fstype: str
    opts: str = ""


@dataclass
class BtrfsMembers:
    """Members of a btrfs filesystem as reported by ``btrfs filesystem show``."""
    uuid: Optional[str] = None
    paths: List[str] = field(default_factory=list)
    missing: bool = False


class DeviceProber:
    """Read-only queries against block devices and the mount table."""

    SYSTEM_MOUNT_POINTS = {
        '/', '/boot', '/boot/efi', '/boot/firmware', '/tmp', '/var', '/usr',
        '/home', '/opt', '/srv', '/proc', '/sys', '/dev', '/run'
    }

    PARTITION_PATTERN = re.compile(
        r'^/dev/(?:(?P<sd>(?:sd|hd|vd|xvd)[a-z]+)\d+|(?P<nv>(?:nvme\d+n\d+|mmcblk\d+|loop\d+))p\d+)$'
    )

    BTRFS_DEVID_PATTERN = re.compile(r'devid\s+\d+\s+size\s+\S+\s+used\s+\S+\s+path\s+(\S+)')
    BTRFS_UUID_PATTERN = re.compile(r'uuid:\s*([0-9a-fA-F-]{36})')

    def __init__(self, executor: CommandExecutor, timeout: float = 30):
        self._executor = executor
        self._timeout = timeout

    def probe(self, device: str) -> DeviceInfo:
        """
        Inspect a device.

        Args:
            device: Block device path

        Returns:
            DeviceInfo; ``filesystem`` is None for a blank device

        Raises:
            ProbeError: If the device does not exist or probing fails
        """
        size = self.device_size(device)
        fs_info = self.check_filesystem(device)
        mountpoint = self.mount_of(fs_info.target)

        total, used, free = size, 0, size
        if mountpoint:
            usage = self.space_usage(mountpoint)
            if usage:
                total, used, free = usage.total, usage.used, usage.free

        return DeviceInfo(
            device=device,
            uuid=fs_info.uuid,
            filesystem=fs_info.filesystem,
            mounted=mountpoint is not None,
            mountpoint=mountpoint,
            total_bytes=total,
            used_bytes=used,
            free_bytes=free,
        )

    def device_size(self, device: str) -> int:
        result = self._executor.check(
            ['blockdev', '--getsize64', device],
            timeout=self._timeout,
            error_cls=ProbeError,
            message=f"Device {device} not found or unreadable",
        )
        try:
            return int(result.stdout.strip())
        except ValueError:
            raise ProbeError(f"Unexpected size output for {device}: {result.stdout.strip()}",
                             command=result.args)

    def list_partitions(self, device: str) -> List[str]:
        result = self._executor.check(
            ['lsblk', '-lnpo', 'NAME,TYPE', device],
            timeout=self._timeout,
            error_cls=ProbeError,
            message=f"Device {device} not found",
        )
        partitions = []
        for line in result.stdout.splitlines():
            parts = line.split()
            if len(parts) >= 2 and parts[1] == 'part' and parts[0] != device:
                partitions.append(parts[0])
        return partitions

    def check_filesystem(self, device: str) -> FilesystemInfo:
        """
        Find the filesystem on a device, looking into its partitions when the
        whole disk only carries a partition table.
        """
        partitions = self.list_partitions(device)
        tags = self._blkid_export(device)
        disk_fs = tags.get('TYPE')
        disk_has_fs = bool(disk_fs) and disk_fs not in PARTITION_TABLE_TYPES

        if disk_has_fs and not partitions:
            return self._filesystem_info(device, tags)

        for partition in partitions:
            part_tags = self._blkid_export(partition)
            part_fs = part_tags.get('TYPE')
            if part_fs and part_fs not in PARTITION_TABLE_TYPES:
                return self._filesystem_info(device, part_tags, actual_device=partition)

        if disk_has_fs:
            return self._filesystem_info(device, tags)

        return FilesystemInfo(device=device)

    def device_uuid(self, device: str) -> Optional[str]:
        return self._blkid_export(device).get('UUID')

    def member_uuid(self, device: str) -> Optional[str]:
        """Per-device UUID; btrfs members share the filesystem UUID, so prefer UUID_SUB."""
        tags = self._blkid_export(device)
        return tags.get('UUID_SUB') or tags.get('UUID')

    def resolve_uuid(self, uuid: str) -> Optional[str]:
        """Map a filesystem UUID back to its current device node."""
        result = self._executor.run(['blkid', '-U', uuid], timeout=self._timeout)
        if result.success and result.stdout.strip():
            return result.stdout.strip()
        return None

    def _blkid_export(self, device: str) -> Dict[str, str]:
        result = self._executor.run(['blkid', '-o', 'export', device], timeout=self._timeout)
        # blkid exits with 2 when nothing was found on the device
        if result.returncode == 2:
            return {}
        if not result.success:
            raise ProbeError(
                f"Failed to inspect {device}: {result.stderr.strip()}",
                command=result.args,
                returncode=result.returncode,
                stderr=result.stderr,
            )
        tags = {}
        for line in result.stdout.splitlines():
            if '=' in line:
                key, value = line.split('=', 1)
                tags[key.strip()] = value.strip().strip('"')
        return tags

    @staticmethod
    def _filesystem_info(device: str, tags: Dict[str, str],
                         actual_device: Optional[str] = None) -> FilesystemInfo:
        return FilesystemInfo(
            device=device,
            filesystem=tags.get('TYPE'),
            uuid=tags.get('UUID'),
            partuuid=tags.get('PARTUUID'),
            actual_device=actual_device,
        )

    def mount_table(self) -> List[MountEntry]:
        return [
            MountEntry(
                device=partition.device,
                mountpoint=partition.mountpoint,
                fstype=partition.fstype,
                opts=partition.opts,
            )
            for partition in psutil.disk_partitions(all=True)
        ]

    def mount_of(self, device: str) -> Optional[str]:
        for entry in self.mount_table():
            if entry.device == device:
                return entry.mountpoint
        return None

    def mount_entry(self, mount_point: str) -> Optional[MountEntry]:
        target = os.path.normpath(mount_point)
        for entry in self.mount_table():
            if os.path.normpath(entry.mountpoint) == target:
                return entry
        return None

    def is_mounted(self, mount_point: str) -> bool:
        return self.mount_entry(mount_point) is not None

    def device_mount(self, device: str) -> Optional[MountEntry]:
        """Mount entry of the device or of any of its partitions."""
        for entry in self.mount_table():
            if entry.device == device or self.parent_disk(entry.device) == device:
                return entry
        return None

    def is_system_device(self, device: str) -> bool:
        """True when the device or one of its partitions backs a system mount."""
        for entry in self.mount_table():
            if entry.device != device and self.parent_disk(entry.device) != device:
                continue
            if entry.mountpoint in self.SYSTEM_MOUNT_POINTS:
                return True
        return False

    def space_usage(self, mount_point: str) -> Optional[SpaceUsage]:
        try:
            usage = psutil.disk_usage(mount_point)
        except OSError as e:
            logger.warning(f"Could not read usage for {mount_point}: {e}")
            return None
        return SpaceUsage(total=usage.total, used=usage.used, free=usage.free)

    def btrfs_members(self, mount_point: str) -> BtrfsMembers:
        result = self._executor.check(
            ['btrfs', 'filesystem', 'show', mount_point],
            timeout=self._timeout,
            error_cls=ProbeError,
            message=f"Failed to read btrfs members of {mount_point}",
        )
        members = BtrfsMembers()
        uuid_match = self.BTRFS_UUID_PATTERN.search(result.stdout)
        if uuid_match:
            members.uuid = uuid_match.group(1)
        for line in result.stdout.splitlines():
            match = self.BTRFS_DEVID_PATTERN.search(line)
            if match:
                members.paths.append(match.group(1))
            elif 'missing' in line.lower():
                members.missing = True
        return members

    @classmethod
    def is_partition_path(cls, device: str) -> bool:
        if device.startswith('/dev/mapper/'):
            return True
        return bool(cls.PARTITION_PATTERN.match(device))

    @staticmethod
    def partition_path(device: str, number: int) -> str:
        """``/dev/sdb`` -> ``/dev/sdb1``, ``/dev/nvme0n1`` -> ``/dev/nvme0n1p1``."""
        if device[-1].isdigit():
            return f"{device}p{number}"
        return f"{device}{number}"

    @classmethod
    def parent_disk(cls, device: str) -> str:
        match = cls.PARTITION_PATTERN.match(device)
        if not match:
            return device
        return f"/dev/{match.group('sd') or match.group('nv')}"
