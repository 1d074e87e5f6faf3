"""Device preparation: partitioning, formatting and mounting of single devices."""

import os
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from .device_prober import DeviceProber
from .errors import CommandError, MountError, ValidationError
from .models import DEFAULT_FILESYSTEM, FORMATTABLE_FILESYSTEMS, validate_filesystem
from .settings import EngineSettings
from .system_executor import CommandExecutor

logger = logging.getLogger(__name__)


@dataclass
class PreparedDevice:
    """A device that is ready to be mounted."""
    device: str
    target: str
    filesystem: str
    uuid: Optional[str]
    formatted: bool

    def to_dict(self) -> Dict:
        return {
            'device': self.target,
            'requestedDevice': self.device,
            'filesystem': self.filesystem,
            'uuid': self.uuid,
            'alreadyFormatted': not self.formatted,
        }


class DeviceManager:
    """Applies the format policy and mounts individual devices."""

    FORMAT_COMMANDS = {
        'xfs': ['mkfs.xfs', '-f'],
        'ext4': ['mkfs.ext4', '-F'],
        'btrfs': ['mkfs.btrfs', '-f'],
    }

    def __init__(self, executor: CommandExecutor, prober: DeviceProber, settings: EngineSettings):
        self._executor = executor
        self._prober = prober
        self._settings = settings

    def prepare_device(self, device: str, filesystem: Optional[str] = None,
                       format_flag: Optional[bool] = None) -> PreparedDevice:
        """
        Apply the format policy to one device.

        Args:
            device: Block device path
            filesystem: Requested filesystem, or None to keep/choose the default
            format_flag: True forces a format, False requires an existing
                filesystem, None formats only when the device is blank

        Returns:
            PreparedDevice describing the node to mount

        Raises:
            ValidationError: If the policy forbids using the device as requested
        """
        if filesystem is not None:
            validate_filesystem(filesystem)

        if format_flag is True:
            return self.format_device(device, filesystem or DEFAULT_FILESYSTEM, force=True)

        info = self._prober.check_filesystem(device)

        if not info.formatted:
            if format_flag is False:
                raise ValidationError(
                    f"Device {device} has no filesystem and format is disabled"
                )
            logger.info(f"Device {device} is blank, formatting with {filesystem or DEFAULT_FILESYSTEM}")
            return self.format_device(device, filesystem or DEFAULT_FILESYSTEM, force=True)

        if filesystem and info.filesystem != filesystem:
            raise ValidationError(
                f"Device {device} already contains a {info.filesystem} filesystem; "
                f"set format to true to reformat it as {filesystem}"
            )

        if info.filesystem not in FORMATTABLE_FILESYSTEMS:
            raise ValidationError(
                f"Device {device} contains an unsupported {info.filesystem} filesystem; "
                f"set format to true to reformat it"
            )

        logger.info(f"Using existing {info.filesystem} filesystem on {info.target}")
        return PreparedDevice(
            device=device,
            target=info.target,
            filesystem=info.filesystem,
            uuid=info.uuid,
            formatted=False,
        )

    def format_device(self, device: str, filesystem: str = DEFAULT_FILESYSTEM,
                      force: bool = False) -> PreparedDevice:
        """
        Format a device, partitioning whole disks first when configured.

        Without ``force`` a target already carrying ``filesystem`` is left alone.
        """
        validate_filesystem(filesystem)

        if not force:
            info = self._prober.check_filesystem(device)
            if info.formatted and info.filesystem == filesystem:
                return PreparedDevice(device, info.target, filesystem, info.uuid, formatted=False)

        target = self.ensure_partition(device)

        logger.info(f"Formatting {target} with {filesystem}")
        self._executor.check(
            self.FORMAT_COMMANDS[filesystem] + [target],
            error_cls=CommandError,
            message=f"Error formatting device {device}",
        )
        self.settle()

        uuid = self._prober.device_uuid(target)
        return PreparedDevice(device, target, filesystem, uuid, formatted=True)

    def ensure_partition(self, device: str) -> str:
        """Create a GPT table with one partition on a whole disk and return the partition."""
        if not self._settings.partition_whole_disks or self._prober.is_partition_path(device):
            return device

        logger.info(f"{device} is a whole disk, creating partition table and partition")
        self._executor.check(['parted', '-s', device, 'mklabel', 'gpt'],
                             message=f"Failed to create partition table on {device}")
        self._executor.check(['parted', '-s', device, 'mkpart', 'primary', '2048s', '100%'],
                             message=f"Failed to create partition on {device}")

        probe = self._executor.run(['partprobe', device])
        if not probe.success:
            logger.warning(f"partprobe failed for {device}: {probe.stderr.strip()}")
        self.settle()

        return self._prober.partition_path(device, 1)

    def settle(self) -> None:
        """Let udev refresh /dev/disk/by-uuid after partitioning or formatting."""
        for args in (['udevadm', 'trigger', '--subsystem-match=block'], ['udevadm', 'settle']):
            result = self._executor.run(args)
            if not result.success:
                logger.warning(f"{' '.join(args)} failed: {result.stderr.strip()}")

    def mount_device(self, target: str, mount_point: str, uuid: Optional[str] = None,
                     options: Optional[str] = None, fstype: Optional[str] = None) -> bool:
        """
        Mount one device, by UUID when known.

        Returns:
            False when something was already mounted at ``mount_point``

        Raises:
            MountError: If the device is mounted elsewhere or mount fails
        """
        if self._prober.is_mounted(mount_point):
            logger.info(f"{mount_point} is already mounted")
            return False

        current = self._prober.mount_of(target)
        if current:
            raise MountError(
                f"Device {target} is already mounted at {current}. Please unmount it first."
            )

        self.make_mount_point(mount_point)

        args: List[str] = ['mount']
        if fstype:
            args.extend(['-t', fstype])
        if options:
            args.extend(['-o', options])
        args.extend([f"UUID={uuid}" if uuid else target, mount_point])

        self._executor.check(args, error_cls=MountError,
                             message=f"Failed to mount {target} at {mount_point}")
        self.set_ownership(mount_point)
        logger.info(f"Mounted {target} at {mount_point}")
        return True

    def unmount(self, mount_point: str, force: bool = False,
                remove_directory: bool = False) -> bool:
        """
        Unmount a mount point; not being mounted is not an error.

        ``force`` tries ``umount -f`` and falls back to a lazy unmount.

        Returns:
            True if something was unmounted
        """
        if not self._prober.is_mounted(mount_point):
            if remove_directory:
                self.remove_mount_point(mount_point)
            return False

        args = ['umount'] + (['-f'] if force else []) + [mount_point]
        result = self._executor.run(args)

        if not result.success and force:
            logger.warning(f"Forced unmount of {mount_point} failed, retrying lazily")
            result = self._executor.run(['umount', '-l', mount_point])

        if not result.success:
            raise MountError(
                f"Failed to unmount {mount_point}: {result.stderr.strip()}",
                command=result.args,
                returncode=result.returncode,
                stderr=result.stderr,
            )

        logger.info(f"Unmounted {mount_point}")
        if remove_directory:
            self.remove_mount_point(mount_point)
        return True

    def make_mount_point(self, path: str) -> None:
        try:
            os.makedirs(path, exist_ok=True)
        except OSError as e:
            raise MountError(f"Could not create mount point {path}: {e}")

    def remove_mount_point(self, path: str) -> None:
        try:
            os.rmdir(path)
        except FileNotFoundError:
            return
        except OSError as e:
            logger.warning(f"Could not remove mount point {path}: {e}")

    def set_ownership(self, path: str) -> None:
        owner = f"{self._settings.mount_owner_uid}:{self._settings.mount_owner_gid}"
        result = self._executor.run(['chown', owner, path])
        if not result.success:
            logger.warning(f"Could not set ownership {owner} on {path}: {result.stderr.strip()}")

    def check_unused(self, devices: List[str]) -> None:
        """Reject system devices and devices mounted anywhere."""
        for device in devices:
            if self._prober.is_system_device(device):
                raise ValidationError(f"Device {device} is a system device and cannot be used")
            entry = self._prober.device_mount(device)
            if entry:
                raise ValidationError(
                    f"Device {entry.device} is already mounted at {entry.mountpoint}. "
                    f"Please unmount it first."
                )
