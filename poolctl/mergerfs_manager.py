"""MergerFS union mounts: option building, mount, unmount and remount."""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .device_manager import DeviceManager
from .device_prober import DeviceProber
from .errors import MountError
from .models import DEFAULT_GLOBAL_OPTIONS, MergerFSPolicies, PoolConfig
from .system_executor import CommandExecutor

logger = logging.getLogger(__name__)


POLICY_DESCRIPTIONS = {
    "epmfs": "Existing path, most free space - Write to drive with most free space that already has the parent directory",
    "eplfs": "Existing path, least free space - Write to drive with least free space that has the parent directory",
    "eplus": "Existing path, least used space - Write to drive with least used space that has the parent directory",
    "epff": "Existing path, first found - Write to the first drive that has the parent directory",
    "epall": "Existing path, all - Apply to every drive that has the parent directory",
    "mfs": "Most free space - Write to drive with most free space",
    "lfs": "Least free space - Write to drive with least free space",
    "lus": "Least used space - Write to drive with least used space",
    "rand": "Random - Randomly select a drive",
    "pfrd": "Percentage free random distribution - Weighted random by free space",
    "ff": "First found - Write to first drive with enough space",
    "all": "All - Apply to every drive",
}


@dataclass
class MergerFSMount:
    """A live mergerfs mount read from the mount table."""
    mount_point: str
    branches: List[str]
    options: Dict[str, str] = field(default_factory=dict)


class MergerFSManager:
    """Builds mergerfs command lines and manages the union mount of a pool."""

    FSTYPE = 'fuse.mergerfs'
    BASE_OPTIONS = ['defaults', 'allow_other', 'use_ino']

    def __init__(self, executor: CommandExecutor, prober: DeviceProber,
                 device_manager: DeviceManager):
        """
        Initialize the MergerFS manager.

        Args:
            executor: Command executor for privileged operations
            prober: Mount table access
            device_manager: Mount point creation and unmounting
        """
        self._executor = executor
        self._prober = prober
        self._device_manager = device_manager

    def build_options(self, config: PoolConfig) -> str:
        """
        Build the ``-o`` option string for a union pool.

        The read policy drives ``func.open``; create and search map to their
        mergerfs categories.
        """
        policies = config.policies or MergerFSPolicies()
        global_options = config.global_options
        if global_options is None:
            global_options = list(DEFAULT_GLOBAL_OPTIONS)

        options = list(self.BASE_OPTIONS)
        for option in global_options:
            if option not in options:
                options.append(option)

        policy_options = {
            'category.create': policies.create,
            'category.search': policies.search,
            'func.open': policies.read,
        }
        for key, value in policy_options.items():
            options = [option for option in options if not option.startswith(f"{key}=")]
            options.append(f"{key}={value}")

        if config.minfreespace:
            options.append(f"minfreespace={config.minfreespace}")
        if config.moveonenospc is not None:
            options.append(f"moveonenospc={'true' if config.moveonenospc else 'false'}")
        if config.custom_options:
            options.extend(part.strip() for part in config.custom_options.split(',') if part.strip())

        return ','.join(options)

    def generate_mount_command(self, branches: List[str], mount_point: str,
                               config: PoolConfig) -> List[str]:
        """
        Generate the mergerfs mount command.

        Args:
            branches: Branch mount points in slot order
            mount_point: Target mount point
            config: Pool policy block

        Returns:
            List of command arguments for mounting
        """
        return [
            'mergerfs',
            '-o',
            self.build_options(config),
            ':'.join(branches),
            mount_point,
        ]

    def current_mount(self, mount_point: str) -> Optional[MergerFSMount]:
        entry = self._prober.mount_entry(mount_point)
        if entry is None or entry.fstype != self.FSTYPE:
            return None
        options = {}
        for option in entry.opts.split(','):
            if '=' in option:
                key, value = option.split('=', 1)
                options[key] = value
            elif option:
                options[option] = 'true'
        return MergerFSMount(
            mount_point=entry.mountpoint,
            branches=[branch for branch in entry.device.split(':') if branch],
            options=options,
        )

    def mount_pool(self, branches: List[str], mount_point: str, config: PoolConfig) -> bool:
        """
        Mount the union view.

        Returns:
            False if the mount point was already mounted

        Raises:
            MountError: If there are no branches or mergerfs fails
        """
        if not branches:
            raise MountError(f"No branches to mount at {mount_point}")

        if self._prober.is_mounted(mount_point):
            logger.info(f"MergerFS pool already mounted at {mount_point}")
            return False

        self._device_manager.make_mount_point(mount_point)
        mount_cmd = self.generate_mount_command(branches, mount_point, config)
        self._executor.check(mount_cmd, error_cls=MountError,
                             message=f"Failed to mount MergerFS pool at {mount_point}")
        self._device_manager.set_ownership(mount_point)
        logger.info(f"Successfully mounted MergerFS pool at {mount_point} with {len(branches)} branches")
        return True

    def unmount_pool(self, mount_point: str, force: bool = False,
                     remove_directory: bool = False) -> bool:
        return self._device_manager.unmount(mount_point, force=force,
                                            remove_directory=remove_directory)

    def remount_pool(self, old_branches: List[str], new_branches: List[str],
                     mount_point: str, config: PoolConfig) -> None:
        """
        Swap the branch list of a mounted union.

        If the new mount fails the original branch list is mounted again and
        the error is raised.
        """
        logger.info(f"Remounting MergerFS pool at {mount_point} with {len(new_branches)} branches")
        self.unmount_pool(mount_point)
        try:
            self.mount_pool(new_branches, mount_point, config)
        except MountError as e:
            if not old_branches:
                raise
            logger.error("Remount failed, attempting to restore original pool")
            try:
                self.mount_pool(old_branches, mount_point, config)
            except MountError as restore_error:
                raise MountError(
                    f"{e.message}. Restore of the original pool also failed: {restore_error.message}",
                    command=e.command,
                    returncode=e.returncode,
                    stderr=e.stderr,
                )
            raise MountError(
                f"{e.message}. Original pool restored.",
                command=e.command,
                returncode=e.returncode,
                stderr=e.stderr,
            )
