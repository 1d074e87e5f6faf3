"""Pool lifecycle: creation, mount state, removal, RAID level and metadata."""

import os
import logging
from typing import Any, Dict, List, Optional

from .device_manager import DeviceManager
from .device_prober import DeviceProber
from .errors import ValidationError, step
from .mergerfs_manager import MergerFSManager
from .models import (
    DEFAULT_FILESYSTEM, CreatePoolOptions, DeviceSlot, MergerFSPoolOptions, PoolConfig,
    PoolRecord, PoolType, RaidLevel, SyncSchedule, UnmountOptions, parse_enum,
    validate_device_list, validate_device_path, validate_filesystem, validate_pool_name,
)
from .pool_registry import PoolRegistry
from .settings import EngineSettings
from .snapraid_manager import SnapRAIDManager
from .status_reconciler import StatusReconciler
from .system_executor import CommandExecutor

logger = logging.getLogger(__name__)


class LifecycleManager:
    """Creates, mounts, unmounts, converts and removes pools."""

    def __init__(self, registry: PoolRegistry, prober: DeviceProber, executor: CommandExecutor,
                 device_manager: DeviceManager, mergerfs: MergerFSManager,
                 snapraid: SnapRAIDManager, reconciler: StatusReconciler,
                 settings: EngineSettings):
        self._registry = registry
        self._prober = prober
        self._executor = executor
        self._devices = device_manager
        self._mergerfs = mergerfs
        self._snapraid = snapraid
        self._reconciler = reconciler
        self._settings = settings

    # Checks shared by every creation path

    def _check_new_devices(self, devices: List[str]) -> None:
        self._registry.ensure_devices_available(devices)
        self._devices.check_unused(devices)

    def _largest_device_size(self, devices: List[str]) -> int:
        return max((self._prober.device_size(device) for device in devices), default=0)

    def create_single_device_pool(self, name: str, device: str, filesystem: Optional[str] = None,
                                  options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Create a pool on one device.

        Args:
            name: Pool name
            device: Block device path
            filesystem: xfs, ext4 or btrfs; None keeps an existing filesystem
                or formats a blank device as xfs
            options: format, automount, comment, mount_options

        Returns:
            Reconciled pool view
        """
        opts = CreatePoolOptions.from_dict(options)
        validate_pool_name(name)
        validate_device_path(device)
        if filesystem is not None:
            validate_filesystem(filesystem)

        with self._registry.creation_lock():
            self._registry.ensure_name_available(name)
            self._check_new_devices([device])

            with step('format'):
                prepared = self._devices.prepare_device(device, filesystem, opts.format)

            mount_point = self._settings.pool_mount_point(name)
            with step('mount'):
                if prepared.filesystem == PoolType.BTRFS.value:
                    self._mount_btrfs([prepared.target], mount_point, opts.mount_options)
                else:
                    self._devices.mount_device(prepared.target, mount_point, prepared.uuid,
                                               opts.mount_options)

            slot_id = prepared.uuid
            if prepared.filesystem == PoolType.BTRFS.value:
                slot_id = self._prober.member_uuid(prepared.target)

            record = PoolRecord(
                id=self._registry.generate_id(),
                name=name,
                type=PoolType(prepared.filesystem),
                automount=opts.automount,
                comment=opts.comment,
                data_devices=[DeviceSlot(1, prepared.target, slot_id, prepared.filesystem)],
                config=PoolConfig(mount_options=opts.mount_options),
            )
            with step('persist'):
                self._registry.add(record)

        logger.info(f"Created {prepared.filesystem} pool {name} on {prepared.target}",
                    extra={'pool_id': record.id, 'pool_name': name})
        return self._reconciler.build_view(record)

    def create_multi_device_pool(self, name: str, devices: List[str], raid_level: str,
                                 options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Create one btrfs filesystem across several devices.

        Every device is formatted; devices that already carry a filesystem
        need ``format: true``.
        """
        opts = CreatePoolOptions.from_dict(options)
        validate_pool_name(name)
        devices = validate_device_list(devices)
        level = parse_enum(RaidLevel, raid_level, "RAID level")

        if len(devices) < 2:
            raise ValidationError("Multi-device pools require at least 2 devices")
        if len(devices) < level.min_devices:
            raise ValidationError(f"{level.value} requires at least {level.min_devices} devices")
        if opts.format is False:
            raise ValidationError("Creating a multi-device pool always formats its devices; "
                                  "format cannot be false")

        with self._registry.creation_lock():
            self._registry.ensure_name_available(name)
            self._check_new_devices(devices)

            for device in devices:
                info = self._prober.check_filesystem(device)
                if info.formatted and opts.format is not True:
                    raise ValidationError(
                        f"Device {device} already contains a {info.filesystem} filesystem; "
                        f"set format to true to overwrite it"
                    )

            with step('partition'):
                targets = [self._devices.ensure_partition(device) for device in devices]

            with step('format'):
                self._executor.check(
                    ['mkfs.btrfs', '-f', '-d', level.value, '-m', level.value, '-L', name] + targets,
                    message=f"Error creating {level.value} btrfs filesystem",
                )
                self._devices.settle()

            mount_point = self._settings.pool_mount_point(name)
            with step('mount'):
                self._mount_btrfs(targets, mount_point, opts.mount_options)

            slots = [
                DeviceSlot(number, target, self._prober.member_uuid(target), PoolType.BTRFS.value)
                for number, target in enumerate(targets, start=1)
            ]
            record = PoolRecord(
                id=self._registry.generate_id(),
                name=name,
                type=PoolType.BTRFS,
                automount=opts.automount,
                comment=opts.comment,
                data_devices=slots,
                config=PoolConfig(raid_level=level, mount_options=opts.mount_options),
            )
            with step('persist'):
                self._registry.add(record)

        logger.info(f"Created {level.value} btrfs pool {name} with {len(targets)} devices",
                    extra={'pool_id': record.id, 'pool_name': name})
        return self._reconciler.build_view(record)

    def create_mergerfs_pool(self, name: str, devices: List[str],
                             filesystem: str = DEFAULT_FILESYSTEM,
                             options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Create a union pool: each device gets its own filesystem and branch
        mount, then mergerfs joins the branches at the pool mount point.

        ``options['snapraid']['device']`` adds a parity device and writes the
        SnapRAID config.
        """
        opts = MergerFSPoolOptions.from_dict(options)
        validate_pool_name(name)
        devices = validate_device_list(devices)
        validate_filesystem(filesystem or DEFAULT_FILESYSTEM)
        filesystem = filesystem or DEFAULT_FILESYSTEM

        parity_device = opts.snapraid_device
        if parity_device and parity_device in devices:
            raise ValidationError(f"Parity device {parity_device} cannot also be a data device")

        with self._registry.creation_lock():
            self._registry.ensure_name_available(name)
            self._check_new_devices(devices + ([parity_device] if parity_device else []))

            if parity_device:
                largest = self._largest_device_size(devices)
                if self._prober.device_size(parity_device) < largest:
                    raise ValidationError(
                        f"Parity device {parity_device} must be at least as large as the "
                        f"largest data device"
                    )

            data_slots: List[DeviceSlot] = []
            for number, device in enumerate(devices, start=1):
                with step(f'prepare {device}'):
                    prepared = self._devices.prepare_device(device, filesystem, opts.format)
                with step(f'mount branch {number}'):
                    self._devices.mount_device(prepared.target,
                                               self._settings.branch_mount_point(name, number),
                                               prepared.uuid)
                data_slots.append(DeviceSlot(number, prepared.target, prepared.uuid,
                                             prepared.filesystem))

            parity_slots: List[DeviceSlot] = []
            if parity_device:
                with step(f'prepare {parity_device}'):
                    prepared = self._devices.prepare_device(parity_device, filesystem, opts.format)
                with step('mount parity 1'):
                    self._devices.mount_device(prepared.target,
                                               self._settings.parity_mount_point(name, 1),
                                               prepared.uuid)
                parity_slots.append(DeviceSlot(1, prepared.target, prepared.uuid,
                                               prepared.filesystem))

            config = PoolConfig(
                policies=opts.policies,
                minfreespace=opts.minfreespace,
                moveonenospc=opts.moveonenospc,
                global_options=list(opts.global_options),
                custom_options=opts.custom_options,
                sync=SyncSchedule() if parity_slots else None,
            )
            mount_point = self._settings.pool_mount_point(name)
            branches = [self._settings.branch_mount_point(name, slot.slot) for slot in data_slots]
            with step('mount union'):
                self._mergerfs.mount_pool(branches, mount_point, config)

            record = PoolRecord(
                id=self._registry.generate_id(),
                name=name,
                type=PoolType.MERGERFS,
                automount=opts.automount,
                comment=opts.comment,
                data_devices=data_slots,
                parity_devices=parity_slots,
                config=config,
            )
            with step('persist'):
                self._registry.add(record)

            if parity_slots:
                with step('parity config'):
                    self._snapraid.update_config(record)

        logger.info(f"Created mergerfs pool {name} with {len(data_slots)} data and "
                    f"{len(parity_slots)} parity devices",
                    extra={'pool_id': record.id, 'pool_name': name})
        return self._reconciler.build_view(record)

    def _mount_btrfs(self, targets: List[str], mount_point: str,
                     mount_options: Optional[str] = None) -> bool:
        scan = self._executor.run(['btrfs', 'device', 'scan'])
        if not scan.success:
            logger.warning(f"btrfs device scan failed: {scan.stderr.strip()}")

        options = []
        if len(targets) > 1:
            options.extend(f"device={target}" for target in targets)
        if mount_options:
            options.append(mount_options)
        return self._devices.mount_device(targets[0], mount_point,
                                          options=','.join(options) or None, fstype='btrfs')

    def mount_record(self, record: PoolRecord) -> bool:
        """
        Mount every layer of a pool. Already mounted layers are skipped.

        Returns:
            True if the pool mount point was mounted by this call
        """
        mount_point = self._settings.pool_mount_point(record.name)

        if record.type is PoolType.MERGERFS:
            for slot in record.data_devices:
                with step(f'mount branch {slot.slot}'):
                    self._devices.mount_device(
                        slot.device, self._settings.branch_mount_point(record.name, slot.slot), slot.id
                    )
            for slot in record.parity_devices:
                with step(f'mount parity {slot.slot}'):
                    self._devices.mount_device(
                        slot.device, self._settings.parity_mount_point(record.name, slot.slot), slot.id
                    )
            branches = [self._settings.branch_mount_point(record.name, slot.slot)
                        for slot in record.data_devices]
            with step('mount union'):
                return self._mergerfs.mount_pool(branches, mount_point, record.config)

        if not record.data_devices:
            raise ValidationError(f"Pool {record.name} has no devices to mount")

        with step('mount'):
            if record.type is PoolType.BTRFS:
                return self._mount_btrfs([slot.device for slot in record.data_devices], mount_point,
                                         record.config.mount_options)
            slot = record.data_devices[0]
            return self._devices.mount_device(slot.device, mount_point, slot.id,
                                              record.config.mount_options)

    def unmount_record(self, record: PoolRecord, force: bool = False,
                       remove_directory: bool = False) -> bool:
        """Unmount a pool and, for union pools, its branches and parity mounts."""
        mount_point = self._settings.pool_mount_point(record.name)
        with step('unmount'):
            unmounted = self._devices.unmount(mount_point, force=force,
                                              remove_directory=remove_directory)

        if record.type is PoolType.MERGERFS:
            for slot in record.data_devices:
                with step(f'unmount branch {slot.slot}'):
                    self._devices.unmount(self._settings.branch_mount_point(record.name, slot.slot),
                                          force=force, remove_directory=remove_directory)
            for slot in record.parity_devices:
                with step(f'unmount parity {slot.slot}'):
                    self._devices.unmount(self._settings.parity_mount_point(record.name, slot.slot),
                                          force=force, remove_directory=remove_directory)
        return unmounted

    def mount_pool_by_id(self, pool_id: str) -> Dict[str, Any]:
        with self._registry.pool_lock(pool_id):
            record = self._registry.get(pool_id)
            mounted = self.mount_record(record)
        mount_point = self._settings.pool_mount_point(record.name)
        return {
            'success': True,
            'message': (f"Pool {record.name} mounted at {mount_point}" if mounted
                        else f"Pool {record.name} is already mounted at {mount_point}"),
            'mountPoint': mount_point,
            'alreadyMounted': not mounted,
            'pool': self._reconciler.build_view(record),
        }

    def unmount_pool_by_id(self, pool_id: str,
                           options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Unmount a pool.

        Args:
            pool_id: Pool ID
            options: force (``umount -f``, then lazy) and remove_directory

        Returns:
            Result dictionary; unmounting an unmounted pool is not an error
        """
        opts = UnmountOptions.from_dict(options)
        with self._registry.pool_lock(pool_id):
            record = self._registry.get(pool_id)
            unmounted = self.unmount_record(record, force=opts.force,
                                            remove_directory=opts.remove_directory)
        mount_point = self._settings.pool_mount_point(record.name)
        return {
            'success': True,
            'message': (f"Successfully unmounted {mount_point}" if unmounted
                        else f"{mount_point} was not mounted"),
            'mountPoint': mount_point,
            'directoryRemoved': opts.remove_directory,
            'alreadyUnmounted': not unmounted,
        }

    def remove_pool_by_id(self, pool_id: str, force: bool = False) -> Dict[str, Any]:
        """
        Unmount a pool, remove its mount points and SnapRAID config, and
        delete its record. Device content is left untouched.
        """
        if not isinstance(force, bool):
            raise ValidationError("'force' must be a boolean")

        with self._registry.pool_lock(pool_id):
            record = self._registry.get(pool_id)

            if record.type is PoolType.MERGERFS and self._snapraid.is_operation_running(record.name):
                raise ValidationError(
                    f"Cannot remove pool {record.name} while a SnapRAID operation is running"
                )

            self.unmount_record(record, force=force, remove_directory=True)
            if record.type is PoolType.MERGERFS:
                for root in (self._settings.mergerfs_root, self._settings.snapraid_root):
                    self._devices.remove_mount_point(os.path.join(root, record.name))
                with step('remove parity config'):
                    self._snapraid.remove_config(record.name)

            with step('persist'):
                self._registry.remove(pool_id)

        logger.info(f"Pool {record.name} removed", extra={'pool_id': pool_id, 'pool_name': record.name})
        return {
            'success': True,
            'message': f"Pool \"{record.name}\" (ID: {pool_id}) removed successfully",
        }

    def change_pool_raid_level(self, pool_id: str, new_level: str) -> Dict[str, Any]:
        """
        Convert the data and metadata profile of a mounted btrfs pool.

        Raising redundancy needs free space of at least
        ``raid_convert_min_free_percent`` of the pool. The balance runs without
        a timeout and this call blocks until it finishes.
        """
        level = parse_enum(RaidLevel, new_level, "RAID level")

        with self._registry.pool_lock(pool_id):
            record = self._registry.get(pool_id)
            if record.type is not PoolType.BTRFS:
                raise ValidationError("RAID level can only be changed for btrfs pools")

            mount_point = self._settings.pool_mount_point(record.name)
            if not self._prober.is_mounted(mount_point):
                raise ValidationError(f"Pool {record.name} must be mounted to change its RAID level")

            device_count = len(record.data_devices)
            if device_count < level.min_devices:
                raise ValidationError(
                    f"{level.value} requires at least {level.min_devices} devices, "
                    f"pool {record.name} has {device_count}"
                )

            current = record.config.raid_level or RaidLevel.SINGLE
            if current is level:
                return {
                    'success': True,
                    'message': f"Pool {record.name} already uses {level.value}",
                    'pool': self._reconciler.build_view(record),
                }

            if level.redundancy > current.redundancy:
                usage = self._prober.space_usage(mount_point)
                required = self._settings.raid_convert_min_free_percent
                if usage is None or usage.free_percent < required:
                    free = 0.0 if usage is None else usage.free_percent
                    raise ValidationError(
                        f"Converting to {level.value} requires at least {required:g}% free space; "
                        f"pool {record.name} has {free:.1f}%"
                    )

            logger.info(f"Converting pool {record.name} from {current.value} to {level.value}",
                        extra={'pool_id': pool_id, 'pool_name': record.name, 'operation': 'balance'})
            with step('balance'):
                self._executor.check(
                    ['btrfs', 'balance', 'start', f'-dconvert={level.value}',
                     f'-mconvert={level.value}', mount_point],
                    timeout=0,
                    message=f"Error converting pool {record.name} to {level.value}",
                )

            def change(stored: PoolRecord) -> None:
                stored.config.raid_level = level
                if level is RaidLevel.SINGLE:
                    stored.config.add_note(
                        f"Converted from {current.value} to single: all devices stay attached "
                        f"but data no longer has redundancy"
                    )

            with step('persist'):
                record = self._registry.update(pool_id, change)

        return {
            'success': True,
            'message': f"Pool {record.name} converted from {current.value} to {level.value}",
            'pool': self._reconciler.build_view(record),
        }

    def toggle_automount_by_id(self, pool_id: str, automount: bool) -> Dict[str, Any]:
        if not isinstance(automount, bool):
            raise ValidationError("Automount value must be a boolean")

        def change(record: PoolRecord) -> None:
            record.automount = automount

        with self._registry.pool_lock(pool_id):
            record = self._registry.update(pool_id, change)
        return {
            'success': True,
            'message': (f"Automount {'enabled' if automount else 'disabled'} for pool "
                        f"\"{record.name}\" (ID: {pool_id})"),
            'pool': self._reconciler.build_view(record),
        }

    def update_pool_comment(self, pool_id: str, comment: Optional[str]) -> Dict[str, Any]:
        if comment is not None and not isinstance(comment, str):
            raise ValidationError("Comment must be a string")

        def change(record: PoolRecord) -> None:
            record.comment = comment or ""

        with self._registry.pool_lock(pool_id):
            record = self._registry.update(pool_id, change)
        return {
            'success': True,
            'message': f"Comment updated for pool \"{record.name}\" (ID: {pool_id})",
            'pool': self._reconciler.build_view(record),
        }

    def update_pools_order(self, pool_ids: List[str]) -> Dict[str, Any]:
        records = self._registry.reorder(pool_ids)
        return {
            'success': True,
            'message': f"Successfully updated order for {len(pool_ids)} pool(s)",
            'updatedCount': len(pool_ids),
            'order': [record.id for record in records],
        }

    def _ensure_free_device(self, device: str) -> None:
        validate_device_path(device)
        owner = self._registry.owner_of(device)
        if owner:
            raise ValidationError(f"Device {device} is a member of pool \"{owner.name}\"")

    def format_device(self, device: str, filesystem: str = DEFAULT_FILESYSTEM) -> Dict[str, Any]:
        """Format a device that is not part of any pool."""
        validate_device_path(device)
        validate_filesystem(filesystem)
        self._check_new_devices([device])
        prepared = self._devices.format_device(device, filesystem, force=True)
        return {
            'success': True,
            'message': f"Device {device} formatted with {filesystem}",
            **prepared.to_dict(),
        }

    def check_device_filesystem(self, device: str) -> Dict[str, Any]:
        self._ensure_free_device(device)
        return self._prober.check_filesystem(device).to_dict()
