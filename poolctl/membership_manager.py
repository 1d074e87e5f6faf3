"""Adding, removing and replacing data and parity devices of existing pools."""

import logging
from typing import Any, Dict, List, Optional

from .device_manager import DeviceManager
from .device_prober import DeviceProber
from .errors import NotFoundError, PoolError, ValidationError, step
from .mergerfs_manager import MergerFSManager
from .models import (
    AddDevicesOptions, DeviceSlot, DiskType, PoolRecord, PoolType, RaidLevel,
    RemoveDevicesOptions, SyncSchedule, slot_matches, validate_device_list,
    validate_device_path,
)
from .pool_registry import PoolRegistry
from .settings import EngineSettings
from .snapraid_manager import MAX_PARITY_LEVELS, SnapRAIDManager
from .status_reconciler import StatusReconciler
from .system_executor import CommandExecutor

logger = logging.getLogger(__name__)


class MembershipManager:
    """
    Keeps device membership, the union mount and the SnapRAID config in step.

    btrfs pools change membership inside one filesystem (``btrfs device``
    and ``btrfs replace``); union pools add and drop whole branches.
    """

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

    # Shared helpers

    def _result(self, record: PoolRecord, message: str, **extra: Any) -> Dict[str, Any]:
        result = {'success': True, 'message': message, 'pool': self._reconciler.build_view(record)}
        result.update(extra)
        return result

    def _pool_mount_point(self, record: PoolRecord) -> str:
        return self._settings.pool_mount_point(record.name)

    def _slot_mount_point(self, record: PoolRecord, slot: DeviceSlot, disk_type: DiskType) -> str:
        if disk_type is DiskType.PARITY:
            return self._settings.parity_mount_point(record.name, slot.slot)
        return self._settings.branch_mount_point(record.name, slot.slot)

    def _branches(self, slots: List[DeviceSlot], record: PoolRecord) -> List[str]:
        return [self._settings.branch_mount_point(record.name, slot.slot)
                for slot in sorted(slots, key=lambda item: item.slot)]

    def _check_new_devices(self, devices: List[str]) -> None:
        self._registry.ensure_devices_available(devices)
        self._devices.check_unused(devices)

    def _find_slots(self, record: PoolRecord, devices: List[str],
                    disk_type: DiskType) -> List[DeviceSlot]:
        slots = record.data_devices if disk_type is DiskType.DATA else record.parity_devices
        found = []
        for device in devices:
            matches = [slot for slot in slots
                       if slot_matches(slot, [device], self._prober.parent_disk)]
            if not matches:
                raise NotFoundError(
                    f"Device {device} is not a {disk_type.value} device of pool \"{record.name}\""
                )
            found.append(matches[0])
        return found

    def _require_mounted(self, record: PoolRecord, action: str) -> str:
        mount_point = self._pool_mount_point(record)
        if not self._prober.is_mounted(mount_point):
            raise ValidationError(f"Pool {record.name} must be mounted to {action}")
        return mount_point

    def _require_union(self, record: PoolRecord) -> None:
        if record.type is not PoolType.MERGERFS:
            raise ValidationError("Only MergerFS pools support parity devices")

    def _unsupported(self, record: PoolRecord, action: str) -> ValidationError:
        return ValidationError(f"{action} is not supported for {record.type.value} pools")

    def _check_parity_size(self, record: PoolRecord, devices: List[str]) -> None:
        largest = max((self._prober.device_size(slot.device) for slot in record.data_devices),
                      default=0)
        for device in devices:
            if self._prober.device_size(device) < largest:
                raise ValidationError(
                    f"Parity device {device} must be at least as large as the largest data device"
                )

    def _check_parity_idle(self, record: PoolRecord) -> None:
        if self._snapraid.is_operation_running(record.name):
            raise ValidationError(
                f"A SnapRAID operation is running for pool {record.name}; try again when it has finished"
            )

    def _rewrite_parity_config(self, record: PoolRecord) -> None:
        if record.parity_devices:
            with step('parity config'):
                self._snapraid.update_config(record)

    # Data devices

    def add_devices_to_pool(self, pool_id: str, devices: List[str],
                            options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Add data devices to a btrfs or union pool.

        Args:
            pool_id: Pool ID
            devices: Block device paths
            options: format (tri-state) and filesystem for union branches

        Returns:
            Result dictionary with the reconciled pool view
        """
        opts = AddDevicesOptions.from_dict(options)
        devices = validate_device_list(devices)

        with self._registry.pool_lock(pool_id):
            record = self._registry.get(pool_id)
            self._check_new_devices(devices)

            if record.type is PoolType.BTRFS:
                record = self._add_btrfs_devices(record, devices, opts)
            elif record.type is PoolType.MERGERFS:
                record = self._add_union_devices(record, devices, opts)
            else:
                raise self._unsupported(record, "Adding devices")

        return self._result(record, f"Successfully added {len(devices)} device(s) to pool "
                                    f"\"{record.name}\"")

    def _add_btrfs_devices(self, record: PoolRecord, devices: List[str],
                           opts: AddDevicesOptions) -> PoolRecord:
        mount_point = self._require_mounted(record, "add devices")
        if opts.format is False:
            raise ValidationError("Devices added to a btrfs pool are always formatted; "
                                  "format cannot be false")
        for device in devices:
            info = self._prober.check_filesystem(device)
            if info.formatted and opts.format is not True:
                raise ValidationError(
                    f"Device {device} already contains a {info.filesystem} filesystem; "
                    f"set format to true to overwrite it"
                )

        with step('partition'):
            targets = [self._devices.ensure_partition(device) for device in devices]

        args = ['btrfs', 'device', 'add'] + (['-f'] if opts.format else []) + targets + [mount_point]
        with step('device add'):
            self._executor.check(args, message=f"Error adding devices to pool {record.name}")
        self._devices.settle()

        new_slots = []
        next_slot = record.next_slot()
        for offset, target in enumerate(targets):
            new_slots.append(DeviceSlot(next_slot + offset, target,
                                        self._prober.member_uuid(target), PoolType.BTRFS.value))

        def append(stored: PoolRecord) -> None:
            stored.add_slots(new_slots)

        with step('persist'):
            record = self._registry.update(record.id, append)

        if record.config.raid_level is None:
            logger.info(f"Pool {record.name} is now multi-device, converting to raid1",
                        extra={'pool_id': record.id, 'pool_name': record.name, 'operation': 'balance'})
            with step('balance'):
                self._executor.check(
                    ['btrfs', 'balance', 'start', '-dconvert=raid1', '-mconvert=raid1', mount_point],
                    timeout=0,
                    message=f"Error converting pool {record.name} to raid1",
                )

            def convert(stored: PoolRecord) -> None:
                stored.config.raid_level = RaidLevel.RAID1

            with step('persist'):
                record = self._registry.update(record.id, convert)

        return record

    def _add_union_devices(self, record: PoolRecord, devices: List[str],
                           opts: AddDevicesOptions) -> PoolRecord:
        mount_point = self._pool_mount_point(record)
        old_branches = self._branches(record.data_devices, record)
        filesystem = opts.filesystem
        if filesystem is None and record.data_devices:
            filesystem = record.data_devices[0].filesystem

        new_slots = []
        next_slot = record.next_slot()
        try:
            for offset, device in enumerate(devices):
                number = next_slot + offset
                with step(f'prepare {device}'):
                    prepared = self._devices.prepare_device(device, filesystem, opts.format)
                with step(f'mount branch {number}'):
                    self._devices.mount_device(prepared.target,
                                               self._settings.branch_mount_point(record.name, number),
                                               prepared.uuid)
                new_slots.append(DeviceSlot(number, prepared.target, prepared.uuid, prepared.filesystem))

            if self._prober.is_mounted(mount_point):
                with step('remount union'):
                    self._mergerfs.remount_pool(old_branches,
                                                self._branches(record.data_devices + new_slots, record),
                                                mount_point, record.config)
        except PoolError:
            self._release_branches(record, new_slots)
            raise

        def append(stored: PoolRecord) -> None:
            stored.add_slots(new_slots)

        with step('persist'):
            record = self._registry.update(record.id, append)

        self._rewrite_parity_config(record)
        return record

    def _release_branches(self, record: PoolRecord, slots: List[DeviceSlot]) -> None:
        """Unmount branches that were mounted for an add that did not complete."""
        for slot in slots:
            branch = self._settings.branch_mount_point(record.name, slot.slot)
            try:
                self._devices.unmount(branch, remove_directory=True)
            except PoolError as e:
                logger.warning(f"Could not release branch {branch} of pool {record.name}: {e.message}",
                               extra={'pool_id': record.id, 'pool_name': record.name})

    def remove_devices_from_pool(self, pool_id: str, devices: List[str],
                                 options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Remove data devices. Slot numbers of the remaining devices do not change.

        btrfs pools migrate data off the removed members; union pools drop the
        branches, and ``unmount`` also unmounts the branch devices.
        """
        opts = RemoveDevicesOptions.from_dict(options)
        devices = validate_device_list(devices)

        with self._registry.pool_lock(pool_id):
            record = self._registry.get(pool_id)
            slots = self._find_slots(record, devices, DiskType.DATA)
            remaining = len(record.data_devices) - len(slots)
            if remaining < 1:
                raise ValidationError(f"Pool {record.name} must keep at least one data device")

            if record.type is PoolType.BTRFS:
                record = self._remove_btrfs_devices(record, slots, remaining)
            elif record.type is PoolType.MERGERFS:
                record = self._remove_union_devices(record, slots, opts)
            else:
                raise self._unsupported(record, "Removing devices")

        return self._result(record, f"Successfully removed {len(slots)} device(s) from pool "
                                    f"\"{record.name}\"")

    def _remove_btrfs_devices(self, record: PoolRecord, slots: List[DeviceSlot],
                              remaining: int) -> PoolRecord:
        mount_point = self._require_mounted(record, "remove devices")
        level = record.config.raid_level
        if level is not None and level.redundancy and remaining < level.min_devices:
            raise ValidationError(
                f"{level.value} needs at least {level.min_devices} devices; "
                f"convert pool {record.name} to another RAID level first"
            )

        with step('device remove'):
            self._executor.check(
                ['btrfs', 'device', 'remove'] + [slot.device for slot in slots] + [mount_point],
                timeout=0,
                message=f"Error removing devices from pool {record.name}",
            )

        removed = {slot.slot for slot in slots}

        def drop(stored: PoolRecord) -> None:
            stored.data_devices = [slot for slot in stored.data_devices if slot.slot not in removed]

        with step('persist'):
            return self._registry.update(record.id, drop)

    def _remove_union_devices(self, record: PoolRecord, slots: List[DeviceSlot],
                              opts: RemoveDevicesOptions) -> PoolRecord:
        mount_point = self._pool_mount_point(record)
        removed = {slot.slot for slot in slots}
        old_branches = self._branches(record.data_devices, record)
        new_branches = self._branches(
            [slot for slot in record.data_devices if slot.slot not in removed], record
        )

        if self._prober.is_mounted(mount_point):
            with step('remount union'):
                self._mergerfs.remount_pool(old_branches, new_branches, mount_point, record.config)

        if opts.unmount:
            for slot in slots:
                with step(f'unmount branch {slot.slot}'):
                    self._devices.unmount(self._settings.branch_mount_point(record.name, slot.slot),
                                          force=opts.force, remove_directory=True)

        def drop(stored: PoolRecord) -> None:
            stored.data_devices = [slot for slot in stored.data_devices if slot.slot not in removed]
            rules = []
            for rule in stored.config.path_rules:
                rule.target_devices = [target for target in rule.target_devices
                                       if target not in removed]
                if rule.target_devices:
                    rules.append(rule)
            stored.config.path_rules = rules

        with step('persist'):
            record = self._registry.update(record.id, drop)

        self._rewrite_parity_config(record)
        return record

    def replace_device_in_pool(self, pool_id: str, old_device: str, new_device: str,
                               options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Swap one data device for another. The slot number and, for union
        pools, the branch mount point are kept so path rules stay valid.
        """
        opts = AddDevicesOptions.from_dict(options)
        validate_device_path(old_device)
        validate_device_path(new_device)
        if old_device == new_device:
            raise ValidationError("Old and new device cannot be the same")

        with self._registry.pool_lock(pool_id):
            record = self._registry.get(pool_id)
            slot = self._find_slots(record, [old_device], DiskType.DATA)[0]
            self._check_new_devices([new_device])

            if record.type is PoolType.BTRFS:
                record = self._replace_btrfs_device(record, slot, new_device, opts)
            elif record.type is PoolType.MERGERFS:
                record = self._replace_union_slot(record, slot, DiskType.DATA, new_device, opts)
            else:
                raise self._unsupported(record, "Replacing devices")

        return self._result(record, f"Successfully replaced {old_device} with {new_device} in pool "
                                    f"\"{record.name}\"")

    def _replace_btrfs_device(self, record: PoolRecord, slot: DeviceSlot, new_device: str,
                              opts: AddDevicesOptions) -> PoolRecord:
        mount_point = self._require_mounted(record, "replace devices")
        if opts.format is False:
            raise ValidationError("The replacement device is always overwritten; "
                                  "format cannot be false")
        info = self._prober.check_filesystem(new_device)
        if info.formatted and opts.format is not True:
            raise ValidationError(
                f"Device {new_device} already contains a {info.filesystem} filesystem; "
                f"set format to true to overwrite it"
            )

        with step('partition'):
            target = self._devices.ensure_partition(new_device)

        args = ['btrfs', 'replace', 'start', '-B'] + (['-f'] if opts.format else [])
        args += [slot.device, target, mount_point]
        with step('replace'):
            self._executor.check(args, timeout=0,
                                 message=f"Error replacing {slot.device} in pool {record.name}")
        self._devices.settle()

        member_uuid = self._prober.member_uuid(target)

        def swap(stored: PoolRecord) -> None:
            for item in stored.data_devices:
                if item.slot == slot.slot:
                    item.device = target
                    item.id = member_uuid

        with step('persist'):
            return self._registry.update(record.id, swap)

    def _replace_union_slot(self, record: PoolRecord, slot: DeviceSlot, disk_type: DiskType,
                            new_device: str, opts: AddDevicesOptions) -> PoolRecord:
        mount_point = self._pool_mount_point(record)
        slot_mount_point = self._slot_mount_point(record, slot, disk_type)
        filesystem = opts.filesystem or slot.filesystem

        if disk_type is DiskType.PARITY:
            self._check_parity_size(record, [new_device])

        with step(f'prepare {new_device}'):
            prepared = self._devices.prepare_device(new_device, filesystem, opts.format)

        union_mounted = disk_type is DiskType.DATA and self._prober.is_mounted(mount_point)
        if union_mounted:
            with step('unmount union'):
                self._mergerfs.unmount_pool(mount_point)

        with step(f'unmount {slot.device}'):
            self._devices.unmount(slot_mount_point)
        with step(f'mount {prepared.target}'):
            self._devices.mount_device(prepared.target, slot_mount_point, prepared.uuid)

        def swap(stored: PoolRecord) -> None:
            slots = stored.data_devices if disk_type is DiskType.DATA else stored.parity_devices
            for item in slots:
                if item.slot == slot.slot:
                    item.device = prepared.target
                    item.id = prepared.uuid
                    item.filesystem = prepared.filesystem

        with step('persist'):
            record = self._registry.update(record.id, swap)

        if union_mounted:
            with step('mount union'):
                self._mergerfs.mount_pool(self._branches(record.data_devices, record),
                                          mount_point, record.config)

        self._rewrite_parity_config(record)
        return record

    # Parity devices

    def add_parity_devices_to_pool(self, pool_id: str, devices: List[str],
                                   options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Add SnapRAID parity devices to a union pool.

        Each parity device must be at least as large as the largest data
        device. The first parity device enables the sync schedule.
        """
        opts = AddDevicesOptions.from_dict(options)
        devices = validate_device_list(devices)

        with self._registry.pool_lock(pool_id):
            record = self._registry.get(pool_id)
            self._require_union(record)
            if len(record.parity_devices) + len(devices) > MAX_PARITY_LEVELS:
                raise ValidationError(f"SnapRAID supports at most {MAX_PARITY_LEVELS} parity devices")
            self._check_new_devices(devices)
            self._check_parity_idle(record)
            self._check_parity_size(record, devices)

            filesystem = opts.filesystem
            if filesystem is None and record.data_devices:
                filesystem = record.data_devices[0].filesystem

            new_slots = []
            next_slot = record.next_slot(DiskType.PARITY)
            for offset, device in enumerate(devices):
                number = next_slot + offset
                with step(f'prepare {device}'):
                    prepared = self._devices.prepare_device(device, filesystem, opts.format)
                with step(f'mount parity {number}'):
                    self._devices.mount_device(prepared.target,
                                               self._settings.parity_mount_point(record.name, number),
                                               prepared.uuid)
                new_slots.append(DeviceSlot(number, prepared.target, prepared.uuid,
                                            prepared.filesystem))

            def append(stored: PoolRecord) -> None:
                stored.add_slots(new_slots, DiskType.PARITY)
                if stored.config.sync is None:
                    stored.config.sync = SyncSchedule()

            with step('persist'):
                record = self._registry.update(record.id, append)

            self._rewrite_parity_config(record)

        return self._result(record, f"Successfully added {len(devices)} parity device(s) to pool "
                                    f"\"{record.name}\"")

    def remove_parity_devices_from_pool(self, pool_id: str, devices: List[str],
                                        options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Remove parity devices. Removing the last one deletes the SnapRAID
        config and the sync schedule and reports ``snapraidDisabled``.
        """
        opts = RemoveDevicesOptions.from_dict(options)
        devices = validate_device_list(devices)

        with self._registry.pool_lock(pool_id):
            record = self._registry.get(pool_id)
            self._require_union(record)
            slots = self._find_slots(record, devices, DiskType.PARITY)
            self._check_parity_idle(record)

            if opts.unmount:
                for slot in slots:
                    with step(f'unmount parity {slot.slot}'):
                        self._devices.unmount(self._settings.parity_mount_point(record.name, slot.slot),
                                              force=opts.force, remove_directory=True)

            removed = {slot.slot for slot in slots}

            def drop(stored: PoolRecord) -> None:
                stored.parity_devices = [slot for slot in stored.parity_devices
                                         if slot.slot not in removed]
                if not stored.parity_devices:
                    stored.config.sync = None

            with step('persist'):
                record = self._registry.update(record.id, drop)

            disabled = not record.parity_devices
            if disabled:
                with step('remove parity config'):
                    self._snapraid.remove_config(record.name)
                logger.info(f"All parity devices removed from pool {record.name}, SnapRAID disabled",
                            extra={'pool_id': record.id, 'pool_name': record.name})
            else:
                self._rewrite_parity_config(record)

        message = f"Successfully removed {len(slots)} parity device(s) from pool \"{record.name}\""
        if disabled:
            message += ". SnapRAID configuration removed."
        return self._result(record, message, snapraidDisabled=disabled)

    def replace_parity_device_in_pool(self, pool_id: str, old_device: str, new_device: str,
                                      options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        opts = AddDevicesOptions.from_dict(options)
        validate_device_path(old_device)
        validate_device_path(new_device)
        if old_device == new_device:
            raise ValidationError("Old and new device cannot be the same")

        with self._registry.pool_lock(pool_id):
            record = self._registry.get(pool_id)
            self._require_union(record)
            slot = self._find_slots(record, [old_device], DiskType.PARITY)[0]
            self._check_new_devices([new_device])
            self._check_parity_idle(record)
            record = self._replace_union_slot(record, slot, DiskType.PARITY, new_device, opts)

        return self._result(record, f"Successfully replaced parity device {old_device} with "
                                    f"{new_device} in pool \"{record.name}\"")
