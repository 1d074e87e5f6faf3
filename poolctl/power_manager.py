"""Disk spin state queries and control for pool members."""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Tuple

from .device_prober import DeviceProber
from .errors import CommandError, NotFoundError, PoolError, ValidationError
from .models import DeviceSlot, DiskType, PoolRecord, PowerAction, PowerStatus, parse_enum
from .pool_registry import PoolRegistry
from .settings import EngineSettings
from .system_executor import CommandExecutor

logger = logging.getLogger(__name__)

POOL_POWER_WAKE = 'wake'
POOL_POWER_STANDBY = 'standby'
POOL_POWER_MIXED = 'mixed'
POOL_POWER_UNKNOWN = 'unknown'

STATUS_AFTER_ACTION = {
    PowerAction.WAKE: PowerStatus.ACTIVE,
    PowerAction.STANDBY: PowerStatus.STANDBY,
    PowerAction.SLEEP: PowerStatus.SLEEPING,
}

Member = Tuple[DeviceSlot, DiskType]


class PowerManager:
    """
    Per-disk and per-pool power management through ``hdparm`` and ``dd``.

    Pool-wide calls fan out over a bounded thread pool; one disk failing or
    timing out becomes an error entry and never fails the aggregate.
    """

    def __init__(self, registry: PoolRegistry, prober: DeviceProber,
                 executor: CommandExecutor, settings: EngineSettings):
        self._registry = registry
        self._prober = prober
        self._executor = executor
        self._settings = settings

    @staticmethod
    def _members(record: PoolRecord) -> List[Member]:
        return ([(slot, DiskType.DATA) for slot in record.data_devices]
                + [(slot, DiskType.PARITY) for slot in record.parity_devices])

    def _find_disk(self, record: PoolRecord, disk_uuid: str) -> Member:
        for slot, disk_type in self._members(record):
            if slot.id == disk_uuid:
                return slot, disk_type
        raise NotFoundError(f"Disk {disk_uuid} not found in pool {record.name}")

    def _physical_device(self, slot: DeviceSlot) -> str:
        """Whole disk behind a slot, following the UUID if the node was renumbered."""
        device = slot.device
        if slot.id:
            resolved = self._prober.resolve_uuid(slot.id)
            if resolved:
                device = resolved
        return self._prober.parent_disk(device)

    @staticmethod
    def is_nvme(device: str) -> bool:
        return device.startswith('/dev/nvme')

    def query_power_status(self, device: str) -> PowerStatus:
        """
        Read the spin state of a disk with ``hdparm -C``.

        Raises:
            CommandError: If the query times out
        """
        result = self._executor.run(['hdparm', '-C', device], timeout=self._settings.power_timeout)
        if result.timed_out:
            raise CommandError(f"Power status query for {device} timed out",
                               command=result.args, returncode=result.returncode,
                               stderr=result.stderr)
        if not result.success:
            # NVMe controllers do not answer hdparm and never spin down
            return PowerStatus.ACTIVE if self.is_nvme(device) else PowerStatus.UNKNOWN

        output = result.stdout.lower()
        if 'sleeping' in output:
            return PowerStatus.SLEEPING
        if 'standby' in output:
            return PowerStatus.STANDBY
        if 'active' in output or 'idle' in output:
            return PowerStatus.ACTIVE
        return PowerStatus.UNKNOWN

    def _disk_entry(self, record: PoolRecord, slot: DeviceSlot, disk_type: DiskType,
                    device: str) -> Dict[str, Any]:
        return {
            'poolId': record.id,
            'poolName': record.name,
            'diskUuid': slot.id,
            'device': device,
            'slot': slot.slot,
            'diskType': disk_type.value,
        }

    def _status_of(self, record: PoolRecord, slot: DeviceSlot, disk_type: DiskType) -> Dict[str, Any]:
        device = self._physical_device(slot)
        entry = self._disk_entry(record, slot, disk_type, device)
        entry['powerStatus'] = self.query_power_status(device).value
        return entry

    def _control(self, record: PoolRecord, slot: DeviceSlot, disk_type: DiskType,
                 action: PowerAction) -> Dict[str, Any]:
        device = self._physical_device(slot)
        timeout = self._settings.power_timeout

        if action is PowerAction.WAKE:
            args = ['dd', f'if={device}', 'of=/dev/null', 'bs=512', 'count=1', 'iflag=direct']
        else:
            if self.is_nvme(device):
                raise ValidationError(f"NVMe device {device} does not support {action.value}")
            args = ['hdparm', '-Y' if action is PowerAction.SLEEP else '-y', device]

        self._executor.check(args, timeout=timeout, message=f"Failed to {action.value} disk {device}")
        logger.info(f"Disk {device} of pool {record.name}: {action.value} successful",
                    extra={'pool_id': record.id, 'pool_name': record.name, 'operation': action.value})

        entry = self._disk_entry(record, slot, disk_type, device)
        entry.update({
            'action': action.value,
            'powerStatus': STATUS_AFTER_ACTION[action].value,
            'message': f"Disk {action.value} successful",
        })
        return entry

    def get_disk_status(self, pool_id: str, disk_uuid: str) -> Dict[str, Any]:
        record = self._registry.get(pool_id)
        slot, disk_type = self._find_disk(record, disk_uuid)
        return self._status_of(record, slot, disk_type)

    def control_disk(self, pool_id: str, disk_uuid: str, action: str) -> Dict[str, Any]:
        """
        Wake (a direct read), spin down (``hdparm -y``) or sleep (``hdparm -Y``) one disk.

        Raises:
            ValidationError: Unknown action, or standby/sleep on an NVMe device
            NotFoundError: Unknown pool or disk UUID
            CommandError: The power command failed
        """
        power_action = parse_enum(PowerAction, action, "power action")
        record = self._registry.get(pool_id)
        slot, disk_type = self._find_disk(record, disk_uuid)
        entry = self._control(record, slot, disk_type, power_action)
        entry['success'] = True
        return entry

    def _fan_out(self, record: PoolRecord,
                 work: Callable[[DeviceSlot, DiskType], Dict[str, Any]]) -> Dict[str, Any]:
        members = self._members(record)
        results: List[Dict[str, Any]] = []

        if members:
            workers = min(self._settings.power_max_workers, len(members))
            with ThreadPoolExecutor(max_workers=workers) as pool:
                futures = [(slot, disk_type, pool.submit(work, slot, disk_type))
                           for slot, disk_type in members]
                for slot, disk_type, future in futures:
                    try:
                        entry = future.result()
                        entry['success'] = True
                    except PoolError as e:
                        entry = self._failed_entry(record, slot, disk_type, e.message)
                    except Exception as e:
                        entry = self._failed_entry(record, slot, disk_type, str(e) or type(e).__name__)
                    results.append(entry)

        return {
            'poolId': record.id,
            'poolName': record.name,
            'totalDisks': len(members),
            'successCount': sum(1 for entry in results if entry['success']),
            'results': results,
        }

    def _failed_entry(self, record: PoolRecord, slot: DeviceSlot, disk_type: DiskType,
                      message: str) -> Dict[str, Any]:
        logger.warning(f"Power operation failed for {slot.device} in pool {record.name}: {message}",
                       extra={'pool_id': record.id, 'pool_name': record.name})
        entry = self._disk_entry(record, slot, disk_type, slot.device)
        entry.update({
            'success': False,
            'powerStatus': PowerStatus.ERROR.value,
            'error': message,
        })
        return entry

    def control_pool(self, pool_id: str, action: str) -> Dict[str, Any]:
        power_action = parse_enum(PowerAction, action, "power action")
        record = self._registry.get(pool_id)
        aggregate = self._fan_out(
            record, lambda slot, disk_type: self._control(record, slot, disk_type, power_action)
        )
        aggregate['action'] = power_action.value
        return aggregate

    def get_pool_disks_power_status(self, pool_id: str) -> Dict[str, Any]:
        record = self._registry.get(pool_id)
        return self._fan_out(record, lambda slot, disk_type: self._status_of(record, slot, disk_type))

    def get_pool_power_summary(self, pool_id: str) -> str:
        """Collapse member states into wake, standby, mixed or unknown."""
        aggregate = self.get_pool_disks_power_status(pool_id)
        statuses = {entry['powerStatus'] for entry in aggregate['results']}
        if not statuses:
            return POOL_POWER_UNKNOWN

        spun_down = {PowerStatus.STANDBY.value, PowerStatus.SLEEPING.value}
        active = PowerStatus.ACTIVE.value in statuses
        sleeping = bool(statuses & spun_down)

        if statuses == {PowerStatus.ACTIVE.value}:
            return POOL_POWER_WAKE
        if statuses <= spun_down:
            return POOL_POWER_STANDBY
        if active and sleeping:
            return POOL_POWER_MIXED
        return POOL_POWER_UNKNOWN
