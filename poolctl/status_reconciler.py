"""Merges registry records with live mount-table and device state into pool views."""

import os
import logging
from typing import Any, Dict, List, Optional, Set

from .device_prober import DeviceProber, SpaceUsage
from .errors import ProbeError
from .models import DeviceSlot, DiskType, PoolRecord, PoolType
from .pool_registry import PoolRegistry, devices_overlap
from .settings import EngineSettings
from .snapraid_manager import SnapRAIDManager

logger = logging.getLogger(__name__)

STORAGE_MOUNTED = 'mounted'
STORAGE_UNMOUNTED = 'unmounted_or_not_found'
STORAGE_MISSING = 'missing'

HEALTH_HEALTHY = 'healthy'
HEALTH_DEGRADED = 'degraded'
HEALTH_UNKNOWN = 'unknown'


class StatusReconciler:
    """
    Builds the externally visible pool view.

    Reads are side-effect free: nothing here writes to the registry, and
    devices found only in live btrfs metadata are marked ``_injected``.
    """

    def __init__(self, registry: PoolRegistry, prober: DeviceProber,
                 settings: EngineSettings, snapraid: Optional[SnapRAIDManager] = None):
        self._registry = registry
        self._prober = prober
        self._settings = settings
        self._snapraid = snapraid

    def mount_point(self, record: PoolRecord) -> str:
        return self._settings.pool_mount_point(record.name)

    def device_mount_point(self, record: PoolRecord, slot: DeviceSlot,
                           disk_type: DiskType = DiskType.DATA) -> str:
        """Expected mount point of one slot: its branch for union pools, the pool otherwise."""
        if record.type is not PoolType.MERGERFS:
            return self.mount_point(record)
        if disk_type is DiskType.PARITY:
            return self._settings.parity_mount_point(record.name, slot.slot)
        return self._settings.branch_mount_point(record.name, slot.slot)

    def get_pool(self, ref: str) -> Dict[str, Any]:
        return self.build_view(self._registry.find(ref))

    def list_pools(self, pool_type: Optional[str] = None,
                   exclude_type: Optional[str] = None) -> List[Dict[str, Any]]:
        return [self.build_view(record)
                for record in self._registry.list(pool_type=pool_type, exclude_type=exclude_type)]

    def build_view(self, record: PoolRecord) -> Dict[str, Any]:
        mounted_paths = self._mounted_paths()
        mount_point = self.mount_point(record)
        pool_mounted = os.path.normpath(mount_point) in mounted_paths
        usage_cache: Dict[str, Optional[SpaceUsage]] = {}

        btrfs_paths: List[str] = []
        btrfs_missing = False
        if record.type is PoolType.BTRFS and pool_mounted:
            try:
                members = self._prober.btrfs_members(mount_point)
                btrfs_paths = members.paths
                btrfs_missing = members.missing
            except ProbeError as e:
                logger.warning(f"Could not read btrfs members of pool {record.name}: {e.message}",
                               extra={'pool_id': record.id, 'pool_name': record.name})

        view = record.to_dict()
        view['mountPoint'] = mount_point

        data_views = [
            self._device_view(record, slot, DiskType.DATA, mounted_paths, usage_cache, btrfs_paths)
            for slot in record.data_devices
        ]
        if btrfs_paths:
            data_views.extend(self._injected_devices(record, btrfs_paths, data_views))
        parity_views = [
            self._device_view(record, slot, DiskType.PARITY, mounted_paths, usage_cache, btrfs_paths)
            for slot in record.parity_devices
        ]
        view['data_devices'] = data_views
        view['parity_devices'] = parity_views

        view['status'] = self._pool_status(record, pool_mounted, mount_point, usage_cache,
                                           data_views, btrfs_missing)
        return view

    def _mounted_paths(self) -> Set[str]:
        return {os.path.normpath(entry.mountpoint) for entry in self._prober.mount_table()}

    def _usage(self, mount_point: str, cache: Dict[str, Optional[SpaceUsage]]) -> Optional[SpaceUsage]:
        if mount_point not in cache:
            cache[mount_point] = self._prober.space_usage(mount_point)
        return cache[mount_point]

    def _device_view(self, record: PoolRecord, slot: DeviceSlot, disk_type: DiskType,
                     mounted_paths: Set[str], usage_cache: Dict[str, Optional[SpaceUsage]],
                     btrfs_paths: List[str]) -> Dict[str, Any]:
        device_view = slot.to_dict()
        mount_point = self.device_mount_point(record, slot, disk_type)
        device_view['mountPoint'] = mount_point
        device_view['isSharedStorage'] = record.type is PoolType.BTRFS and disk_type is DiskType.DATA

        if btrfs_paths and not any(devices_overlap(slot.device, path) for path in btrfs_paths):
            device_view['storage'] = None
            device_view['storageStatus'] = STORAGE_MISSING
            return device_view

        if os.path.normpath(mount_point) in mounted_paths:
            usage = self._usage(mount_point, usage_cache)
            device_view['storage'] = usage.to_dict() if usage else None
            device_view['storageStatus'] = STORAGE_MOUNTED
            return device_view

        device_view['storage'] = None
        if slot.id and record.type is not PoolType.BTRFS and self._prober.resolve_uuid(slot.id) is None:
            device_view['storageStatus'] = STORAGE_MISSING
        else:
            device_view['storageStatus'] = STORAGE_UNMOUNTED
        return device_view

    def _injected_devices(self, record: PoolRecord, btrfs_paths: List[str],
                          data_views: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        configured = [slot.device for slot in record.data_devices]
        first = data_views[0] if data_views else {}
        next_slot = record.next_slot()
        injected = []

        for path in btrfs_paths:
            if any(devices_overlap(path, device) for device in configured):
                continue
            if self._prober.is_system_device(path):
                continue
            try:
                uuid = self._prober.member_uuid(path)
            except ProbeError as e:
                logger.warning(f"Could not inject btrfs member {path} of pool {record.name}: {e.message}")
                continue
            injected.append({
                'slot': next_slot,
                'device': path,
                'id': uuid,
                'filesystem': 'btrfs',
                '_injected': True,
                'mountPoint': self.mount_point(record),
                'storage': first.get('storage'),
                'storageStatus': first.get('storageStatus', STORAGE_MOUNTED),
                'isSharedStorage': True,
            })
            next_slot += 1

        return injected

    def _pool_status(self, record: PoolRecord, pool_mounted: bool, mount_point: str,
                     usage_cache: Dict[str, Optional[SpaceUsage]],
                     data_views: List[Dict[str, Any]], btrfs_missing: bool) -> Dict[str, Any]:
        status: Dict[str, Any] = {
            'mounted': pool_mounted,
            'totalSpace': 0,
            'usedSpace': 0,
            'freeSpace': 0,
            'usagePercent': 0,
            'health': HEALTH_UNKNOWN,
            'parity_operation': self._parity_operation(record),
        }
        if not pool_mounted:
            return status

        usage = self._usage(mount_point, usage_cache)
        if usage:
            status.update(usage.to_dict())

        degraded = btrfs_missing or any(
            device_view['storageStatus'] != STORAGE_MOUNTED for device_view in data_views
        )
        status['health'] = HEALTH_DEGRADED if degraded else HEALTH_HEALTHY
        return status

    def _parity_operation(self, record: PoolRecord) -> bool:
        if record.type is not PoolType.MERGERFS or not record.parity_devices or not self._snapraid:
            return False
        return self._snapraid.is_operation_running(record.name)
