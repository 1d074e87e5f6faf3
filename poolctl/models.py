"""Data models for pool management."""

import re
import time
from dataclasses import dataclass, field, fields
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Type, TypeVar

from .errors import ValidationError


POOL_NAME_PATTERN = re.compile(r'^[a-zA-Z0-9_-]+$')
RESERVED_POOL_NAMES = {'remotes'}
MAX_POOL_NAME_LENGTH = 255

DEFAULT_FILESYSTEM = 'xfs'
DEFAULT_GLOBAL_OPTIONS = ['cache.files=off', 'dropcacheonclose=true']
DEFAULT_SYNC_SCHEDULE = '30 0 * * *'
DEFAULT_CHECK_SCHEDULE = '0 0 * */3 SUN'


class PoolType(Enum):
    """Pool type. Native RAID pools are typed by their filesystem family."""
    XFS = "xfs"
    EXT4 = "ext4"
    BTRFS = "btrfs"
    MERGERFS = "mergerfs"


FORMATTABLE_FILESYSTEMS = (PoolType.XFS.value, PoolType.EXT4.value, PoolType.BTRFS.value)


class RaidLevel(Enum):
    """BTRFS data/metadata profiles supported for multi-device pools."""
    SINGLE = "single"
    RAID0 = "raid0"
    RAID1 = "raid1"
    RAID10 = "raid10"

    @property
    def min_devices(self) -> int:
        return 4 if self is RaidLevel.RAID10 else 2

    @property
    def redundancy(self) -> int:
        return 1 if self in (RaidLevel.RAID1, RaidLevel.RAID10) else 0


class DiskType(Enum):
    """Role of a disk inside a pool."""
    DATA = "data"
    PARITY = "parity"


class PowerAction(Enum):
    WAKE = "wake"
    STANDBY = "standby"
    SLEEP = "sleep"


class PowerStatus(Enum):
    """Disk spin state as reported by hdparm."""
    ACTIVE = "active"
    STANDBY = "standby"
    SLEEPING = "sleeping"
    UNKNOWN = "unknown"
    ERROR = "error"


class MergerFSPolicy(Enum):
    """MergerFS file placement policies."""
    EPMFS = "epmfs"
    EPLFS = "eplfs"
    EPLUS = "eplus"
    EPFF = "epff"
    EPALL = "epall"
    MFS = "mfs"
    LFS = "lfs"
    LUS = "lus"
    RAND = "rand"
    PFRD = "pfrd"
    FF = "ff"
    ALL = "all"


E = TypeVar('E', bound=Enum)


def parse_enum(enum_cls: Type[E], value: Any, label: str) -> E:
    """Convert a raw value into a member of ``enum_cls`` or raise ValidationError."""
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ', '.join(member.value for member in enum_cls)
        raise ValidationError(f"Invalid {label}: {value}. Supported: {allowed}")


def validate_pool_name(name: Any) -> str:
    if not isinstance(name, str) or not name:
        raise ValidationError("Pool name is required")
    if len(name) > MAX_POOL_NAME_LENGTH:
        raise ValidationError(f"Pool name must be at most {MAX_POOL_NAME_LENGTH} characters")
    if not POOL_NAME_PATTERN.match(name):
        raise ValidationError(
            f"Invalid pool name: {name}. Only letters, digits, '-' and '_' are allowed"
        )
    if name.lower() in RESERVED_POOL_NAMES:
        raise ValidationError(f"Pool name '{name}' is reserved")
    return name


def validate_device_path(device: Any) -> str:
    if not isinstance(device, str) or not device.startswith('/dev/'):
        raise ValidationError(f"Invalid device path: {device}")
    return device


def validate_device_list(devices: Any, label: str = "devices") -> List[str]:
    if not isinstance(devices, (list, tuple)) or not devices:
        raise ValidationError(f"At least one entry is required in {label}")
    checked = [validate_device_path(device) for device in devices]
    if len(set(checked)) != len(checked):
        raise ValidationError(f"Duplicate device paths in {label}")
    return checked


def validate_filesystem(filesystem: Any) -> str:
    if filesystem not in FORMATTABLE_FILESYSTEMS:
        raise ValidationError(
            f"Unsupported filesystem type: {filesystem}. "
            f"Supported types are: {', '.join(FORMATTABLE_FILESYSTEMS)}"
        )
    return filesystem


@dataclass
class DeviceSlot:
    """A device at a stable 1-based position inside a pool."""
    slot: int
    device: str
    id: Optional[str] = None
    filesystem: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'slot': self.slot,
            'device': self.device,
            'id': self.id,
            'filesystem': self.filesystem,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DeviceSlot':
        return cls(
            slot=int(data['slot']),
            device=data['device'],
            id=data.get('id'),
            filesystem=data.get('filesystem'),
        )


@dataclass
class PathRule:
    """Maps a sub-path of a union pool to the data slots allowed to store it."""
    path: str
    target_devices: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {'path': self.path, 'target_devices': list(self.target_devices)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PathRule':
        if not isinstance(data, dict) or not isinstance(data.get('path'), str):
            raise ValidationError("Path rule requires a 'path'")
        targets = data.get('target_devices') or []
        try:
            target_slots = [int(slot) for slot in targets]
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid target_devices for path rule {data.get('path')}")
        return cls(path=data['path'], target_devices=target_slots)


@dataclass
class MergerFSPolicies:
    create: str = MergerFSPolicy.EPMFS.value
    read: str = MergerFSPolicy.FF.value
    search: str = MergerFSPolicy.FF.value

    def to_dict(self) -> Dict[str, str]:
        return {'create': self.create, 'read': self.read, 'search': self.search}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'MergerFSPolicies':
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ValidationError("policies must be an object")
        unknown = set(data) - {'create', 'read', 'search'}
        if unknown:
            raise ValidationError(f"Unknown policy keys: {', '.join(sorted(unknown))}")
        values = {
            key: parse_enum(MergerFSPolicy, value, f"{key} policy").value
            for key, value in data.items()
        }
        return cls(**values)


@dataclass
class SyncSchedule:
    """SnapRAID sync and check schedule for a union pool."""
    enabled: bool = False
    schedule: str = DEFAULT_SYNC_SCHEDULE
    check_enabled: bool = False
    check_schedule: str = DEFAULT_CHECK_SCHEDULE

    def to_dict(self) -> Dict[str, Any]:
        return {
            'enabled': self.enabled,
            'schedule': self.schedule,
            'check': {'enabled': self.check_enabled, 'schedule': self.check_schedule},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SyncSchedule':
        check = data.get('check') or {}
        return cls(
            enabled=bool(data.get('enabled', False)),
            schedule=data.get('schedule', DEFAULT_SYNC_SCHEDULE),
            check_enabled=bool(check.get('enabled', False)),
            check_schedule=check.get('schedule', DEFAULT_CHECK_SCHEDULE),
        )


@dataclass
class PoolConfig:
    """Policy block of a pool record. Unknown keys are carried in ``extra``."""
    raid_level: Optional[RaidLevel] = None
    policies: Optional[MergerFSPolicies] = None
    minfreespace: Optional[str] = None
    moveonenospc: Optional[bool] = None
    global_options: Optional[List[str]] = None
    custom_options: Optional[str] = None
    mount_options: Optional[str] = None
    sync: Optional[SyncSchedule] = None
    path_rules: List[PathRule] = field(default_factory=list)
    notes: List[Dict[str, Any]] = field(default_factory=list)
    extra: Dict[str, Any] = field(default_factory=dict)

    KNOWN_KEYS = (
        'raid_level', 'policies', 'minfreespace', 'moveonenospc', 'global_options',
        'custom_options', 'mount_options', 'sync', 'path_rules', 'notes',
    )

    def add_note(self, message: str) -> None:
        self.notes.append({'timestamp': int(time.time() * 1000), 'message': message})

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = dict(self.extra)
        if self.raid_level is not None:
            data['raid_level'] = self.raid_level.value
        if self.policies is not None:
            data['policies'] = self.policies.to_dict()
            # mirrored for tools that read the mergerfs option name directly
            data['category.create'] = self.policies.create
        for key in ('minfreespace', 'moveonenospc', 'global_options',
                    'custom_options', 'mount_options'):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        if self.sync is not None:
            data['sync'] = self.sync.to_dict()
        data['path_rules'] = [rule.to_dict() for rule in self.path_rules]
        if self.notes:
            data['notes'] = list(self.notes)
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'PoolConfig':
        data = dict(data or {})
        data.pop('category.create', None)
        extra = {key: value for key, value in data.items() if key not in cls.KNOWN_KEYS}
        raid_level = data.get('raid_level')
        return cls(
            raid_level=parse_enum(RaidLevel, raid_level, "RAID level") if raid_level else None,
            policies=MergerFSPolicies.from_dict(data['policies']) if data.get('policies') else None,
            minfreespace=data.get('minfreespace'),
            moveonenospc=data.get('moveonenospc'),
            global_options=data.get('global_options'),
            custom_options=data.get('custom_options'),
            mount_options=data.get('mount_options'),
            sync=SyncSchedule.from_dict(data['sync']) if data.get('sync') else None,
            path_rules=[PathRule.from_dict(rule) for rule in data.get('path_rules') or []],
            notes=list(data.get('notes') or []),
            extra=extra,
        )


@dataclass
class PoolRecord:
    """A persisted pool entry of the registry."""
    id: str
    name: str
    type: PoolType
    automount: bool = True
    comment: str = ""
    index: int = 0
    created_at: str = ""
    data_devices: List[DeviceSlot] = field(default_factory=list)
    parity_devices: List[DeviceSlot] = field(default_factory=list)
    config: PoolConfig = field(default_factory=PoolConfig)
    # first unused slot number per disk type; never lowered when slots are removed
    next_data_slot: int = 0
    next_parity_slot: int = 0

    def __post_init__(self):
        if not self.created_at:
            self.created_at = datetime.now().isoformat()
        self.next_data_slot = self.next_slot(DiskType.DATA)
        self.next_parity_slot = self.next_slot(DiskType.PARITY)

    def all_slots(self) -> List[DeviceSlot]:
        return list(self.data_devices) + list(self.parity_devices)

    def device_paths(self) -> List[str]:
        return [slot.device for slot in self.all_slots()]

    def next_slot(self, disk_type: DiskType = DiskType.DATA) -> int:
        if disk_type is DiskType.DATA:
            slots, mark = self.data_devices, self.next_data_slot
        else:
            slots, mark = self.parity_devices, self.next_parity_slot
        return max(max((slot.slot for slot in slots), default=0) + 1, mark)

    def add_slots(self, new_slots: List[DeviceSlot], disk_type: DiskType = DiskType.DATA) -> None:
        """Append slots and advance the high-water mark past them."""
        if disk_type is DiskType.DATA:
            self.data_devices.extend(new_slots)
            self.next_data_slot = self.next_slot(disk_type)
        else:
            self.parity_devices.extend(new_slots)
            self.next_parity_slot = self.next_slot(disk_type)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'type': self.type.value,
            'automount': self.automount,
            'comment': self.comment,
            'index': self.index,
            'created_at': self.created_at,
            'data_devices': [slot.to_dict() for slot in self.data_devices],
            'parity_devices': [slot.to_dict() for slot in self.parity_devices],
            'config': self.config.to_dict(),
            'next_data_slot': self.next_data_slot,
            'next_parity_slot': self.next_parity_slot,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PoolRecord':
        return cls(
            id=str(data['id']),
            name=data['name'],
            type=parse_enum(PoolType, data['type'], "pool type"),
            automount=bool(data.get('automount', True)),
            comment=data.get('comment') or "",
            index=int(data.get('index') or 0),
            created_at=data.get('created_at') or "",
            data_devices=[DeviceSlot.from_dict(item) for item in data.get('data_devices') or []],
            parity_devices=[DeviceSlot.from_dict(item) for item in data.get('parity_devices') or []],
            config=PoolConfig.from_dict(data.get('config')),
            next_data_slot=int(data.get('next_data_slot') or 0),
            next_parity_slot=int(data.get('next_parity_slot') or 0),
        )


O = TypeVar('O', bound='OperationOptions')


class OperationOptions:
    """Mixin for option dataclasses: built from a dict, unknown keys rejected."""

    @classmethod
    def from_dict(cls: Type[O], data: Optional[Dict[str, Any]] = None) -> O:
        if data is None:
            return cls()
        if isinstance(data, cls):
            return data
        if not isinstance(data, dict):
            raise ValidationError("Options must be an object")
        known = {item.name for item in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValidationError(f"Unknown options: {', '.join(sorted(unknown))}")
        options = cls(**data)
        options.validate()
        return options

    def validate(self) -> None:
        for item in fields(self):
            if item.name == 'format':
                _check_optional_bool(self.format, 'format')


def _check_optional_bool(value: Any, label: str) -> None:
    if value is not None and not isinstance(value, bool):
        raise ValidationError(f"'{label}' must be true, false or omitted")


def _check_bool(value: Any, label: str) -> None:
    if not isinstance(value, bool):
        raise ValidationError(f"'{label}' must be a boolean")


@dataclass
class CreatePoolOptions(OperationOptions):
    """Options for single and multi device pool creation.

    ``format`` is tri-state: True forces a format, False requires an existing
    filesystem, None formats only blank devices.
    """
    format: Optional[bool] = None
    automount: bool = True
    comment: str = ""
    mount_options: Optional[str] = None

    def validate(self) -> None:
        super().validate()
        _check_bool(self.automount, 'automount')
        if not isinstance(self.comment, str):
            raise ValidationError("'comment' must be a string")


@dataclass
class MergerFSPoolOptions(CreatePoolOptions):
    """Options for union pool creation, with mergerfs defaults."""
    policies: MergerFSPolicies = field(default_factory=MergerFSPolicies)
    minfreespace: str = "20G"
    moveonenospc: bool = True
    global_options: List[str] = field(default_factory=lambda: list(DEFAULT_GLOBAL_OPTIONS))
    custom_options: Optional[str] = None
    snapraid: Optional[Dict[str, Any]] = None

    @property
    def snapraid_device(self) -> Optional[str]:
        if not self.snapraid:
            return None
        return self.snapraid.get('device')

    def validate(self) -> None:
        super().validate()
        if self.mount_options is not None:
            raise ValidationError("'mount_options' does not apply to MergerFS pools; "
                                  "use 'custom_options' for mergerfs mount options")
        if not isinstance(self.policies, MergerFSPolicies):
            self.policies = MergerFSPolicies.from_dict(self.policies)
        _check_bool(self.moveonenospc, 'moveonenospc')
        if not isinstance(self.global_options, list) or not all(
                isinstance(option, str) for option in self.global_options):
            raise ValidationError("'global_options' must be a list of strings")
        if self.snapraid is not None:
            if not isinstance(self.snapraid, dict) or set(self.snapraid) - {'device'}:
                raise ValidationError("'snapraid' accepts only a 'device' key")
            if self.snapraid.get('device') is not None:
                validate_device_path(self.snapraid['device'])


@dataclass
class UnmountOptions(OperationOptions):
    force: bool = False
    remove_directory: bool = False

    def validate(self) -> None:
        _check_bool(self.force, 'force')
        _check_bool(self.remove_directory, 'remove_directory')


@dataclass
class AddDevicesOptions(OperationOptions):
    """Options for adding data or parity devices."""
    format: Optional[bool] = None
    filesystem: Optional[str] = None

    def validate(self) -> None:
        super().validate()
        if self.filesystem is not None:
            validate_filesystem(self.filesystem)


@dataclass
class RemoveDevicesOptions(OperationOptions):
    """``unmount`` also unmounts the underlying branch device of a union pool."""
    unmount: bool = True
    force: bool = False

    def validate(self) -> None:
        _check_bool(self.unmount, 'unmount')
        _check_bool(self.force, 'force')


def slot_matches(slot: DeviceSlot, devices: Iterable[str], parent_of) -> bool:
    """True when ``slot`` is one of ``devices`` or a partition of one of them."""
    wanted = set(devices)
    return slot.device in wanted or parent_of(slot.device) in wanted
