"""Config-store-backed catalogue of pool records with per-pool locking."""

import time
import logging
import threading
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional

from .config_store import ConfigStore
from .device_prober import DeviceProber
from .errors import NotFoundError, ValidationError
from .models import PathRule, PoolRecord, PoolType

logger = logging.getLogger(__name__)


def devices_overlap(first: str, second: str) -> bool:
    """Same node, or one is a partition of the other."""
    parent = DeviceProber.parent_disk
    return first == second or parent(first) == second or parent(second) == first


class PoolRegistry:
    """
    Single source of pool identity.

    Records are never cached: every call re-reads the store, and every
    mutation goes through ``ConfigStore.update``.
    """

    CREATION_KEY = '__create__'

    def __init__(self, store: ConfigStore):
        self._store = store
        self._locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()
        self._id_lock = threading.Lock()
        self._last_id = 0

    def _lock_for(self, key: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def pool_lock(self, pool_id: str) -> Iterator[None]:
        """Exclusive section for mutations of one pool."""
        with self._lock_for(pool_id):
            yield

    @contextmanager
    def creation_lock(self) -> Iterator[None]:
        """Serializes pool creation so name and device checks cannot race."""
        with self._lock_for(self.CREATION_KEY):
            yield

    def generate_id(self) -> str:
        """Millisecond timestamp, strictly increasing within the process."""
        with self._id_lock:
            candidate = int(time.time() * 1000)
            if candidate <= self._last_id:
                candidate = self._last_id + 1
            self._last_id = candidate
            return str(candidate)

    def list(self, pool_type: Optional[str] = None,
             exclude_type: Optional[str] = None) -> List[PoolRecord]:
        records = sorted(self._store.load(), key=lambda record: record.index)
        if pool_type:
            records = [record for record in records if record.type.value == pool_type]
        if exclude_type:
            records = [record for record in records if record.type.value != exclude_type]
        return records

    def get(self, pool_id: str) -> PoolRecord:
        for record in self._store.load():
            if record.id == pool_id:
                return record
        raise NotFoundError(f"Pool with ID \"{pool_id}\" not found")

    def get_by_name(self, name: str) -> PoolRecord:
        for record in self._store.load():
            if record.name == name:
                return record
        raise NotFoundError(f"Pool with name \"{name}\" not found")

    def find(self, ref: str) -> PoolRecord:
        """Resolve a pool by ID, falling back to its name."""
        for record in self._store.load():
            if record.id == ref:
                return record
        for record in self._store.load():
            if record.name == ref:
                return record
        raise NotFoundError(f"Pool \"{ref}\" not found")

    def owner_of(self, device: str, exclude_pool_id: Optional[str] = None) -> Optional[PoolRecord]:
        for record in self._store.load():
            if record.id == exclude_pool_id:
                continue
            if any(devices_overlap(device, used) for used in record.device_paths()):
                return record
        return None

    def ensure_name_available(self, name: str) -> None:
        for record in self._store.load():
            if record.name == name:
                raise ValidationError(f"Pool with name \"{name}\" already exists")

    def ensure_devices_available(self, devices: List[str],
                                 exclude_pool_id: Optional[str] = None) -> None:
        for device in devices:
            owner = self.owner_of(device, exclude_pool_id)
            if owner:
                raise ValidationError(f"Device {device} is already used by pool \"{owner.name}\"")

    @staticmethod
    def _check_conflicts(records: List[PoolRecord], candidate: PoolRecord) -> None:
        for other in records:
            if other.id == candidate.id:
                continue
            if other.name == candidate.name:
                raise ValidationError(f"Pool with name \"{candidate.name}\" already exists")
            for device in candidate.device_paths():
                if any(devices_overlap(device, used) for used in other.device_paths()):
                    raise ValidationError(
                        f"Device {device} is already used by pool \"{other.name}\""
                    )
        slots = [slot.slot for slot in candidate.data_devices]
        parity_slots = [slot.slot for slot in candidate.parity_devices]
        if len(set(slots)) != len(slots) or len(set(parity_slots)) != len(parity_slots):
            raise ValidationError(f"Duplicate slot numbers in pool \"{candidate.name}\"")

    def add(self, record: PoolRecord) -> PoolRecord:
        def mutate(records: List[PoolRecord]) -> PoolRecord:
            if any(existing.id == record.id for existing in records):
                raise ValidationError(f"Pool with ID \"{record.id}\" already exists")
            self._check_conflicts(records, record)
            record.index = max((existing.index for existing in records), default=0) + 1
            records.append(record)
            return record

        saved = self._store.update(mutate)
        logger.info(f"Registered pool {record.name}", extra={'pool_id': record.id, 'pool_name': record.name})
        return saved

    def save(self, record: PoolRecord) -> PoolRecord:
        """Replace the stored record that has the same ID."""
        def mutate(records: List[PoolRecord]) -> PoolRecord:
            for position, existing in enumerate(records):
                if existing.id == record.id:
                    self._check_conflicts(records, record)
                    records[position] = record
                    return record
            raise NotFoundError(f"Pool with ID \"{record.id}\" not found")

        return self._store.update(mutate)

    def update(self, pool_id: str, change: Callable[[PoolRecord], Any]) -> PoolRecord:
        """Apply ``change`` to one record inside a single atomic update."""
        def mutate(records: List[PoolRecord]) -> PoolRecord:
            for record in records:
                if record.id == pool_id:
                    change(record)
                    self._check_conflicts(records, record)
                    return record
            raise NotFoundError(f"Pool with ID \"{pool_id}\" not found")

        return self._store.update(mutate)

    def remove(self, pool_id: str) -> PoolRecord:
        def mutate(records: List[PoolRecord]) -> PoolRecord:
            for position, record in enumerate(records):
                if record.id == pool_id:
                    return records.pop(position)
            raise NotFoundError(f"Pool with ID \"{pool_id}\" not found")

        removed = self._store.update(mutate)
        with self._locks_guard:
            self._locks.pop(pool_id, None)
        logger.info(f"Removed pool {removed.name} from registry", extra={'pool_id': pool_id})
        return removed

    def reorder(self, pool_ids: List[str]) -> List[PoolRecord]:
        """Set display order: listed pools first, the rest keep their relative order."""
        if not isinstance(pool_ids, list) or not all(isinstance(item, str) for item in pool_ids):
            raise ValidationError("Order must be a list of pool IDs")
        if len(set(pool_ids)) != len(pool_ids):
            raise ValidationError("Order contains duplicate pool IDs")

        def mutate(records: List[PoolRecord]) -> List[PoolRecord]:
            by_id = {record.id: record for record in records}
            unknown = [pool_id for pool_id in pool_ids if pool_id not in by_id]
            if unknown:
                raise NotFoundError(f"Pool with ID \"{unknown[0]}\" not found")
            rest = sorted((record for record in records if record.id not in pool_ids),
                          key=lambda record: record.index)
            ordered = [by_id[pool_id] for pool_id in pool_ids] + rest
            for position, record in enumerate(ordered, start=1):
                record.index = position
            return ordered

        return self._store.update(mutate)

    def update_path_rules(self, pool_id: str, rules: List[Dict[str, Any]]) -> PoolRecord:
        """Replace the path rules of a union pool; used by the share manager."""
        if not isinstance(rules, list):
            raise ValidationError("path_rules must be a list")
        parsed = [PathRule.from_dict(rule) for rule in rules]

        def change(record: PoolRecord) -> None:
            if record.type is not PoolType.MERGERFS:
                raise ValidationError("Path rules are only supported for mergerfs pools")
            known_slots = {slot.slot for slot in record.data_devices}
            for rule in parsed:
                missing = [slot for slot in rule.target_devices if slot not in known_slots]
                if missing:
                    raise ValidationError(
                        f"Path rule {rule.path} targets unknown slots: {', '.join(map(str, missing))}"
                    )
            record.config.path_rules = parsed

        with self.pool_lock(pool_id):
            return self.update(pool_id, change)
