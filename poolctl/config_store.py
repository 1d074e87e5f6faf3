"""Atomic persistence of the pool registry as a JSON array."""

import os
import json
import logging
import tempfile
import threading
from typing import Callable, List, TypeVar

from .errors import ConfigError, PoolError
from .models import PoolRecord

logger = logging.getLogger(__name__)

T = TypeVar('T')


class ConfigStore:
    """Owns the pools file. Every write is write-to-temp then rename."""

    def __init__(self, path: str):
        self.path = path
        self._lock = threading.RLock()

    def load(self) -> List[PoolRecord]:
        """
        Read all pool records.

        Returns:
            Records in file order; an absent file is an empty registry

        Raises:
            ConfigError: If the file cannot be read or parsed
        """
        with self._lock:
            if not os.path.exists(self.path):
                return []
            try:
                with open(self.path, 'r') as f:
                    data = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                raise ConfigError(f"Error reading pools file {self.path}: {e}")

            if not isinstance(data, list):
                raise ConfigError(f"Pools file {self.path} must contain a JSON array")

            try:
                return [PoolRecord.from_dict(item) for item in data]
            except (KeyError, TypeError, ValueError, PoolError) as e:
                raise ConfigError(f"Invalid pool record in {self.path}: {e}")

    def save(self, records: List[PoolRecord]) -> None:
        with self._lock:
            directory = os.path.dirname(self.path) or '.'
            os.makedirs(directory, exist_ok=True)
            fd, temp_path = tempfile.mkstemp(dir=directory, suffix='.json')
            try:
                with os.fdopen(fd, 'w') as f:
                    json.dump([record.to_dict() for record in records], f, indent=2)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(temp_path, self.path)
            except Exception:
                if os.path.exists(temp_path):
                    os.unlink(temp_path)
                raise
            logger.debug(f"Saved {len(records)} pool records to {self.path}")

    def update(self, mutate: Callable[[List[PoolRecord]], T]) -> T:
        """
        Read-modify-write under the store lock.

        ``mutate`` edits the list in place and its return value is passed
        through. Nothing is written if it raises.
        """
        with self._lock:
            records = self.load()
            result = mutate(records)
            self.save(records)
            return result
