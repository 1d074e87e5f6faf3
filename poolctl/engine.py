"""Engine facade: builds every component from settings and serves reads."""

import logging
from typing import Any, Dict, List, Optional

from .config_store import ConfigStore
from .device_manager import DeviceManager
from .device_prober import DeviceProber
from .errors import PoolError
from .lifecycle_manager import LifecycleManager
from .logging import configure_logging
from .membership_manager import MembershipManager
from .mergerfs_manager import MergerFSManager
from .pool_registry import PoolRegistry
from .power_manager import PowerManager
from .settings import EngineSettings, SettingsManager
from .snapraid_manager import SnapRAIDManager
from .status_reconciler import StatusReconciler
from .system_executor import CommandExecutor, SystemCommandExecutor

logger = logging.getLogger(__name__)


class PoolEngine:
    """
    Owns one instance of each component.

    Mutations are reached through ``lifecycle``, ``membership`` and
    ``power``; reads go through ``get_pool`` and ``list_pools``.
    """

    def __init__(self, settings: EngineSettings, executor: Optional[CommandExecutor] = None):
        self.settings = settings
        self.executor = executor or SystemCommandExecutor(
            dry_run=settings.dry_run,
            use_sudo=settings.use_sudo,
            default_timeout=settings.command_timeout,
        )
        self.prober = DeviceProber(self.executor)
        self.device_manager = DeviceManager(self.executor, self.prober, settings)
        self.store = ConfigStore(settings.pools_file)
        self.registry = PoolRegistry(self.store)
        self.mergerfs = MergerFSManager(self.executor, self.prober, self.device_manager)
        self.snapraid = SnapRAIDManager(self.executor, settings)
        self.reconciler = StatusReconciler(self.registry, self.prober, settings, self.snapraid)

        components = (self.registry, self.prober, self.executor, self.device_manager,
                      self.mergerfs, self.snapraid, self.reconciler, settings)
        self.lifecycle = LifecycleManager(*components)
        self.membership = MembershipManager(*components)
        self.power = PowerManager(self.registry, self.prober, self.executor, settings)

    @classmethod
    def from_settings(cls, settings_file_path: Optional[str] = None,
                      setup_logging: bool = True) -> 'PoolEngine':
        """Load settings (file, then environment), configure logging and build the engine."""
        settings = SettingsManager(settings_file_path).load_settings()
        if setup_logging:
            configure_logging(settings.log_level, settings.log_json)
        logger.info(f"Pool engine starting with registry {settings.pools_file}")
        return cls(settings)

    def get_pool(self, ref: str) -> Dict[str, Any]:
        """Pool view by ID or name."""
        return self.reconciler.get_pool(ref)

    def list_pools(self, pool_type: Optional[str] = None,
                   exclude_type: Optional[str] = None) -> List[Dict[str, Any]]:
        return self.reconciler.list_pools(pool_type=pool_type, exclude_type=exclude_type)

    def update_path_rules(self, pool_id: str, rules: List[Dict[str, Any]]) -> Dict[str, Any]:
        record = self.registry.update_path_rules(pool_id, rules)
        return self.reconciler.build_view(record)

    def run_snapraid_operation(self, pool_id: str, operation: str) -> Dict[str, Any]:
        record = self.registry.get(pool_id)
        return self.snapraid.run_operation(record, operation).to_dict()

    def get_snapraid_operation(self, operation_id: str) -> Optional[Dict[str, Any]]:
        operation = self.snapraid.get_operation(operation_id)
        return operation.to_dict() if operation else None

    def mount_automount_pools(self) -> List[Dict[str, Any]]:
        """
        Mount every pool flagged ``automount``, typically at boot.

        A failing pool is reported in its entry and does not stop the others.
        """
        results = []
        for record in self.registry.list():
            if not record.automount:
                continue
            entry: Dict[str, Any] = {'poolId': record.id, 'poolName': record.name}
            try:
                with self.registry.pool_lock(record.id):
                    entry['mounted'] = self.lifecycle.mount_record(record)
                entry['success'] = True
            except PoolError as e:
                logger.error(f"Automount of pool {record.name} failed: {e.message}",
                             extra={'pool_id': record.id, 'pool_name': record.name})
                entry.update({'success': False, 'error': e.to_dict()})
            results.append(entry)
        return results
