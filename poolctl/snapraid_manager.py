"""SnapRAID parity configuration and background operations for union pools."""

import os
import logging
import tempfile
import threading
import uuid
from typing import Dict, List, Optional, Any
from datetime import datetime
from dataclasses import dataclass, field
from enum import Enum

from .errors import ValidationError
from .models import PoolRecord, PoolType
from .settings import EngineSettings
from .system_executor import CommandExecutor


logger = logging.getLogger(__name__)

MAX_PARITY_LEVELS = 6


class SnapRAIDOperation(Enum):
    """Operations that can be started on a pool's parity set."""
    SYNC = "sync"
    CHECK = "check"
    SCRUB = "scrub"
    FIX = "fix"
    STATUS = "status"
    FORCE_STOP = "force_stop"


class OperationStatus(Enum):
    """Asynchronous operation status."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class AsyncOperation:
    """Information about a background SnapRAID operation."""
    operation_id: str
    pool_name: str
    operation_type: str
    status: OperationStatus
    start_time: datetime
    end_time: Optional[datetime] = None
    message: str = ""
    error_message: str = ""
    parameters: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'operation_id': self.operation_id,
            'pool_name': self.pool_name,
            'operation_type': self.operation_type,
            'status': self.status.value,
            'start_time': self.start_time.isoformat(),
            'end_time': self.end_time.isoformat() if self.end_time else None,
            'message': self.message,
            'error_message': self.error_message,
        }


class SnapRAIDManager:
    """Writes per-pool SnapRAID configs and runs parity operations."""

    EXCLUDES = [
        "*.tmp",
        "*.temp",
        "*.log",
        "*.bak",
        "Thumbs.db",
        ".DS_Store",
        ".AppleDouble",
        "._*",
        ".Spotlight-V100",
        ".Trashes",
        ".fseventsd",
        ".DocumentRevisions-V100",
        ".TemporaryItems",
        "lost+found/",
        ".recycle/",
        "$RECYCLE.BIN/",
        "System Volume Information/",
        "pagefile.sys",
        "hiberfil.sys",
        "swapfile.sys",
    ]

    def __init__(self, executor: CommandExecutor, settings: EngineSettings):
        """
        Initialize SnapRAID manager.

        Args:
            executor: Command executor used for snapraid invocations
            settings: Engine settings holding config and mount roots
        """
        self._executor = executor
        self._settings = settings
        self._operations: Dict[str, AsyncOperation] = {}
        self._operation_lock = threading.Lock()

    def config_path(self, pool_name: str) -> str:
        return self._settings.snapraid_config_path(pool_name)

    def generate_config(self, pool_name: str, data_branches: Dict[int, str],
                        parity_mounts: List[str]) -> str:
        """
        Generate SnapRAID configuration file content for one pool.

        Args:
            pool_name: Pool name used in the header
            data_branches: Data slot number -> branch mount point
            parity_mounts: Parity mount points in slot order

        Returns:
            Generated configuration file content
        """
        if not data_branches:
            raise ValidationError("At least one data device is required for SnapRAID")

        if not parity_mounts:
            raise ValidationError("At least one parity device is required for SnapRAID")

        if len(parity_mounts) > MAX_PARITY_LEVELS:
            raise ValidationError(f"SnapRAID supports at most {MAX_PARITY_LEVELS} parity devices")

        config_lines = [
            f"# SnapRAID configuration for {pool_name} pool",
            f"# Generated on: {datetime.now().isoformat()}",
            "",
        ]

        for level, parity_mount in enumerate(parity_mounts, start=1):
            if level == 1:
                config_lines.append(f"parity {parity_mount}/.snapraid.parity")
            else:
                config_lines.append(f"{level}-parity {parity_mount}/.snapraid.{level}-parity")

        for slot in sorted(data_branches):
            config_lines.append(f"content {data_branches[slot]}/.snapraid")
        for parity_mount in parity_mounts:
            config_lines.append(f"content {parity_mount}/.snapraid.content")

        config_lines.append("")

        # disk names follow the slot so removing a disk never renames the others
        for slot in sorted(data_branches):
            config_lines.append(f"data d{slot} {data_branches[slot]}")

        config_lines.append("")
        config_lines.extend(f"exclude {pattern}" for pattern in self.EXCLUDES)
        config_lines.append("")

        return "\n".join(config_lines)

    def generate_pool_config(self, record: PoolRecord) -> str:
        data_branches = {
            slot.slot: self._settings.branch_mount_point(record.name, slot.slot)
            for slot in record.data_devices
        }
        parity_mounts = [
            self._settings.parity_mount_point(record.name, slot.slot)
            for slot in sorted(record.parity_devices, key=lambda item: item.slot)
        ]
        return self.generate_config(record.name, data_branches, parity_mounts)

    def update_config(self, record: PoolRecord) -> Optional[str]:
        """
        Rewrite the pool's config from its record.

        Returns:
            Path written, or None when the pool has no parity devices
        """
        if not record.parity_devices:
            return None

        content = self.generate_pool_config(record)
        path = self.config_path(record.name)
        directory = os.path.dirname(path)
        os.makedirs(directory, exist_ok=True)
        fd, temp_path = tempfile.mkstemp(dir=directory, suffix='.conf')
        try:
            with os.fdopen(fd, 'w') as f:
                f.write(content)
            os.replace(temp_path, path)
        except Exception:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise

        logger.info(f"SnapRAID config written: {path}", extra={'pool_name': record.name})
        return path

    def remove_config(self, pool_name: str) -> bool:
        """Delete the pool's config. Returns False if there was none."""
        path = self.config_path(pool_name)
        try:
            os.unlink(path)
        except FileNotFoundError:
            return False
        logger.info(f"SnapRAID config file removed: {path}", extra={'pool_name': pool_name})
        return True

    def config_exists(self, pool_name: str) -> bool:
        return os.path.exists(self.config_path(pool_name))

    def is_operation_running(self, pool_name: str) -> bool:
        if os.path.exists(self._settings.snapraid_socket_path(pool_name)):
            return True
        return bool(self.list_operations(pool_name=pool_name, active_only=True))

    def run_operation(self, record: PoolRecord, operation: str) -> AsyncOperation:
        """
        Start a SnapRAID operation for a union pool in the background.

        Args:
            record: Pool record
            operation: sync, check, scrub, fix, status or force_stop

        Returns:
            The tracked operation
        """
        if record.type is not PoolType.MERGERFS:
            raise ValidationError("SnapRAID operations are only supported for MergerFS pools")

        if not record.parity_devices:
            raise ValidationError("Pool does not have any SnapRAID parity devices configured")

        try:
            op = SnapRAIDOperation(operation)
        except ValueError:
            valid = ', '.join(item.value for item in SnapRAIDOperation)
            raise ValidationError(f"Invalid operation. Supported operations: {valid}")

        running = self.is_operation_running(record.name)
        if op is SnapRAIDOperation.FORCE_STOP:
            if not running:
                raise ValidationError(
                    f"No SnapRAID operation is currently running for pool '{record.name}'"
                )
            return self._force_stop(record)

        if running:
            raise ValidationError(f"SnapRAID operation is already running for pool '{record.name}'")

        operation_id = str(uuid.uuid4())
        tracked = AsyncOperation(
            operation_id=operation_id,
            pool_name=record.name,
            operation_type=op.value,
            status=OperationStatus.PENDING,
            start_time=datetime.now(),
        )
        with self._operation_lock:
            self._operations[operation_id] = tracked

        args = ['snapraid', '-c', self.config_path(record.name), op.value]
        logger.info(f"Starting SnapRAID {op.value} operation for pool '{record.name}'",
                    extra={'pool_name': record.name, 'operation': op.value})

        thread = threading.Thread(
            target=self._run_async,
            args=(operation_id, args),
            daemon=True
        )
        thread.start()
        return tracked

    def _force_stop(self, record: PoolRecord) -> AsyncOperation:
        pattern = f"snapraid -c {self.config_path(record.name)}"
        result = self._executor.run(['pkill', '-f', pattern])

        now = datetime.now()
        with self._operation_lock:
            for operation in self._operations.values():
                if operation.pool_name == record.name and operation.status in {
                        OperationStatus.PENDING, OperationStatus.RUNNING}:
                    operation.status = OperationStatus.CANCELLED
                    operation.end_time = now
                    operation.message = "Operation stopped by user"

        return AsyncOperation(
            operation_id=str(uuid.uuid4()),
            pool_name=record.name,
            operation_type=SnapRAIDOperation.FORCE_STOP.value,
            status=OperationStatus.COMPLETED if result.success else OperationStatus.FAILED,
            start_time=now,
            end_time=datetime.now(),
            message="Stop signal sent" if result.success else "",
            error_message="" if result.success else result.stderr.strip(),
        )

    def _run_async(self, operation_id: str, args: List[str]) -> None:
        with self._operation_lock:
            operation = self._operations.get(operation_id)
            if not operation or operation.status == OperationStatus.CANCELLED:
                return
            operation.status = OperationStatus.RUNNING

        result = self._executor.run(args, timeout=0)

        with self._operation_lock:
            operation = self._operations.get(operation_id)
            if not operation or operation.status == OperationStatus.CANCELLED:
                return
            operation.end_time = datetime.now()
            if result.success:
                operation.status = OperationStatus.COMPLETED
                operation.message = result.stdout.strip()[-2000:]
            else:
                operation.status = OperationStatus.FAILED
                operation.error_message = result.stderr.strip() or f"exit code {result.returncode}"

    def get_operation(self, operation_id: str) -> Optional[AsyncOperation]:
        with self._operation_lock:
            return self._operations.get(operation_id)

    def list_operations(self, pool_name: Optional[str] = None,
                        active_only: bool = False) -> List[AsyncOperation]:
        """
        List tracked operations, newest first.

        Args:
            pool_name: Restrict to one pool
            active_only: If True, only return pending/running operations
        """
        with self._operation_lock:
            operations = list(self._operations.values())

        if pool_name is not None:
            operations = [op for op in operations if op.pool_name == pool_name]
        if active_only:
            active_statuses = {OperationStatus.PENDING, OperationStatus.RUNNING}
            operations = [op for op in operations if op.status in active_statuses]

        return sorted(operations, key=lambda x: x.start_time, reverse=True)
