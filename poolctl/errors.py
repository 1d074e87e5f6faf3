"""Error taxonomy for pool operations."""

from contextlib import contextmanager
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional


class ErrorKind(Enum):
    """Closed set of error kinds surfaced by the engine."""
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    MOUNT = "mount"
    COMMAND = "command"
    PROBE = "probe"
    CONFIG = "config"


HTTP_STATUS = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.MOUNT: 500,
    ErrorKind.COMMAND: 500,
    ErrorKind.PROBE: 500,
    ErrorKind.CONFIG: 500,
}


class PoolError(Exception):
    """Base class for every error raised by the engine."""

    kind = ErrorKind.COMMAND

    def __init__(self, message: str, step: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.step = step

    @property
    def http_status(self) -> int:
        return HTTP_STATUS[self.kind]

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            'error': self.kind.value,
            'message': self.message,
        }
        if self.step:
            payload['step'] = self.step
        return payload


class ValidationError(PoolError):
    """Bad input or a policy violation."""
    kind = ErrorKind.VALIDATION


class NotFoundError(PoolError):
    """Unknown pool, device or disk UUID."""
    kind = ErrorKind.NOT_FOUND


class ConfigError(PoolError):
    """Unreadable registry file or invalid settings."""
    kind = ErrorKind.CONFIG


class CommandError(PoolError):
    """An OS tool exited unsuccessfully."""

    kind = ErrorKind.COMMAND

    def __init__(self, message: str, command: Optional[List[str]] = None,
                 returncode: Optional[int] = None, stderr: str = "",
                 step: Optional[str] = None):
        super().__init__(message, step=step)
        self.command = list(command) if command else []
        self.returncode = returncode
        self.stderr = stderr or ""

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        if self.command:
            payload['command'] = ' '.join(self.command)
        if self.returncode is not None:
            payload['returncode'] = self.returncode
        if self.stderr:
            payload['stderr'] = self.stderr.strip()
        return payload


class MountError(CommandError):
    """Mounting or unmounting failed."""
    kind = ErrorKind.MOUNT


class ProbeError(CommandError):
    """Device inspection failed; handled like any other command failure."""
    kind = ErrorKind.PROBE


def with_step(error: PoolError, step: str) -> PoolError:
    """Attach the failing step to an error unless one is already recorded."""
    if not error.step:
        error.step = step
    return error


@contextmanager
def step(name: str) -> Iterator[None]:
    """Tag any PoolError raised inside the block with the step ``name``."""
    try:
        yield
    except PoolError as e:
        with_step(e, name)
        raise
