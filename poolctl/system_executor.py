"""Command execution: the only channel through which the engine touches the OS."""

import subprocess
import logging
import shlex
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Dict, Optional, Sequence, Type
import re

from .errors import CommandError, ValidationError


logger = logging.getLogger(__name__)

TIMEOUT_RETURNCODE = 124
NOT_EXECUTABLE_RETURNCODE = 126
NOT_FOUND_RETURNCODE = 127


@dataclass
class CommandResult:
    """Captured outcome of one command."""
    args: List[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""
    duration_ms: float = 0.0

    @property
    def success(self) -> bool:
        return self.returncode == 0

    @property
    def timed_out(self) -> bool:
        return self.returncode == TIMEOUT_RETURNCODE


class CommandExecutor(ABC):
    """(command, args, timeout) -> (stdout, stderr, exit code)."""

    @abstractmethod
    def run(self, args: Sequence[str], timeout: Optional[float] = None) -> CommandResult:
        """
        Run a command.

        Args:
            args: Binary followed by its arguments
            timeout: Seconds before the command is abandoned; None uses the
                executor default, 0 waits without limit

        Returns:
            CommandResult; a non-zero return code is not an exception here
        """

    def check(self, args: Sequence[str], timeout: Optional[float] = None,
              error_cls: Type[CommandError] = CommandError,
              message: Optional[str] = None) -> CommandResult:
        """Run a command and raise ``error_cls`` when it fails."""
        result = self.run(args, timeout=timeout)
        if not result.success:
            detail = result.stderr.strip() or result.stdout.strip() or f"exit code {result.returncode}"
            raise error_cls(
                f"{message or 'Command failed'}: {detail}",
                command=result.args,
                returncode=result.returncode,
                stderr=result.stderr,
            )
        return result


class SystemCommandExecutor(CommandExecutor):
    """Runs allow-listed binaries through subprocess with logging and history."""

    ALLOWED_BINARIES = {
        'blkid', 'lsblk', 'blockdev', 'parted', 'partprobe', 'udevadm', 'wipefs',
        'mkfs.xfs', 'mkfs.ext4', 'mkfs.btrfs',
        'mount', 'umount', 'chown', 'mergerfs',
        'btrfs', 'snapraid', 'hdparm', 'dd', 'pkill',
    }

    # Binaries that never need root
    UNPRIVILEGED_BINARIES = {'lsblk'}

    DEVICE_PATH_PATTERN = re.compile(r'^/dev/[a-zA-Z0-9/_.:-]+$')

    # Characters that have no business in an argument list
    FORBIDDEN_ARG_PATTERN = re.compile(r'[;&|`$<>\n]')

    def __init__(self, dry_run: bool = False, use_sudo: bool = False,
                 default_timeout: float = 300):
        """
        Initialize the SystemCommandExecutor.

        Args:
            dry_run: If True, commands will be logged but not executed
            use_sudo: Prefix privileged commands with sudo
            default_timeout: Timeout in seconds when a call does not pass one
        """
        self.dry_run = dry_run
        self.use_sudo = use_sudo
        self.default_timeout = default_timeout
        self._command_history: List[Dict] = []

    def run(self, args: Sequence[str], timeout: Optional[float] = None) -> CommandResult:
        args = [str(arg) for arg in args]
        self._validate_command(args)

        full_command = list(args)
        if self.use_sudo and args[0] not in self.UNPRIVILEGED_BINARIES:
            full_command = ['sudo', '-n'] + full_command

        if timeout is None:
            timeout = self.default_timeout
        effective_timeout = timeout if timeout and timeout > 0 else None

        command_str = ' '.join(shlex.quote(arg) for arg in full_command)
        logger.info(f"Executing command: {command_str}", extra={'command': command_str})

        self._command_history.append({
            'command': command_str,
            'binary': args[0],
            'dry_run': self.dry_run,
        })

        if self.dry_run:
            logger.info("DRY RUN: Command would be executed")
            return CommandResult(args=args, returncode=0, stdout="", stderr="")

        started = time.monotonic()
        try:
            completed = subprocess.run(
                full_command,
                capture_output=True,
                text=True,
                timeout=effective_timeout,
                check=False
            )
        except subprocess.TimeoutExpired:
            logger.error(f"Command timed out after {effective_timeout}s: {command_str}")
            return CommandResult(
                args=args,
                returncode=TIMEOUT_RETURNCODE,
                stderr=f"Command timed out after {effective_timeout}s",
                duration_ms=self._elapsed_ms(started),
            )
        except FileNotFoundError:
            logger.error(f"Command not found: {args[0]}")
            return CommandResult(
                args=args,
                returncode=NOT_FOUND_RETURNCODE,
                stderr=f"{args[0]}: command not found",
                duration_ms=self._elapsed_ms(started),
            )
        except OSError as e:
            logger.error(f"Command could not be started: {command_str}: {e}")
            return CommandResult(
                args=args,
                returncode=NOT_EXECUTABLE_RETURNCODE,
                stderr=f"{args[0]}: {e}",
                duration_ms=self._elapsed_ms(started),
            )

        result = CommandResult(
            args=args,
            returncode=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
            duration_ms=self._elapsed_ms(started),
        )

        if result.success:
            logger.info(f"Command executed successfully: {command_str}",
                        extra={'duration_ms': result.duration_ms})
        else:
            logger.error(f"Command failed with return code {result.returncode}: {command_str}",
                         extra={'returncode': result.returncode})
            logger.error(f"Error output: {result.stderr.strip()}")

        return result

    def _validate_command(self, args: List[str]) -> None:
        """
        Validate the binary and arguments.

        Raises:
            ValidationError: If the binary is not allowed or an argument is unsafe
        """
        if not args:
            raise ValidationError("Command cannot be empty")

        if args[0] not in self.ALLOWED_BINARIES:
            raise ValidationError(f"Binary not allowed: {args[0]}")

        for arg in args[1:]:
            if self.FORBIDDEN_ARG_PATTERN.search(arg):
                raise ValidationError(f"Argument not allowed for {args[0]}: {arg}")
            if arg.startswith('/dev/') and not self._validate_device_path(arg):
                raise ValidationError(f"Invalid device path: {arg}")

    def _validate_device_path(self, path: str) -> bool:
        """Validate device path format."""
        return bool(self.DEVICE_PATH_PATTERN.match(path)) and '..' not in path

    @staticmethod
    def _elapsed_ms(started: float) -> float:
        return round((time.monotonic() - started) * 1000, 2)

    def get_command_history(self) -> List[Dict]:
        """Get the history of executed commands."""
        return self._command_history.copy()

    def clear_command_history(self) -> None:
        """Clear the command history."""
        self._command_history.clear()
