"""Advisory file lock serializing access to the managed table.

Mutations (capture, apply, restore, rollback) take the lock exclusively;
verify and diagnose take it shared. Acquisition blocks and is re-entrant
within a process, so an apply can call the snapshotter's restore without
deadlocking on itself.
"""

import fcntl
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Optional

from k3sfw.core.exceptions import ConfigurationError
from k3sfw.core.output import console


class EngineLock:
    """Re-entrant flock on a single lock file."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._fd: Optional[int] = None
        self._depth = 0
        self._exclusive = False

    @property
    def held(self) -> bool:
        return self._depth > 0

    @property
    def is_exclusive(self) -> bool:
        return self.held and self._exclusive

    def _open(self) -> int:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            return os.open(self.path, os.O_RDWR | os.O_CREAT, 0o600)
        except OSError as e:
            raise ConfigurationError(
                f"Cannot open lock file: {self.path}",
                hint="Run as root or point K3SFW_LOCK_FILE at a writable path",
                details=[str(e)],
            ) from e

    @contextmanager
    def acquire(self, exclusive: bool = True) -> Generator[None, None, None]:
        """Hold the lock for the duration of the block."""
        if self._fd is None:
            self._fd = self._open()

        upgraded = False
        if self._depth == 0:
            console.debug(
                f"Waiting for {'exclusive' if exclusive else 'shared'} lock {self.path}"
            )
            fcntl.flock(self._fd, fcntl.LOCK_EX if exclusive else fcntl.LOCK_SH)
            self._exclusive = exclusive
        elif exclusive and not self._exclusive:
            fcntl.flock(self._fd, fcntl.LOCK_EX)
            self._exclusive = True
            upgraded = True

        self._depth += 1
        try:
            yield
        finally:
            self._depth -= 1
            if upgraded:
                fcntl.flock(self._fd, fcntl.LOCK_SH)
                self._exclusive = False
            if self._depth == 0:
                fcntl.flock(self._fd, fcntl.LOCK_UN)
                os.close(self._fd)
                self._fd = None
                self._exclusive = False

    def exclusive(self):
        return self.acquire(exclusive=True)

    def shared(self):
        return self.acquire(exclusive=False)
