"""Local state locking.

The lock file sits next to the state file and records who holds it, so a
second process waiting on the lock can report the holder.
"""

from __future__ import annotations

import json
import logging
import os
import socket
import sys
import time
from datetime import UTC, datetime
from pathlib import Path
from typing import IO, TYPE_CHECKING

from cloud_provisioner.engine.errors import StateLockError

if TYPE_CHECKING:
    from types import TracebackType

try:
    import fcntl  # type: ignore[attr-defined]
except ImportError:  # pragma: no cover
    fcntl = None  # type: ignore[assignment]

logger = logging.getLogger(__name__)

_POLL_INTERVAL = 0.2


class StateLock:
    """Exclusive, cross-process lock for a local state file.

    Args:
        state_path: Path of the state file being protected.
        operation: Label written into the lock file ("plan", "apply", ...).
        timeout: Seconds to keep retrying a held lock; ``0`` fails immediately.
    """

    def __init__(self, state_path: Path, *, operation: str = "apply", timeout: float = 0.0) -> None:
        self._lock_path = Path(str(state_path) + ".lock")
        self._operation = operation
        self._timeout = timeout
        self._file: IO[str] | None = None

    @property
    def lock_path(self) -> Path:
        return self._lock_path

    def __enter__(self) -> StateLock:
        # Keep fd open for lifetime of the lock.
        self._lock_path.parent.mkdir(parents=True, exist_ok=True)
        self._file = self._lock_path.open("a+", encoding="utf-8")
        deadline = time.monotonic() + self._timeout
        while True:
            try:
                self._acquire()
                break
            except BlockingIOError as e:
                if time.monotonic() >= deadline:
                    holder = self._holder()
                    self._close()
                    raise StateLockError(f"State is locked by {holder}") from e
                time.sleep(_POLL_INTERVAL)
            except Exception as e:
                self._close()
                raise StateLockError(str(e)) from e

        self._write_info()
        logger.debug("Acquired state lock %s for %s", self._lock_path, self._operation)
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if self._file is None:
            return
        try:
            self._file.seek(0)
            self._file.truncate()
            self._file.flush()
            self._release()
        finally:
            self._close()
        logger.debug("Released state lock %s", self._lock_path)

    def _close(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None

    def _write_info(self) -> None:
        assert self._file is not None
        info = {
            "operation": self._operation,
            "pid": os.getpid(),
            "host": socket.gethostname(),
            "created": datetime.now(UTC).isoformat(),
        }
        self._file.seek(0)
        self._file.truncate()
        self._file.write(json.dumps(info))
        self._file.flush()

    def _holder(self) -> str:
        try:
            info = json.loads(self._lock_path.read_text(encoding="utf-8") or "{}")
        except (OSError, ValueError):
            return "another process"
        if not info:
            return "another process"
        return f"{info.get('operation', '?')} (pid {info.get('pid', '?')} on {info.get('host', '?')})"

    def _acquire(self) -> None:
        if self._file is None:
            raise StateLockError("Lock file is not open")

        if fcntl is not None:
            fcntl.flock(self._file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            return

        if sys.platform == "win32":  # pragma: no cover
            import msvcrt

            try:
                msvcrt.locking(self._file.fileno(), msvcrt.LK_NBLCK, 1)
            except OSError as e:
                raise BlockingIOError(str(e)) from e
            return

        raise StateLockError("State locking is not supported on this platform")

    def _release(self) -> None:
        if self._file is None:
            return

        if fcntl is not None:
            fcntl.flock(self._file.fileno(), fcntl.LOCK_UN)
            return

        if sys.platform == "win32":  # pragma: no cover
            import msvcrt

            msvcrt.locking(self._file.fileno(), msvcrt.LK_UNLCK, 1)
