"""
Advisory project locking for Kanuka.

Serializes access-changing operations run against the same project on
one machine. Uses fcntl on Unix and msvcrt on Windows; falls back to an
exclusive lock file when neither is available.
"""

import os
import sys
import time
from contextlib import contextmanager
from pathlib import Path

LOCK_BACKEND = "none"

if sys.platform == "win32":
    try:
        import msvcrt
        LOCK_BACKEND = "msvcrt"
    except ImportError:
        pass
else:
    try:
        import fcntl
        LOCK_BACKEND = "fcntl"
    except ImportError:
        pass


DEFAULT_TIMEOUT = 10.0
POLL_INTERVAL = 0.1


class FileLockError(Exception):
    """Base exception for file locking errors."""
    pass


class FileLockTimeout(FileLockError):
    """Raised when lock acquisition times out."""
    pass


class FileLock:
    """
    Exclusive advisory lock on a path.

    Usage:
        with FileLock(storage.lock_path):
            # read grant, write records
            pass

    The lock file's parent directory must already exist; the lock never
    creates project directories.
    """

    FALLBACK_SUFFIX = ".pid"

    def __init__(self, path: Path, timeout: float = DEFAULT_TIMEOUT,
                 poll_interval: float = POLL_INTERVAL):
        self.path = Path(path)
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._file = None
        self._fallback_path = None

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False

    @property
    def locked(self) -> bool:
        return self._file is not None or self._fallback_path is not None

    def acquire(self) -> None:
        """Acquire the lock, polling until the timeout expires."""
        if LOCK_BACKEND == "none":
            self._fallback_path = self._poll(self._create_pid_file, FileExistsError)
            return

        handle = open(self.path, "a+")
        try:
            self._poll(lambda: self._lock_handle(handle), OSError)
        except FileLockTimeout:
            handle.close()
            raise
        self._file = handle

    def release(self) -> None:
        """Release the lock if held."""
        if self._fallback_path is not None:
            pid_file, self._fallback_path = self._fallback_path, None
            try:
                os.unlink(pid_file)
            except FileNotFoundError:
                pass
            return

        handle, self._file = self._file, None
        if handle is None:
            return
        try:
            if LOCK_BACKEND == "fcntl":
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
            elif LOCK_BACKEND == "msvcrt":
                handle.seek(0)
                msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)
        finally:
            handle.close()

    def _poll(self, attempt, busy_error):
        """Call attempt() until it stops raising busy_error or time runs out."""
        deadline = time.monotonic() + self.timeout
        while True:
            try:
                return attempt()
            except busy_error:
                if time.monotonic() >= deadline:
                    raise FileLockTimeout(
                        f"Could not acquire lock on {self.path} within {self.timeout}s"
                    )
                time.sleep(self.poll_interval)

    @staticmethod
    def _lock_handle(handle) -> None:
        if LOCK_BACKEND == "fcntl":
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        else:
            # msvcrt locks a byte range; the first byte stands for the file
            handle.seek(0)
            msvcrt.locking(handle.fileno(), msvcrt.LK_NBLCK, 1)

    def _create_pid_file(self) -> Path:
        pid_file = Path(f"{self.path}{self.FALLBACK_SUFFIX}")
        fd = os.open(pid_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        with os.fdopen(fd, "w") as f:
            f.write(str(os.getpid()))
        return pid_file


@contextmanager
def project_lock(path: Path, timeout: float = DEFAULT_TIMEOUT):
    """
    Context manager holding the project's exclusive lock.

    Args:
        path: Lock file path, normally KanukaStorage.lock_path
        timeout: Maximum time to wait for the lock
    """
    lock = FileLock(path, timeout=timeout)
    lock.acquire()
    try:
        yield lock
    finally:
        lock.release()
