"""Single-instance lock for the daemon.

Only one process may own the messaging session for a credentials
directory. The lock is a PID file held with fcntl.flock; a file left
behind by a crashed process is detected by probing its PID.
"""

import fcntl
import os
from pathlib import Path
from typing import Optional


class DaemonAlreadyRunningError(Exception):
    """Another daemon holds the lock."""

    def __init__(self, pid: Optional[int] = None):
        self.pid = pid
        if pid:
            super().__init__(f"Daemon already running with PID {pid}")
        else:
            super().__init__("Daemon already running")


class DaemonLock:
    """PID file lock.

    Usage:
        with DaemonLock(Path("~/.config/msgbridge/daemon.lock")):
            run_daemon()
    """

    def __init__(self, lock_file: Path):
        self._path = Path(lock_file).expanduser()
        self._fd: Optional[int] = None

    @property
    def path(self) -> Path:
        return self._path

    def is_held(self) -> bool:
        """True if this instance holds the lock."""
        return self._fd is not None

    def get_owner_pid(self) -> Optional[int]:
        """PID recorded in the lock file, if any."""
        try:
            return int(self._path.read_text().strip())
        except (OSError, ValueError):
            return None

    def owner_running(self) -> bool:
        """True if the recorded owner process is alive."""
        pid = self.get_owner_pid()
        return pid is not None and _pid_alive(pid)

    def acquire(self) -> None:
        """Take the lock and record our PID.

        Raises:
            DaemonAlreadyRunningError: If a live process holds it.
        """
        if self._fd is not None:
            return

        pid = self.get_owner_pid()
        if pid is not None and pid != os.getpid() and _pid_alive(pid):
            raise DaemonAlreadyRunningError(pid)

        self._path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(str(self._path), os.O_RDWR | os.O_CREAT, 0o600)
        except OSError as e:
            raise DaemonAlreadyRunningError() from e

        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError:
            os.close(fd)
            raise DaemonAlreadyRunningError(self.get_owner_pid())

        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
        os.fsync(fd)
        os.chmod(self._path, 0o600)
        self._fd = fd

    def release(self) -> None:
        """Drop the lock and delete the file. Safe to call repeatedly."""
        fd, self._fd = self._fd, None
        if fd is None:
            return

        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
        except OSError:
            pass
        finally:
            os.close(fd)

        try:
            self._path.unlink()
        except FileNotFoundError:
            pass

    def __enter__(self) -> "DaemonLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()


def _pid_alive(pid: int) -> bool:
    # Signal 0 only checks existence
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True
