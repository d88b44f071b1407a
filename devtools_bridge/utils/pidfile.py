"""
PID / lock artifacts
====================

Each long-lived process records its PID in a lock file so a later instance
(or external cleanup tooling) can find and stop it.
"""

import logging
import os
import tempfile
from pathlib import Path
from typing import Iterable, List, Optional

import psutil

logger = logging.getLogger("devtools.pidfile")


def atomic_write_text(path: Path, text: str) -> None:
    """Write ``text`` to ``path`` via temp file + rename (readers never see a partial file)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        try:
            os.unlink(tmp)
        except OSError:
            pass
        raise


class PidFile:
    def __init__(self, path: Path):
        self.path = Path(path)

    def write(self, pid: Optional[int] = None) -> int:
        pid = pid or os.getpid()
        atomic_write_text(self.path, str(pid))
        logger.debug(f"Wrote PID {pid} to {self.path}")
        return pid

    def read(self) -> Optional[int]:
        try:
            raw = self.path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning(f"Could not read {self.path}: {e}")
            return None
        try:
            pid = int(raw)
        except ValueError:
            logger.warning(f"Ignoring garbled PID file {self.path}: {raw[:32]!r}")
            return None
        return pid if pid > 0 else None

    def remove(self) -> None:
        try:
            self.path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Could not remove {self.path}: {e}")

    def __repr__(self) -> str:
        return f"PidFile({str(self.path)!r})"


def terminate_pid(pid: int, timeout: float = 3.0) -> bool:
    """Terminate ``pid`` (SIGTERM, then SIGKILL after ``timeout``).

    Returns True if a process was found and stopped.
    """
    try:
        proc = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return False

    logger.info(f"Killing stale process {pid} ({proc.name()})")
    try:
        proc.terminate()
        try:
            proc.wait(timeout=timeout)
        except psutil.TimeoutExpired:
            logger.warning(f"Process {pid} ignored SIGTERM, sending SIGKILL")
            proc.kill()
            proc.wait(timeout=timeout)
    except psutil.NoSuchProcess:
        pass
    except (psutil.AccessDenied, psutil.TimeoutExpired) as e:
        logger.error(f"Failed to kill process {pid}: {e}")
        return False
    return True


def cleanup_stale(pidfiles: Iterable[PidFile], timeout: float = 3.0) -> List[int]:
    """Stop processes recorded by a previous instance and remove their PID files.

    Best-effort: missing files are fine, our own PID and our parent are never touched.
    """
    protected = {os.getpid(), os.getppid()}
    killed = []
    for pidfile in pidfiles:
        pid = pidfile.read()
        if pid is not None and pid not in protected:
            if terminate_pid(pid, timeout=timeout):
                killed.append(pid)
        pidfile.remove()
    return killed


def pid_alive(pid: int) -> bool:
    """True if ``pid`` is a running (non-zombie) process."""
    try:
        proc = psutil.Process(pid)
        return proc.is_running() and proc.status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        return True
