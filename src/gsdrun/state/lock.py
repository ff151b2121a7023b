from __future__ import annotations

import errno
import os
import stat
import time
from collections.abc import Iterator
from contextlib import contextmanager, suppress
from pathlib import Path

from gsdrun.util.errors import RunConflictError
from gsdrun.util.path_guard import has_symlink_ancestor, is_symlink_path


@contextmanager
def exclusive_lock(
    lock_path: Path,
    stale_sec: float = 3600,
    *,
    retries: int = 0,
    retry_interval: float = 0.2,
) -> Iterator[None]:
    """Hold an O_EXCL lock file for the duration of the block.

    A lock older than ``stale_sec`` is assumed abandoned and taken over.
    The file is removed on exit only if it is still the one we created.
    """
    if has_symlink_ancestor(lock_path):
        raise OSError(f"lock path contains symlink component: {lock_path}")
    open_flags = os.O_CREAT | os.O_EXCL | os.O_WRONLY
    if hasattr(os, "O_NOFOLLOW"):
        open_flags |= os.O_NOFOLLOW

    def _is_stale() -> bool:
        try:
            lock_meta = lock_path.lstat()
        except (OSError, RuntimeError):
            return False
        if stat.S_ISLNK(lock_meta.st_mode) or not stat.S_ISREG(lock_meta.st_mode):
            return False
        return time.time() - lock_meta.st_mtime > stale_sec

    attempt = 0
    while True:
        if is_symlink_path(lock_path):
            raise OSError(f"lock path must not be symlink: {lock_path}")
        try:
            fd = os.open(lock_path, open_flags)
        except FileExistsError as err:
            if _is_stale():
                with suppress(OSError):
                    lock_path.unlink(missing_ok=True)
                continue
            if attempt >= retries:
                raise RunConflictError(f"locked by another process: {lock_path}") from err
            attempt += 1
            time.sleep(retry_interval)
            continue
        except OSError as err:
            if err.errno == errno.ELOOP:
                raise OSError(f"lock path must not be symlink: {lock_path}") from err
            raise
        break

    try:
        lock_meta = os.fstat(fd)
        os.write(fd, str(os.getpid()).encode("utf-8"))
    except OSError:
        with suppress(OSError):
            os.close(fd)
        with suppress(OSError):
            lock_path.unlink(missing_ok=True)
        raise
    with suppress(OSError):
        os.close(fd)

    try:
        yield
    finally:
        try:
            current = lock_path.lstat()
        except OSError:
            current = None
        if (
            current is not None
            and stat.S_ISREG(current.st_mode)
            and current.st_ino == lock_meta.st_ino
            and current.st_dev == lock_meta.st_dev
        ):
            with suppress(OSError):
                lock_path.unlink(missing_ok=True)


@contextmanager
def run_lock(
    run_dir: Path, stale_sec: float = 3600, *, retries: int = 0, retry_interval: float = 0.2
) -> Iterator[None]:
    """Allow a single orchestrator process per run directory."""
    if is_symlink_path(run_dir):
        raise OSError(f"run directory must not be symlink: {run_dir}")
    with exclusive_lock(
        run_dir / ".lock", stale_sec, retries=retries, retry_interval=retry_interval
    ):
        yield
