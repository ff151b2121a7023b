from __future__ import annotations

import stat
from pathlib import Path


def is_symlink_path(path: Path, *, fail_closed: bool = True) -> bool:
    try:
        return path.is_symlink()
    except FileNotFoundError:
        return False
    except (OSError, RuntimeError):
        return fail_closed


def has_symlink_ancestor(path: Path) -> bool:
    current = path.parent
    while True:
        try:
            meta = current.lstat()
        except FileNotFoundError:
            pass
        except (OSError, RuntimeError):
            return True
        else:
            if stat.S_ISLNK(meta.st_mode):
                return True
        if current == current.parent:
            return False
        current = current.parent


def ensure_regular_target(path: Path, *, label: str) -> None:
    """Reject write targets that are symlinks or non-regular files."""
    if has_symlink_ancestor(path):
        raise OSError(f"{label} path must not include symlink: {path}")
    if is_symlink_path(path):
        raise OSError(f"{label} path must not be symlink: {path}")
    try:
        meta = path.lstat()
    except FileNotFoundError:
        return
    except (OSError, RuntimeError) as exc:
        raise OSError(f"failed to prepare {label} path: {path}") from exc
    if not stat.S_ISREG(meta.st_mode):
        raise OSError(f"{label} path must be regular file: {path}")
