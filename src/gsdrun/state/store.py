"""Durable per-step and per-period state.

Every write goes through a temp file + ``os.replace`` so readers never see
a half-written record. Period usage is additionally serialized by a
process-local lock and a lock file shared by every run using the same
usage directory.
"""

from __future__ import annotations

import errno
import json
import logging
import os
import re
import stat
import threading
from collections import deque
from contextlib import suppress
from pathlib import Path

from gsdrun.state.lock import exclusive_lock
from gsdrun.state.model import STEP_STATUS_VALUES, BudgetPeriod, StepRecord, TranscriptEntry
from gsdrun.util.errors import StateError
from gsdrun.util.path_guard import ensure_regular_target
from gsdrun.util.paths import ensure_step_layout, step_dir
from gsdrun.util.time import now_iso

logger = logging.getLogger(__name__)

_SAFE_KEY_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_KEY_MAX_LEN = 128
_ALLOWED_RECORD_KEYS = set(StepRecord("x").to_dict().keys())
_ALLOWED_PERIOD_KEYS = {"period_key", "used_units", "updated_at"}
TEXT_ARTIFACTS = ("prompt.txt", "response.md", "stderr.log")


def _fsync_directory(path: Path) -> None:
    try:
        fd = os.open(str(path), os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        pass
    finally:
        with suppress(OSError):
            os.close(fd)


def _check_key(kind: str, value: str) -> None:
    if len(value) > _KEY_MAX_LEN or _SAFE_KEY_PATTERN.fullmatch(value) is None:
        raise ValueError(f"invalid {kind}: {value!r}")


def _is_non_negative_int(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


def write_text_atomic(path: Path, payload: str) -> None:
    ensure_regular_target(path, label="state")
    tmp_path = path.with_name(path.name + ".tmp")
    flags = os.O_WRONLY | os.O_CREAT | os.O_TRUNC
    if hasattr(os, "O_NOFOLLOW"):
        flags |= os.O_NOFOLLOW
    try:
        fd = os.open(str(tmp_path), flags, 0o600)
    except OSError as exc:
        if exc.errno == errno.ELOOP:
            raise OSError(f"temporary state path must not be symlink: {tmp_path}") from exc
        raise
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
    except OSError:
        with suppress(OSError):
            tmp_path.unlink(missing_ok=True)
        raise
    try:
        os.replace(tmp_path, path)
    except OSError:
        with suppress(OSError):
            tmp_path.unlink(missing_ok=True)
        raise
    _fsync_directory(path.parent)


def _read_json(path: Path) -> object | None:
    """Return parsed JSON, or None when the file does not exist."""
    try:
        meta = path.lstat()
    except FileNotFoundError:
        return None
    except OSError as exc:
        raise StateError(f"failed to read state file: {path}") from exc
    if stat.S_ISLNK(meta.st_mode):
        raise StateError(f"state file must not be symlink: {path}")
    if not stat.S_ISREG(meta.st_mode):
        raise StateError(f"failed to read state file: {path}")
    try:
        with path.open("r", encoding="utf-8") as f:
            return json.loads(f.read())
    except FileNotFoundError:
        return None
    except UnicodeError as exc:
        raise StateError(f"failed to decode state file as utf-8: {path}") from exc
    except json.JSONDecodeError as exc:
        raise StateError(f"invalid state json: {path}") from exc
    except OSError as exc:
        raise StateError(f"failed to read state file: {path}") from exc


def _validate_record_shape(raw: object, step_id: str, path: Path) -> dict[str, object]:
    if not isinstance(raw, dict) or any(not isinstance(key, str) for key in raw):
        raise StateError(f"state root must be object: {path}")
    unknown = set(raw.keys()) - _ALLOWED_RECORD_KEYS
    if unknown:
        raise StateError(f"invalid state field {sorted(unknown)}: {path}")
    if raw.get("step_id") != step_id:
        raise StateError(f"state step_id does not match directory: {path}")
    if raw.get("status") not in STEP_STATUS_VALUES:
        raise StateError(f"invalid state field: status: {path}")
    for key in ("consumed_units", "attempts"):
        if not _is_non_negative_int(raw.get(key)):
            raise StateError(f"invalid state field: {key}: {path}")
    return raw


def _validate_period_shape(raw: object, period_key: str, path: Path) -> dict[str, object]:
    if not isinstance(raw, dict) or any(not isinstance(key, str) for key in raw):
        raise StateError(f"usage root must be object: {path}")
    if set(raw.keys()) - _ALLOWED_PERIOD_KEYS:
        raise StateError(f"invalid usage field: root: {path}")
    if raw.get("period_key") != period_key:
        raise StateError(f"usage period_key does not match file name: {path}")
    if not _is_non_negative_int(raw.get("used_units")):
        raise StateError(f"invalid usage field: used_units: {path}")
    return raw


class StateStore:
    """Filesystem-backed store for step records, transcripts and period usage."""

    def __init__(self, run_dir: Path, usage_dir: Path) -> None:
        self.run_dir = run_dir
        self.usage_dir = usage_dir
        self._usage_lock = threading.Lock()

    def _record_path(self, step_id: str) -> Path:
        _check_key("step id", step_id)
        return step_dir(self.run_dir, step_id) / "record.json"

    def _period_path(self, period_key: str) -> Path:
        _check_key("period key", period_key)
        return self.usage_dir / f"{period_key}.json"

    def get(self, step_id: str) -> StepRecord | None:
        path = self._record_path(step_id)
        raw = _read_json(path)
        if raw is None:
            return None
        return StepRecord.from_dict(_validate_record_shape(raw, step_id, path))

    def put(self, record: StepRecord) -> None:
        path = self._record_path(record.step_id)
        ensure_step_layout(self.run_dir, record.step_id)
        payload = json.dumps(record.to_dict(), ensure_ascii=False, indent=2, sort_keys=True)
        write_text_atomic(path, payload + "\n")

    def load_records(self, step_ids: list[str]) -> dict[str, StepRecord]:
        records: dict[str, StepRecord] = {}
        for step_id in step_ids:
            record = self.get(step_id)
            if record is not None:
                records[step_id] = record
        return records

    def get_period(self, period_key: str) -> BudgetPeriod:
        path = self._period_path(period_key)
        raw = _read_json(path)
        if raw is None:
            return BudgetPeriod(period_key=period_key)
        return BudgetPeriod.from_dict(_validate_period_shape(raw, period_key, path))

    def current_period_usage(self, period_key: str) -> int:
        return self.get_period(period_key).used_units

    def add_period_usage(self, period_key: str, delta: int) -> int:
        """Add ``delta`` units to the period total and return the new total."""
        if isinstance(delta, bool) or not isinstance(delta, int) or delta < 0:
            raise ValueError(f"usage delta must be int >= 0, got {delta!r}")
        path = self._period_path(period_key)
        self.usage_dir.mkdir(parents=True, exist_ok=True)
        with self._usage_lock, exclusive_lock(
            self.usage_dir / ".usage.lock", stale_sec=60, retries=100, retry_interval=0.05
        ):
            period = self.get_period(period_key)
            period.used_units += delta
            period.updated_at = now_iso()
            payload = json.dumps(period.to_dict(), ensure_ascii=False, indent=2, sort_keys=True)
            write_text_atomic(path, payload + "\n")
        logger.debug("period %s usage +%d -> %d", period_key, delta, period.used_units)
        return period.used_units

    def write_artifact(self, step_id: str, name: str, text: str) -> str:
        """Write a step artifact and return its run-dir-relative path."""
        current = ensure_step_layout(self.run_dir, step_id)
        path = current / name
        write_text_atomic(path, text)
        return str(path.relative_to(self.run_dir))

    def write_transcript(self, entry: TranscriptEntry) -> str:
        current = ensure_step_layout(self.run_dir, entry.step_id)
        path = current / "transcripts" / f"{entry.attempt}.json"
        if path.exists():
            raise StateError(f"transcript already recorded: {path}")
        payload = json.dumps(entry.to_dict(), ensure_ascii=False, indent=2, sort_keys=True)
        write_text_atomic(path, payload + "\n")
        return str(path.relative_to(self.run_dir))

    def read_transcripts(self, step_id: str) -> list[TranscriptEntry]:
        _check_key("step id", step_id)
        root = step_dir(self.run_dir, step_id) / "transcripts"
        entries: list[TranscriptEntry] = []
        if not root.is_dir():
            return entries
        for path in root.glob("*.json"):
            raw = _read_json(path)
            if isinstance(raw, dict):
                entries.append(TranscriptEntry.from_dict(raw))
        return sorted(entries, key=lambda entry: entry.attempt)

    def tail_artifact(self, step_id: str, name: str, n: int) -> list[str]:
        """Return the last ``n`` lines of a recorded text artifact.

        An artifact that was never written reads as empty.
        """
        if name not in TEXT_ARTIFACTS:
            raise ValueError(f"unknown artifact: {name!r}")
        path = self._record_path(step_id).with_name(name)
        if n <= 0:
            return []
        try:
            meta = path.lstat()
        except FileNotFoundError:
            return []
        except OSError as exc:
            raise StateError(f"failed to read artifact: {path}") from exc
        if not stat.S_ISREG(meta.st_mode):
            raise StateError(f"artifact must be a regular file: {path}")
        try:
            with path.open("r", encoding="utf-8", errors="replace") as f:
                return [line.rstrip("\n") for line in deque(f, maxlen=n)]
        except OSError as exc:
            raise StateError(f"failed to read artifact: {path}") from exc
