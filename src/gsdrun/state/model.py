from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Literal, cast

StepStatus = Literal["PENDING", "DONE", "FAILED"]
STEP_STATUS_VALUES: set[str] = {"PENDING", "DONE", "FAILED"}
TERMINAL_STEP_STATUSES: set[str] = {"DONE", "FAILED"}


def _as_str(value: object, default: str = "") -> str:
    return value if isinstance(value, str) else default


def _as_optional_str(value: object) -> str | None:
    return value if isinstance(value, str) else None


def _as_bool(value: object, default: bool = False) -> bool:
    return value if isinstance(value, bool) else default


def _as_int(value: object, default: int = 0) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        return default
    return value


def _as_optional_float(value: object) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value):
        return None
    return float(value)


def _parse_step_status(value: object) -> StepStatus:
    status = _as_str(value, "PENDING")
    if status not in STEP_STATUS_VALUES:
        status = "PENDING"
    return cast(StepStatus, status)


@dataclass(slots=True)
class StepRecord:
    step_id: str
    status: StepStatus = "PENDING"
    consumed_units: int = 0
    duration_sec: float | None = None
    attempts: int = 0
    started_at: str | None = None
    ended_at: str | None = None
    prompt_path: str | None = None
    response_path: str | None = None
    transcript_path: str | None = None
    error: str | None = None

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_STEP_STATUSES

    def to_dict(self) -> dict[str, object]:
        return {
            "step_id": self.step_id,
            "status": self.status,
            "consumed_units": self.consumed_units,
            "duration_sec": self.duration_sec,
            "attempts": self.attempts,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "prompt_path": self.prompt_path,
            "response_path": self.response_path,
            "transcript_path": self.transcript_path,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> StepRecord:
        return cls(
            step_id=_as_str(data.get("step_id")),
            status=_parse_step_status(data.get("status")),
            consumed_units=max(_as_int(data.get("consumed_units")), 0),
            duration_sec=_as_optional_float(data.get("duration_sec")),
            attempts=max(_as_int(data.get("attempts")), 0),
            started_at=_as_optional_str(data.get("started_at")),
            ended_at=_as_optional_str(data.get("ended_at")),
            prompt_path=_as_optional_str(data.get("prompt_path")),
            response_path=_as_optional_str(data.get("response_path")),
            transcript_path=_as_optional_str(data.get("transcript_path")),
            error=_as_optional_str(data.get("error")),
        )


@dataclass(slots=True)
class BudgetPeriod:
    period_key: str
    used_units: int = 0
    updated_at: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "period_key": self.period_key,
            "used_units": self.used_units,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> BudgetPeriod:
        return cls(
            period_key=_as_str(data.get("period_key")),
            used_units=max(_as_int(data.get("used_units")), 0),
            updated_at=_as_optional_str(data.get("updated_at")),
        )


@dataclass(frozen=True, slots=True)
class TranscriptEntry:
    """One execution attempt of a step. Written once, never mutated."""

    step_id: str
    attempt: int
    prompt: str
    response: str
    consumed_units: int
    duration_sec: float
    timestamp: str
    ok: bool
    error: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "step_id": self.step_id,
            "attempt": self.attempt,
            "prompt": self.prompt,
            "response": self.response,
            "consumed_units": self.consumed_units,
            "duration_sec": self.duration_sec,
            "timestamp": self.timestamp,
            "ok": self.ok,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> TranscriptEntry:
        return cls(
            step_id=_as_str(data.get("step_id")),
            attempt=_as_int(data.get("attempt")),
            prompt=_as_str(data.get("prompt")),
            response=_as_str(data.get("response")),
            consumed_units=max(_as_int(data.get("consumed_units")), 0),
            duration_sec=_as_optional_float(data.get("duration_sec")) or 0.0,
            timestamp=_as_str(data.get("timestamp")),
            ok=_as_bool(data.get("ok")),
            error=_as_optional_str(data.get("error")),
        )
