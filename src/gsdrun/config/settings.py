"""Runner configuration.

Settings are read once from the environment (the same variable names the
sandbox ``.env`` file uses), overridden by CLI options, and then passed
explicitly to each component.
"""

from __future__ import annotations

import math
import os
import shlex
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path

from gsdrun.util.errors import ConfigError
from gsdrun.util.time import period_key_for

DEFAULT_TOKEN_LIMIT = 50_000
DEFAULT_PROVIDER_CMD = ("claude", "-p")
DEFAULT_MODEL = "claude-sonnet-4-5"
PROVIDERS = ("command", "anthropic")


def _parse_int(environ: Mapping[str, str], key: str, default: int, *, minimum: int) -> int:
    raw = environ.get(key, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigError(f"{key} must be an integer, got {raw!r}") from exc
    if value < minimum:
        raise ConfigError(f"{key} must be >= {minimum}, got {value}")
    return value


def _parse_optional_float(environ: Mapping[str, str], key: str) -> float | None:
    raw = environ.get(key, "").strip()
    if not raw:
        return None
    try:
        value = float(raw)
    except ValueError as exc:
        raise ConfigError(f"{key} must be a number, got {raw!r}") from exc
    if not math.isfinite(value) or value <= 0:
        raise ConfigError(f"{key} must be > 0, got {raw!r}")
    return value


def _parse_optional_path(environ: Mapping[str, str], key: str) -> Path | None:
    raw = environ.get(key, "").strip()
    return Path(raw).expanduser() if raw else None


def _parse_cmd(environ: Mapping[str, str], key: str) -> list[str]:
    raw = environ.get(key, "").strip()
    if not raw:
        return list(DEFAULT_PROVIDER_CMD)
    try:
        parts = shlex.split(raw)
    except ValueError as exc:
        raise ConfigError(f"{key} is not a valid command line: {exc}") from exc
    if not parts:
        raise ConfigError(f"{key} must not be empty")
    return parts


@dataclass(slots=True)
class RunnerConfig:
    token_limit: int = DEFAULT_TOKEN_LIMIT
    period_key: str | None = None
    project_name: str = "sandbox"
    telegram_bot_token: str | None = None
    telegram_chat_id: str | None = None
    provider: str = "command"
    provider_cmd: list[str] = field(default_factory=lambda: list(DEFAULT_PROVIDER_CMD))
    step_timeout_sec: float | None = None
    anthropic_api_key: str | None = None
    model: str = DEFAULT_MODEL
    max_tokens: int = 8192
    chars_per_unit: int = 4
    prompt_preamble: str = ""
    max_parallel: int = 1
    transcripts_dir: Path | None = None

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> RunnerConfig:
        env = os.environ if environ is None else environ
        provider = env.get("GSD_PROVIDER", "").strip() or "command"
        if provider not in PROVIDERS:
            raise ConfigError(f"GSD_PROVIDER must be one of {list(PROVIDERS)}, got {provider!r}")
        return cls(
            token_limit=_parse_int(env, "MAX_TOKEN_LIMIT", DEFAULT_TOKEN_LIMIT, minimum=0),
            period_key=env.get("GSD_PERIOD", "").strip() or None,
            project_name=env.get("PROJECT_NAME", "").strip() or "sandbox",
            telegram_bot_token=env.get("TELEGRAM_BOT_TOKEN", "").strip() or None,
            telegram_chat_id=env.get("TELEGRAM_CHAT_ID", "").strip() or None,
            provider=provider,
            provider_cmd=_parse_cmd(env, "GSD_PROVIDER_CMD"),
            step_timeout_sec=_parse_optional_float(env, "GSD_STEP_TIMEOUT_SEC"),
            anthropic_api_key=env.get("ANTHROPIC_API_KEY", "").strip() or None,
            model=env.get("GSD_MODEL", "").strip() or DEFAULT_MODEL,
            max_tokens=_parse_int(env, "GSD_MAX_TOKENS", 8192, minimum=1),
            chars_per_unit=_parse_int(env, "GSD_CHARS_PER_UNIT", 4, minimum=1),
            prompt_preamble=env.get("GSD_PROMPT_PREAMBLE", ""),
            transcripts_dir=_parse_optional_path(env, "GSD_TRANSCRIPTS_DIR"),
        )

    def with_overrides(self, **overrides: object) -> RunnerConfig:
        """Return a copy with every non-None override applied."""
        changes = {key: value for key, value in overrides.items() if value is not None}
        return replace(self, **changes)

    def resolved_period_key(self, now: datetime | None = None) -> str:
        if self.period_key:
            return self.period_key
        return period_key_for(now or datetime.now().astimezone())

    @property
    def telegram_enabled(self) -> bool:
        return bool(self.telegram_bot_token and self.telegram_chat_id)
