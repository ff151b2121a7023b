"""Completion service adapters.

The orchestrator only needs "send text, get text or an error". Two
adapters are provided: a CLI agent invoked as a subprocess (``claude -p``
by default) and the Anthropic Messages API.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, runtime_checkable

from gsdrun.config.settings import RunnerConfig
from gsdrun.util.errors import CompletionError, ConfigError

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CompletionResult:
    text: str
    units: int | None = None
    diagnostics: str = ""


@runtime_checkable
class CompletionService(Protocol):
    async def complete(self, prompt: str, *, step_id: str) -> CompletionResult: ...


async def _terminate(proc: asyncio.subprocess.Process) -> None:
    proc.terminate()
    try:
        await asyncio.wait_for(proc.wait(), timeout=1.0)
    except TimeoutError:
        proc.kill()
        await proc.wait()


class CommandCompletionService:
    """Run ``cmd + [prompt]`` and treat stdout as the response."""

    def __init__(
        self,
        cmd: list[str],
        *,
        timeout_sec: float | None = None,
        cwd: Path | None = None,
    ) -> None:
        if not cmd:
            raise ConfigError("completion command must not be empty")
        self.cmd = list(cmd)
        self.timeout_sec = timeout_sec
        self.cwd = cwd

    async def complete(self, prompt: str, *, step_id: str) -> CompletionResult:
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.cmd,
                prompt,
                cwd=None if self.cwd is None else str(self.cwd),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (OSError, ValueError) as exc:
            raise CompletionError(f"failed to start {self.cmd[0]}: {exc}") from exc

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout_sec)
        except TimeoutError as exc:
            await _terminate(proc)
            raise CompletionError(
                f"{self.cmd[0]} timed out after {self.timeout_sec}s for step '{step_id}'"
            ) from exc

        text = stdout.decode("utf-8", errors="replace")
        diagnostics = stderr.decode("utf-8", errors="replace")
        if proc.returncode != 0:
            detail = diagnostics.strip().splitlines()[-1:] or ["(no stderr)"]
            raise CompletionError(
                f"{self.cmd[0]} exited with {proc.returncode}: {detail[0]}",
                diagnostics=diagnostics,
            )
        return CompletionResult(text=text, diagnostics=diagnostics)


class AnthropicCompletionService:
    """Anthropic Messages API backend; reports exact token usage."""

    def __init__(
        self,
        *,
        model: str,
        max_tokens: int,
        api_key: str | None = None,
        timeout_sec: float | None = None,
        client: object | None = None,
    ) -> None:
        self.model = model
        self.max_tokens = max_tokens
        if client is None:
            import httpx
            from anthropic import AsyncAnthropic

            read_timeout = timeout_sec or 600.0
            client = AsyncAnthropic(
                api_key=api_key,
                timeout=httpx.Timeout(connect=30.0, read=read_timeout, write=60.0, pool=30.0),
            )
        self._client = client

    async def complete(self, prompt: str, *, step_id: str) -> CompletionResult:
        import anthropic

        try:
            response = await self._client.messages.create(  # type: ignore[attr-defined]
                model=self.model,
                max_tokens=self.max_tokens,
                messages=[{"role": "user", "content": prompt}],
            )
        except anthropic.APIError as exc:
            raise CompletionError(f"anthropic call failed for step '{step_id}': {exc}") from exc

        text = "".join(
            getattr(block, "text", "")
            for block in response.content
            if getattr(block, "type", None) == "text"
        )
        usage = getattr(response, "usage", None)
        units: int | None = None
        if usage is not None:
            units = int(usage.input_tokens) + int(usage.output_tokens)
        logger.debug("[%s] anthropic %s -> %s tokens", step_id, self.model, units)
        return CompletionResult(text=text, units=units)


def build_completion_service(config: RunnerConfig, *, cwd: Path | None = None) -> CompletionService:
    if config.provider == "command":
        return CommandCompletionService(
            config.provider_cmd, timeout_sec=config.step_timeout_sec, cwd=cwd
        )
    if config.provider == "anthropic":
        if not config.anthropic_api_key:
            raise ConfigError("ANTHROPIC_API_KEY is required for the anthropic provider")
        return AnthropicCompletionService(
            model=config.model,
            max_tokens=config.max_tokens,
            api_key=config.anthropic_api_key,
            timeout_sec=config.step_timeout_sec,
        )
    raise ConfigError(f"unknown provider: {config.provider}")
