from __future__ import annotations

import json
import re
from pathlib import Path

import pytest

from gsdrun.config.schema import StepSpec
from gsdrun.exec.executor import StepExecutor, compose_prompt, estimate_units
from gsdrun.exec.provider import CompletionResult
from gsdrun.state.model import StepRecord, TranscriptEntry
from gsdrun.state.store import StateStore
from gsdrun.util.errors import CompletionError

PERIOD = "2026-01-01"


class _Service:
    def __init__(self, *, text: str = "done", units: int | None = None, fail: bool = False) -> None:
        self.text = text
        self.units = units
        self.fail = fail
        self.prompts: list[str] = []

    async def complete(self, prompt: str, *, step_id: str) -> CompletionResult:
        self.prompts.append(prompt)
        if self.fail:
            raise CompletionError("agent exploded", diagnostics="trace line\n")
        return CompletionResult(text=self.text, units=self.units)


def _store(tmp_path: Path) -> StateStore:
    return StateStore(tmp_path / "runs" / "r", tmp_path / "usage")


def test_estimate_units_uses_character_heuristic() -> None:
    assert estimate_units("a" * 40) == 10
    assert estimate_units("a" * 40, "b" * 40) == 20
    assert estimate_units("abc", chars_per_unit=1) == 3


def test_compose_prompt_prepends_preamble() -> None:
    step = StepSpec(id="a", prompt="Do it.")
    assert compose_prompt(step) == "Do it."
    assert compose_prompt(step, "Context:\n") == "Context:\n\nDo it."


@pytest.mark.asyncio
async def test_execute_success_records_done_and_artifacts(tmp_path: Path) -> None:
    store = _store(tmp_path)
    executor = StepExecutor(store, _Service(text="r" * 20), period_key=PERIOD)
    outcome = await executor.execute(StepSpec(id="a", prompt="p" * 20))

    assert outcome.ok is True
    record = store.get("a")
    assert record is not None
    assert record.status == "DONE"
    assert record.attempts == 1
    assert record.consumed_units == 10
    assert record.duration_sec is not None
    step_dir = store.run_dir / "steps" / "a"
    assert (step_dir / "prompt.txt").read_text(encoding="utf-8") == "p" * 20
    assert (step_dir / "response.md").read_text(encoding="utf-8") == "r" * 20
    assert "<h1>Step: a</h1>" in (step_dir / "transcript.html").read_text(encoding="utf-8")
    assert not (step_dir / "stderr.log").exists()
    transcript = json.loads((step_dir / "transcripts" / "1.json").read_text(encoding="utf-8"))
    assert transcript["ok"] is True
    assert transcript["consumed_units"] == 10
    assert store.current_period_usage(PERIOD) == 10


@pytest.mark.asyncio
async def test_execute_prefers_reported_units(tmp_path: Path) -> None:
    store = _store(tmp_path)
    executor = StepExecutor(store, _Service(units=321), period_key=PERIOD)
    outcome = await executor.execute(StepSpec(id="a", prompt="short"))
    assert outcome.record.consumed_units == 321
    assert store.current_period_usage(PERIOD) == 321


@pytest.mark.asyncio
async def test_execute_failure_records_failed_and_charges_prompt(tmp_path: Path) -> None:
    store = _store(tmp_path)
    executor = StepExecutor(store, _Service(fail=True), period_key=PERIOD)
    outcome = await executor.execute(StepSpec(id="a", prompt="x" * 8))

    assert outcome.ok is False
    assert outcome.record.status == "FAILED"
    assert outcome.record.error == "agent exploded"
    assert outcome.transcript.ok is False
    assert outcome.record.consumed_units == 2
    assert store.current_period_usage(PERIOD) == 2
    step_dir = store.run_dir / "steps" / "a"
    assert (step_dir / "stderr.log").read_text(encoding="utf-8") == "trace line\n"
    assert "Failed: agent exploded" in (step_dir / "transcript.html").read_text(encoding="utf-8")


@pytest.mark.asyncio
async def test_execute_again_increments_attempts_and_keeps_history(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.put(StepRecord(step_id="a", status="FAILED", attempts=1, error="old"))
    store.write_transcript(
        TranscriptEntry(
            step_id="a",
            attempt=1,
            prompt="first",
            response="",
            consumed_units=1,
            duration_sec=0.1,
            timestamp="2026-01-01T00:00:00+00:00",
            ok=False,
            error="old",
        )
    )
    executor = StepExecutor(store, _Service(), period_key=PERIOD)
    outcome = await executor.execute(StepSpec(id="a", prompt="second"))

    assert outcome.record.attempts == 2
    assert outcome.record.error is None
    assert [entry.attempt for entry in store.read_transcripts("a")] == [1, 2]


@pytest.mark.asyncio
async def test_execute_sends_preamble(tmp_path: Path) -> None:
    service = _Service()
    executor = StepExecutor(
        _store(tmp_path), service, period_key=PERIOD, prompt_preamble="You are terse."
    )
    await executor.execute(StepSpec(id="a", prompt="Summarize."))
    assert service.prompts == ["You are terse.\n\nSummarize."]
    assert executor.estimate(StepSpec(id="a", prompt="Summarize.")) == len(service.prompts[0]) // 4


@pytest.mark.asyncio
async def test_execute_exports_transcript_copy(tmp_path: Path) -> None:
    store = _store(tmp_path)
    shared = tmp_path / "shared" / "transcripts"
    executor = StepExecutor(store, _Service(), period_key=PERIOD, transcripts_dir=shared)
    await executor.execute(StepSpec(id="a", prompt="p"))

    exported = list(shared.iterdir())
    assert len(exported) == 1
    assert re.fullmatch(r"a_\d{4}-\d{2}-\d{2}_\d{6}\.html", exported[0].name)
    original = store.run_dir / "steps" / "a" / "transcript.html"
    assert exported[0].read_text(encoding="utf-8") == original.read_text(encoding="utf-8")


@pytest.mark.asyncio
async def test_transcript_export_failure_does_not_fail_step(tmp_path: Path) -> None:
    store = _store(tmp_path)
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("x", encoding="utf-8")
    executor = StepExecutor(store, _Service(), period_key=PERIOD, transcripts_dir=blocker)
    outcome = await executor.execute(StepSpec(id="a", prompt="p"))

    assert outcome.ok is True
    record = store.get("a")
    assert record is not None
    assert record.status == "DONE"
    assert blocker.read_text(encoding="utf-8") == "x"
