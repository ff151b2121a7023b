from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from gsdrun.config.schema import StepSpec
from gsdrun.exec.provider import CompletionService
from gsdrun.report.render_html import render_transcript_html
from gsdrun.state.model import StepRecord, TranscriptEntry
from gsdrun.state.store import StateStore
from gsdrun.util.errors import CompletionError
from gsdrun.util.time import duration_sec

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class StepOutcome:
    ok: bool
    record: StepRecord
    transcript: TranscriptEntry


def estimate_units(prompt: str, response: str = "", *, chars_per_unit: int = 4) -> int:
    """Approximate consumption from text size (~4 characters per token)."""
    return (len(prompt) + len(response)) // chars_per_unit


def export_transcript(
    source: Path, export_dir: Path, step_id: str, when: datetime
) -> Path | None:
    """Copy a rendered transcript to a shared directory; failures are logged only."""
    dest = export_dir / f"{step_id}_{when.strftime('%Y-%m-%d_%H%M%S')}.html"
    try:
        export_dir.mkdir(parents=True, exist_ok=True)
        shutil.copy2(source, dest)
    except OSError as exc:
        logger.warning("Transcript export for %s to %s failed: %s", step_id, export_dir, exc)
        return None
    return dest


def compose_prompt(step: StepSpec, preamble: str = "") -> str:
    if not preamble.strip():
        return step.prompt
    return f"{preamble.rstrip()}\n\n{step.prompt}"


class StepExecutor:
    """Run one step against the completion service and record the result."""

    def __init__(
        self,
        store: StateStore,
        service: CompletionService,
        *,
        period_key: str,
        chars_per_unit: int = 4,
        prompt_preamble: str = "",
        transcripts_dir: Path | None = None,
    ) -> None:
        if chars_per_unit < 1:
            raise ValueError("chars_per_unit must be >= 1")
        self.store = store
        self.service = service
        self.period_key = period_key
        self.chars_per_unit = chars_per_unit
        self.prompt_preamble = prompt_preamble
        self.transcripts_dir = transcripts_dir

    def estimate(self, step: StepSpec) -> int:
        return estimate_units(
            compose_prompt(step, self.prompt_preamble), chars_per_unit=self.chars_per_unit
        )

    async def execute(self, step: StepSpec) -> StepOutcome:
        previous = self.store.get(step.id)
        attempts = 1 if previous is None else previous.attempts + 1
        record = StepRecord(step_id=step.id, attempts=attempts)
        started_dt = datetime.now().astimezone()
        record.started_at = started_dt.isoformat(timespec="seconds")
        prompt = compose_prompt(step, self.prompt_preamble)
        record.prompt_path = self.store.write_artifact(step.id, "prompt.txt", prompt)
        self.store.put(record)

        logger.info("Executing step: %s (attempt %d)", step.id, record.attempts)
        error: str | None = None
        response = ""
        reported_units: int | None = None
        diagnostics = ""
        try:
            result = await self.service.complete(prompt, step_id=step.id)
        except CompletionError as exc:
            error = str(exc)
            diagnostics = exc.diagnostics
        else:
            response = result.text
            reported_units = result.units
            diagnostics = result.diagnostics
        ended_dt = datetime.now().astimezone()

        units = reported_units
        if units is None:
            units = estimate_units(prompt, response, chars_per_unit=self.chars_per_unit)
        transcript = TranscriptEntry(
            step_id=step.id,
            attempt=record.attempts,
            prompt=prompt,
            response=response,
            consumed_units=units,
            duration_sec=duration_sec(started_dt, ended_dt),
            timestamp=ended_dt.isoformat(timespec="seconds"),
            ok=error is None,
            error=error,
        )
        self.store.write_transcript(transcript)
        record.response_path = self.store.write_artifact(step.id, "response.md", response)
        if diagnostics:
            self.store.write_artifact(step.id, "stderr.log", diagnostics)
        record.transcript_path = self.store.write_artifact(
            step.id, "transcript.html", render_transcript_html(transcript)
        )
        if self.transcripts_dir is not None:
            export_transcript(
                self.store.run_dir / record.transcript_path, self.transcripts_dir, step.id, ended_dt
            )

        total = self.store.add_period_usage(self.period_key, units)

        record.status = "DONE" if error is None else "FAILED"
        record.consumed_units = units
        record.duration_sec = transcript.duration_sec
        record.ended_at = transcript.timestamp
        record.error = error
        self.store.put(record)

        if error is None:
            logger.info(
                "Step %s completed (%ss, ~%d units, period total %d).",
                step.id,
                transcript.duration_sec,
                units,
                total,
            )
        else:
            logger.error("Step %s failed: %s", step.id, error)
        return StepOutcome(ok=error is None, record=record, transcript=transcript)
