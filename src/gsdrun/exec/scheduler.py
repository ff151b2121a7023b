from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Literal

from gsdrun.budget.guard import BudgetGuard
from gsdrun.config.schema import StepSpec, WorkflowSpec
from gsdrun.dag.build import build_adjacency
from gsdrun.exec.executor import StepExecutor, StepOutcome
from gsdrun.notify.telegram import EventKind, NotificationEvent, Notifier, escape_markdown
from gsdrun.state.model import StepRecord
from gsdrun.state.store import StateStore

logger = logging.getLogger(__name__)

RunStatus = Literal["RUNNING", "COMPLETE", "STUCK", "BUDGET_EXCEEDED"]


@dataclass(slots=True)
class RunOutcome:
    status: RunStatus
    records: dict[str, StepRecord]
    dispatched: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    blocked: dict[str, list[str]] = field(default_factory=dict)
    used_units: int = 0
    limit: int = 0
    period_key: str = ""

    @property
    def pending(self) -> list[str]:
        return [step_id for step_id in self.blocked if step_id not in self.failed]


async def _notify(
    notifier: Notifier, kind: EventKind, message: str, step_id: str | None = None
) -> None:
    try:
        await notifier.notify(NotificationEvent(kind=kind, message=message, step_id=step_id))
    except Exception:
        logger.warning("Notifier raised for %s event; ignoring", kind.value, exc_info=True)


def _reset_failed(store: StateStore, records: dict[str, StepRecord]) -> None:
    for step_id, record in records.items():
        if record.status != "FAILED":
            continue
        logger.info("Resetting FAILED step %s for retry", step_id)
        record.status = "PENDING"
        record.error = None
        record.ended_at = None
        store.put(record)


def _blocked_by(workflow: WorkflowSpec, records: dict[str, StepRecord]) -> dict[str, list[str]]:
    """Map every step that is not DONE to its dependencies that are not DONE."""
    blocked: dict[str, list[str]] = {}
    for step in workflow.steps:
        record = records.get(step.id)
        if record is not None and record.status == "DONE":
            continue
        blocked[step.id] = [
            dep
            for dep in step.depends_on
            if records.get(dep) is None or records[dep].status != "DONE"
        ]
    return blocked


def _root_causes(blocked: dict[str, list[str]], failed: list[str]) -> str:
    waiting = [f"{step_id} <- {', '.join(deps)}" for step_id, deps in blocked.items() if deps]
    parts: list[str] = []
    if failed:
        parts.append(f"failed: {', '.join(failed)}")
    if waiting:
        parts.append(f"waiting: {'; '.join(waiting)}")
    return " | ".join(parts) or "unmet dependencies"


async def run_workflow(
    workflow: WorkflowSpec,
    *,
    store: StateStore,
    executor: StepExecutor,
    guard: BudgetGuard,
    notifier: Notifier,
    label: str = "workflow",
    max_parallel: int = 1,
    retry_failed: bool = False,
) -> RunOutcome:
    """Dispatch every step whose dependencies are DONE until nothing can run.

    Each step keeps a count of dependencies that are not yet DONE; a
    successful completion decrements its dependents and queues those that
    reach zero. A FAILED step never decrements, so its dependents stay
    unready and the run ends STUCK. A denied budget check stops further
    dispatch; in-flight steps are still awaited and recorded.
    """
    if max_parallel < 1:
        raise ValueError("max_parallel must be >= 1")

    dependents, _ = build_adjacency(workflow)
    spec_by_id: dict[str, StepSpec] = {step.id: step for step in workflow.steps}
    records = store.load_records(workflow.step_ids())
    if retry_failed:
        _reset_failed(store, records)

    done = {step_id for step_id, record in records.items() if record.status == "DONE"}
    failed = [step_id for step_id, record in records.items() if record.status == "FAILED"]
    unresolved = [
        step.id for step in workflow.steps if step.id not in done and step.id not in failed
    ]
    if done:
        logger.info("Resuming: %d step(s) already DONE: %s", len(done), ", ".join(sorted(done)))
    dep_remaining = {
        step_id: sum(1 for dep in spec_by_id[step_id].depends_on if dep not in done)
        for step_id in unresolved
    }
    ready: deque[str] = deque(step_id for step_id in unresolved if dep_remaining[step_id] == 0)

    running: dict[str, asyncio.Task[StepOutcome]] = {}
    sem = asyncio.Semaphore(max_parallel)
    dispatched: list[str] = []
    budget_denied = False

    async def _execute(step: StepSpec) -> StepOutcome:
        async with sem:
            return await executor.execute(step)

    try:
        while True:
            while ready and len(running) < max_parallel and not budget_denied:
                step_id = ready.popleft()
                step = spec_by_id[step_id]
                if any(dep not in done for dep in step.depends_on):
                    logger.error("Step %s queued with unmet dependencies; skipping", step_id)
                    continue
                decision = guard.check_and_reserve(executor.estimate(step))
                if not decision.allowed:
                    budget_denied = True
                    ready.appendleft(step_id)
                    break
                dispatched.append(step_id)
                running[step_id] = asyncio.create_task(_execute(step))

            if not running:
                break
            finished, _ = await asyncio.wait(running.values(), return_when=asyncio.FIRST_COMPLETED)
            for step_id in [sid for sid, fut in running.items() if fut in finished]:
                outcome = running.pop(step_id).result()
                records[step_id] = outcome.record
                if outcome.ok:
                    done.add(step_id)
                    await _notify(
                        notifier,
                        EventKind.STEP_COMPLETED,
                        f"Step *{step_id}* done. Tokens: ~{outcome.record.consumed_units}, "
                        f"Duration: {outcome.record.duration_sec}s",
                        step_id,
                    )
                    for child in dependents.get(step_id, []):
                        if child not in dep_remaining:
                            continue
                        dep_remaining[child] -= 1
                        if dep_remaining[child] == 0:
                            ready.append(child)
                else:
                    failed.append(step_id)
                    error = escape_markdown(outcome.record.error or "unknown error")
                    await _notify(
                        notifier,
                        EventKind.STEP_COMPLETED,
                        f"Step *{step_id}* FAILED: {error}",
                        step_id,
                    )
    finally:
        for task in running.values():
            task.cancel()

    used = guard.used()
    blocked = _blocked_by(workflow, records)
    result = RunOutcome(
        status="RUNNING",
        records=records,
        dispatched=dispatched,
        failed=failed,
        blocked=blocked,
        used_units=used,
        limit=guard.limit,
        period_key=guard.period_key,
    )

    if not blocked:
        result.status = "COMPLETE"
        logger.info("All steps complete (%d / %d units used)", used, guard.limit)
        await _notify(
            notifier, EventKind.RUN_COMPLETED, f"All steps in {escape_markdown(label)} completed."
        )
    elif budget_denied:
        result.status = "BUDGET_EXCEEDED"
        logger.warning(
            "Budget exceeded: %d / %d units; %d step(s) left pending",
            used,
            guard.limit,
            len(result.pending),
        )
        await _notify(
            notifier,
            EventKind.BUDGET_EXCEEDED,
            f"Budget exceeded: {used} / {guard.limit} tokens ({escape_markdown(label)} paused)",
        )
    else:
        result.status = "STUCK"
        causes = _root_causes(blocked, failed)
        logger.error("Stuck: remaining steps cannot run (%s)", causes)
        await _notify(notifier, EventKind.STUCK, f"Task runner stuck: {escape_markdown(causes)}")
    return result
