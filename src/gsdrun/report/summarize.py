from __future__ import annotations

from gsdrun.config.schema import WorkflowSpec
from gsdrun.exec.scheduler import RunOutcome


def build_summary(
    workflow: WorkflowSpec, outcome: RunOutcome, *, run_name: str
) -> dict[str, object]:
    step_rows: list[dict[str, object]] = []
    problem_rows: list[dict[str, object]] = []

    for step in workflow.steps:
        record = outcome.records.get(step.id)
        status = "PENDING" if record is None else record.status
        step_rows.append(
            {
                "id": step.id,
                "status": status,
                "depends_on": step.depends_on,
                "attempts": 0 if record is None else record.attempts,
                "consumed_units": 0 if record is None else record.consumed_units,
                "duration_sec": None if record is None else record.duration_sec,
                "response_path": None if record is None else record.response_path,
            }
        )
        if status != "DONE":
            problem_rows.append(
                {
                    "id": step.id,
                    "status": status,
                    "error": None if record is None else record.error,
                    "blocked_by": outcome.blocked.get(step.id, []),
                }
            )

    return {
        "run": {
            "run_name": run_name,
            "goal": workflow.goal,
            "status": outcome.status,
            "period_key": outcome.period_key,
            "used_units": outcome.used_units,
            "limit": outcome.limit,
            "dispatched": outcome.dispatched,
        },
        "steps": step_rows,
        "problems": problem_rows,
    }
