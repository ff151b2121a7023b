from __future__ import annotations

from typing import Any


def render_markdown(summary: dict[str, Any]) -> str:
    run = summary["run"]
    steps = summary["steps"]
    problems = summary["problems"]

    lines: list[str] = []
    lines.append("# Final Run Report")
    lines.append("")
    lines.append("## Run Overview")
    lines.append("")
    lines.append(f"- run: `{run['run_name']}`")
    lines.append(f"- goal: {run['goal'] or '(none)'}")
    lines.append(f"- status: **{run['status']}**")
    lines.append(
        f"- budget: {run['used_units']} / {run['limit']} units (period `{run['period_key']}`)"
    )
    dispatched = ", ".join(run["dispatched"]) or "(none)"
    lines.append(f"- dispatched this run: {dispatched}")
    lines.append("")
    lines.append("## Step Results")
    lines.append("")
    lines.append("| id | status | attempts | units | duration_sec | response |")
    lines.append("|---|---|---:|---:|---:|---|")
    for row in steps:
        response = f"`{row['response_path']}`" if row["response_path"] else "-"
        duration = "-" if row["duration_sec"] is None else row["duration_sec"]
        lines.append(
            f"| {row['id']} | {row['status']} | {row['attempts']} | "
            f"{row['consumed_units']} | {duration} | {response} |"
        )
    lines.append("")
    lines.append("## Unfinished Steps")
    lines.append("")
    if problems:
        for row in problems:
            lines.append(f"### {row['id']} ({row['status']})")
            if row["error"]:
                lines.append(f"- error: `{row['error']}`")
            if row["blocked_by"]:
                blockers = ", ".join(f"`{dep}`" for dep in row["blocked_by"])
                lines.append(f"- waiting on: {blockers}")
            lines.append("")
    else:
        lines.append("All steps DONE.")
        lines.append("")
    return "\n".join(lines)
