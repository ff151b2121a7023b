from __future__ import annotations

import json
import os
import shlex
import subprocess
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
FAKE_AGENT = ROOT / "tools" / "fake_agent.py"


def _write_workflow(path: Path, content: str) -> Path:
    path.write_text(content.strip() + "\n", encoding="utf-8")
    return path


def _env(*agent_args: str) -> dict[str, str]:
    env = {
        key: value
        for key, value in os.environ.items()
        if not key.startswith(("TELEGRAM_", "GSD_", "MAX_TOKEN_LIMIT"))
    }
    env["PYTHONPATH"] = os.pathsep.join(
        [str(ROOT / "src"), *filter(None, [os.environ.get("PYTHONPATH")])]
    )
    env["GSD_PROVIDER_CMD"] = shlex.join([sys.executable, str(FAKE_AGENT), *agent_args])
    env["GSD_PERIOD"] = "2026-01-01"
    return env


def _cli(args: list[str], env: dict[str, str], cwd: Path) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        [sys.executable, "-m", "gsdrun.cli", *args],
        capture_output=True,
        text=True,
        check=False,
        env=env,
        cwd=cwd,
    )


FAN_OUT = """
goal: integration
steps:
  - id: A
    prompt: Plan the work.
  - id: B
    prompt: Build part one.
    depends_on: [A]
  - id: C
    prompt: Build part two.
    depends_on: [A]
"""


def test_cli_dry_run_prints_order(tmp_path: Path) -> None:
    workflow = _write_workflow(tmp_path / "wf.yaml", FAN_OUT)
    proc = _cli(["run", str(workflow), "--dry-run"], _env(), tmp_path)
    assert proc.returncode == 0, proc.stderr
    assert "Dry Run" in proc.stdout
    assert not (tmp_path / ".gsd").exists()


def test_cli_run_completes_and_resumes_without_rerunning(tmp_path: Path) -> None:
    workflow = _write_workflow(tmp_path / "wf.yaml", FAN_OUT)
    calls_log = tmp_path / "calls.log"
    env = _env("--calls-log", str(calls_log))
    home = tmp_path / "home"

    first = _cli(["run", str(workflow), "--home", str(home)], env, tmp_path)
    assert first.returncode == 0, first.stdout + first.stderr
    assert "COMPLETE" in first.stdout
    run_dir = home / "runs" / "wf"
    assert (run_dir / "report" / "final_report.md").exists()
    assert (run_dir / "workflow.yaml").exists()
    assert not (run_dir / ".lock").exists()
    response = (run_dir / "steps" / "A" / "response.md").read_text(encoding="utf-8")
    assert "handled: Plan the work." in response
    assert len(calls_log.read_text(encoding="utf-8").splitlines()) == 3
    usage = json.loads((home / "usage" / "2026-01-01.json").read_text(encoding="utf-8"))
    assert usage["used_units"] > 0

    second = _cli(["run", str(workflow), "--home", str(home)], env, tmp_path)
    assert second.returncode == 0, second.stdout + second.stderr
    assert len(calls_log.read_text(encoding="utf-8").splitlines()) == 3

    status = _cli(["status", "wf", "--home", str(home), "--json"], env, tmp_path)
    assert status.returncode == 0, status.stderr
    payload = json.loads(status.stdout)
    assert {step_id: rec["status"] for step_id, rec in payload["steps"].items()} == {
        "A": "DONE",
        "B": "DONE",
        "C": "DONE",
    }

    show = _cli(["show", "wf", "B", "--home", str(home)], env, tmp_path)
    assert show.returncode == 0, show.stderr
    assert "handled: Build part one." in show.stdout

    usage_proc = _cli(["usage", "--home", str(home)], env, tmp_path)
    assert usage_proc.returncode == 0, usage_proc.stderr
    assert f"{usage['used_units']} / 50000" in usage_proc.stdout


def test_cli_failed_step_returns_three(tmp_path: Path) -> None:
    workflow = _write_workflow(
        tmp_path / "wf.yaml",
        """
        steps:
          - id: broken
            prompt: please BOOM
          - id: after
            prompt: never runs
            depends_on: [broken]
        """,
    )
    home = tmp_path / "home"
    proc = _cli(["run", str(workflow), "--home", str(home)], _env("--fail-on", "BOOM"), tmp_path)
    assert proc.returncode == 3, proc.stdout + proc.stderr
    assert "STUCK" in proc.stdout
    run_dir = home / "runs" / "wf"
    record = json.loads((run_dir / "steps" / "broken" / "record.json").read_text(encoding="utf-8"))
    assert record["status"] == "FAILED"
    assert (run_dir / "steps" / "broken" / "stderr.log").exists()
    assert not (run_dir / "steps" / "after" / "record.json").exists()
    report = (run_dir / "report" / "final_report.md").read_text(encoding="utf-8")
    assert "### after (PENDING)" in report


def test_cli_budget_exhaustion_returns_four(tmp_path: Path) -> None:
    workflow = _write_workflow(tmp_path / "wf.yaml", FAN_OUT)
    home = tmp_path / "home"
    proc = _cli(
        ["run", str(workflow), "--home", str(home), "--token-limit", "0"], _env(), tmp_path
    )
    assert proc.returncode == 4, proc.stdout + proc.stderr
    assert "BUDGET_EXCEEDED" in proc.stdout
    assert not (home / "runs" / "wf" / "steps" / "A" / "record.json").exists()


def test_cli_invalid_workflow_returns_two(tmp_path: Path) -> None:
    workflow = _write_workflow(
        tmp_path / "wf.yaml",
        """
        steps:
          - id: a
            prompt: x
            depends_on: [b]
          - id: b
            prompt: y
            depends_on: [a]
        """,
    )
    proc = _cli(["run", str(workflow), "--home", str(tmp_path / "home")], _env(), tmp_path)
    assert proc.returncode == 2
    assert "Workflow validation error" in proc.stdout
    assert not (tmp_path / "home").exists()


def test_cli_bad_environment_returns_two(tmp_path: Path) -> None:
    workflow = _write_workflow(tmp_path / "wf.yaml", FAN_OUT)
    env = _env()
    env["MAX_TOKEN_LIMIT"] = "plenty"
    proc = _cli(["run", str(workflow), "--home", str(tmp_path / "home")], env, tmp_path)
    assert proc.returncode == 2
    assert "Configuration error" in proc.stdout


def test_cli_run_conflict_returns_two(tmp_path: Path) -> None:
    workflow = _write_workflow(tmp_path / "wf.yaml", FAN_OUT)
    run_dir = tmp_path / "home" / "runs" / "wf"
    run_dir.mkdir(parents=True)
    (run_dir / ".lock").write_text("12345", encoding="utf-8")
    proc = _cli(["run", str(workflow), "--home", str(tmp_path / "home")], _env(), tmp_path)
    assert proc.returncode == 2
    assert "locked" in proc.stdout


def test_cli_status_unknown_run_returns_two(tmp_path: Path) -> None:
    proc = _cli(["status", "nope", "--home", str(tmp_path / "home")], _env(), tmp_path)
    assert proc.returncode == 2


def test_cli_notify_test_without_configuration_fails(tmp_path: Path) -> None:
    proc = _cli(["notify-test", "hello"], _env(), tmp_path)
    assert proc.returncode == 1
    assert "not configured" in proc.stdout
