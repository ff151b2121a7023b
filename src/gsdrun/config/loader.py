from __future__ import annotations

import errno
import os
import re
import stat
from contextlib import suppress
from pathlib import Path
from typing import Any

import yaml

from gsdrun.config.schema import StepSpec, WorkflowSpec
from gsdrun.dag.validate import assert_acyclic
from gsdrun.util.errors import DuplicateStepError, UnknownDependencyError, WorkflowError
from gsdrun.util.path_guard import has_symlink_ancestor

_SAFE_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_STEP_ID_MAX_LEN = 128
_ALLOWED_WORKFLOW_KEYS = {"goal", "steps"}
_ALLOWED_STEP_KEYS = {"id", "prompt", "depends_on"}


def _is_non_blank_str(value: object) -> bool:
    return isinstance(value, str) and bool(value.strip()) and "\x00" not in value


def _is_safe_id(value: object) -> bool:
    return isinstance(value, str) and _SAFE_ID_PATTERN.fullmatch(value) is not None


def _ensure_list_str(step_id: str, value: Any) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(_is_non_blank_str(v) for v in value):
        raise WorkflowError(f"step '{step_id}' depends_on must be list of step ids")
    return value


def _parse_step(raw: Any) -> StepSpec:
    if not isinstance(raw, dict):
        raise WorkflowError("step must be mapping")
    if any(not isinstance(key, str) for key in raw):
        raise WorkflowError("step fields must use string keys")
    if "id" not in raw or not _is_non_blank_str(raw["id"]):
        raise WorkflowError("step.id is required and must be non-empty string")
    step_id = raw["id"]
    if len(step_id) > _STEP_ID_MAX_LEN:
        raise WorkflowError(f"step.id must be <= {_STEP_ID_MAX_LEN} characters")
    if not _is_safe_id(step_id):
        raise WorkflowError(f"step.id '{step_id}' must match ^[A-Za-z0-9][A-Za-z0-9._-]*$")
    unknown = set(raw.keys()) - _ALLOWED_STEP_KEYS
    if unknown:
        raise WorkflowError(f"step '{step_id}' has unknown fields: {sorted(unknown)}")
    prompt = raw.get("prompt")
    if not _is_non_blank_str(prompt):
        raise WorkflowError(f"step '{step_id}' prompt is required and must be non-empty string")
    depends_on = _ensure_list_str(step_id, raw.get("depends_on"))
    if len(set(depends_on)) != len(depends_on):
        raise WorkflowError(f"step '{step_id}' has duplicate dependencies")
    return StepSpec(id=step_id, prompt=prompt, depends_on=list(depends_on))


def validate_workflow(workflow: WorkflowSpec) -> None:
    """Check ids, dependency references and acyclicity, in that order."""
    if not workflow.steps:
        raise WorkflowError("workflow.steps must contain at least one step")

    seen: set[str] = set()
    for step in workflow.steps:
        if step.id in seen:
            raise DuplicateStepError(step.id)
        seen.add(step.id)

    for step in workflow.steps:
        for dep in step.depends_on:
            if dep not in seen:
                raise UnknownDependencyError(step.id, dep)

    assert_acyclic(workflow.step_ids(), {step.id: step.depends_on for step in workflow.steps})


def parse_workflow(raw: Any) -> WorkflowSpec:
    if not isinstance(raw, dict):
        raise WorkflowError("workflow root must be a mapping")
    if any(not isinstance(key, str) for key in raw):
        raise WorkflowError("workflow root keys must be strings")
    unknown_root = set(raw.keys()) - _ALLOWED_WORKFLOW_KEYS
    if unknown_root:
        raise WorkflowError(f"workflow contains unknown fields: {sorted(unknown_root)}")

    raw_steps = raw.get("steps")
    if not isinstance(raw_steps, list):
        raise WorkflowError("workflow.steps must be a list")

    goal = raw.get("goal")
    if goal is not None and not _is_non_blank_str(goal):
        raise WorkflowError("workflow.goal must be non-empty string when provided")

    workflow = WorkflowSpec(goal=goal, steps=[_parse_step(step) for step in raw_steps])
    validate_workflow(workflow)
    return workflow


def load_workflow(path: Path) -> WorkflowSpec:
    if has_symlink_ancestor(path):
        raise WorkflowError(f"workflow file path must not include symlink: {path}")
    try:
        meta = path.lstat()
    except FileNotFoundError:
        meta = None
    except (OSError, RuntimeError) as exc:
        raise WorkflowError(f"failed to read workflow file: {path}") from exc

    if meta is not None:
        if stat.S_ISLNK(meta.st_mode):
            raise WorkflowError(f"workflow file must not be symlink: {path}")
        if not stat.S_ISREG(meta.st_mode):
            raise WorkflowError(f"failed to read workflow file: {path}")

    open_flags = os.O_RDONLY
    if hasattr(os, "O_NONBLOCK"):
        open_flags |= os.O_NONBLOCK
    if hasattr(os, "O_NOFOLLOW"):
        open_flags |= os.O_NOFOLLOW
    fd: int | None = None
    try:
        fd = os.open(str(path), open_flags)
        with os.fdopen(fd, "r", encoding="utf-8") as f:
            fd = None
            content = f.read()
    except FileNotFoundError as exc:
        raise WorkflowError(f"workflow file not found: {path}") from exc
    except UnicodeError as exc:
        raise WorkflowError(f"failed to decode workflow file as utf-8: {path}") from exc
    except OSError as exc:
        if exc.errno == errno.ELOOP:
            raise WorkflowError(f"workflow file must not be symlink: {path}") from exc
        raise WorkflowError(f"failed to read workflow file: {path}") from exc
    finally:
        if fd is not None:
            with suppress(OSError, RuntimeError):
                os.close(fd)

    try:
        raw = yaml.safe_load(content)
    except yaml.YAMLError as exc:
        raise WorkflowError(f"failed to parse yaml: {exc}") from exc

    return parse_workflow(raw)


def dump_workflow(workflow: WorkflowSpec) -> str:
    """Serialize a workflow back to the YAML shape ``load_workflow`` accepts."""
    data: dict[str, object] = {}
    if workflow.goal is not None:
        data["goal"] = workflow.goal
    data["steps"] = [
        {"id": step.id, "prompt": step.prompt, "depends_on": step.depends_on}
        for step in workflow.steps
    ]
    return yaml.safe_dump(data, sort_keys=False, allow_unicode=True)
