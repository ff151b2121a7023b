from __future__ import annotations

import logging
from datetime import datetime, timedelta
from io import StringIO
from pathlib import Path

import pytest
from rich.console import Console

from gsdrun.util.logging import setup_logging
from gsdrun.util.path_guard import ensure_regular_target, has_symlink_ancestor
from gsdrun.util.paths import ensure_run_layout, ensure_step_layout, run_dir, usage_dir
from gsdrun.util.time import duration_sec, period_key_for


def test_run_layout_creates_expected_directories(tmp_path: Path) -> None:
    home = tmp_path / ".gsd"
    current = run_dir(home, "r1")
    ensure_run_layout(current, usage_dir(home))
    step = ensure_step_layout(current, "a")

    assert (home / "runs" / "r1" / "steps").is_dir()
    assert (home / "runs" / "r1" / "report").is_dir()
    assert (home / "usage").is_dir()
    assert step == current / "steps" / "a"
    assert (step / "transcripts").is_dir()


def test_layout_refuses_symlinked_run_dir(tmp_path: Path) -> None:
    real = tmp_path / "real"
    real.mkdir()
    link = tmp_path / "link"
    link.symlink_to(real, target_is_directory=True)
    with pytest.raises(OSError, match="symlink"):
        ensure_run_layout(link, tmp_path / "usage")
    assert has_symlink_ancestor(link / "steps")


def test_ensure_regular_target_rejects_directory(tmp_path: Path) -> None:
    with pytest.raises(OSError, match="regular file"):
        ensure_regular_target(tmp_path, label="state")
    ensure_regular_target(tmp_path / "new.json", label="state")


def test_time_helpers() -> None:
    start = datetime(2026, 1, 1, 12, 0, 0)
    assert duration_sec(start, start + timedelta(milliseconds=1500)) == 1.5
    assert period_key_for(start) == "2026-01-01"


def test_setup_logging_routes_package_logs_to_rich_console() -> None:
    buffer = StringIO()
    logger = setup_logging("debug", console=Console(file=buffer, width=120))
    try:
        setup_logging("debug", console=Console(file=buffer, width=120))
        logging.getLogger("gsdrun.exec.scheduler").debug("hello from scheduler")
        assert len(logger.handlers) == 1
        assert "hello from scheduler" in buffer.getvalue()
    finally:
        logger.handlers = []
        logger.propagate = True
        logger.setLevel(logging.NOTSET)


def test_setup_logging_rejects_unknown_level() -> None:
    with pytest.raises(ValueError):
        setup_logging("chatty")
