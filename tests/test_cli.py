"""Tests for the command-line entry point."""
import asyncio
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from autopilot.cli import apply_overrides, build_parser, main, run_session
from autopilot.config import Settings
from autopilot.errors import SignalFailure
from autopilot.executor import Result
from autopilot.progress import COMPLETED_MARKER, ProgressLog, progress_path
from autopilot.runner import Mode
from autopilot.signals import COMPLETED, FAILED, REVIEW_DONE


class FakeExecutor:
    def __init__(self, *results: Result, output_handler=None):
        self.results = list(results)
        self.output_handler = output_handler
        self.prompts: list[str] = []

    async def run(self, prompt: str) -> Result:
        self.prompts.append(prompt)
        result = self.results.pop(0)
        if self.output_handler:
            self.output_handler(result.output)
        return result


def patched_executors(claude_results, codex_results):
    """Patch executor factories so they build FakeExecutors wired to the log."""
    made = {}

    def factory(name, results):
        def build(settings, output_handler=None, **kwargs):
            made[name] = FakeExecutor(*results, output_handler=output_handler)
            return made[name]
        return build

    return (
        patch("autopilot.cli.claude_executor", factory("claude", claude_results)),
        patch("autopilot.cli.codex_executor", factory("codex", codex_results)),
        made,
    )


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------


def test_parser_defaults():
    args = build_parser().parse_args([])
    assert args.plan is None
    assert args.mode == "full"
    assert args.max_iterations is None
    assert not args.debug


def test_parser_rejects_unknown_mode():
    with pytest.raises(SystemExit):
        build_parser().parse_args(["--mode", "turbo"])


def test_apply_overrides():
    args = build_parser().parse_args(
        ["plan.md", "--max-iterations", "3", "--timeout", "60", "--progress-dir", "/tmp/p"]
    )
    settings = apply_overrides(Settings(max_review_iterations=4), args)
    assert settings.max_iterations == 3
    assert settings.timeout == 60
    assert settings.progress_dir == Path("/tmp/p")
    assert settings.max_review_iterations == 4


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


def test_run_session_success_writes_footer(tmp_path):
    plan = tmp_path / "add-feature.md"
    plan.write_text("- [ ] one\n")
    settings = Settings(progress_dir=tmp_path / "progress")
    p_claude, p_codex, made = patched_executors(
        [Result(output="done COMPLETED", signal=COMPLETED), Result(output="REVIEW_DONE", signal=REVIEW_DONE)],
        [Result(output="")],
    )
    with p_claude, p_codex:
        asyncio.run(run_session(settings, Mode.FULL, str(plan), MagicMock()))

    log_text = progress_path(settings.progress_dir, "add-feature").read_text()
    assert "done COMPLETED" in log_text
    assert "[task] starting task execution phase" in log_text
    assert log_text.splitlines()[-1].startswith(COMPLETED_MARKER)
    assert len(made["claude"].prompts) == 2


def test_run_session_failure_leaves_log_resumable(tmp_path):
    plan = tmp_path / "p.md"
    plan.write_text("- [ ] one\n")
    settings = Settings(progress_dir=tmp_path)
    p_claude, p_codex, _ = patched_executors([Result(output="FAILED", signal=FAILED)], [])
    with p_claude, p_codex:
        with pytest.raises(SignalFailure):
            asyncio.run(run_session(settings, Mode.FULL, str(plan), MagicMock()))

    path = progress_path(tmp_path, "p")
    text = path.read_text()
    assert "session failed" in text
    assert COMPLETED_MARKER not in text
    log = ProgressLog.open(path)
    assert log.restarted
    log.release()


def test_main_lock_contention_exits_1(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path))
    held = ProgressLog.open(progress_path(tmp_path / "progress", "review"))
    try:
        with pytest.raises(SystemExit) as exc_info:
            main(["--mode", "review", "--progress-dir", str(tmp_path / "progress"), "--no-color"])
        assert exc_info.value.code == 1
    finally:
        held.release()


def test_main_missing_plan_exits_1(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path))
    with pytest.raises(SystemExit) as exc_info:
        main(["--progress-dir", str(tmp_path), "--no-color"])
    assert exc_info.value.code == 1
