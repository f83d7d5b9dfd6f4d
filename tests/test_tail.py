"""Tests for the lock-free progress log reader."""
from pathlib import Path

from autopilot.progress import HEADER_TITLE, ProgressLog
from autopilot.tail import ProgressTail


def open_log(path: Path) -> ProgressLog:
    return ProgressLog.open(path, session="plan", plan_file="plan.md", mode="full")


def test_tail_reads_only_complete_new_lines(tmp_path):
    path = tmp_path / "p.txt"
    path.write_text("a\nb\npart")
    tail = ProgressTail(path)
    assert tail.read_new() == ["a", "b"]
    with open(path, "a") as f:
        f.write("ial\nc\n")
    assert tail.read_new() == ["partial", "c"]
    assert tail.read_new() == []


def test_tail_missing_file(tmp_path):
    assert ProgressTail(tmp_path / "nope.txt").read_new() == []


def test_tail_detects_truncation_by_new_session(tmp_path):
    path = tmp_path / "p.txt"
    log = open_log(path)
    log.print("a fairly long first-session entry to make the file big")
    log.close()

    tail = ProgressTail(path)
    assert any("first-session" in line for line in tail.read_new())

    log = open_log(path)
    log.release()
    lines = tail.read_new()
    assert lines[0] == HEADER_TITLE
    assert not any("first-session" in line for line in lines)


def test_tail_sees_writes_while_locked(tmp_path):
    path = tmp_path / "p.txt"
    log = open_log(path)
    tail = ProgressTail(path)
    tail.read_new()
    log.print("live entry")
    assert tail.read_new()[-1].endswith("live entry")
    log.release()
