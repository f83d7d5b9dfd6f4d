"""Crash-safe progress log for one orchestration session.

The log is a plain text file that a dashboard may tail while the run is
going. Layout::

    # autopilot progress log
    Session: my-plan
    Plan: docs/plans/my-plan.md
    Mode: full
    Started: 2026-01-02 15:04:05
    ------------------------------------------------------------
    [2026-01-02 15:04:05] [task] starting task execution phase
    ...agent output, verbatim...
    ------------------------------------------------------------
    Completed: 2026-01-02 16:10:00 (1h05m55s)

A run that dies leaves no ``Completed:`` footer. The next run with the same
session name appends a restart separator and keeps the old content; a run
that finds a footer starts over with an empty file.
"""

import fcntl
import logging
import os
import re
import time
from datetime import datetime
from enum import Enum
from pathlib import Path

from rich.console import Console
from rich.markup import escape

from autopilot.errors import LockContention

logger = logging.getLogger(__name__)

HEADER_TITLE = "# autopilot progress log"
COMPLETED_MARKER = "Completed:"
RESTART_MARKER = "=== restarted"
RULE = "-" * 60

_TAIL_BYTES = 4096
_ENTRY_RE = re.compile(r"^\[\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}\]", re.MULTILINE)
_FOOTER_RE = re.compile(
    re.escape(COMPLETED_MARKER) + r" \d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2} \((?:\d+h)?(?:\d{1,2}m)?\d{1,2}s\)$"
)


class Phase(str, Enum):
    TASK = "task"
    REVIEW = "review"
    ANALYSIS = "analysis"


_PHASE_STYLES = {
    Phase.TASK: "green",
    Phase.REVIEW: "cyan",
    Phase.ANALYSIS: "magenta",
}


def _now() -> str:
    return datetime.now().strftime("%Y-%m-%d %H:%M:%S")


def format_elapsed(seconds: float) -> str:
    """Format elapsed seconds as '1h05m03s', '4m07s' or '12s'."""
    total = int(seconds)
    hours, rem = divmod(total, 3600)
    mins, secs = divmod(rem, 60)
    if hours:
        return f"{hours}h{mins:02d}m{secs:02d}s"
    if mins:
        return f"{mins}m{secs:02d}s"
    return f"{secs}s"


def session_name(plan_file: str | Path | None, mode: str) -> str:
    """Stable session identity: the plan file's stem, or the mode without a plan."""
    if plan_file:
        stem = Path(plan_file).stem
        slug = re.sub(r"[^A-Za-z0-9._-]+", "-", stem).strip("-")
        if slug:
            return slug
    return str(mode)


def progress_path(progress_dir: str | Path, name: str) -> Path:
    return Path(progress_dir) / f"progress-{name}.txt"


def has_completion_footer(tail: str) -> bool:
    """True if *tail* ends with the footer block written by :meth:`ProgressLog.close`.

    Only the last two non-blank lines count, so agent text quoted earlier in
    the log can never pass for a footer.
    """
    lines = [line.rstrip("\r") for line in tail.splitlines() if line.strip()]
    if len(lines) < 2:
        return False
    return lines[-2] == RULE and _FOOTER_RE.match(lines[-1]) is not None


def is_placeholder(content: str) -> bool:
    """True for content with no session activity: blank, or a header and nothing else."""
    if not content.strip():
        return True
    if not content.lstrip().startswith(HEADER_TITLE):
        return False
    return _ENTRY_RE.search(content) is None and RESTART_MARKER not in content


class ProgressLog:
    """Append-only session log holding an exclusive ``flock`` while open.

    Use :meth:`open`; the constructor only wraps an already locked file.
    """

    def __init__(self, path: Path, handle, session: str, console: Console | None = None):
        self.path = path
        self.session = session
        self.console = console
        self.phase: Phase | None = None
        self.restarted = False
        self._handle = handle
        self._start = time.monotonic()
        self._at_line_start = True

    @classmethod
    def open(
        cls,
        path: str | Path,
        *,
        session: str | None = None,
        plan_file: str | Path | None = None,
        mode: str = "",
        console: Console | None = None,
    ) -> "ProgressLog":
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        handle = open(path, "a+b")
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as exc:
            handle.close()
            raise LockContention(f"Progress log {path} is locked by another run") from exc

        log = cls(path, handle, session or path.stem, console=console)
        try:
            log._start_session(plan_file, mode)
        except BaseException:
            log.release()
            raise
        return log

    def _start_session(self, plan_file, mode: str) -> None:
        size = os.fstat(self._handle.fileno()).st_size
        self._handle.seek(max(0, size - _TAIL_BYTES))
        tail = self._handle.read().decode("utf-8", errors="replace")

        if size <= _TAIL_BYTES and is_placeholder(tail):
            self._handle.truncate(0)
            logger.info("Starting fresh progress log %s", self.path)
        elif has_completion_footer(tail):
            self._handle.truncate(0)
            logger.info("Previous session in %s completed, starting over", self.path)
        else:
            self.restarted = True
            sep = "" if tail.endswith("\n") else "\n"
            self._write(f"{sep}\n{RESTART_MARKER} {_now()} ===\n\n")
            logger.info("Resuming unfinished session in %s", self.path)

        header = [
            HEADER_TITLE,
            f"Session: {self.session}",
            f"Plan: {plan_file or '-'}",
            f"Mode: {mode or '-'}",
            f"Started: {_now()}",
            RULE,
        ]
        self._write("\n".join(header) + "\n")
        self._at_line_start = True

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    @property
    def closed(self) -> bool:
        return self._handle is None

    def _write(self, text: str) -> None:
        if self._handle is None:
            raise ValueError(f"Progress log {self.path} is closed")
        self._handle.write(text.encode("utf-8"))
        self._handle.flush()
        if text:
            self._at_line_start = text.endswith("\n")

    def set_phase(self, phase: Phase) -> None:
        self.phase = Phase(phase)

    def append(self, entry: str) -> None:
        """Write one timestamped record, always starting on its own line."""
        prefix = "" if self._at_line_start else "\n"
        phase = f"[{self.phase.value}] " if self.phase else ""
        self._write(f"{prefix}[{_now()}] {phase}{entry}\n")
        if self.console is not None:
            style = _PHASE_STYLES.get(self.phase, "white")
            self.console.print(f"[dim]{_now()}[/dim] [{style}]{escape(entry)}[/{style}]")

    def print(self, fmt: str, *args) -> None:
        self.append(fmt % args if args else fmt)

    def print_raw(self, text: str) -> None:
        """Write streamed agent text exactly as received."""
        if not text:
            return
        self._write(text)
        if self.console is not None:
            self.console.print(text, end="", markup=False, highlight=False)

    def elapsed(self) -> float:
        return time.monotonic() - self._start

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Write the completion footer and release the lock."""
        if self._handle is None:
            return
        prefix = "" if self._at_line_start else "\n"
        elapsed = format_elapsed(self.elapsed())
        self._write(f"{prefix}{RULE}\n{COMPLETED_MARKER} {_now()} ({elapsed})\n")
        self.release()

    def release(self) -> None:
        """Release the lock without a footer; the next run will resume."""
        if self._handle is None:
            return
        try:
            fcntl.flock(self._handle.fileno(), fcntl.LOCK_UN)
        finally:
            self._handle.close()
            self._handle = None

    def __enter__(self) -> "ProgressLog":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            self.close()
        else:
            self.release()
