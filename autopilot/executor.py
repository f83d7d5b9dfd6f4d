"""Run a CLI coding agent as a subprocess and fold its event stream into a Result."""

import asyncio
import json
import logging
import os
import signal
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from autopilot.config import Settings
from autopilot.errors import ExecutionError, InvocationCancelled, StreamError
from autopilot.signals import detect_signal
from autopilot.stream import read_lines

logger = logging.getLogger(__name__)

_LARGE_PROMPT_THRESHOLD = 100 * 1024  # 100 KB
_STDERR_TAIL_LINES = 20
_TERMINATE_GRACE = 5  # seconds between SIGTERM and SIGKILL

# Event kinds a dialect can report.
DELTA = "delta"
MESSAGE = "message"
RESULT = "result"

Dialect = Callable[[dict], tuple[str | None, str]]
TextHandler = Callable[[str], None] | None


@dataclass
class Result:
    output: str = ""
    signal: str | None = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class Executor(Protocol):
    async def run(self, prompt: str) -> Result: ...


# ---------------------------------------------------------------------------
# Event dialects
# ---------------------------------------------------------------------------

def _message_text(message) -> str:
    if not isinstance(message, dict):
        return ""
    content = message.get("content")
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""
    return "".join(
        block.get("text", "")
        for block in content
        if isinstance(block, dict) and block.get("type") == "text"
    )


def claude_event(event: dict) -> tuple[str | None, str]:
    """Classify a ``claude --output-format stream-json`` event."""
    kind = event.get("type")
    if kind == "stream_event" and isinstance(event.get("event"), dict):
        event = event["event"]
        kind = event.get("type")

    if kind == "content_block_delta":
        delta = event.get("delta") or {}
        if delta.get("type") == "text_delta":
            return DELTA, delta.get("text") or ""
        return None, ""
    if kind == "assistant":
        return MESSAGE, _message_text(event.get("message"))
    if kind == "result":
        result = event.get("result")
        return RESULT, result if isinstance(result, str) else ""
    return None, ""


def codex_event(event: dict) -> tuple[str | None, str]:
    """Classify a ``codex exec --json`` event."""
    kind = event.get("type")
    if kind == "item.completed":
        item = event.get("item") or {}
        if item.get("type") == "agent_message":
            text = item.get("text") or ""
            return MESSAGE, text if text.endswith("\n") else text + "\n"
        return None, ""
    if kind == "turn.completed":
        return RESULT, ""
    return None, ""


# ---------------------------------------------------------------------------
# Decoder
# ---------------------------------------------------------------------------

class EventDecoder:
    """Accumulates output text and the first signal of one invocation."""

    def __init__(self, dialect: Dialect, on_text: TextHandler = None, debug: bool = False):
        self.dialect = dialect
        self.on_text = on_text
        self.debug = debug
        self.signal: str | None = None
        self.finished = False
        self._parts: list[str] = []

    @property
    def output(self) -> str:
        return "".join(self._parts)

    def _append(self, text: str) -> None:
        if not text:
            return
        self._parts.append(text)
        if self.on_text is not None:
            self.on_text(text)

    def _scan(self, text: str) -> None:
        if self.signal is None:
            self.signal = detect_signal(text)

    def feed(self, line: str) -> None:
        if not line.strip():
            return
        try:
            event = json.loads(line)
        except ValueError:
            event = None
        if not isinstance(event, dict):
            # Diagnostics and partial writes land here; keep them as text.
            self._append(line + "\n")
            return

        kind, text = self.dialect(event)
        if self.debug:
            logger.debug("event type=%s kind=%s len=%d", event.get("type"), kind, len(text))

        if kind in (DELTA, MESSAGE):
            self._append(text)
            self._scan(text)
        elif kind == RESULT:
            self._append(text)
            self.finished = True


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------

def _clean_env() -> dict[str, str]:
    """Return a copy of os.environ without the CLAUDECODE variable."""
    return {k: v for k, v in os.environ.items() if k != "CLAUDECODE"}


def _chained(error: Exception, cause: BaseException) -> Exception:
    error.__cause__ = cause
    return error


class CommandExecutor:
    """One agent CLI, invoked once per :meth:`run` call.

    The prompt goes on the command line after *prompt_flag* (if any). Prompts
    over 100 KB are written to stdin instead, with *stdin_flag* telling the
    tool to read it there.
    """

    def __init__(
        self,
        name: str,
        command: str,
        args: list[str],
        dialect: Dialect,
        prompt_flag: str | None = None,
        stdin_flag: list[str] | None = None,
        output_handler: TextHandler = None,
        stderr_handler: TextHandler = None,
        timeout: float | None = None,
        workdir: str | Path | None = None,
        debug: bool = False,
    ):
        self.name = name
        self.command = command
        self.args = list(args)
        self.dialect = dialect
        self.prompt_flag = prompt_flag
        self.stdin_flag = stdin_flag
        self.output_handler = output_handler
        self.stderr_handler = stderr_handler
        self.timeout = timeout or None
        self.workdir = workdir
        self.debug = debug

    def build_command(self, prompt: str) -> tuple[list[str], bytes | None]:
        """Return argv and the bytes to write to stdin (None for an empty stdin)."""
        cmd = [self.command, *self.args]
        data = prompt.encode("utf-8")
        if len(data) > _LARGE_PROMPT_THRESHOLD:
            if self.stdin_flag is not None:
                cmd += self.stdin_flag
            elif self.prompt_flag:
                cmd.append(self.prompt_flag)
            return cmd, data
        if self.prompt_flag:
            cmd.append(self.prompt_flag)
        cmd.append(prompt)
        return cmd, None

    async def run(self, prompt: str) -> Result:
        cmd, stdin_data = self.build_command(prompt)
        logger.info("Running %s (prompt %d chars, timeout=%s)", self.name, len(prompt), self.timeout)
        if self.debug:
            logger.debug("$ %s", " ".join(cmd[:-1] if stdin_data is None else cmd))

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.workdir,
                env=_clean_env(),
                start_new_session=True,
            )
        except OSError as exc:
            return Result(error=_chained(ExecutionError(f"failed to start {self.name} ({self.command}): {exc}"), exc))

        decoder = EventDecoder(self.dialect, on_text=self.output_handler, debug=self.debug)
        stderr_tail: deque[str] = deque(maxlen=_STDERR_TAIL_LINES)

        try:
            returncode = await asyncio.wait_for(
                self._communicate(proc, stdin_data, decoder, stderr_tail), timeout=self.timeout
            )
        except asyncio.TimeoutError as exc:
            await self._terminate(proc)
            error = InvocationCancelled(f"{self.name} timed out after {self.timeout}s")
            return Result(output=decoder.output, signal=decoder.signal, error=_chained(error, exc))
        except asyncio.CancelledError:
            logger.warning("%s cancelled, terminating process group %d", self.name, proc.pid)
            await self._terminate(proc)
            raise
        except StreamError as exc:
            await self._terminate(proc)
            return Result(output=decoder.output, signal=decoder.signal, error=exc)
        except Exception as exc:
            # Usually the output handler failing, e.g. a full disk under the progress log.
            logger.warning("%s output handling failed, terminating process group %d: %s", self.name, proc.pid, exc)
            await self._terminate(proc)
            error = ExecutionError(f"{self.name} output handling failed: {exc}")
            return Result(output=decoder.output, signal=decoder.signal, error=_chained(error, exc))

        output = decoder.output
        if returncode != 0:
            if not output.strip():
                details = "; ".join(stderr_tail) or "no diagnostics"
                return Result(error=ExecutionError(f"{self.name} exited with code {returncode}: {details[:500]}"))
            logger.warning("%s exited with code %d but produced output, keeping it", self.name, returncode)

        if not decoder.finished:
            logger.debug("%s ended without a result event", self.name)
        return Result(output=output, signal=decoder.signal)

    async def _communicate(
        self,
        proc: asyncio.subprocess.Process,
        stdin_data: bytes | None,
        decoder: EventDecoder,
        stderr_tail: deque,
    ) -> int:
        async def feed_stdin() -> None:
            if proc.stdin is None:
                return
            try:
                if stdin_data:
                    proc.stdin.write(stdin_data)
                    await proc.stdin.drain()
                proc.stdin.close()
                await proc.stdin.wait_closed()
            except (BrokenPipeError, ConnectionResetError):
                # Agent exited before reading its prompt; exit code tells the story.
                logger.warning("%s closed stdin early", self.name)

        def on_stderr(line: str) -> None:
            if not line.strip():
                return
            stderr_tail.append(line)
            if self.stderr_handler is not None:
                self.stderr_handler(line)
            else:
                logger.debug("%s stderr: %s", self.name, line)

        tasks = [
            asyncio.create_task(feed_stdin()),
            asyncio.create_task(read_lines(proc.stdout, decoder.feed)),
            asyncio.create_task(read_lines(proc.stderr, on_stderr)),
        ]
        try:
            await asyncio.gather(*tasks)
        finally:
            # One side failed or we were cancelled: no reader may outlive this call.
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
        return await proc.wait()

    async def _terminate(self, proc: asyncio.subprocess.Process) -> None:
        """Kill the agent's whole process group and reap the direct child."""
        for sig in (signal.SIGTERM, signal.SIGKILL):
            try:
                os.killpg(proc.pid, sig)
            except ProcessLookupError:
                pass
            except PermissionError as exc:
                logger.warning("Cannot signal process group %d: %s", proc.pid, exc)
            try:
                await asyncio.wait_for(asyncio.shield(proc.wait()), timeout=_TERMINATE_GRACE)
            except asyncio.TimeoutError:
                continue
            if sig == signal.SIGTERM:
                # Leader gone; descendants that ignored SIGTERM still get SIGKILL.
                try:
                    os.killpg(proc.pid, signal.SIGKILL)
                except ProcessLookupError:
                    pass
            return


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------

def claude_executor(
    settings: Settings,
    output_handler: TextHandler = None,
    stderr_handler: TextHandler = None,
    debug: bool = False,
) -> CommandExecutor:
    """Task/review backend: claude, or any custom provider speaking its stream-json."""
    return CommandExecutor(
        name="claude",
        command=settings.claude_command,
        args=settings.claude_args,
        dialect=claude_event,
        prompt_flag="-p",
        output_handler=output_handler,
        stderr_handler=stderr_handler,
        timeout=settings.timeout,
        debug=debug,
    )


def codex_executor(
    settings: Settings,
    output_handler: TextHandler = None,
    stderr_handler: TextHandler = None,
    debug: bool = False,
) -> CommandExecutor:
    """Analysis backend: ``codex exec --json``."""
    return CommandExecutor(
        name="codex",
        command=settings.codex_command,
        args=settings.codex_args,
        dialect=codex_event,
        stdin_flag=["-"],
        output_handler=output_handler,
        stderr_handler=stderr_handler,
        timeout=settings.timeout,
        debug=debug,
    )
