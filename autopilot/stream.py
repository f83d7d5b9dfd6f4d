"""Line reader for agent subprocess output.

``asyncio.StreamReader.readline`` refuses lines longer than the reader's
``limit`` (64 KiB by default). Agents routinely print single JSON events far
larger than that, so lines are assembled here from fixed-size chunks with no
upper bound.
"""

import asyncio
import logging
from collections.abc import Callable

from autopilot.errors import StreamError

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 64 * 1024


def _decode(raw: bytes | bytearray) -> str:
    if raw.endswith(b"\r"):
        raw = raw[:-1]
    return raw.decode("utf-8", errors="replace")


async def read_lines(
    stream: asyncio.StreamReader,
    handler: Callable[[str], None],
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> None:
    """Deliver every line of *stream* to *handler* until end of input.

    Terminators (``\\n`` or ``\\r\\n``) are stripped. A final line without a
    terminator is still delivered. I/O failures raise :class:`StreamError`;
    task cancellation propagates as ``CancelledError``.
    """
    buf = bytearray()
    scanned = 0  # bytes of buf already known to contain no newline
    lines = 0

    while True:
        try:
            chunk = await stream.read(chunk_size)
        except OSError as exc:
            raise StreamError(f"read failed after {lines} lines: {exc}") from exc

        if not chunk:
            break

        buf += chunk
        start = 0
        while True:
            nl = buf.find(b"\n", max(scanned, start))
            if nl < 0:
                break
            handler(_decode(buf[start:nl]))
            lines += 1
            start = nl + 1
        if start:
            del buf[:start]
        scanned = len(buf)

        # Cancellation takes effect between reads, never mid-line.
        await asyncio.sleep(0)

    if buf:
        handler(_decode(buf))
        lines += 1

    logger.debug("stream closed after %d lines", lines)
