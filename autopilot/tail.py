"""Reader side of the progress log.

Dashboards and other external viewers follow a running session through
:class:`ProgressTail`. It takes no lock, so it can read a log while the
writing session still holds its ``flock``.
"""

import logging
from pathlib import Path

logger = logging.getLogger(__name__)


class ProgressTail:
    """Lock-free follower of a progress log, for live viewers.

    Tracks its offset and the file's inode; if the file shrinks or is
    replaced (a new session truncated it) reading restarts from the top.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self.offset = 0
        self._inode: int | None = None
        self._partial = b""

    def reset(self) -> None:
        self.offset = 0
        self._partial = b""

    def read_new(self) -> list[str]:
        """Return complete lines appended since the last call."""
        try:
            st = self.path.stat()
        except FileNotFoundError:
            self.reset()
            self._inode = None
            return []

        if self._inode is not None and st.st_ino != self._inode:
            logger.debug("%s replaced, rereading from start", self.path)
            self.reset()
        elif st.st_size < self.offset:
            logger.debug("%s truncated, rereading from start", self.path)
            self.reset()
        self._inode = st.st_ino

        if st.st_size == self.offset:
            return []

        with open(self.path, "rb") as f:
            f.seek(self.offset)
            data = f.read()
        self.offset += len(data)

        data = self._partial + data
        *complete, self._partial = data.split(b"\n")
        return [line.decode("utf-8", errors="replace").rstrip("\r") for line in complete]
