"""Log sources — files and directories delivered as LogRecords in chronological order."""

import glob
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterator

logger = logging.getLogger(__name__)

LOG_SUFFIX = ".log"


@dataclass(frozen=True)
class LogRecord:
    log_id: str
    text: str
    start_time: datetime | None = None


def read_log_file(filepath: str) -> LogRecord:
    """Read one debug log; the file's mtime stands in for the log start time."""
    with open(filepath, "r", encoding="utf-8", errors="replace") as f:
        text = f.read()
    mtime = os.path.getmtime(filepath)
    return LogRecord(
        log_id=os.path.basename(filepath),
        text=text,
        start_time=datetime.fromtimestamp(mtime, tz=timezone.utc),
    )


def expand_paths(raw_paths: list[str]) -> list[str]:
    """Expand globs, deduplicate, and validate that files exist.

    Raises FileNotFoundError if a non-glob path doesn't exist.
    Raises FileNotFoundError if expansion produces zero files.
    """
    expanded = []
    seen = set()

    for raw in raw_paths:
        if any(c in raw for c in ("*", "?", "[")):
            candidates = sorted(glob.glob(raw))
        else:
            if not os.path.isfile(raw):
                raise FileNotFoundError(f"File not found: {raw}")
            candidates = [raw]
        for path in candidates:
            if path not in seen:
                seen.add(path)
                expanded.append(path)

    if not expanded:
        raise FileNotFoundError("No log files found matching the given paths")

    return expanded


class DirectoryLogSource:
    """Every *.log file in a directory, oldest first (mtime, then name)."""

    def __init__(self, path: str):
        self._path = path

    @property
    def path(self) -> str:
        return self._path

    def paths(self) -> list[str]:
        if not os.path.isdir(self._path):
            return []
        names = [n for n in os.listdir(self._path) if n.endswith(LOG_SUFFIX)]
        full = [os.path.join(self._path, n) for n in names]
        return sorted(full, key=lambda p: (os.path.getmtime(p), os.path.basename(p)))

    def __iter__(self) -> Iterator[LogRecord]:
        for path in self.paths():
            try:
                yield read_log_file(path)
            except OSError as e:
                logger.error("Failed to read %s: %s", path, e)
