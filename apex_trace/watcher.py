"""Directory watcher — re-analyzes a capture directory when .log files appear or change."""

import logging
import threading
from typing import Callable

from watchdog.events import FileSystemEventHandler

from apex_trace.models import TraceResult
from apex_trace.session import TraceSession
from apex_trace.sources import LOG_SUFFIX, DirectoryLogSource

logger = logging.getLogger(__name__)

DEBOUNCE_SECONDS = 1.0


class CaptureWatcher(FileSystemEventHandler):
    """Watches a directory and runs the whole capture through one shared session."""

    def __init__(
        self,
        directory: str,
        session: TraceSession,
        on_result: Callable[[TraceResult], None],
        debounce_seconds: float = DEBOUNCE_SECONDS,
        save_baselines: bool = False,
    ):
        super().__init__()
        self._source = DirectoryLogSource(directory)
        self._session = session
        self._on_result = on_result
        self._debounce = debounce_seconds
        self._save_baselines = save_baselines
        self._lock = threading.Lock()
        self._timer: threading.Timer | None = None

    def on_created(self, event):
        if not event.is_directory and event.src_path.endswith(LOG_SUFFIX):
            self._handle(event.src_path)

    def on_modified(self, event):
        if not event.is_directory and event.src_path.endswith(LOG_SUFFIX):
            self._handle(event.src_path)

    def _handle(self, filepath: str):
        """Restart the quiet-period timer; the capture is analyzed once events stop."""
        logger.debug("Change detected: %s", filepath)
        if self._debounce <= 0:
            self.process_directory()
            return
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self._debounce, self._run_pending)
            self._timer.daemon = True
            self._timer.start()

    def _run_pending(self):
        with self._lock:
            self._timer = None
        logger.info("Capture settled in %s", self._source.path)
        self.process_directory()

    def stop(self):
        """Cancel a pending run, if any."""
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    def process_directory(self) -> TraceResult | None:
        """Analyze every log currently in the directory. Returns None when it holds none."""
        records = list(self._source)
        if not records:
            logger.info("No .log files in %s", self._source.path)
            return None
        result = self._session.analyze(records)
        if self._save_baselines:
            self._session.save_baseline(result)
        self._on_result(result)
        return result
