"""File watching and change debouncing.

Monitors document directories and forwards create, modify and delete events
for supported files to a callback, collapsing bursts of edits to one file
into a single call.
"""
import asyncio
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional

import structlog
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from docpilot import config
from docpilot.rag.parsers import SUPPORTED_EXTENSIONS

logger = structlog.get_logger()


class FileChangeDebouncer:
    """Per-source debouncing on the event loop.

    Each call to `touch` restarts the source's timer; the callback runs once
    the source has been quiet for `delay` seconds.
    """

    def __init__(
        self,
        callback: Callable[[str], Awaitable[None]],
        delay: float = None,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ):
        self.callback = callback
        self.delay = config.DEBOUNCE_SECONDS if delay is None else delay
        self._loop = loop
        self._handles: Dict[str, asyncio.TimerHandle] = {}
        self._tasks: set = set()

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def touch(self, source_id: str) -> None:
        """Record a change. Must be called on the loop thread."""
        handle = self._handles.pop(source_id, None)
        if handle is not None:
            handle.cancel()
            logger.debug("file_change_coalesced", source_id=source_id)
        self._handles[source_id] = self.loop.call_later(self.delay, self._fire, source_id)

    def _fire(self, source_id: str) -> None:
        self._handles.pop(source_id, None)
        task = self.loop.create_task(self.callback(source_id))
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "debounced_reindex_failed",
                error=str(task.exception()),
                error_type=type(task.exception()).__name__,
            )

    @property
    def pending(self) -> List[str]:
        return sorted(self._handles)

    def cancel_all(self) -> None:
        """Drop pending timers and cancel callbacks already running."""
        for handle in self._handles.values():
            handle.cancel()
        self._handles.clear()
        for task in list(self._tasks):
            task.cancel()


class DocumentEventHandler(FileSystemEventHandler):
    """Forwards watchdog events for supported documents onto the event loop."""

    def __init__(self, on_change: Callable[[str], None], loop: asyncio.AbstractEventLoop):
        super().__init__()
        self.on_change = on_change
        self.loop = loop

    def _forward(self, path: str, event_type: str) -> None:
        if Path(path).suffix.lower() not in SUPPORTED_EXTENSIONS:
            return
        logger.info("document_event", path=path, event_type=event_type)
        # Observer callbacks run on watchdog's thread
        self.loop.call_soon_threadsafe(self.on_change, path)

    def on_created(self, event: FileSystemEvent):
        if not event.is_directory:
            self._forward(event.src_path, "created")

    def on_modified(self, event: FileSystemEvent):
        if not event.is_directory:
            self._forward(event.src_path, "modified")

    def on_deleted(self, event: FileSystemEvent):
        if not event.is_directory:
            self._forward(event.src_path, "deleted")

    def on_moved(self, event: FileSystemEvent):
        if not event.is_directory:
            self._forward(event.src_path, "moved_from")
            self._forward(event.dest_path, "moved_to")


class DocumentWatcher:
    """Watchdog observer over one or more document directories."""

    def __init__(self, directories: List[Path], on_change: Callable[[str], None]):
        """Initialize the watcher.

        Args:
            directories: Directories to watch recursively
            on_change: Called on the event loop thread with the changed path
        """
        self.directories = [Path(d) for d in directories]
        self.on_change = on_change
        self.observer = None
        self._started = False

    def start(self) -> None:
        """Start watching. Must be called from a running event loop."""
        if self._started:
            logger.warning("watcher_already_started")
            return

        handler = DocumentEventHandler(self.on_change, asyncio.get_running_loop())
        self.observer = Observer()
        for directory in self.directories:
            if directory.exists():
                self.observer.schedule(handler, str(directory), recursive=True)
            else:
                logger.warning("watch_directory_missing", directory=str(directory))
        self.observer.start()
        self._started = True

        logger.info("document_watcher_started", directories=[str(d) for d in self.directories])

    def stop(self) -> None:
        """Stop watching for file changes."""
        if not self._started:
            return

        self.observer.stop()
        self.observer.join(timeout=5.0)
        self._started = False

        logger.info("document_watcher_stopped")

    def is_alive(self) -> bool:
        return self._started and self.observer is not None and self.observer.is_alive()
