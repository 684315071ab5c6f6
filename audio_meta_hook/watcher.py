from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Callable, Iterable, Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

logger = logging.getLogger(__name__)

AUDIO_EXTENSIONS = (".mp3", ".m4a", ".mp4", ".aac", ".flac", ".ogg", ".oga", ".opus", ".wav", ".aif", ".aiff")


class AssetWatchHandler(FileSystemEventHandler):
    def __init__(
        self,
        queue: asyncio.Queue[str],
        exts: Iterable[str],
        resolve_file_id: Callable[[Path], Optional[str]],
        *,
        loop: asyncio.AbstractEventLoop,
    ) -> None:
        super().__init__()
        self.queue = queue
        self.exts = {ext.lower() for ext in exts}
        self.resolve_file_id = resolve_file_id
        self.loop = loop

    def on_created(self, event: FileSystemEvent) -> None:
        self._maybe_enqueue(event)

    def on_modified(self, event: FileSystemEvent) -> None:
        self._maybe_enqueue(event)

    def _maybe_enqueue(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        src = event.src_path
        if isinstance(src, bytes):
            src = src.decode("utf-8", errors="replace")
        path = Path(src)
        if path.suffix.lower() not in self.exts:
            return
        file_id = self.resolve_file_id(path)
        if file_id:
            logger.debug("Queued asset change: %s", file_id)
            self.loop.call_soon_threadsafe(self.queue.put_nowait, file_id)


class AssetWatcher:
    """Re-runs extraction for every record that references a changed asset file."""

    def __init__(
        self,
        root: Path,
        reprocess: Callable[[str], object],
        resolve_file_id: Callable[[Path], Optional[str]],
        *,
        exts: Iterable[str] = AUDIO_EXTENSIONS,
    ) -> None:
        self.root = root
        self.reprocess = reprocess
        self.resolve_file_id = resolve_file_id
        self.exts = tuple(exts)
        self.queue: asyncio.Queue[str] = asyncio.Queue()
        self.observer: Observer | None = None

    async def run(self) -> None:
        loop = asyncio.get_running_loop()
        handler = AssetWatchHandler(self.queue, self.exts, self.resolve_file_id, loop=loop)
        await loop.run_in_executor(None, self._bootstrap_watchdog, handler)
        worker = asyncio.create_task(self._worker())
        logger.info("Watching %s for asset changes", self.root)
        try:
            while True:
                await asyncio.sleep(3600)
        except (asyncio.CancelledError, KeyboardInterrupt):
            logger.debug("Watcher stopping")
        finally:
            if self.observer:
                self.observer.stop()
                self.observer.join()
            worker.cancel()
            await asyncio.gather(worker, return_exceptions=True)

    def _bootstrap_watchdog(self, handler: AssetWatchHandler) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        observer = Observer()
        observer.schedule(handler, str(self.root), recursive=True)
        observer.start()
        self.observer = observer

    async def _worker(self) -> None:
        loop = asyncio.get_running_loop()
        while True:
            file_id = await self.queue.get()
            try:
                # A single copy fires several modify events; fold queued repeats into one run.
                self._drop_queued(file_id)
                await loop.run_in_executor(None, self.reprocess, file_id)
            except Exception:  # pragma: no cover - logged and ignored
                logger.exception("Failed to reprocess asset %s", file_id)
            finally:
                self.queue.task_done()

    def _drop_queued(self, file_id: str) -> None:
        kept: list[str] = []
        while not self.queue.empty():
            item = self.queue.get_nowait()
            self.queue.task_done()
            if item != file_id:
                kept.append(item)
        for item in kept:
            self.queue.put_nowait(item)
