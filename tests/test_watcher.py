import asyncio
import unittest
from pathlib import Path
from typing import Optional

from audio_meta_hook.watcher import AssetWatchHandler, AssetWatcher


class _Event:
    def __init__(self, src_path, *, is_directory: bool = False) -> None:
        self.src_path = src_path
        self.is_directory = is_directory


def _relative(path: Path) -> Optional[str]:
    try:
        return path.relative_to("/media").as_posix()
    except ValueError:
        return None


class TestAssetWatchHandler(unittest.IsolatedAsyncioTestCase):
    async def test_bytes_src_path_is_decoded(self) -> None:
        queue: asyncio.Queue[str] = asyncio.Queue()
        loop = asyncio.get_running_loop()
        handler = AssetWatchHandler(queue, exts=[".mp3"], resolve_file_id=_relative, loop=loop)

        handler._maybe_enqueue(_Event(b"/media/uploads/01.mp3"))  # type: ignore[arg-type]

        file_id = await asyncio.wait_for(queue.get(), timeout=1.0)
        self.assertEqual(file_id, "uploads/01.mp3")

    async def test_ignores_directories_other_extensions_and_foreign_paths(self) -> None:
        queue: asyncio.Queue[str] = asyncio.Queue()
        loop = asyncio.get_running_loop()
        handler = AssetWatchHandler(queue, exts=[".MP3"], resolve_file_id=_relative, loop=loop)

        handler._maybe_enqueue(_Event("/media/album", is_directory=True))  # type: ignore[arg-type]
        handler._maybe_enqueue(_Event("/media/cover.jpg"))  # type: ignore[arg-type]
        handler._maybe_enqueue(_Event("/elsewhere/song.mp3"))  # type: ignore[arg-type]
        await asyncio.sleep(0)

        self.assertTrue(queue.empty())


class TestAssetWatcherWorker(unittest.IsolatedAsyncioTestCase):
    async def test_repeated_events_collapse_into_one_run(self) -> None:
        processed: list[str] = []
        watcher = AssetWatcher(Path("/media"), processed.append, _relative)
        for file_id in ("a.mp3", "a.mp3", "b.mp3", "a.mp3"):
            watcher.queue.put_nowait(file_id)

        worker = asyncio.create_task(watcher._worker())
        await asyncio.wait_for(watcher.queue.join(), timeout=2.0)
        worker.cancel()
        await asyncio.gather(worker, return_exceptions=True)

        self.assertEqual(processed, ["a.mp3", "b.mp3"])


if __name__ == "__main__":
    unittest.main()
