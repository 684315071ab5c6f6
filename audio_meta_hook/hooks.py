from __future__ import annotations

import logging
from collections import defaultdict
from threading import Lock
from typing import Any, Callable, Dict, List, Mapping

from .pipeline import RecordOutcome, RecordUpdatePipeline

logger = logging.getLogger(__name__)

Handler = Callable[[Mapping[str, Any]], Any]


class HookRegistry:
    """Minimal stand-in for the host's event bus: named actions fan out to handlers."""

    def __init__(self) -> None:
        self._actions: Dict[str, List[Handler]] = defaultdict(list)
        self._lock = Lock()

    def action(self, event: str, handler: Handler) -> None:
        with self._lock:
            self._actions[event].append(handler)

    def handlers(self, event: str) -> List[Handler]:
        with self._lock:
            return list(self._actions.get(event, ()))

    def emit(self, event: str, meta: Mapping[str, Any]) -> None:
        for handler in self.handlers(event):
            try:
                handler(meta)
            except Exception:
                logger.exception("Handler for %s failed", event)


def event_keys(meta: Mapping[str, Any]) -> List[Any]:
    keys = meta.get("keys")
    if keys:
        return list(keys)
    key = meta.get("key")
    return [] if key is None else [key]


def register_audio_hooks(registry: HookRegistry, pipeline: RecordUpdatePipeline, collection: str) -> None:
    def handle(meta: Mapping[str, Any]) -> list[RecordOutcome]:
        return pipeline.process(meta.get("payload") or {}, event_keys(meta))

    for action in ("create", "update"):
        registry.action(f"{collection}.items.{action}", handle)
    logger.debug("Registered audio metadata hooks for collection %s", collection)
