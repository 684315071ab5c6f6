from __future__ import annotations

from typing import Any, Mapping, Optional, Protocol, Sequence

from .models import ServiceContext
from .stream import AudioStreamHandle


class RecordStore(Protocol):
    def read_one(
        self, key: Any, fields: Sequence[str], *, context: ServiceContext
    ) -> Optional[Mapping[str, Any]]: ...

    def update_one(
        self,
        key: Any,
        fields: Mapping[str, Any],
        *,
        suppress_events: bool,
        context: ServiceContext,
    ) -> None: ...


class AssetStore(Protocol):
    def get_stream(
        self,
        file_id: str,
        transforms: Optional[Mapping[str, Any]] = None,
        *,
        context: ServiceContext,
    ) -> AudioStreamHandle: ...


class Extractor(Protocol):
    def extract(self, stream: AudioStreamHandle, options: Any = None) -> Any: ...
