from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Optional

from .config import Settings
from .hooks import HookRegistry, register_audio_hooks
from .models import ProcessingError, ServiceContext
from .pipeline import RecordOutcome, RecordUpdatePipeline
from .stores import HttpAssetStore, LocalAssetStore, SQLiteRecordStore
from .watcher import AssetWatcher

logger = logging.getLogger(__name__)


@dataclass
class AudioMetaHookApp:
    settings: Settings
    context: ServiceContext
    events: HookRegistry
    records: SQLiteRecordStore
    assets: LocalAssetStore | HttpAssetStore
    pipeline: RecordUpdatePipeline

    @classmethod
    def create(cls, settings: Settings, *, context: Optional[ServiceContext] = None) -> "AudioMetaHookApp":
        context = context or ServiceContext(admin=True)
        events = HookRegistry()
        records = SQLiteRecordStore(settings.storage.database_path, settings.hook.collection, events=events)
        assets: LocalAssetStore | HttpAssetStore
        if settings.storage.asset_base_url:
            assets = HttpAssetStore(
                settings.storage.asset_base_url,
                token=settings.storage.asset_token,
                timeout=settings.extraction.read_timeout_seconds,
            )
        else:
            assets = LocalAssetStore(settings.storage.asset_root)
        pipeline = RecordUpdatePipeline(
            records,
            assets,
            context=context,
            options=settings.extraction.parse_options(declared_mime_type=settings.hook.declared_mime_type),
            asset_field=settings.hook.asset_field,
        )
        register_audio_hooks(events, pipeline, settings.hook.collection)
        return cls(
            settings=settings,
            context=context,
            events=events,
            records=records,
            assets=assets,
            pipeline=pipeline,
        )

    def close(self) -> None:
        self.records.close()

    def add_file(self, path: Path) -> str:
        """Store `path` as an asset and create a record for it; the create hook fills in the metadata."""
        if not isinstance(self.assets, LocalAssetStore):
            raise ProcessingError("adding files requires a local asset root")
        file_id = self.assets.put(path)
        return self.records.create_one({self.settings.hook.asset_field: file_id}, context=self.context)

    def process(self, keys: Iterable[Any]) -> list[RecordOutcome]:
        return self.pipeline.process({}, keys)

    def reprocess_asset(self, file_id: str) -> list[RecordOutcome]:
        field = self.settings.hook.asset_field
        keys = self.records.find_keys(field, file_id, context=self.context)
        if not keys:
            logger.debug("No records reference asset %s", file_id)
            return []
        return self.pipeline.process({field: file_id}, keys)

    def get_watcher(self) -> AssetWatcher:
        if not isinstance(self.assets, LocalAssetStore):
            raise ProcessingError("watching requires a local asset root")
        return AssetWatcher(
            self.assets.root,
            self.reprocess_asset,
            self.assets.file_id_for,
        )
