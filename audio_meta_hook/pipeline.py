from __future__ import annotations

import dataclasses
import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, Mapping, Optional

from . import record_fields as rf
from .extractor import MetadataExtractor
from .models import AssetNotFound, FormatMetadata, ParseOptions, ProcessingError, ServiceContext
from .protocols import AssetStore, Extractor, RecordStore

logger = logging.getLogger(__name__)


class ProcessingState(str, Enum):
    RESOLVING_FILE = "resolving_file"
    FETCHING = "fetching"
    EXTRACTING = "extracting"
    MAPPING = "mapping"
    PERSISTING = "persisting"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class RecordOutcome:
    record_key: Any
    state: ProcessingState
    file_id: Optional[str] = None
    fields: Mapping[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    failed_in: Optional[ProcessingState] = None
    skipped: bool = False

    @property
    def ok(self) -> bool:
        return self.state is ProcessingState.DONE


def duration_to_ms(seconds: float) -> int:
    # Half-up rounding; 180.0 s must map to exactly 180000.
    return int(math.floor(seconds * 1000 + 0.5))


def map_format_metadata(metadata: FormatMetadata) -> Dict[str, Any]:
    fields: Dict[str, Any] = {
        rf.DURATION: duration_to_ms(metadata.duration_seconds),
        rf.BIT_RATE: metadata.bitrate_bps,
        rf.SAMPLE_RATE: metadata.sample_rate_hz,
        rf.CHANNELS: metadata.channel_count,
        rf.IS_LOSSLESS: metadata.lossless,
    }
    if metadata.year is not None:
        fields[rf.YEAR] = metadata.year
    return fields


class RecordUpdatePipeline:
    """
    Resolves, fetches, extracts and persists format metadata for a batch of records.

    Records are processed one at a time so at most one stream is open. A failure
    is logged against its record key and never stops the rest of the batch; the
    record keeps its previous field values because nothing is written until the
    mapped payload is complete.
    """

    def __init__(
        self,
        records: RecordStore,
        assets: AssetStore,
        *,
        context: ServiceContext,
        extractor: Optional[Extractor] = None,
        options: Optional[ParseOptions] = None,
        asset_field: str = rf.ASSET,
    ) -> None:
        self.records = records
        self.assets = assets
        self.context = context
        self.extractor = extractor or MetadataExtractor()
        self.asset_field = asset_field
        self.options = dataclasses.replace(
            options or ParseOptions(),
            skip_cover_art=True,
            skip_trailing_metadata=True,
            want_duration=True,
        )

    def process(self, payload: Optional[Mapping[str, Any]], keys: Iterable[Any]) -> list[RecordOutcome]:
        outcomes = [self.process_record(payload, key) for key in keys]
        failed = sum(1 for outcome in outcomes if not outcome.ok)
        if outcomes:
            logger.debug("Processed %d record(s), %d failed", len(outcomes), failed)
        return outcomes

    def process_record(self, payload: Optional[Mapping[str, Any]], key: Any) -> RecordOutcome:
        state = ProcessingState.RESOLVING_FILE
        file_id: Optional[str] = None
        try:
            file_id = self._resolve_file(payload, key)
            if not file_id:
                logger.debug(
                    "Record %s has no attached file; skipping",
                    key,
                    extra={"record_key": key, "outcome": "skipped"},
                )
                return RecordOutcome(record_key=key, state=ProcessingState.DONE, skipped=True)
            state = ProcessingState.FETCHING
            # Raw bytes only; transform options would route audio through image processing.
            stream = self.assets.get_stream(file_id, context=self.context)
            state = ProcessingState.EXTRACTING
            metadata = self.extractor.extract(stream, self.options)
            state = ProcessingState.MAPPING
            fields = map_format_metadata(metadata)
            state = ProcessingState.PERSISTING
            # Suppressed events keep this write from re-triggering the hook.
            self.records.update_one(key, fields, suppress_events=True, context=self.context)
        except Exception as exc:
            self._log_failure(key, file_id, state, exc)
            return RecordOutcome(
                record_key=key,
                state=ProcessingState.FAILED,
                file_id=file_id,
                error=str(exc) or exc.__class__.__name__,
                failed_in=state,
            )
        logger.info(
            "Updated metadata for record %s",
            key,
            extra={"record_key": key, "outcome": ProcessingState.DONE.value},
        )
        return RecordOutcome(record_key=key, state=ProcessingState.DONE, file_id=file_id, fields=fields)

    def _resolve_file(self, payload: Optional[Mapping[str, Any]], key: Any) -> Optional[str]:
        file_id = _file_reference((payload or {}).get(self.asset_field))
        if file_id:
            return file_id
        existing = self.records.read_one(key, [self.asset_field], context=self.context)
        if not existing:
            return None
        return _file_reference(existing.get(self.asset_field))

    @staticmethod
    def _log_failure(key: Any, file_id: Optional[str], state: ProcessingState, exc: Exception) -> None:
        extra = {"record_key": key, "outcome": ProcessingState.FAILED.value, "error": str(exc)}
        if isinstance(exc, AssetNotFound):
            logger.error("File %s for record %s appears to be missing from storage: %s", file_id, key, exc, extra=extra)
        elif isinstance(exc, ProcessingError):
            logger.error("Error processing record %s while %s: %s", key, state.value, exc, extra=extra)
        else:
            logger.exception("Unexpected error processing record %s while %s", key, state.value, extra=extra)


def _file_reference(value: Any) -> Optional[str]:
    if isinstance(value, Mapping):
        value = value.get("id")
    if value is None or value == "":
        return None
    return str(value)
