import logging
import unittest
from typing import Any, Mapping, Optional

from audio_builders import flac_stream, mp3_stream

from audio_meta_hook.models import (
    AssetNotFound,
    FormatMetadata,
    ParseOptions,
    ServiceContext,
    TransportError,
    UnsupportedFormat,
)
from audio_meta_hook.pipeline import (
    ProcessingState,
    RecordUpdatePipeline,
    duration_to_ms,
    map_format_metadata,
)
from audio_meta_hook.stream import AudioStreamHandle, open_stream


class _RecordStoreStub:
    def __init__(self, records: Optional[dict[str, dict[str, Any]]] = None) -> None:
        self.records = records or {}
        self.reads: list[tuple[Any, tuple[str, ...]]] = []
        self.writes: list[tuple[Any, dict[str, Any], bool]] = []
        self.fail_on: set[Any] = set()

    def read_one(self, key, fields, *, context):
        self.reads.append((key, tuple(fields)))
        record = self.records.get(key)
        if record is None:
            return None
        return {name: record.get(name) for name in fields}

    def update_one(self, key, fields, *, suppress_events, context):
        if key in self.fail_on:
            raise RuntimeError("database is locked")
        self.writes.append((key, dict(fields), suppress_events))
        self.records.setdefault(key, {}).update(fields)


class _AssetStoreStub:
    def __init__(self, files: Mapping[str, bytes]) -> None:
        self.files = dict(files)
        self.requests: list[tuple[str, Any]] = []
        self.handles: list[AudioStreamHandle] = []

    def get_stream(self, file_id, transforms=None, *, context):
        self.requests.append((file_id, transforms))
        if file_id not in self.files:
            raise AssetNotFound(f"{file_id} is gone")
        handle = open_stream(self.files[file_id], name=file_id)
        self.handles.append(handle)
        return handle


class _FixedExtractor:
    def __init__(self, metadata: FormatMetadata) -> None:
        self.metadata = metadata
        self.options: list[Optional[ParseOptions]] = []

    def extract(self, stream, options=None):
        self.options.append(options)
        stream.close()
        return self.metadata


class TestMapping(unittest.TestCase):
    def test_duration_is_rounded_half_up_to_milliseconds(self) -> None:
        self.assertEqual(duration_to_ms(180.0), 180000)
        self.assertEqual(duration_to_ms(0.0625), 63)
        self.assertEqual(duration_to_ms(0.0624), 62)
        self.assertEqual(duration_to_ms(0.0), 0)

    def test_year_only_mapped_when_known(self) -> None:
        fields = map_format_metadata(FormatMetadata(duration_seconds=1.5, bitrate_bps=320000))
        self.assertNotIn("year", fields)
        self.assertEqual(fields["duration"], 1500)
        fields = map_format_metadata(FormatMetadata(year=1977))
        self.assertEqual(fields["year"], 1977)


class TestRecordUpdatePipeline(unittest.TestCase):
    def setUp(self) -> None:
        self.context = ServiceContext(admin=True, actor="tests")

    def _pipeline(self, records, assets, **kwargs) -> RecordUpdatePipeline:
        return RecordUpdatePipeline(records, assets, context=self.context, **kwargs)

    def test_payload_asset_is_used_without_reading_the_record(self) -> None:
        records = _RecordStoreStub({"1": {}})
        assets = _AssetStoreStub({"f1": mp3_stream(200)})
        outcomes = self._pipeline(records, assets).process({"asset": "f1"}, ["1"])

        self.assertEqual([o.state for o in outcomes], [ProcessingState.DONE])
        self.assertEqual(records.reads, [])
        self.assertEqual(assets.requests, [("f1", None)])
        key, fields, suppressed = records.writes[0]
        self.assertEqual(key, "1")
        self.assertTrue(suppressed)
        self.assertEqual(fields["bit_rate"], 128000)
        self.assertEqual(fields["sample_rate"], 44100)
        self.assertEqual(fields["channels"], 2)
        self.assertFalse(fields["is_lossless"])
        self.assertNotIn("year", fields)
        self.assertTrue(assets.handles[0].closed)

    def test_asset_resolved_from_existing_record(self) -> None:
        records = _RecordStoreStub({"7": {"asset": "f7"}})
        assets = _AssetStoreStub({"f7": flac_stream(comments={"DATE": "2003"})})
        outcome = self._pipeline(records, assets).process_record({"title": "renamed"}, "7")

        self.assertTrue(outcome.ok)
        self.assertEqual(records.reads, [("7", ("asset",))])
        self.assertEqual(outcome.fields["year"], 2003)
        self.assertTrue(outcome.fields["is_lossless"])
        self.assertEqual(outcome.fields["duration"], 10000)

    def test_expanded_file_reference(self) -> None:
        records = _RecordStoreStub({"1": {}})
        assets = _AssetStoreStub({"f1": mp3_stream(50)})
        outcome = self._pipeline(records, assets).process_record({"asset": {"id": "f1"}}, "1")
        self.assertEqual(outcome.file_id, "f1")
        self.assertTrue(outcome.ok)

    def test_record_without_file_is_skipped_silently(self) -> None:
        records = _RecordStoreStub({"3": {"asset": None}})
        assets = _AssetStoreStub({})
        with self.assertLogs("audio_meta_hook.pipeline", level="DEBUG") as logs:
            outcome = self._pipeline(records, assets).process_record({}, "3")

        self.assertEqual(outcome.state, ProcessingState.DONE)
        self.assertTrue(outcome.skipped)
        self.assertEqual(records.writes, [])
        self.assertEqual(assets.requests, [])
        self.assertFalse(any(record.levelno >= logging.ERROR for record in logs.records))

    def test_missing_asset_fails_without_writes(self) -> None:
        records = _RecordStoreStub({"9": {"asset": "gone"}})
        assets = _AssetStoreStub({})
        with self.assertLogs("audio_meta_hook.pipeline", level="ERROR") as logs:
            outcome = self._pipeline(records, assets).process_record({}, "9")

        self.assertEqual(outcome.state, ProcessingState.FAILED)
        self.assertEqual(outcome.failed_in, ProcessingState.FETCHING)
        self.assertEqual(records.writes, [])
        self.assertEqual(logs.records[0].record_key, "9")
        self.assertIn("missing from storage", logs.output[0])

    def test_failures_are_isolated_per_record(self) -> None:
        records = _RecordStoreStub(
            {
                "a": {"asset": "good"},
                "b": {"asset": "garbage"},
                "c": {"asset": "missing"},
                "d": {"asset": "good"},
            }
        )
        assets = _AssetStoreStub({"good": mp3_stream(60), "garbage": b"\x00" * 5000})
        with self.assertLogs("audio_meta_hook.pipeline", level="ERROR"):
            outcomes = self._pipeline(records, assets).process({}, ["a", "b", "c", "d"])

        self.assertEqual(
            [o.state for o in outcomes],
            [ProcessingState.DONE, ProcessingState.FAILED, ProcessingState.FAILED, ProcessingState.DONE],
        )
        self.assertEqual(outcomes[1].failed_in, ProcessingState.EXTRACTING)
        self.assertEqual([write[0] for write in records.writes], ["a", "d"])
        self.assertTrue(all(handle.closed for handle in assets.handles))

    def test_unexpected_errors_are_logged_with_traceback(self) -> None:
        records = _RecordStoreStub({"x": {"asset": "f"}, "y": {"asset": "f"}})
        records.fail_on.add("x")
        assets = _AssetStoreStub({"f": mp3_stream(40)})
        with self.assertLogs("audio_meta_hook.pipeline", level="ERROR") as logs:
            outcomes = self._pipeline(records, assets).process({}, ["x", "y"])

        self.assertEqual(outcomes[0].failed_in, ProcessingState.PERSISTING)
        self.assertEqual(outcomes[0].error, "database is locked")
        self.assertIsNotNone(logs.records[0].exc_info)
        self.assertTrue(outcomes[1].ok)

    def test_every_write_suppresses_events(self) -> None:
        records = _RecordStoreStub({str(i): {"asset": "f"} for i in range(5)})
        assets = _AssetStoreStub({"f": mp3_stream(30)})
        self._pipeline(records, assets).process({}, [str(i) for i in range(5)])
        self.assertEqual(len(records.writes), 5)
        self.assertTrue(all(suppressed for _, _, suppressed in records.writes))

    def test_180_seconds_maps_to_180000_ms(self) -> None:
        records = _RecordStoreStub({"k": {"asset": "f"}})
        assets = _AssetStoreStub({"f": b"ignored"})
        extractor = _FixedExtractor(
            FormatMetadata(duration_seconds=180.0, bitrate_bps=192000, sample_rate_hz=48000, channel_count=2)
        )
        outcome = self._pipeline(records, assets, extractor=extractor).process_record({}, "k")
        self.assertEqual(outcome.fields["duration"], 180000)
        self.assertEqual(records.records["k"]["duration"], 180000)

    def test_extraction_options_are_forced(self) -> None:
        records = _RecordStoreStub({"k": {"asset": "f"}})
        assets = _AssetStoreStub({"f": b"ignored"})
        extractor = _FixedExtractor(FormatMetadata())
        options = ParseOptions(declared_mime_type="audio/mpeg", skip_trailing_metadata=False, want_duration=False)
        self._pipeline(records, assets, extractor=extractor, options=options).process_record({}, "k")
        used = extractor.options[0]
        assert used is not None
        self.assertEqual(used.declared_mime_type, "audio/mpeg")
        self.assertTrue(used.skip_cover_art)
        self.assertTrue(used.skip_trailing_metadata)
        self.assertTrue(used.want_duration)

    def test_transport_error_keeps_existing_fields(self) -> None:
        records = _RecordStoreStub({"k": {"asset": "f", "duration": 1234}})

        class _BrokenAssets(_AssetStoreStub):
            def get_stream(self, file_id, transforms=None, *, context):
                raise TransportError("connection refused")

        with self.assertLogs("audio_meta_hook.pipeline", level="ERROR"):
            outcome = self._pipeline(records, _BrokenAssets({})).process_record({}, "k")
        self.assertEqual(outcome.state, ProcessingState.FAILED)
        self.assertEqual(records.records["k"]["duration"], 1234)

    def test_unsupported_format_is_reported(self) -> None:
        records = _RecordStoreStub({"k": {"asset": "f"}})

        class _RaisingExtractor:
            def extract(self, stream, options=None):
                stream.close()
                raise UnsupportedFormat("not audio")

        with self.assertLogs("audio_meta_hook.pipeline", level="ERROR") as logs:
            outcome = self._pipeline(records, _AssetStoreStub({"f": b""}), extractor=_RaisingExtractor()).process_record({}, "k")
        self.assertEqual(outcome.error, "not audio")
        self.assertIsNone(logs.records[0].exc_info)


if __name__ == "__main__":
    unittest.main()
