import io
import unittest

from audio_builders import RepeatingSource, flac_stream, mp3_stream, mpeg_frame, wav_stream

from audio_meta_hook.containers import detect_parser, parser_for_mime
from audio_meta_hook.extractor import MetadataExtractor, extract
from audio_meta_hook.models import InsufficientData, ParseOptions, UnsupportedFormat
from audio_meta_hook.stream import AudioStreamHandle, open_stream


class _TrackedBytes(io.BytesIO):
    def __init__(self, data: bytes) -> None:
        super().__init__(data)
        self.close_calls = 0

    def close(self) -> None:
        self.close_calls += 1
        super().close()


class TestExtract(unittest.TestCase):
    def test_stream_closed_once_on_success(self) -> None:
        raw = _TrackedBytes(mp3_stream(100))
        handle = AudioStreamHandle(raw, size=len(raw.getvalue()))
        extract(handle)
        self.assertTrue(handle.closed)
        self.assertEqual(raw.close_calls, 1)

    def test_stream_closed_once_on_failure(self) -> None:
        raw = _TrackedBytes(b"definitely not audio" * 50)
        handle = AudioStreamHandle(raw, size=1000)
        with self.assertRaises(UnsupportedFormat):
            extract(handle)
        self.assertTrue(handle.closed)
        self.assertEqual(raw.close_calls, 1)

    def test_empty_stream_is_insufficient_data(self) -> None:
        with self.assertRaises(InsufficientData):
            extract(open_stream(b""))

    def test_truncated_header_is_insufficient_data(self) -> None:
        data = flac_stream()[:20]
        with self.assertRaises(InsufficientData):
            extract(open_stream(data))

    def test_corrupt_header_is_unsupported(self) -> None:
        data = bytearray(flac_stream())
        # STREAMINFO sample rate of zero
        data[18:21] = b"\x00\x00\x00"
        with self.assertRaises(UnsupportedFormat):
            extract(open_stream(bytes(data)))

    def test_declared_mime_mismatch_uses_sniffed_bytes(self) -> None:
        options = ParseOptions(declared_mime_type="audio/mpeg")
        meta = extract(open_stream(wav_stream(seconds=1.0)), options)
        self.assertEqual(meta.container, "WAVE")
        self.assertTrue(meta.lossless)

    def test_read_volume_is_independent_of_total_size(self) -> None:
        unit = mpeg_frame(128)
        small = RepeatingSource(unit, 10 * 1024 * 1024)
        large = RepeatingSource(unit, 500 * 1024 * 1024)
        small_meta = extract(AudioStreamHandle(small, size=small.total, name="small"))
        large_meta = extract(AudioStreamHandle(large, size=large.total, name="large"))

        self.assertEqual(small.served, large.served)
        self.assertLess(large.served, 256 * 1024)
        self.assertEqual(large.close_calls, 1)
        self.assertAlmostEqual(large_meta.duration_seconds, large.total * 8 / 128000, places=3)
        self.assertAlmostEqual(small_meta.duration_seconds, small.total * 8 / 128000, places=3)

    def test_extractor_carries_default_options(self) -> None:
        extractor = MetadataExtractor(ParseOptions(want_duration=False))
        meta = extractor.extract(open_stream(mp3_stream(50)))
        self.assertEqual(meta.duration_seconds, 0.0)
        self.assertEqual(meta.bitrate_bps, 128000)


class TestDetection(unittest.TestCase):
    def test_parser_for_mime_ignores_parameters(self) -> None:
        parser = parser_for_mime("Audio/MPEG; charset=binary")
        assert parser is not None
        self.assertEqual(parser.name, "mpeg")
        self.assertIsNone(parser_for_mime("image/png"))

    def test_sniffing_wins_over_declared_type(self) -> None:
        parser = detect_parser(b"fLaC\x00\x00\x00\x22" + b"\x00" * 4, "audio/mpeg")
        assert parser is not None
        self.assertEqual(parser.name, "flac")

    def test_declared_type_is_the_fallback(self) -> None:
        parser = detect_parser(b"\x00" * 12, "audio/aac")
        assert parser is not None
        self.assertEqual(parser.name, "adts")
        self.assertIsNone(detect_parser(b"\x00" * 12, None))


if __name__ == "__main__":
    unittest.main()
