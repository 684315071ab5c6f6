import io
import unittest

from audio_builders import (
    aiff_stream,
    flac_stream,
    mp4_stream,
    ogg_stream,
    opus_head,
    vorbis_comment,
    vorbis_id_header,
    wav_stream,
)

from audio_meta_hook.containers.aiff import read_extended_float
from audio_meta_hook.extractor import extract
from audio_meta_hook.models import ParseOptions
from audio_meta_hook.stream import AudioStreamHandle, open_stream


class TestFlac(unittest.TestCase):
    def test_streaminfo_and_vorbis_year(self) -> None:
        data = flac_stream(total_samples=441000, comments={"DATE": "2001-03-04"}, audio_bytes=10000)
        meta = extract(open_stream(data))
        self.assertEqual(meta.duration_seconds, 10.0)
        self.assertEqual(meta.sample_rate_hz, 44100)
        self.assertEqual(meta.channel_count, 2)
        self.assertEqual(meta.bits_per_sample, 16)
        self.assertTrue(meta.lossless)
        self.assertEqual(meta.year, 2001)
        self.assertEqual(meta.bitrate_bps, 8000)
        self.assertEqual(meta.codec, "FLAC")

    def test_picture_block_is_not_pulled(self) -> None:
        handle = open_stream(flac_stream(picture_size=2_000_000, audio_bytes=1000))
        meta = extract(handle)
        self.assertTrue(meta.lossless)
        self.assertLess(handle.bytes_read, 64 * 1024)

    def test_picture_stays_unread_when_art_is_not_skipped(self) -> None:
        handle = open_stream(flac_stream(picture_size=2_000_000, audio_bytes=1000))
        meta = extract(handle, ParseOptions(skip_cover_art=False))
        self.assertEqual(meta.duration_seconds, 10.0)
        self.assertLess(handle.bytes_read, 64 * 1024)


class TestWave(unittest.TestCase):
    def test_pcm_wave(self) -> None:
        meta = extract(open_stream(wav_stream(seconds=2.0, year="2005")))
        self.assertEqual(meta.duration_seconds, 2.0)
        self.assertEqual(meta.bitrate_bps, 44100 * 2 * 16)
        self.assertEqual(meta.sample_rate_hz, 44100)
        self.assertEqual(meta.channel_count, 2)
        self.assertTrue(meta.lossless)
        self.assertEqual(meta.year, 2005)
        self.assertEqual(meta.container, "WAVE")

    def test_info_list_after_data_needs_trailing_metadata(self) -> None:
        data = wav_stream(seconds=1.0, year="1999", list_after_data=True)
        self.assertIsNone(extract(open_stream(data)).year)
        trailing = extract(open_stream(data), ParseOptions(skip_trailing_metadata=False))
        self.assertEqual(trailing.year, 1999)
        self.assertEqual(trailing.duration_seconds, 1.0)

    def test_streaming_data_size_without_length_measures_the_payload(self) -> None:
        data = wav_stream(seconds=2.0)
        offset = data.index(b"data") + 4
        for sentinel in (0xFFFFFFFF, 0):
            with self.subTest(sentinel=sentinel):
                streamed = data[:offset] + sentinel.to_bytes(4, "little") + data[offset + 4 :]
                meta = extract(AudioStreamHandle(io.BytesIO(streamed), size=None, name="live"))
                self.assertEqual(meta.duration_seconds, 2.0)
                self.assertEqual(meta.bitrate_bps, 44100 * 2 * 16)

    def test_compressed_wave_is_not_lossless(self) -> None:
        meta = extract(open_stream(wav_stream(seconds=1.0, format_tag=0x0006, bits=8, channels=1)))
        self.assertFalse(meta.lossless)
        self.assertEqual(meta.codec, "A-law")


class TestAiff(unittest.TestCase):
    def test_extended_float_decoding(self) -> None:
        self.assertEqual(read_extended_float(b"\x40\x0e\xac\x44" + b"\x00" * 6), 44100.0)

    def test_uncompressed_aiff(self) -> None:
        meta = extract(open_stream(aiff_stream(frames=88200)))
        self.assertEqual(meta.duration_seconds, 2.0)
        self.assertEqual(meta.sample_rate_hz, 44100)
        self.assertEqual(meta.bitrate_bps, 44100 * 2 * 16)
        self.assertTrue(meta.lossless)
        self.assertEqual(meta.container, "AIFF")

    def test_compressed_aifc_bitrate_from_sound_data(self) -> None:
        meta = extract(open_stream(aiff_stream(frames=44100, compression=b"ima4", sound_bytes=4000)))
        self.assertFalse(meta.lossless)
        self.assertEqual(meta.container, "AIFF-C")
        self.assertEqual(meta.codec, "ima4")
        self.assertEqual(meta.bitrate_bps, 32000)


class TestMp4(unittest.TestCase):
    def test_aac_in_mp4(self) -> None:
        meta = extract(open_stream(mp4_stream(seconds=180, avg_bitrate=128000, year="2012")))
        self.assertEqual(meta.duration_seconds, 180.0)
        self.assertEqual(meta.bitrate_bps, 128000)
        self.assertEqual(meta.sample_rate_hz, 44100)
        self.assertEqual(meta.channel_count, 2)
        self.assertFalse(meta.lossless)
        self.assertEqual(meta.year, 2012)
        self.assertEqual(meta.codec, "AAC LC")
        self.assertEqual(meta.container, "MPEG-4/M4A")

    def test_moov_after_mdat(self) -> None:
        meta = extract(open_stream(mp4_stream(seconds=30, moov_first=False, mdat_bytes=100_000)))
        self.assertEqual(meta.duration_seconds, 30.0)
        self.assertEqual(meta.bitrate_bps, 128000)

    def test_cover_art_is_skipped(self) -> None:
        handle = open_stream(mp4_stream(year="2020", cover_size=500_000))
        meta = extract(handle)
        self.assertEqual(meta.year, 2020)
        self.assertLess(handle.bytes_read, 64 * 1024)


class TestOgg(unittest.TestCase):
    def test_vorbis(self) -> None:
        comment = b"\x03vorbis" + vorbis_comment({"DATE": "1999"}) + b"\x01"
        data = ogg_stream(
            vorbis_id_header(nominal_bitrate=160000),
            comment,
            setup_packet=b"\x05vorbis" + b"\x00" * 40,
            granule_step=44100,
            pages=10,
        )
        meta = extract(open_stream(data))
        self.assertEqual(meta.duration_seconds, 10.0)
        self.assertEqual(meta.bitrate_bps, 160000)
        self.assertEqual(meta.sample_rate_hz, 44100)
        self.assertEqual(meta.channel_count, 2)
        self.assertEqual(meta.year, 1999)
        self.assertEqual(meta.codec, "Vorbis")

    def test_opus_pre_skip_and_bitrate_from_size(self) -> None:
        comment = b"OpusTags" + vorbis_comment({"YEAR": "2016"})
        data = ogg_stream(opus_head(pre_skip=312), comment, granule_step=48000, pages=5, pre_skip=312)
        meta = extract(open_stream(data))
        self.assertEqual(meta.duration_seconds, 5.0)
        page_size = 27 + 4 + 1000
        self.assertEqual(meta.bitrate_bps, round(5 * page_size * 8 / 5.0))
        self.assertEqual(meta.sample_rate_hz, 48000)
        self.assertEqual(meta.year, 2016)
        self.assertEqual(meta.codec, "Opus")


if __name__ == "__main__":
    unittest.main()
