from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from ..models import InsufficientData, ParseOptions, UnsupportedFormat
from ..stream import AudioStreamHandle
from .base import FormatBuilder
from .id3 import ID3V1_SIZE, parse_id3v1, read_trailing_id3v1

logger = logging.getLogger(__name__)

RESYNC_WINDOW = 4096

# kbps, indexed by bitrate index 1..14
MPEG_BITRATES = {
    (1, 1): (32, 64, 96, 128, 160, 192, 224, 256, 288, 320, 352, 384, 416, 448),
    (1, 2): (32, 48, 56, 64, 80, 96, 112, 128, 160, 192, 224, 256, 320, 384),
    (1, 3): (32, 40, 48, 56, 64, 80, 96, 112, 128, 160, 192, 224, 256, 320),
    (2, 1): (32, 48, 56, 64, 80, 96, 112, 128, 144, 160, 176, 192, 224, 256),
    (2, 2): (8, 16, 24, 32, 40, 48, 56, 64, 80, 96, 112, 128, 144, 160),
    (2, 3): (8, 16, 24, 32, 40, 48, 56, 64, 80, 96, 112, 128, 144, 160),
}

MPEG_SAMPLE_RATES = {
    "1": (44100, 48000, 32000),
    "2": (22050, 24000, 16000),
    "2.5": (11025, 12000, 8000),
}

MPEG_VERSIONS = {0: "2.5", 2: "2", 3: "1"}
MPEG_LAYERS = {1: 3, 2: 2, 3: 1}

ADTS_SAMPLE_RATES = (96000, 88200, 64000, 48000, 44100, 32000, 24000, 22050, 16000, 12000, 11025, 8000, 7350)
ADTS_PROFILES = {0: "Main", 1: "LC", 2: "SSR", 3: "LTP"}


@dataclass(frozen=True)
class FrameHeader:
    size: int
    samples: int
    sample_rate: int
    channels: int
    bitrate: int
    codec: str
    version: str = ""
    layer: int = 0


def parse_mpeg_header(data: bytes) -> Optional[FrameHeader]:
    if len(data) < 4 or data[0] != 0xFF or (data[1] & 0xE0) != 0xE0:
        return None
    version = MPEG_VERSIONS.get((data[1] >> 3) & 0x03)
    layer = MPEG_LAYERS.get((data[1] >> 1) & 0x03)
    if version is None or layer is None:
        return None
    bitrate_index = data[2] >> 4
    rate_index = (data[2] >> 2) & 0x03
    if bitrate_index in (0, 15) or rate_index == 3:
        return None
    table = MPEG_BITRATES[(1 if version == "1" else 2, layer)]
    bitrate = table[bitrate_index - 1] * 1000
    sample_rate = MPEG_SAMPLE_RATES[version][rate_index]
    padding = (data[2] >> 1) & 0x01
    channels = 1 if data[3] >> 6 == 3 else 2
    if layer == 1:
        samples = 384
        size = (12 * bitrate // sample_rate + padding) * 4
    else:
        samples = 576 if layer == 3 and version != "1" else 1152
        size = (samples // 8) * bitrate // sample_rate + padding
    return FrameHeader(
        size=size,
        samples=samples,
        sample_rate=sample_rate,
        channels=channels,
        bitrate=bitrate,
        codec=f"MPEG {version} Layer {layer}",
        version=version,
        layer=layer,
    )


def parse_adts_header(data: bytes) -> Optional[FrameHeader]:
    if len(data) < 7 or data[0] != 0xFF or (data[1] & 0xF6) != 0xF0:
        return None
    header_len = 7 if data[1] & 0x01 else 9
    profile = data[2] >> 6
    rate_index = (data[2] >> 2) & 0x0F
    if rate_index >= len(ADTS_SAMPLE_RATES):
        return None
    channel_config = ((data[2] & 0x01) << 2) | (data[3] >> 6)
    size = ((data[3] & 0x03) << 11) | (data[4] << 3) | (data[5] >> 5)
    if size <= header_len:
        return None
    samples = 1024 * ((data[6] & 0x03) + 1)
    sample_rate = ADTS_SAMPLE_RATES[rate_index]
    return FrameHeader(
        size=size,
        samples=samples,
        sample_rate=sample_rate,
        channels=8 if channel_config == 7 else channel_config,
        bitrate=round(size * 8 * sample_rate / samples),
        codec=f"AAC {ADTS_PROFILES[profile]}",
    )


class FrameStreamParser:
    """
    Shared logic for frame-based streams.

    The first frame is located by searching the header window for a sync word
    whose successor frame also parses. Duration then comes either from an
    encoder summary in the first frame or from sampling frame headers: with a
    known stream size a bounded number of frames is sampled and the rest is
    extrapolated. When neither the size nor an encoder summary is available,
    frames are counted to the end of the stream.
    """

    name = ""
    container = ""
    mime_types: tuple[str, ...] = ()
    header_size = 4
    parse_header: Callable[[bytes], Optional[FrameHeader]] = staticmethod(parse_mpeg_header)
    track_bitrate_changes = True

    def sniff(self, head: bytes) -> bool:
        return self.parse_header(head[: self.header_size]) is not None

    def parse(self, stream: AudioStreamHandle, info: FormatBuilder, options: ParseOptions) -> None:
        first = self._sync(stream, options)
        info.container = self.container
        info.codec = first.codec
        info.sample_rate_hz = first.sample_rate
        info.channel_count = first.channels
        info.lossless = False
        audio_start = stream.position
        self._inspect_first_frame(stream, first, info, audio_start)
        audio_start = stream.position
        if not options.want_duration and info.bitrate_bps is None:
            info.bitrate_bps = first.bitrate
        if not info.resolved(options):
            self._sample_frames(stream, first, info, options, audio_start)
        if not options.skip_trailing_metadata and info.year is None and not stream.exhausted:
            info.set_year(read_trailing_id3v1(stream))

    def _inspect_first_frame(
        self,
        stream: AudioStreamHandle,
        first: FrameHeader,
        info: FormatBuilder,
        audio_start: int,
    ) -> None:
        return None

    def _compatible(self, a: FrameHeader, b: FrameHeader) -> bool:
        return a.sample_rate == b.sample_rate and a.codec == b.codec

    def _find_frame(self, window: bytes) -> Optional[tuple[int, FrameHeader]]:
        offset = window.find(b"\xff")
        while offset != -1 and offset + self.header_size <= len(window):
            header = self.parse_header(window[offset : offset + self.header_size])
            if header is not None:
                following = offset + header.size
                if following + self.header_size > len(window):
                    # Last frame of a short stream, or a frame running past the window.
                    return offset, header
                successor = self.parse_header(window[following : following + self.header_size])
                if successor is not None and self._compatible(header, successor):
                    return offset, header
            offset = window.find(b"\xff", offset + 1)
        return None

    def _sync(self, stream: AudioStreamHandle, options: ParseOptions) -> FrameHeader:
        window = stream.peek(options.header_window)
        if len(window) < self.header_size:
            raise InsufficientData(f"{stream.name}: stream ended before a {self.container} frame header")
        found = self._find_frame(window)
        if found is None:
            if len(window) < options.header_window:
                raise InsufficientData(f"{stream.name}: no {self.container} frame before end of stream")
            raise UnsupportedFormat(f"{stream.name}: no {self.container} frame sync in first {len(window)} bytes")
        offset, header = found
        if offset:
            logger.debug("Skipping %d bytes of junk before first frame in %s", offset, stream.name)
            stream.skip(offset)
        return header

    def _resync(self, stream: AudioStreamHandle) -> Optional[FrameHeader]:
        window = stream.peek(RESYNC_WINDOW)
        if window.startswith(b"TAG") and len(window) == ID3V1_SIZE:
            return None
        if window.startswith((b"APETAGEX", b"LYRICSBEGIN")):
            return None
        found = self._find_frame(window)
        if found is None:
            return None
        offset, header = found
        stream.skip(offset)
        return header

    def _sample_frames(
        self,
        stream: AudioStreamHandle,
        first: FrameHeader,
        info: FormatBuilder,
        options: ParseOptions,
        audio_start: int,
    ) -> None:
        frames = 0
        total_bytes = 0
        total_samples = 0
        bitrates: set[int] = set()
        reached_end = False
        # A duration from the encoder summary leaves only the bitrate to sample.
        extrapolate = stream.size is not None or info.duration_seconds is not None
        while True:
            head = stream.peek(self.header_size)
            header = self.parse_header(head)
            if header is None:
                if len(head) < self.header_size:
                    reached_end = True
                    break
                if not options.skip_trailing_metadata and head.startswith(b"TAG"):
                    tail = stream.peek(ID3V1_SIZE + 1)
                    if len(tail) == ID3V1_SIZE:
                        info.set_year(parse_id3v1(stream.read(ID3V1_SIZE)))
                        reached_end = True
                        break
                header = self._resync(stream)
                if header is None:
                    remaining = stream.remaining()
                    reached_end = remaining is None or remaining <= RESYNC_WINDOW
                    break
            skipped = stream.skip(header.size)
            frames += 1
            total_bytes += skipped
            total_samples += header.samples
            bitrates.add(header.bitrate)
            if skipped < header.size:
                reached_end = True
                break
            if extrapolate and self._enough(frames, bitrates, options):
                break
        if frames == 0:
            if info.duration_seconds is None:
                info.duration_seconds = 0.0
            if info.bitrate_bps is None:
                info.bitrate_bps = first.bitrate
            return
        sampled_seconds = total_samples / first.sample_rate
        variable = len(bitrates) > 1 or not self.track_bitrate_changes
        bitrate = total_bytes * 8 / sampled_seconds if variable else first.bitrate
        if info.bitrate_bps is None:
            info.bitrate_bps = bitrate
        if info.duration_seconds is None:
            if reached_end or stream.size is None:
                info.duration_seconds = sampled_seconds
            else:
                audio_bytes = stream.size - audio_start
                info.duration_seconds = audio_bytes * 8 / bitrate
        logger.debug(
            "Sampled %d frames (%s) from %s, %d bytes read",
            frames,
            "VBR" if variable else "CBR",
            stream.name,
            stream.bytes_read,
        )

    @staticmethod
    def _enough(frames: int, bitrates: set[int], options: ParseOptions) -> bool:
        if frames >= options.max_sampled_frames:
            return True
        return frames >= options.min_sampled_frames and len(bitrates) == 1


class MpegAudioParser(FrameStreamParser):
    name = "mpeg"
    container = "MPEG"
    mime_types = ("audio/mpeg", "audio/mp3", "audio/mpeg3", "audio/x-mpeg", "audio/x-mp3", "audio/mpa")
    header_size = 4
    parse_header = staticmethod(parse_mpeg_header)

    def _compatible(self, a: FrameHeader, b: FrameHeader) -> bool:
        return a.sample_rate == b.sample_rate and a.version == b.version and a.layer == b.layer

    def _inspect_first_frame(
        self,
        stream: AudioStreamHandle,
        first: FrameHeader,
        info: FormatBuilder,
        audio_start: int,
    ) -> None:
        frame = stream.peek(first.size)
        summary = _read_xing(frame, first) or _read_vbri(frame)
        if summary is None:
            return
        frame_count, byte_count = summary
        # The summary frame carries no audio.
        stream.skip(first.size)
        if not frame_count:
            return
        duration = frame_count * first.samples / first.sample_rate
        info.duration_seconds = duration
        if byte_count:
            info.bitrate_bps = byte_count * 8 / duration
        elif stream.size is not None:
            info.bitrate_bps = (stream.size - audio_start - first.size) * 8 / duration
        logger.debug("Encoder summary in %s: %d frames", stream.name, frame_count)


def _read_xing(frame: bytes, header: FrameHeader) -> Optional[tuple[int, int]]:
    mono = header.channels == 1
    if header.version == "1":
        side_info = 17 if mono else 32
    else:
        side_info = 9 if mono else 17
    offset = 4 + side_info
    if frame[offset : offset + 4] not in (b"Xing", b"Info"):
        return None
    flags = int.from_bytes(frame[offset + 4 : offset + 8], "big")
    position = offset + 8
    frame_count = byte_count = 0
    if flags & 0x01:
        frame_count = int.from_bytes(frame[position : position + 4], "big")
        position += 4
    if flags & 0x02:
        byte_count = int.from_bytes(frame[position : position + 4], "big")
    return frame_count, byte_count


def _read_vbri(frame: bytes) -> Optional[tuple[int, int]]:
    if frame[36:40] != b"VBRI" or len(frame) < 54:
        return None
    byte_count = int.from_bytes(frame[46:50], "big")
    frame_count = int.from_bytes(frame[50:54], "big")
    return frame_count, byte_count


class AdtsParser(FrameStreamParser):
    name = "adts"
    container = "ADTS"
    mime_types = ("audio/aac", "audio/aacp", "audio/x-aac", "audio/x-hx-aac-adts")
    header_size = 7
    parse_header = staticmethod(parse_adts_header)
    # Every ADTS frame has its own size; average over what was sampled.
    track_bitrate_changes = False
