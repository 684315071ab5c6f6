from __future__ import annotations

import logging
import struct
from dataclasses import dataclass, field
from typing import Optional

from ..models import InsufficientData, ParseOptions, UnsupportedFormat
from ..stream import AudioStreamHandle
from .base import FormatBuilder, bitrate_from_size, parse_year

logger = logging.getLogger(__name__)

CONTAINER_BOXES = {b"moov", b"trak", b"mdia", b"minf", b"stbl", b"udta", b"ilst", b"wave"}
MAX_LEAF_BYTES = 1024 * 1024
TOP_LEVEL_TYPES = (b"ftyp", b"moov", b"mdat", b"free", b"skip", b"wide", b"pnot")
YEAR_ATOM = b"\xa9day"

CODECS = {
    b"mp4a": ("AAC", False),
    b"alac": ("ALAC", True),
    b"fLaC": ("FLAC", True),
    b"Opus": ("Opus", False),
    b"ac-3": ("AC-3", False),
    b"ec-3": ("E-AC-3", False),
    b".mp3": ("MPEG Layer 3", False),
    b"lpcm": ("PCM", True),
    b"sowt": ("PCM", True),
    b"twos": ("PCM", True),
    b"in24": ("PCM", True),
    b"in32": ("PCM", True),
    b"fl32": ("PCM", True),
    b"fl64": ("PCM", True),
    b"raw ": ("PCM", True),
}

AAC_SAMPLE_RATES = (96000, 88200, 64000, 48000, 44100, 32000, 24000, 22050, 16000, 12000, 11025, 8000, 7350)
AAC_OBJECT_TYPES = {1: "AAC Main", 2: "AAC LC", 3: "AAC SSR", 4: "AAC LTP", 5: "HE-AAC", 29: "HE-AACv2"}


@dataclass
class _Track:
    handler: Optional[bytes] = None
    timescale: int = 0
    duration: int = 0
    sample_format: Optional[bytes] = None
    channels: int = 0
    sample_size: int = 0
    sample_rate: int = 0
    avg_bitrate: int = 0
    object_type: Optional[int] = None


@dataclass
class _MovieState:
    brand: Optional[bytes] = None
    timescale: int = 0
    duration: int = 0
    moov_seen: bool = False
    mdat_size: Optional[int] = None
    tracks: list[_Track] = field(default_factory=list)
    year: Optional[int] = None

    def audio_track(self) -> Optional[_Track]:
        for track in self.tracks:
            if track.handler == b"soun" and track.sample_format:
                return track
        for track in self.tracks:
            if track.sample_format in CODECS:
                return track
        return None


@dataclass(frozen=True)
class _BoxHeader:
    type: bytes
    payload: Optional[int]


def _read_box_header(stream: AudioStreamHandle) -> Optional[_BoxHeader]:
    raw = stream.read(8)
    if len(raw) < 8:
        return None
    size = int.from_bytes(raw[:4], "big")
    box_type = raw[4:8]
    header_size = 8
    if size == 1:
        size = int.from_bytes(stream.read_exact(8), "big")
        header_size = 16
    elif size == 0:
        return _BoxHeader(type=box_type, payload=None)
    if size < header_size:
        raise UnsupportedFormat(f"{stream.name}: box {box_type!r} declares size {size}")
    return _BoxHeader(type=box_type, payload=size - header_size)


def _read_full_box_times(data: bytes) -> tuple[int, int]:
    if not data:
        return 0, 0
    if data[0] == 1:
        if len(data) < 32:
            return 0, 0
        return int.from_bytes(data[20:24], "big"), int.from_bytes(data[24:32], "big")
    if len(data) < 20:
        return 0, 0
    return int.from_bytes(data[12:16], "big"), int.from_bytes(data[16:20], "big")


def _descriptor(data: bytes, offset: int) -> tuple[int, int, int]:
    tag = data[offset]
    offset += 1
    length = 0
    for _ in range(4):
        byte = data[offset]
        offset += 1
        length = (length << 7) | (byte & 0x7F)
        if not byte & 0x80:
            break
    return tag, offset, length


def _parse_esds(data: bytes, track: _Track) -> None:
    """Walk ES_Descriptor -> DecoderConfigDescriptor -> DecoderSpecificInfo."""
    offset = 4
    end = len(data)
    try:
        while offset < end:
            tag, offset, length = _descriptor(data, offset)
            if tag == 0x03:
                flags = data[offset + 2]
                offset += 3
                if flags & 0x80:
                    offset += 2
                if flags & 0x40:
                    offset += 1 + data[offset]
                if flags & 0x20:
                    offset += 2
                continue
            if tag == 0x04:
                track.avg_bitrate = int.from_bytes(data[offset + 9 : offset + 13], "big")
                offset += 13
                continue
            if tag == 0x05:
                _parse_audio_specific_config(data[offset : offset + length], track)
                return
            offset += length
    except IndexError:
        logger.debug("Truncated esds descriptor")


def _parse_audio_specific_config(config: bytes, track: _Track) -> None:
    if len(config) < 2:
        return
    bits = int.from_bytes(config[:8].ljust(8, b"\x00"), "big")
    position = 64

    def take(count: int) -> int:
        nonlocal position
        position -= count
        return (bits >> position) & ((1 << count) - 1)

    object_type = take(5)
    if object_type == 31:
        object_type = 32 + take(6)
    rate_index = take(4)
    if rate_index == 15:
        sample_rate = take(24)
    elif rate_index < len(AAC_SAMPLE_RATES):
        sample_rate = AAC_SAMPLE_RATES[rate_index]
    else:
        sample_rate = 0
    channel_config = take(4)
    track.object_type = object_type
    if sample_rate:
        track.sample_rate = sample_rate
    if channel_config:
        track.channels = 8 if channel_config == 7 else channel_config


def _parse_sample_entry_children(data: bytes, track: _Track) -> None:
    offset = 0
    while offset + 8 <= len(data):
        size = int.from_bytes(data[offset : offset + 4], "big")
        child = data[offset + 4 : offset + 8]
        if size < 8:
            break
        body = data[offset + 8 : offset + size]
        if child == b"esds":
            _parse_esds(body, track)
        elif child == b"alac" and len(body) >= 28:
            track.sample_size = body[9]
            track.channels = body[13]
            track.avg_bitrate = int.from_bytes(body[20:24], "big")
            track.sample_rate = int.from_bytes(body[24:28], "big")
        elif child == b"wave":
            _parse_sample_entry_children(body, track)
        offset += size


def _parse_stsd(data: bytes, track: _Track) -> None:
    if len(data) < 16:
        return
    entry_size = int.from_bytes(data[8:12], "big")
    entry = data[8 : 8 + entry_size]
    if len(entry) < 36:
        return
    track.sample_format = entry[4:8]
    version = int.from_bytes(entry[16:18], "big")
    if version == 2 and len(entry) >= 72:
        track.sample_rate = int(round(struct.unpack(">d", entry[40:48])[0]))
        track.channels = int.from_bytes(entry[48:52], "big")
        track.sample_size = int.from_bytes(entry[56:60], "big")
        children = 72
    else:
        track.channels = int.from_bytes(entry[24:26], "big")
        track.sample_size = int.from_bytes(entry[26:28], "big")
        track.sample_rate = int.from_bytes(entry[32:36], "big") >> 16
        children = 52 if version == 1 else 36
    _parse_sample_entry_children(entry[children:], track)


def _parse_year_item(data: bytes) -> Optional[int]:
    if len(data) < 16 or data[4:8] != b"data":
        return None
    size = int.from_bytes(data[0:4], "big")
    return parse_year(data[16:size].decode("utf-8", errors="replace"))


class Mp4Parser:
    name = "mp4"
    mime_types = ("audio/mp4", "audio/x-m4a", "audio/m4a", "audio/x-m4b", "video/mp4", "audio/3gpp", "video/quicktime")

    def sniff(self, head: bytes) -> bool:
        return head[4:8] in TOP_LEVEL_TYPES

    def parse(self, stream: AudioStreamHandle, info: FormatBuilder, options: ParseOptions) -> None:
        state = _MovieState()
        while True:
            box = _read_box_header(stream)
            if box is None:
                break
            payload = box.payload if box.payload is not None else stream.remaining()
            if box.type == b"ftyp" and payload is not None and payload <= 4096:
                state.brand = stream.read_exact(payload)[:4]
            elif box.type == b"moov":
                if payload is None:
                    raise UnsupportedFormat(f"{stream.name}: moov box without a size")
                self._walk(stream, payload, state, options, None)
                state.moov_seen = True
            elif box.type == b"mdat":
                state.mdat_size = payload
                if state.moov_seen:
                    break
                # Media data ahead of the movie header has to be passed over.
                logger.debug("Skipping mdat ahead of moov in %s", stream.name)
                self._skip(stream, payload)
            else:
                self._skip(stream, payload)
            if state.moov_seen and self._settled(state):
                break
        if not state.moov_seen:
            raise InsufficientData(f"{stream.name}: stream ended before the moov box")
        self._apply(state, info)

    @staticmethod
    def _skip(stream: AudioStreamHandle, payload: Optional[int]) -> None:
        if payload is None:
            while stream.read(64 * 1024):
                pass
            return
        stream.skip(payload)

    @staticmethod
    def _settled(state: _MovieState) -> bool:
        track = state.audio_track()
        if track is None:
            return True
        return bool(track.avg_bitrate) or state.mdat_size is not None

    def _walk(
        self,
        stream: AudioStreamHandle,
        length: int,
        state: _MovieState,
        options: ParseOptions,
        track: Optional[_Track],
    ) -> None:
        end = stream.position + length
        while stream.position + 8 <= end:
            box = _read_box_header(stream)
            if box is None:
                raise InsufficientData(f"{stream.name}: stream ended inside the moov box")
            payload = box.payload if box.payload is not None else end - stream.position
            payload = min(payload, end - stream.position)
            if box.type == b"trak":
                current = _Track()
                state.tracks.append(current)
                self._walk(stream, payload, state, options, current)
            elif box.type in CONTAINER_BOXES:
                self._walk(stream, payload, state, options, track)
            elif box.type == b"meta":
                peeked = stream.peek(8)
                if peeked[4:8] != b"hdlr" or peeked[:4] == b"\x00\x00\x00\x00":
                    stream.skip(4)
                    payload -= 4
                self._walk(stream, payload, state, options, None)
            elif box.type == b"mvhd" and payload <= 4096:
                state.timescale, state.duration = _read_full_box_times(stream.read_exact(payload))
            elif box.type == b"mdhd" and track is not None and payload <= 4096:
                track.timescale, track.duration = _read_full_box_times(stream.read_exact(payload))
            elif box.type == b"hdlr" and track is not None and payload <= 4096:
                track.handler = stream.read_exact(payload)[8:12]
            elif box.type == b"stsd" and track is not None and payload <= MAX_LEAF_BYTES:
                _parse_stsd(stream.read_exact(payload), track)
            elif box.type == YEAR_ATOM and state.year is None and payload <= options.max_tag_bytes:
                state.year = _parse_year_item(stream.read_exact(payload))
            else:
                # Sample tables, cover art and every other leaf are skipped unread.
                stream.skip(payload)
        if stream.position < end:
            stream.skip(end - stream.position)

    @staticmethod
    def _apply(state: _MovieState, info: FormatBuilder) -> None:
        track = state.audio_track()
        if track is None:
            raise UnsupportedFormat("MP4 stream has no audio track")
        codec, lossless = CODECS.get(track.sample_format or b"", (None, False))
        if codec == "AAC" and track.object_type in AAC_OBJECT_TYPES:
            codec = AAC_OBJECT_TYPES[track.object_type]
        if codec is None:
            codec = (track.sample_format or b"").decode("latin-1", errors="replace")
        info.container = f"MPEG-4/{state.brand.decode('latin-1').strip()}" if state.brand else "MPEG-4"
        info.codec = codec
        info.lossless = lossless
        info.sample_rate_hz = track.sample_rate
        info.channel_count = track.channels
        info.bits_per_sample = track.sample_size or None
        if state.timescale and state.duration:
            info.duration_seconds = state.duration / state.timescale
        elif track.timescale:
            info.duration_seconds = track.duration / track.timescale
        else:
            info.duration_seconds = 0.0
        if track.avg_bitrate:
            info.bitrate_bps = track.avg_bitrate
        else:
            info.bitrate_bps = bitrate_from_size(state.mdat_size, info.duration_seconds) or 0
        info.set_year(state.year)
