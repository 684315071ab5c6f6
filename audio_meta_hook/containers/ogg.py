from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import Optional

from ..models import InsufficientData, ParseOptions, UnsupportedFormat
from ..stream import AudioStreamHandle
from .base import FormatBuilder, bitrate_from_size, year_from_vorbis_comment
from .flac import VORBIS_COMMENT, apply_streaminfo

logger = logging.getLogger(__name__)

PAGE_HEADER_SIZE = 27
END_OF_STREAM = 0x04
OPUS_GRANULE_RATE = 48000


@dataclass(frozen=True)
class OggPage:
    flags: int
    granule: int
    serial: int
    lacing: bytes

    @property
    def body_size(self) -> int:
        return sum(self.lacing)


@dataclass
class _Codec:
    granule_rate: int
    pre_skip: int = 0
    nominal_bitrate: int = 0
    comment_prefix: bytes = b""


def read_page_header(stream: AudioStreamHandle) -> Optional[OggPage]:
    head = stream.read(PAGE_HEADER_SIZE)
    if len(head) < PAGE_HEADER_SIZE:
        return None
    if head[:4] != b"OggS":
        raise UnsupportedFormat(f"{stream.name}: lost Ogg page sync at offset {stream.position - len(head)}")
    lacing = stream.read(head[26])
    if len(lacing) < head[26]:
        return None
    return OggPage(
        flags=head[5],
        granule=int.from_bytes(head[6:14], "little", signed=True),
        serial=int.from_bytes(head[14:18], "little"),
        lacing=lacing,
    )


class _PacketReader:
    """Reassembles header packets of one logical stream; packets over `limit` come back empty."""

    def __init__(self, stream: AudioStreamHandle, serial: int, limit: int) -> None:
        self._stream = stream
        self._serial = serial
        self._limit = limit
        self._packets: deque[bytes] = deque()
        self._partial = bytearray()
        self._oversized = False

    def next_packet(self) -> bytes:
        while not self._packets:
            page = read_page_header(self._stream)
            if page is None:
                raise InsufficientData(f"{self._stream.name}: stream ended inside the Ogg header packets")
            if page.serial != self._serial:
                self._stream.skip(page.body_size)
                continue
            if self._oversized and all(lace == 255 for lace in page.lacing):
                # Still inside a packet that is too big to keep (embedded artwork).
                self._stream.skip(page.body_size)
                continue
            self.feed(page, self._stream.read_exact(page.body_size))
        return self._packets.popleft()

    def feed(self, page: OggPage, body: bytes) -> None:
        offset = 0
        for lace in page.lacing:
            if not self._oversized:
                if len(self._partial) + lace > self._limit:
                    self._oversized = True
                    self._partial.clear()
                else:
                    self._partial += body[offset : offset + lace]
            offset += lace
            if lace < 255:
                self._packets.append(b"" if self._oversized else bytes(self._partial))
                self._partial.clear()
                self._oversized = False


class OggParser:
    name = "ogg"
    mime_types = ("audio/ogg", "application/ogg", "audio/opus", "audio/vorbis", "audio/x-vorbis+ogg", "audio/x-opus+ogg")

    def sniff(self, head: bytes) -> bool:
        return head.startswith(b"OggS")

    def parse(self, stream: AudioStreamHandle, info: FormatBuilder, options: ParseOptions) -> None:
        first = read_page_header(stream)
        if first is None:
            raise InsufficientData(f"{stream.name}: stream ended before the first Ogg page")
        reader = _PacketReader(stream, first.serial, options.max_tag_bytes)
        reader.feed(first, stream.read_exact(first.body_size))
        codec = self._identify(reader.next_packet(), info)
        comment = reader.next_packet()
        if comment.startswith(codec.comment_prefix):
            body = comment[len(codec.comment_prefix) :]
            if info.codec == "FLAC":
                if comment and comment[0] & 0x7F == VORBIS_COMMENT:
                    info.set_year(year_from_vorbis_comment(comment[4:]))
            elif body:
                info.set_year(year_from_vorbis_comment(body))
        audio_start = stream.position
        if options.want_duration and not info.duration_seconds:
            self._sample_pages(stream, first.serial, codec, info, options, audio_start)
        elif info.duration_seconds is None:
            info.duration_seconds = 0.0
        if codec.nominal_bitrate > 0:
            info.bitrate_bps = codec.nominal_bitrate
        else:
            audio_bytes = stream.size - audio_start if stream.size is not None else None
            if audio_bytes is None and stream.exhausted:
                audio_bytes = stream.position - audio_start
            info.bitrate_bps = bitrate_from_size(audio_bytes, info.duration_seconds) or 0

    @staticmethod
    def _identify(packet: bytes, info: FormatBuilder) -> _Codec:
        info.container = "Ogg"
        if packet[:7] == b"\x01vorbis" and len(packet) >= 28:
            sample_rate = int.from_bytes(packet[12:16], "little")
            if not sample_rate:
                raise UnsupportedFormat("Vorbis identification header declares a zero sample rate")
            info.codec = "Vorbis"
            info.lossless = False
            info.channel_count = packet[11]
            info.sample_rate_hz = sample_rate
            return _Codec(
                granule_rate=sample_rate,
                nominal_bitrate=int.from_bytes(packet[20:24], "little", signed=True),
                comment_prefix=b"\x03vorbis",
            )
        if packet[:8] == b"OpusHead" and len(packet) >= 19:
            info.codec = "Opus"
            info.lossless = False
            info.channel_count = packet[9]
            info.sample_rate_hz = int.from_bytes(packet[12:16], "little") or OPUS_GRANULE_RATE
            return _Codec(
                granule_rate=OPUS_GRANULE_RATE,
                pre_skip=int.from_bytes(packet[10:12], "little"),
                comment_prefix=b"OpusTags",
            )
        if packet[:5] == b"\x7fFLAC" and packet[9:13] == b"fLaC" and len(packet) >= 51:
            apply_streaminfo(packet[17:51], info)
            info.container = "Ogg"
            return _Codec(granule_rate=info.sample_rate_hz or 0)
        raise UnsupportedFormat(f"unsupported Ogg codec {packet[:8]!r}")

    @staticmethod
    def _sample_pages(
        stream: AudioStreamHandle,
        serial: int,
        codec: _Codec,
        info: FormatBuilder,
        options: ParseOptions,
        audio_start: int,
    ) -> None:
        last_granule: Optional[int] = None
        granule_end = audio_start
        pages = 0
        reached_end = False
        while True:
            try:
                page = read_page_header(stream)
            except UnsupportedFormat as exc:
                logger.debug("Stopping page scan: %s", exc)
                break
            if page is None:
                reached_end = True
                break
            skipped = stream.skip(page.body_size)
            if page.serial != serial:
                continue
            if skipped < page.body_size:
                reached_end = True
                break
            if page.granule >= 0:
                last_granule = page.granule
                granule_end = stream.position
                pages += 1
            if page.flags & END_OF_STREAM:
                reached_end = True
                break
            if stream.size is not None and pages >= options.min_sampled_frames:
                break
        if last_granule is None or not codec.granule_rate:
            info.duration_seconds = 0.0
            return
        seconds = max(last_granule - codec.pre_skip, 0) / codec.granule_rate
        span = granule_end - audio_start
        if reached_end or stream.size is None or span <= 0:
            info.duration_seconds = seconds
        else:
            info.duration_seconds = seconds * (stream.size - audio_start) / span
        logger.debug("Sampled %d Ogg pages from %s", pages, stream.name)
