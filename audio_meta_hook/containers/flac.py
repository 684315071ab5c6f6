from __future__ import annotations

import logging

from ..models import InsufficientData, ParseOptions, UnsupportedFormat
from ..stream import AudioStreamHandle
from .base import FormatBuilder, bitrate_from_size, year_from_vorbis_comment

logger = logging.getLogger(__name__)

STREAMINFO = 0
VORBIS_COMMENT = 4
INVALID_BLOCK = 127


def apply_streaminfo(block: bytes, info: FormatBuilder) -> None:
    if len(block) < 18:
        raise UnsupportedFormat("FLAC STREAMINFO block is truncated")
    bits = int.from_bytes(block[10:18], "big")
    sample_rate = bits >> 44
    if not sample_rate:
        raise UnsupportedFormat("FLAC STREAMINFO declares a zero sample rate")
    total_samples = bits & 0xFFFFFFFFF
    info.container = info.container or "FLAC"
    info.codec = "FLAC"
    info.lossless = True
    info.sample_rate_hz = sample_rate
    info.channel_count = ((bits >> 41) & 0x07) + 1
    info.bits_per_sample = ((bits >> 36) & 0x1F) + 1
    # Zero total samples means the encoder did not know the length.
    info.duration_seconds = total_samples / sample_rate


class FlacParser:
    name = "flac"
    mime_types = ("audio/flac", "audio/x-flac")

    def sniff(self, head: bytes) -> bool:
        return head.startswith(b"fLaC")

    def parse(self, stream: AudioStreamHandle, info: FormatBuilder, options: ParseOptions) -> None:
        if stream.read_exact(4) != b"fLaC":
            raise UnsupportedFormat(f"{stream.name}: missing fLaC marker")
        info.container = "FLAC"
        seen_streaminfo = False
        while True:
            header = stream.read(4)
            if len(header) < 4:
                if not seen_streaminfo:
                    raise InsufficientData(f"{stream.name}: stream ended inside FLAC metadata")
                logger.debug("FLAC metadata in %s ends without a last-block flag", stream.name)
                break
            last = bool(header[0] & 0x80)
            block_type = header[0] & 0x7F
            length = int.from_bytes(header[1:4], "big")
            if block_type == INVALID_BLOCK:
                raise UnsupportedFormat(f"{stream.name}: invalid FLAC metadata block")
            if block_type == STREAMINFO:
                apply_streaminfo(stream.read_exact(length), info)
                seen_streaminfo = True
            elif block_type == VORBIS_COMMENT and info.year is None and length <= options.max_tag_bytes:
                info.set_year(year_from_vorbis_comment(stream.read_exact(length)))
            else:
                # Pictures, padding and seek tables are passed over unread.
                if stream.skip(length) < length and not seen_streaminfo:
                    raise InsufficientData(f"{stream.name}: stream ended inside FLAC metadata")
            if last:
                break
        if not seen_streaminfo:
            raise UnsupportedFormat(f"{stream.name}: FLAC stream without STREAMINFO")
        info.bitrate_bps = bitrate_from_size(stream.remaining(), info.duration_seconds) or 0
