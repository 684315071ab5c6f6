from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from ..models import InsufficientData, ParseOptions, UnsupportedFormat
from ..stream import AudioStreamHandle
from .base import FormatBuilder, parse_year

logger = logging.getLogger(__name__)

WAVE_FORMAT_EXTENSIBLE = 0xFFFE
LOSSLESS_FORMATS = {0x0001, 0x0003}
WAVE_CODECS = {
    0x0001: "PCM",
    0x0002: "Microsoft ADPCM",
    0x0003: "IEEE float",
    0x0006: "A-law",
    0x0007: "mu-law",
    0x0011: "IMA ADPCM",
    0x0050: "MPEG",
    0x0055: "MPEG Layer 3",
}
MAX_FMT_SIZE = 4096
STREAMING_SIZES = (0, 0xFFFFFFFF)
MEASURE_CHUNK = 1024 * 1024


@dataclass(frozen=True)
class WaveFormat:
    format_tag: int
    channels: int
    sample_rate: int
    byte_rate: int
    block_align: int
    bits_per_sample: int


def parse_fmt_chunk(data: bytes) -> WaveFormat:
    if len(data) < 16:
        raise UnsupportedFormat("WAVE fmt chunk is truncated")
    format_tag = int.from_bytes(data[0:2], "little")
    if format_tag == WAVE_FORMAT_EXTENSIBLE and len(data) >= 26:
        format_tag = int.from_bytes(data[24:26], "little")
    return WaveFormat(
        format_tag=format_tag,
        channels=int.from_bytes(data[2:4], "little"),
        sample_rate=int.from_bytes(data[4:8], "little"),
        byte_rate=int.from_bytes(data[8:12], "little"),
        block_align=int.from_bytes(data[12:14], "little"),
        bits_per_sample=int.from_bytes(data[14:16], "little"),
    )


def _info_year(data: bytes) -> Optional[int]:
    if data[:4] != b"INFO":
        return None
    offset = 4
    while offset + 8 <= len(data):
        sub_id = data[offset : offset + 4]
        size = int.from_bytes(data[offset + 4 : offset + 8], "little")
        value = data[offset + 8 : offset + 8 + size]
        if sub_id == b"ICRD":
            return parse_year(value.decode("latin-1", errors="replace").strip("\x00 "))
        offset += 8 + size + (size & 1)
    return None


def _measure_to_end(stream: AudioStreamHandle) -> int:
    total = 0
    while True:
        skipped = stream.skip(MEASURE_CHUNK)
        if not skipped:
            return total
        total += skipped


class RiffWaveParser:
    name = "wave"
    mime_types = ("audio/wav", "audio/x-wav", "audio/wave", "audio/vnd.wave")

    def sniff(self, head: bytes) -> bool:
        return head[:4] == b"RIFF" and head[8:12] == b"WAVE"

    def parse(self, stream: AudioStreamHandle, info: FormatBuilder, options: ParseOptions) -> None:
        header = stream.read_exact(12)
        if header[:4] != b"RIFF" or header[8:12] != b"WAVE":
            raise UnsupportedFormat(f"{stream.name}: not a RIFF/WAVE stream")
        info.container = "WAVE"
        fmt: Optional[WaveFormat] = None
        fact_samples: Optional[int] = None
        seen_data = False
        while True:
            chunk = stream.read(8)
            if len(chunk) < 8:
                break
            chunk_id = chunk[:4]
            size = int.from_bytes(chunk[4:8], "little")
            padded = size + (size & 1)
            if chunk_id == b"fmt ":
                if size > MAX_FMT_SIZE:
                    raise UnsupportedFormat(f"{stream.name}: oversized fmt chunk ({size} bytes)")
                fmt = parse_fmt_chunk(stream.read_exact(padded)[:size])
                self._apply_format(fmt, info)
            elif chunk_id == b"fact" and 4 <= size <= 64:
                fact_samples = int.from_bytes(stream.read_exact(padded)[:4], "little")
            elif chunk_id == b"LIST" and info.year is None and size <= options.max_tag_bytes:
                info.set_year(_info_year(stream.read_exact(padded)[:size]))
            elif chunk_id == b"data" and not seen_data:
                if fmt is None:
                    raise UnsupportedFormat(f"{stream.name}: data chunk before fmt chunk")
                seen_data = True
                data_size = size
                if size in STREAMING_SIZES:
                    known = stream.remaining()
                    if known is None:
                        # Written while streaming: the payload runs to the end of the stream.
                        data_size = _measure_to_end(stream) if options.want_duration else 0
                        self._apply_data(fmt, data_size, fact_samples, info)
                        return
                    data_size = known
                self._apply_data(fmt, data_size, fact_samples, info)
                if options.skip_trailing_metadata or info.year is not None:
                    return
                stream.skip(padded)
            else:
                stream.skip(padded)
        if fmt is None:
            raise InsufficientData(f"{stream.name}: stream ended before the fmt chunk")
        if not seen_data:
            raise InsufficientData(f"{stream.name}: stream ended before the data chunk")

    @staticmethod
    def _apply_format(fmt: WaveFormat, info: FormatBuilder) -> None:
        if not fmt.sample_rate or not fmt.channels:
            raise UnsupportedFormat("WAVE fmt chunk declares no sample rate or channels")
        info.codec = WAVE_CODECS.get(fmt.format_tag, f"0x{fmt.format_tag:04x}")
        info.lossless = fmt.format_tag in LOSSLESS_FORMATS
        info.sample_rate_hz = fmt.sample_rate
        info.channel_count = fmt.channels
        info.bits_per_sample = fmt.bits_per_sample or None
        info.bitrate_bps = fmt.byte_rate * 8

    @staticmethod
    def _apply_data(
        fmt: WaveFormat,
        data_size: int,
        fact_samples: Optional[int],
        info: FormatBuilder,
    ) -> None:
        if fmt.format_tag in LOSSLESS_FORMATS and fmt.block_align:
            info.duration_seconds = (data_size // fmt.block_align) / fmt.sample_rate
        elif fact_samples:
            info.duration_seconds = fact_samples / fmt.sample_rate
        elif fmt.byte_rate:
            info.duration_seconds = data_size / fmt.byte_rate
        else:
            info.duration_seconds = 0.0
