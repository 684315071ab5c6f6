from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional, Protocol

from mutagen import MutagenError
from mutagen.flac import VCFLACDict

from ..models import FormatMetadata, ParseOptions
from ..stream import AudioStreamHandle

REQUIRED_FIELDS = ("duration_seconds", "bitrate_bps", "sample_rate_hz", "channel_count", "lossless")
VORBIS_YEAR_KEYS = ("date", "year", "originaldate", "originalyear")


@dataclass
class FormatBuilder:
    """Accumulates format fields while a container is being parsed."""

    container: Optional[str] = None
    codec: Optional[str] = None
    duration_seconds: Optional[float] = None
    bitrate_bps: Optional[float] = None
    sample_rate_hz: Optional[int] = None
    channel_count: Optional[int] = None
    lossless: Optional[bool] = None
    bits_per_sample: Optional[int] = None
    year: Optional[int] = None

    def set_year(self, year: Optional[int]) -> None:
        if self.year is None and year:
            self.year = year

    def missing(self, options: ParseOptions) -> list[str]:
        names = REQUIRED_FIELDS if options.want_duration else REQUIRED_FIELDS[1:]
        return [name for name in names if getattr(self, name) is None]

    def resolved(self, options: ParseOptions) -> bool:
        return not self.missing(options)

    def build(self) -> FormatMetadata:
        return FormatMetadata(
            duration_seconds=float(self.duration_seconds or 0.0),
            bitrate_bps=int(round(self.bitrate_bps or 0)),
            sample_rate_hz=int(self.sample_rate_hz or 0),
            channel_count=int(self.channel_count or 0),
            lossless=bool(self.lossless),
            year=self.year,
            container=self.container,
            codec=self.codec,
            bits_per_sample=self.bits_per_sample,
        )


class ContainerParser(Protocol):
    name: str
    mime_types: tuple[str, ...]

    def sniff(self, head: bytes) -> bool: ...

    def parse(self, stream: AudioStreamHandle, info: FormatBuilder, options: ParseOptions) -> None: ...


def parse_year(value: Optional[str]) -> Optional[int]:
    if not value:
        return None
    match = re.search(r"\d{4}", value)
    if not match:
        return None
    year = int(match.group(0))
    return year or None


def year_from_vorbis_comment(data: bytes) -> Optional[int]:
    try:
        comments = VCFLACDict(data)
    except (MutagenError, ValueError, EOFError):
        return None
    for key in VORBIS_YEAR_KEYS:
        if key in comments:
            year = parse_year(comments[key][0])
            if year:
                return year
    return None


def bitrate_from_size(byte_count: Optional[int], duration: Optional[float]) -> Optional[float]:
    if byte_count is None or not duration or duration <= 0:
        return None
    return byte_count * 8 / duration
