from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional


@dataclass(slots=True)
class FormatMetadata:
    duration_seconds: float = 0.0
    bitrate_bps: int = 0
    sample_rate_hz: int = 0
    channel_count: int = 0
    lossless: bool = False
    year: Optional[int] = None
    container: Optional[str] = None
    codec: Optional[str] = None
    bits_per_sample: Optional[int] = None

    def __post_init__(self) -> None:
        for name in ("duration_seconds", "bitrate_bps", "sample_rate_hz", "channel_count"):
            value = getattr(self, name)
            if value < 0:
                raise ValueError(f"{name} must be non-negative, got {value!r}")
        if self.year is not None and self.year < 0:
            raise ValueError(f"year must be non-negative, got {self.year!r}")

    def to_record(self) -> Dict[str, object]:
        return {
            "duration_seconds": self.duration_seconds,
            "bitrate_bps": self.bitrate_bps,
            "sample_rate_hz": self.sample_rate_hz,
            "channel_count": self.channel_count,
            "lossless": self.lossless,
            "year": self.year,
            "container": self.container,
            "codec": self.codec,
            "bits_per_sample": self.bits_per_sample,
        }


@dataclass(frozen=True)
class ParseOptions:
    """
    Knobs for a single extraction.

    Cover-art payloads are never buffered, whatever `skip_cover_art` says: no
    parser reads picture bodies, so the flag only records the caller's intent.
    """

    declared_mime_type: Optional[str] = None
    skip_cover_art: bool = True
    skip_trailing_metadata: bool = True
    want_duration: bool = True
    header_window: int = 64 * 1024
    min_sampled_frames: int = 16
    max_sampled_frames: int = 256
    max_tag_bytes: int = 64 * 1024


@dataclass(frozen=True)
class ServiceContext:
    """Privileges the hook acts with; built once and passed to every store call."""

    admin: bool = True
    actor: str = "audio-meta-hook"
    extra: Dict[str, object] = field(default_factory=dict)


class ProcessingError(Exception):
    """Raised when a record cannot be processed but the batch should keep running."""


class UnsupportedFormat(ProcessingError):
    """The stream header is unrecognised or corrupt."""


class InsufficientData(ProcessingError):
    """The stream ended before a usable header was found."""


class AssetNotFound(ProcessingError):
    """The referenced file does not exist in the asset store."""


class TransportError(ProcessingError):
    """Reading from the underlying transport failed."""
