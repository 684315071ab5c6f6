from __future__ import annotations

import logging
from typing import Optional

from ..models import FormatMetadata, InsufficientData, ParseOptions, UnsupportedFormat
from ..stream import AudioStreamHandle
from .aiff import AiffParser
from .base import ContainerParser, FormatBuilder
from .flac import FlacParser
from .id3 import read_id3v2
from .mp4 import Mp4Parser
from .mpeg import AdtsParser, MpegAudioParser
from .ogg import OggParser
from .riff import RiffWaveParser

logger = logging.getLogger(__name__)

SNIFF_BYTES = 12

# Magic-byte formats first; frame sync words are the weakest signature.
PARSERS: tuple[ContainerParser, ...] = (
    FlacParser(),
    RiffWaveParser(),
    AiffParser(),
    OggParser(),
    Mp4Parser(),
    MpegAudioParser(),
    AdtsParser(),
)

__all__ = [
    "PARSERS",
    "ContainerParser",
    "FormatBuilder",
    "detect_parser",
    "parser_for_mime",
    "parse_container",
]


def parser_for_mime(mime_type: Optional[str]) -> Optional[ContainerParser]:
    if not mime_type:
        return None
    normalized = mime_type.split(";", 1)[0].strip().lower()
    for parser in PARSERS:
        if normalized in parser.mime_types:
            return parser
    return None


def detect_parser(head: bytes, declared_mime_type: Optional[str] = None) -> Optional[ContainerParser]:
    """Pick a parser from magic bytes, using the declared MIME type only as a fallback."""
    declared = parser_for_mime(declared_mime_type)
    for parser in PARSERS:
        if parser.sniff(head):
            if declared is not None and declared is not parser:
                logger.debug(
                    "Declared type %s does not match sniffed %s container; using sniffed bytes",
                    declared_mime_type,
                    parser.name,
                )
            return parser
    return declared


def parse_container(stream: AudioStreamHandle, options: ParseOptions) -> FormatMetadata:
    info = FormatBuilder()
    head = stream.peek(SNIFF_BYTES)
    if not head:
        raise InsufficientData(f"{stream.name}: empty stream")
    while head.startswith(b"ID3"):
        tag = read_id3v2(stream, options)
        info.set_year(tag.year)
        logger.debug("Consumed %d byte ID3v2.%d tag in %s", tag.size, tag.version[0], stream.name)
        head = stream.peek(SNIFF_BYTES)
    if not head:
        raise InsufficientData(f"{stream.name}: stream ended after the ID3v2 tag")
    parser = detect_parser(head, options.declared_mime_type)
    if parser is None:
        raise UnsupportedFormat(f"{stream.name}: unrecognised container (starts with {head[:4]!r})")
    parser.parse(stream, info, options)
    if not stream.exhausted:
        stream.abort()
    missing = info.missing(options)
    if missing:
        raise UnsupportedFormat(f"{stream.name}: could not resolve {', '.join(missing)}")
    return info.build()
