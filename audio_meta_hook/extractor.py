from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from .containers import parse_container
from .models import FormatMetadata, ParseOptions
from .stream import AudioStreamHandle, open_stream

logger = logging.getLogger(__name__)


def extract(stream: AudioStreamHandle, options: Optional[ParseOptions] = None) -> FormatMetadata:
    """
    Read format metadata from `stream`, consuming as little of it as possible.

    The handle is owned by this call: it is aborted once the format is resolved
    and closed exactly once on every exit path.
    """
    options = options or ParseOptions()
    with stream:
        metadata = parse_container(stream, options)
    logger.debug(
        "Extracted %s/%s from %s after %d bytes",
        metadata.container,
        metadata.codec,
        stream.name,
        stream.bytes_read,
    )
    return metadata


def extract_file(path: Path | str, options: Optional[ParseOptions] = None) -> FormatMetadata:
    return extract(open_stream(path), options)


class MetadataExtractor:
    def __init__(self, options: Optional[ParseOptions] = None) -> None:
        self.options = options or ParseOptions()

    def extract(self, stream: AudioStreamHandle, options: Optional[ParseOptions] = None) -> FormatMetadata:
        return extract(stream, options or self.options)
