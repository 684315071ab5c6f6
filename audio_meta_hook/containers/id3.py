from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from mutagen.id3 import ID3TimeStamp

from ..models import ParseOptions, UnsupportedFormat
from ..stream import AudioStreamHandle
from .base import parse_year

logger = logging.getLogger(__name__)

ID3V2_HEADER_SIZE = 10
ID3V1_SIZE = 128
MAX_TEXT_FRAME = 1024

# Recording date beats original release date.
YEAR_FRAMES = {
    b"TDRC": 0,
    b"TYER": 0,
    b"TYE": 0,
    b"TDOR": 1,
    b"TORY": 1,
    b"TOR": 1,
}

TEXT_ENCODINGS = {0: "latin-1", 1: "utf-16", 2: "utf-16-be", 3: "utf-8"}


@dataclass(frozen=True)
class Id3v2Tag:
    version: tuple[int, int]
    size: int
    year: Optional[int]


def syncsafe(data: bytes) -> int:
    value = 0
    for byte in data:
        value = (value << 7) | (byte & 0x7F)
    return value


def read_id3v2(stream: AudioStreamHandle, options: ParseOptions) -> Id3v2Tag:
    """Consume an ID3v2 tag at the current position, reading only small year frames."""
    header = stream.read_exact(ID3V2_HEADER_SIZE)
    if header[:3] != b"ID3":
        raise UnsupportedFormat(f"{stream.name}: expected ID3v2 tag")
    major, revision, flags = header[3], header[4], header[5]
    size = syncsafe(header[6:10])
    footer = ID3V2_HEADER_SIZE if major == 4 and flags & 0x10 else 0
    end = stream.position + size
    year = None
    if major in (2, 3, 4) and not (major < 4 and flags & 0x80) and not (major == 2 and flags & 0x40):
        year = _walk_frames(stream, major, flags, end)
    else:
        logger.debug("Skipping ID3v2.%d tag with flags 0x%02x in %s", major, flags, stream.name)
    if stream.position < end:
        stream.skip(end - stream.position)
    if footer:
        stream.skip(footer)
    return Id3v2Tag(version=(major, revision), size=ID3V2_HEADER_SIZE + size + footer, year=year)


def _walk_frames(stream: AudioStreamHandle, major: int, flags: int, end: int) -> Optional[int]:
    if flags & 0x40:
        ext = stream.read_exact(4)
        if major == 3:
            stream.skip(int.from_bytes(ext, "big"))
        else:
            stream.skip(max(syncsafe(ext) - 4, 0))
    header_len = 6 if major == 2 else 10
    years: dict[int, int] = {}
    while stream.position + header_len <= end:
        frame_header = stream.read_exact(header_len)
        if frame_header[0] == 0:
            break
        if major == 2:
            frame_id = frame_header[:3]
            frame_size = int.from_bytes(frame_header[3:6], "big")
            frame_flags = 0
        elif major == 3:
            frame_id = frame_header[:4]
            frame_size = int.from_bytes(frame_header[4:8], "big")
            frame_flags = int.from_bytes(frame_header[8:10], "big")
        else:
            frame_id = frame_header[:4]
            frame_size = syncsafe(frame_header[4:8])
            frame_flags = int.from_bytes(frame_header[8:10], "big")
        if frame_size > end - stream.position:
            logger.debug("Truncated ID3 frame %r in %s", frame_id, stream.name)
            break
        priority = YEAR_FRAMES.get(frame_id)
        if priority is None or priority in years or frame_size > MAX_TEXT_FRAME:
            # Pictures and every other frame are passed over without buffering.
            stream.skip(frame_size)
            continue
        data = stream.read_exact(frame_size)
        data = _unwrap_frame(data, major, frame_flags)
        if data is None:
            continue
        year = _year_from_text(decode_text_frame(data))
        if year:
            years[priority] = year
    return years.get(0) or years.get(1)


def _unwrap_frame(data: bytes, major: int, frame_flags: int) -> Optional[bytes]:
    if major == 3:
        if frame_flags & 0x00C0:
            return None
        if frame_flags & 0x0020:
            data = data[1:]
        return data
    if major == 4:
        if frame_flags & 0x000C:
            return None
        if frame_flags & 0x0040:
            data = data[1:]
        if frame_flags & 0x0001:
            data = data[4:]
        if frame_flags & 0x0002:
            data = data.replace(b"\xff\x00", b"\xff")
    return data


def decode_text_frame(data: bytes) -> str:
    if not data:
        return ""
    codec = TEXT_ENCODINGS.get(data[0])
    if codec is None:
        return ""
    text = data[1:].decode(codec, errors="replace")
    return text.split("\x00", 1)[0].strip()


def _year_from_text(text: str) -> Optional[int]:
    if not text:
        return None
    stamp = ID3TimeStamp(text)
    if stamp.year:
        return stamp.year
    return parse_year(text)


def parse_id3v1(block: bytes) -> Optional[int]:
    if len(block) != ID3V1_SIZE or not block.startswith(b"TAG"):
        return None
    return parse_year(block[93:97].decode("latin-1", errors="replace").strip("\x00 "))


def read_trailing_id3v1(stream: AudioStreamHandle) -> Optional[int]:
    """Read through to the end of the stream and parse an ID3v1 tag if one closes it."""
    remaining = stream.remaining()
    if remaining is not None:
        if remaining < ID3V1_SIZE:
            return None
        stream.skip(remaining - ID3V1_SIZE)
        return parse_id3v1(stream.read(ID3V1_SIZE))
    tail = b""
    while True:
        chunk = stream.read(64 * 1024)
        if not chunk:
            break
        tail = (tail + chunk)[-ID3V1_SIZE:]
    return parse_id3v1(tail)
