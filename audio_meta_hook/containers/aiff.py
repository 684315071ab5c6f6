from __future__ import annotations

from ..models import InsufficientData, ParseOptions, UnsupportedFormat
from ..stream import AudioStreamHandle
from .base import FormatBuilder, bitrate_from_size

UNCOMPRESSED = {b"NONE", b"sowt", b"twos", b"raw ", b"in24", b"in32", b"fl32", b"fl64", b"FL32", b"FL64"}


def read_extended_float(data: bytes) -> float:
    """Decode an 80-bit IEEE 754 extended float as used by the COMM sample rate."""
    exponent = ((data[0] & 0x7F) << 8) | data[1]
    mantissa = int.from_bytes(data[2:10], "big")
    if exponent == 0 and mantissa == 0:
        return 0.0
    if exponent == 0x7FFF:
        raise UnsupportedFormat("AIFF sample rate is not a finite number")
    value = mantissa * 2.0 ** (exponent - 16383 - 63)
    return -value if data[0] & 0x80 else value


class AiffParser:
    name = "aiff"
    mime_types = ("audio/aiff", "audio/x-aiff", "audio/aifc", "audio/x-aifc")

    def sniff(self, head: bytes) -> bool:
        return head[:4] == b"FORM" and head[8:12] in (b"AIFF", b"AIFC")

    def parse(self, stream: AudioStreamHandle, info: FormatBuilder, options: ParseOptions) -> None:
        header = stream.read_exact(12)
        if header[:4] != b"FORM" or header[8:12] not in (b"AIFF", b"AIFC"):
            raise UnsupportedFormat(f"{stream.name}: not an AIFF stream")
        aifc = header[8:12] == b"AIFC"
        info.container = "AIFF-C" if aifc else "AIFF"
        seen_comm = False
        while True:
            chunk = stream.read(8)
            if len(chunk) < 8:
                break
            chunk_id = chunk[:4]
            size = int.from_bytes(chunk[4:8], "big")
            padded = size + (size & 1)
            if chunk_id == b"COMM" and not seen_comm:
                if size < 18 or size > 4096:
                    raise UnsupportedFormat(f"{stream.name}: malformed COMM chunk")
                self._apply_comm(stream.read_exact(padded)[:size], aifc, info)
                seen_comm = True
                if info.resolved(options):
                    return
            elif chunk_id == b"SSND" and seen_comm:
                # Offset and block size fields precede the sound data.
                info.bitrate_bps = bitrate_from_size(max(size - 8, 0), info.duration_seconds) or 0
                return
            else:
                stream.skip(padded)
        if not seen_comm:
            raise InsufficientData(f"{stream.name}: stream ended before the COMM chunk")
        if info.bitrate_bps is None:
            info.bitrate_bps = 0

    @staticmethod
    def _apply_comm(data: bytes, aifc: bool, info: FormatBuilder) -> None:
        channels = int.from_bytes(data[0:2], "big")
        frames = int.from_bytes(data[2:6], "big")
        bits = int.from_bytes(data[6:8], "big")
        sample_rate = read_extended_float(data[8:18])
        if sample_rate <= 0 or not channels:
            raise UnsupportedFormat("AIFF COMM chunk declares no sample rate or channels")
        compression = data[18:22] if aifc and len(data) >= 22 else b"NONE"
        info.channel_count = channels
        info.sample_rate_hz = int(round(sample_rate))
        info.bits_per_sample = bits or None
        info.duration_seconds = frames / sample_rate
        info.lossless = compression in UNCOMPRESSED
        info.codec = "PCM" if info.lossless else compression.decode("latin-1").strip()
        if info.lossless:
            info.bitrate_bps = sample_rate * bits * channels
