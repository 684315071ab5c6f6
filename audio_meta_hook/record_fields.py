from __future__ import annotations

# Record field names written by the hook.
# Keep these centralized so the mapping and the stores agree.

ASSET = "asset"
DURATION = "duration"
BIT_RATE = "bit_rate"
SAMPLE_RATE = "sample_rate"
CHANNELS = "channels"
IS_LOSSLESS = "is_lossless"
YEAR = "year"
