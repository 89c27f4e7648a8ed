"""Audio utilities for realtime event payloads.

This module provides format validation, base64 encoding/decoding,
PCM16/float conversion and linear resampling for audio carried in
protocol events.
"""

from .codec import (
    SUPPORTED_FORMATS,
    decode_base64,
    encode_base64,
    float_to_pcm16,
    is_format_supported,
    pcm16_to_float,
    resample,
)

__all__ = [
    "SUPPORTED_FORMATS",
    "is_format_supported",
    "encode_base64",
    "decode_base64",
    "pcm16_to_float",
    "float_to_pcm16",
    "resample",
]
