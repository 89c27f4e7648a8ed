"""Audio payload conversion utilities.

Pure helpers for the media carried inside realtime protocol events:
format validation, base64 transport encoding, PCM16/float conversion and
linear resampling.

PCM format:
    - Bit depth: 16-bit signed integer (little endian)
    - Channels: mono
    - Float range: [-1.0, 1.0], asymmetric scaling (negative / 32768,
      non-negative / 32767)
"""

import base64
import binascii
from collections.abc import Iterable, Sequence

import numpy as np
from numpy.typing import NDArray

SUPPORTED_FORMATS: frozenset[str] = frozenset({"pcm16", "g711_ulaw", "g711_alaw"})

BYTES_PER_SAMPLE: int = 2
NEGATIVE_SCALE: float = 32768.0
POSITIVE_SCALE: float = 32767.0


def is_format_supported(name: str, supported_formats: Iterable[str] | None = None) -> bool:
    """Check whether an audio format name is accepted upstream.

    Args:
        name: Format name (e.g. "pcm16")
        supported_formats: Formats enabled for this deployment
            (defaults to SUPPORTED_FORMATS)

    Returns:
        True if the format is in the supported set
    """
    if supported_formats is None:
        supported_formats = SUPPORTED_FORMATS
    return name in supported_formats


def encode_base64(data: bytes) -> str:
    """Encode raw audio bytes as base64 text."""
    return base64.b64encode(bytes(data)).decode("ascii")


def decode_base64(encoded: str) -> bytes:
    """Decode base64 text to raw audio bytes.

    Args:
        encoded: Base64-encoded payload

    Returns:
        Raw bytes

    Raises:
        ValueError: If the payload is not valid base64
    """
    try:
        return base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"Failed to decode base64 audio payload: {e}") from e


def pcm16_to_float(buffer: bytes) -> NDArray[np.float32]:
    """Convert little-endian PCM16 bytes to float samples in [-1, 1].

    Args:
        buffer: Raw PCM bytes

    Returns:
        Float32 samples

    Raises:
        ValueError: If the buffer length is not a multiple of 2 bytes
    """
    if len(buffer) % BYTES_PER_SAMPLE != 0:
        raise ValueError(
            f"PCM16 buffer size must be a multiple of 2 bytes, got {len(buffer)} bytes"
        )

    samples = np.frombuffer(buffer, dtype="<i2").astype(np.float32)
    return np.where(samples < 0, samples / NEGATIVE_SCALE, samples / POSITIVE_SCALE).astype(
        np.float32
    )


def float_to_pcm16(samples: Iterable[float] | NDArray[np.floating]) -> bytes:
    """Convert float samples to little-endian PCM16 bytes.

    Samples are clamped to [-1, 1] before scaling and truncated toward zero.

    Args:
        samples: Float samples

    Returns:
        PCM bytes of length 2 * sample count
    """
    if not isinstance(samples, np.ndarray):
        samples = list(samples)
    clipped = np.clip(np.asarray(samples, dtype=np.float64), -1.0, 1.0)
    scaled = np.where(clipped < 0, clipped * NEGATIVE_SCALE, clipped * POSITIVE_SCALE)
    return np.trunc(scaled).astype("<i2").tobytes()


def resample(
    samples: Sequence[float] | NDArray[np.floating], from_rate: int, to_rate: int
) -> NDArray[np.float32]:
    """Resample float audio by linear interpolation.

    Output length is ``round(len(samples) / ratio)`` with
    ``ratio = from_rate / to_rate``. Positions past the last input sample
    hold the final input value.

    Args:
        samples: Input samples
        from_rate: Source sample rate in Hz
        to_rate: Target sample rate in Hz

    Returns:
        Resampled float32 samples (the input unchanged when rates are equal)

    Raises:
        ValueError: If either sample rate is not positive
    """
    if from_rate <= 0 or to_rate <= 0:
        raise ValueError(f"Sample rates must be positive: source={from_rate}, target={to_rate}")

    audio = np.asarray(samples, dtype=np.float32)
    if from_rate == to_rate:
        return audio

    ratio = from_rate / to_rate
    # Half-up rounding
    output_length = int(np.floor(len(audio) / ratio + 0.5))
    if output_length == 0 or len(audio) == 0:
        return np.zeros(output_length, dtype=np.float32)

    positions = np.arange(output_length, dtype=np.float64) * ratio
    index = np.floor(positions).astype(np.int64)
    fraction = positions - index

    last = len(audio) - 1
    index = np.minimum(index, last)
    next_index = np.minimum(index + 1, last)
    interpolated = audio[index] * (1.0 - fraction) + audio[next_index] * fraction

    # Clamp at the final index: no neighbour to blend with
    at_end = index + 1 > last
    result = np.where(at_end, audio[index], interpolated)
    return result.astype(np.float32)
