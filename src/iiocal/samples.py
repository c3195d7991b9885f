"""Decoding of raw interleaved sample buffers produced by ``iio_readdev``."""
from __future__ import annotations

import logging
from typing import Sequence

import numpy as np

from .errors import DecodeError

logger = logging.getLogger(__name__)

WORD_SIZE = 4
DEFAULT_SAMPLE_COUNT = 1024


def sign_extend_24(words: np.ndarray) -> np.ndarray:
    """Treat the low 24 bits of each int32 word as a signed value."""
    words = np.asarray(words, dtype="<i4")
    return (words << 8) >> 8


def _frame_words(buffer: bytes, channel_count: int, sample_count: int) -> np.ndarray:
    if channel_count <= 0:
        raise DecodeError(f"channel count must be positive, got {channel_count}")
    if sample_count <= 0:
        raise DecodeError(f"sample count must be positive, got {sample_count}")
    needed = sample_count * channel_count * WORD_SIZE
    if len(buffer) < needed:
        raise DecodeError(
            f"sample buffer holds {len(buffer)} bytes, expected {needed} "
            f"({sample_count} samples x {channel_count} channels)"
        )
    words = np.frombuffer(buffer, dtype="<i4", count=sample_count * channel_count)
    return words.reshape(sample_count, channel_count)


def decode_channel(
    buffer: bytes,
    channel_count: int,
    channel_index: int,
    sample_count: int = DEFAULT_SAMPLE_COUNT,
) -> np.ndarray:
    """
    Extract one channel from an interleaved buffer.

    Sample ``i`` of position ``channel_index`` lives at byte offset
    ``i * channel_count * 4 + channel_index * 4``. Returns ``sample_count``
    signed values as an int32 array.
    """
    if not 0 <= channel_index < channel_count:
        raise DecodeError(f"channel index {channel_index} outside 0..{channel_count - 1}")
    frame = _frame_words(buffer, channel_count, sample_count)
    samples = sign_extend_24(frame[:, channel_index])
    if samples.size != sample_count:
        raise DecodeError(f"decoded {samples.size} samples, expected {sample_count}")
    return samples


def decode_all(
    buffer: bytes,
    channel_count: int,
    sample_count: int = DEFAULT_SAMPLE_COUNT,
) -> np.ndarray:
    """Return a ``(channel_count, sample_count)`` array of signed samples."""
    frame = _frame_words(buffer, channel_count, sample_count)
    decoded = sign_extend_24(frame.T)
    logger.debug("first samples per channel: %s", decoded[:, :8].tolist())
    return decoded


def encode_samples(channels: Sequence[Sequence[int]] | np.ndarray, high_byte: int = 0) -> bytes:
    """
    Interleave per-channel samples into a raw buffer.

    Inverse of :func:`decode_all`; ``high_byte`` fills the unused top byte of
    each word, which the decoder ignores.
    """
    data = np.asarray(channels, dtype=np.int64)
    if data.ndim != 2:
        raise ValueError("channels must be a 2-D sequence (channel, sample)")
    words = (data.T & 0xFFFFFF) | ((high_byte & 0xFF) << 24)
    return words.astype("<u4").tobytes()
