from __future__ import annotations

from typing import Sequence

import numpy as np

from .errors import DecodeError

DEFAULT_DAMPING = 0.75


def truncated_mean(samples: Sequence[int] | np.ndarray) -> int:
    """Integer mean with a 64-bit accumulator, truncated toward zero."""
    values = np.asarray(samples, dtype=np.int64)
    if values.size == 0:
        raise DecodeError("cannot average an empty sample sequence")
    total = int(values.sum(dtype=np.int64))
    quotient = abs(total) // values.size
    return -quotient if total < 0 else quotient


def channel_offset(samples: Sequence[int] | np.ndarray, damping: float = DEFAULT_DAMPING) -> int:
    """
    Correction offset cancelling the measured DC bias of one channel.

    The mean is scaled by ``damping`` in single precision and truncated toward
    zero before negation, so a constant input ``v`` gives ``-trunc(v * 0.75)``.
    """
    mean = truncated_mean(samples)
    damped = np.float32(mean) * np.float32(damping)
    return -int(np.trunc(damped))
