"""Exception hierarchy for calibration runs."""
from __future__ import annotations


class CalibrationError(Exception):
    """Base class for every failure of a calibration run."""

    kind = "calibration"
    retriable = False


class AcquisitionError(CalibrationError):
    """The sampling tool could not be started, timed out or exited non-zero."""

    kind = "acquisition"
    retriable = True


class DecodeError(CalibrationError):
    """The raw sample buffer is too short or malformed."""

    kind = "decode"


class ConsistencyError(CalibrationError):
    """Computed offsets do not line up with the requested channels."""

    kind = "consistency"


class RegisterIOError(CalibrationError):
    kind = "register_io"
    retriable = True


class PersistenceError(CalibrationError):
    """The offset map could not be written. Hardware state stays authoritative."""

    kind = "persistence"


class ValidationError(CalibrationError, ValueError):
    kind = "validation"


class OffsetRangeError(CalibrationError, ValueError):
    """Offset does not fit the 24-bit two's-complement register field."""

    kind = "range"


class CalibrationCancelled(CalibrationError):
    kind = "cancelled"
