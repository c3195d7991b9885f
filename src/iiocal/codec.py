"""
Offset register codec.

Each channel owns three consecutive offset registers starting at
``OFFSET_REG_BASE + channel * 3``: MSB, middle and LSB. Together they hold a
24-bit two's-complement field; the hardware reads bit 7 of the MSB as the sign.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator, Tuple

from .errors import OffsetRangeError

OFFSET_REG_BASE = 0x1E
REGS_PER_CHANNEL = 3
SIGN_FLAG = 0x80
FIELD_MASK = 0xFFFFFF
OFFSET_MIN = -(1 << 23)
OFFSET_MAX = (1 << 23) - 1


@dataclass(frozen=True)
class RegisterTriplet:
    msb: int
    mid: int
    lsb: int

    def __post_init__(self) -> None:
        for name in ("msb", "mid", "lsb"):
            value = getattr(self, name)
            if not 0 <= value <= 0xFF:
                raise ValueError(f"register byte {name}=0x{value:X} out of range")

    def __iter__(self) -> Iterator[int]:
        return iter((self.msb, self.mid, self.lsb))

    def as_tuple(self) -> Tuple[int, int, int]:
        return (self.msb, self.mid, self.lsb)

    def __str__(self) -> str:
        return f"{self.msb:02x}/{self.mid:02x}/{self.lsb:02x}"


def check_offset(offset: int) -> int:
    if not OFFSET_MIN <= offset <= OFFSET_MAX:
        raise OffsetRangeError(
            f"offset {offset} outside register range [{OFFSET_MIN}, {OFFSET_MAX}]"
        )
    return int(offset)


def encode_offset(offset: int) -> RegisterTriplet:
    offset = check_offset(offset)
    msb = (offset >> 16) & 0xFF
    if offset < 0:
        msb |= SIGN_FLAG
    return RegisterTriplet(msb=msb, mid=(offset >> 8) & 0xFF, lsb=offset & 0xFF)


def decode_offset(triplet: RegisterTriplet | Tuple[int, int, int]) -> int:
    msb, mid, lsb = triplet
    value = ((msb & 0xFF) << 16) | ((mid & 0xFF) << 8) | (lsb & 0xFF)
    # sign-extend from bit 23, same rule as the sample decoder
    if value & SIGN_FLAG << 16:
        value -= FIELD_MASK + 1
    return value


def register_address(channel: int, byte_index: int = 0) -> int:
    """Register address of byte ``byte_index`` (0=MSB, 2=LSB) for ``channel``."""
    if not 0 <= byte_index < REGS_PER_CHANNEL:
        raise ValueError(f"byte index {byte_index} outside 0..{REGS_PER_CHANNEL - 1}")
    return OFFSET_REG_BASE + channel * REGS_PER_CHANNEL + byte_index
