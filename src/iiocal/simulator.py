"""In-memory stand-in for the ADC used by tests and ``iiocal serve --simulate``."""
from __future__ import annotations

from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from .config import CalibrationConfig
from .errors import AcquisitionError, RegisterIOError
from .samples import encode_samples


class SimulatedAdc:
    """
    Implements both the acquisition and register interfaces.

    Each channel produces Gaussian noise around a fixed DC bias. Register
    writes land in a per-device byte map and can be made to fail after a
    given number of successful writes.
    """

    def __init__(
        self,
        biases: Optional[Dict[str, Sequence[int]]] = None,
        *,
        noise: float = 0.0,
        seed: int = 42,
    ) -> None:
        self.biases: Dict[str, List[int]] = {name: list(values) for name, values in (biases or {}).items()}
        self.noise = noise
        self._rng = np.random.default_rng(seed)
        self.registers: Dict[str, Dict[int, int]] = {}
        self.writes: List[Tuple[str, int, int]] = []
        self.acquisitions: List[Tuple[str, int, List[int]]] = []
        self.fail_acquire: Optional[str] = None
        self.fail_write_after: Optional[int] = None
        self.fail_read: bool = False

    @classmethod
    def for_config(cls, config: CalibrationConfig, *, bias: int = 1000, noise: float = 50.0) -> "SimulatedAdc":
        biases = {
            layout.name: [bias + 100 * channel for channel in layout.channel_ids]
            for layout in config.devices
        }
        return cls(biases, noise=noise)

    def acquire(self, device: str, sample_count: int, channels: Sequence[int]) -> bytes:
        self.acquisitions.append((device, sample_count, list(channels)))
        if self.fail_acquire is not None:
            raise AcquisitionError(self.fail_acquire)
        biases = self.biases.get(device)
        if biases is None:
            raise AcquisitionError(f"no such device: {device}")
        rows = []
        for channel in channels:
            if not 0 <= channel < len(biases):
                raise AcquisitionError(f"{device} has no channel voltage{channel}")
            row = np.full(sample_count, biases[channel], dtype=np.int64)
            if self.noise:
                row += np.rint(self._rng.normal(scale=self.noise, size=sample_count)).astype(np.int64)
            rows.append(row)
        return encode_samples(np.array(rows, dtype=np.int64).reshape(len(rows), sample_count))

    def read_byte(self, device: str, address: int) -> int:
        if self.fail_read:
            raise RegisterIOError(f"read of {device}@0x{address:02x} failed")
        return self.registers.get(device, {}).get(address, 0)

    def write_byte(self, device: str, address: int, value: int) -> None:
        if self.fail_write_after is not None and len(self.writes) >= self.fail_write_after:
            raise RegisterIOError(f"write of {device}@0x{address:02x} failed")
        self.registers.setdefault(device, {})[address] = value & 0xFF
        self.writes.append((device, address, value & 0xFF))
