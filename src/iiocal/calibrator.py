from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from .averaging import channel_offset
from .codec import REGS_PER_CHANNEL, RegisterTriplet, check_offset, decode_offset, encode_offset, register_address
from .config import CalibrationConfig
from .errors import (
    CalibrationCancelled,
    ConsistencyError,
    DecodeError,
    PersistenceError,
    RegisterIOError,
    ValidationError,
)
from .iio import Acquisition, RegisterIO, with_retries
from .samples import decode_channel
from .store import OffsetMap, OffsetStore

logger = logging.getLogger(__name__)


@dataclass
class CalibrationResult:
    device: str
    channels: List[int]
    offsets: Dict[int, int] = field(default_factory=dict)
    written: List[int] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def persisted(self) -> bool:
        return not self.warnings


class Calibrator:
    """Runs acquire, average, write and persist for one device at a time."""

    def __init__(
        self,
        acquisition: Acquisition,
        registers: RegisterIO,
        store: OffsetStore,
        config: Optional[CalibrationConfig] = None,
    ) -> None:
        self.acquisition = acquisition
        self.registers = registers
        self.store = store
        self.config = config or CalibrationConfig()
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._cancel_events: Dict[str, threading.Event] = {}

    def device_lock(self, device: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(device, threading.Lock())

    def _cancel_event(self, device: str) -> threading.Event:
        with self._locks_guard:
            return self._cancel_events.setdefault(device, threading.Event())

    def cancel(self, device: Optional[str] = None) -> None:
        """Stop in-flight runs (all, or those of ``device``) at the next channel boundary."""
        names = [device] if device else [layout.name for layout in self.config.devices]
        for name in names:
            self._cancel_event(name).set()

    def _retry(self, operation, label: str):
        return with_retries(
            operation,
            retries=self.config.retries,
            delay_sec=self.config.retry_delay_sec,
            label=label,
        )

    def compute_offsets(self, buffer: bytes, channels: Sequence[int]) -> List[int]:
        count = len(channels)
        offsets: List[int] = []
        for idx in range(count):
            samples = decode_channel(buffer, count, idx, self.config.sample_count)
            logger.debug("voltage%d first samples: %s", channels[idx], samples[:64].tolist())
            offsets.append(channel_offset(samples, self.config.damping))
        return offsets

    def calibrate(self, device: str, channels: Sequence[int]) -> CalibrationResult:
        channels = self._validate_channels(device, channels)
        with self.device_lock(device):
            # a cancel issued while this run waited for the lock still applies
            try:
                return self._calibrate_locked(device, channels)
            finally:
                self._cancel_event(device).clear()

    def _calibrate_locked(self, device: str, channels: List[int]) -> CalibrationResult:
        result = CalibrationResult(device=device, channels=channels)
        cancelled = self._cancel_event(device)
        buffer = self._retry(
            lambda: self.acquisition.acquire(device, self.config.sample_count, channels),
            label=f"acquire {device}",
        )
        try:
            offsets = self.compute_offsets(buffer, channels)
        except DecodeError:
            logger.error("calibration of %s aborted: sample buffer could not be decoded", device)
            raise
        if len(offsets) != len(channels):
            raise ConsistencyError(
                f"calibration computed {len(offsets)} offsets for {len(channels)} channels {channels}"
            )

        for channel, offset in zip(channels, offsets):
            if cancelled.is_set():
                raise CalibrationCancelled(
                    f"calibration of {device} cancelled after channels {result.written}"
                )
            try:
                self.write_offset(device, channel, offset)
            except RegisterIOError as exc:
                logger.error("Writing offset of %s channel %d failed: %s", device, channel, exc)
                raise RegisterIOError(
                    f"calibration of {device} channel {channel} failed after writing {result.written}: {exc}"
                ) from exc
            result.written.append(channel)
            result.offsets[channel] = offset
            try:
                self.store.save_offset(device, channel, offset)
            except PersistenceError as exc:
                logger.warning("Saving offset of %s channel %d failed: %s", device, channel, exc)
                result.warnings.append(str(exc))
        logger.info("Calibrated %s channels %s: %s", device, channels, result.offsets)
        return result

    def calibrate_all(self) -> List[CalibrationResult]:
        """Calibrate every configured device; the first failing device stops the batch."""
        results = []
        for layout in self.config.devices:
            results.append(self.calibrate(layout.name, layout.channel_ids))
        return results

    def calibrate_channel(self, global_id: int) -> CalibrationResult:
        device, local = self.locate(global_id)
        logger.info("Calibrating global channel %d as %s channel %d", global_id, device, local)
        return self.calibrate(device, [local])

    def locate(self, global_id: int) -> tuple[str, int]:
        try:
            return self.config.locate_channel(int(global_id))
        except (IndexError, TypeError, ValueError) as exc:
            raise ValidationError(
                f"chanid={global_id} error: expected 0..{self.config.total_channels - 1}"
            ) from exc

    def _validate_channels(self, device: str, channels: Sequence[int]) -> List[int]:
        try:
            layout = self.config.device(device)
        except KeyError as exc:
            raise ValidationError(f"unknown device {device!r}") from exc
        checked = [int(channel) for channel in channels]
        if not checked:
            raise ValidationError(f"no channels requested for {device}")
        if len(set(checked)) != len(checked):
            raise ValidationError(f"duplicate channels requested for {device}: {checked}")
        for channel in checked:
            if not 0 <= channel < layout.channels:
                raise ValidationError(f"{device} has no channel {channel}")
        return checked

    def write_offset(self, device: str, channel: int, offset: int) -> RegisterTriplet:
        """Write MSB, middle and LSB in order; a failure leaves the rest unwritten."""
        triplet = encode_offset(offset)
        logger.info(
            "Setting %s channel %d offset=%d, msb/mid/lsb=(%s)", device, channel, offset, triplet
        )
        for index, value in enumerate(triplet):
            address = register_address(channel, index)
            self._retry(
                lambda: self.registers.write_byte(device, address, value),
                label=f"write {device}@0x{address:02x}",
            )
        return triplet

    def read_offset(self, device: str, channel: int) -> int:
        values = []
        for index in range(REGS_PER_CHANNEL):
            address = register_address(channel, index)
            values.append(
                self._retry(
                    lambda: self.registers.read_byte(device, address),
                    label=f"read {device}@0x{address:02x}",
                )
            )
        return decode_offset(RegisterTriplet(*values))

    def read_offsets(self) -> OffsetMap:
        params: OffsetMap = {}
        for layout in self.config.devices:
            params[layout.name] = {}
            for channel in layout.channel_ids:
                try:
                    params[layout.name][channel] = self.read_offset(layout.name, channel)
                except RegisterIOError as exc:
                    logger.error("Reading offset of %s channel %d failed: %s", layout.name, channel, exc)
                    raise
        return params

    def apply_offsets(self, offsets: OffsetMap) -> None:
        for device, channels in offsets.items():
            with self.device_lock(device):
                for channel, offset in sorted(channels.items()):
                    try:
                        self.write_offset(device, channel, check_offset(offset))
                    except RegisterIOError as exc:
                        logger.error("Applying offset of %s channel %d failed: %s", device, channel, exc)
                        raise

    def clear_offsets(self) -> None:
        """Zero every configured offset register; the persisted map is kept."""
        self.apply_offsets(
            {layout.name: {channel: 0 for channel in layout.channel_ids} for layout in self.config.devices}
        )

    def restore_offsets(self) -> OffsetMap:
        """Write the persisted offsets back to hardware, typically at start-up."""
        offsets = self.store.load()
        if not offsets:
            logger.info("No persisted offsets in %s, nothing to restore", self.store.path)
            return offsets
        self.apply_offsets(offsets)
        logger.info("Restored persisted offsets for %s", sorted(offsets))
        return offsets
