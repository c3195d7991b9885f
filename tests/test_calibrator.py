from __future__ import annotations

import threading
from pathlib import Path
from typing import Dict, List

import pytest

from iiocal.calibrator import Calibrator
from iiocal.codec import OFFSET_REG_BASE
from iiocal.config import CalibrationConfig
from iiocal.errors import (
    AcquisitionError,
    CalibrationCancelled,
    ConsistencyError,
    DecodeError,
    OffsetRangeError,
    PersistenceError,
    RegisterIOError,
    ValidationError,
)
from iiocal.simulator import SimulatedAdc
from iiocal.store import OffsetStore


def make_adc(bias: int = 1000) -> SimulatedAdc:
    return SimulatedAdc({"cf_axi_adc": [bias] * 7, "cf_axi_adc_1": [bias] * 8}, noise=0.0)


def make_calibrator(tmp_path: Path, adc: SimulatedAdc | None = None, **overrides) -> Calibrator:
    adc = adc or make_adc()
    config = CalibrationConfig(offsets_path=tmp_path / "calibration.json", **overrides)
    return Calibrator(adc, adc, OffsetStore(config.offsets_path), config)


def test_end_to_end_single_channel(tmp_path: Path) -> None:
    calibrator = make_calibrator(tmp_path)
    adc = calibrator.registers
    result = calibrator.calibrate("cf_axi_adc", [0])
    assert result.offsets == {0: -750}
    assert result.written == [0]
    assert result.persisted
    assert adc.writes == [
        ("cf_axi_adc", OFFSET_REG_BASE, 0xFF),
        ("cf_axi_adc", OFFSET_REG_BASE + 1, 0xFD),
        ("cf_axi_adc", OFFSET_REG_BASE + 2, 0x12),
    ]
    assert calibrator.read_offset("cf_axi_adc", 0) == -750
    assert calibrator.store.load() == {"cf_axi_adc": {0: -750}}


def test_per_channel_offsets_follow_bias(tmp_path: Path) -> None:
    adc = SimulatedAdc({"cf_axi_adc": [0, 400, -400, 1000, 0, 0, 0], "cf_axi_adc_1": [0] * 8})
    calibrator = make_calibrator(tmp_path, adc)
    result = calibrator.calibrate("cf_axi_adc", [1, 2, 3])
    assert adc.acquisitions == [("cf_axi_adc", 1024, [1, 2, 3])]
    assert result.offsets == {1: -300, 2: 300, 3: -750}
    assert {ch: calibrator.read_offset("cf_axi_adc", ch) for ch in (1, 2, 3)} == result.offsets


@pytest.mark.parametrize(
    "global_id,device,local",
    [(0, "cf_axi_adc", 0), (6, "cf_axi_adc", 6), (7, "cf_axi_adc_1", 0), (14, "cf_axi_adc_1", 7)],
)
def test_global_channel_mapping(tmp_path: Path, global_id: int, device: str, local: int) -> None:
    calibrator = make_calibrator(tmp_path)
    result = calibrator.calibrate_channel(global_id)
    assert result.device == device
    assert calibrator.acquisition.acquisitions == [(device, 1024, [local])]


@pytest.mark.parametrize("global_id", [-1, 15, 100])
def test_invalid_global_channel_rejected_before_acquisition(tmp_path: Path, global_id: int) -> None:
    calibrator = make_calibrator(tmp_path)
    with pytest.raises(ValidationError):
        calibrator.calibrate_channel(global_id)
    assert calibrator.acquisition.acquisitions == []


def test_invalid_requests_rejected(tmp_path: Path) -> None:
    calibrator = make_calibrator(tmp_path)
    for device, channels in (("nope", [0]), ("cf_axi_adc", []), ("cf_axi_adc", [7]), ("cf_axi_adc", [1, 1])):
        with pytest.raises(ValidationError):
            calibrator.calibrate(device, channels)
    assert calibrator.acquisition.acquisitions == []


def test_acquisition_failure_writes_nothing(tmp_path: Path) -> None:
    adc = make_adc()
    adc.fail_acquire = "iio_readdev exited with code 1"
    calibrator = make_calibrator(tmp_path, adc)
    with pytest.raises(AcquisitionError):
        calibrator.calibrate("cf_axi_adc", [0, 1])
    assert adc.writes == []
    assert calibrator.store.load() == {}


class ShortAcquisition:
    def acquire(self, device: str, sample_count: int, channels) -> bytes:
        return b"\x00" * (sample_count * len(channels) * 4 - 1)


def test_short_buffer_aborts_whole_run(tmp_path: Path) -> None:
    adc = make_adc()
    config = CalibrationConfig(offsets_path=tmp_path / "calibration.json")
    calibrator = Calibrator(ShortAcquisition(), adc, OffsetStore(config.offsets_path), config)
    with pytest.raises(DecodeError):
        calibrator.calibrate("cf_axi_adc", [0, 1, 2])
    assert adc.writes == []


class DroppingCalibrator(Calibrator):
    def compute_offsets(self, buffer, channels) -> List[int]:
        return super().compute_offsets(buffer, channels)[:-1]


def test_offset_count_mismatch_is_consistency_error(tmp_path: Path) -> None:
    adc = make_adc()
    config = CalibrationConfig(offsets_path=tmp_path / "calibration.json")
    calibrator = DroppingCalibrator(adc, adc, OffsetStore(config.offsets_path), config)
    with pytest.raises(ConsistencyError):
        calibrator.calibrate("cf_axi_adc", [0, 1])
    assert adc.writes == []


def test_mid_batch_write_failure_keeps_completed_channels(tmp_path: Path) -> None:
    adc = make_adc()
    adc.fail_write_after = 4
    calibrator = make_calibrator(tmp_path, adc)
    with pytest.raises(RegisterIOError) as excinfo:
        calibrator.calibrate("cf_axi_adc", [0, 1, 2])
    assert "channel 1" in str(excinfo.value)
    written_addresses = [address for _, address, _ in adc.writes]
    assert written_addresses == [0x1E, 0x1F, 0x20, 0x21]
    assert calibrator.store.load() == {"cf_axi_adc": {0: -750}}


class FailingStore(OffsetStore):
    def save_offset(self, device: str, channel: int, offset: int):
        raise PersistenceError("read-only filesystem")


def test_persistence_failure_is_reported_not_fatal(tmp_path: Path) -> None:
    adc = make_adc()
    config = CalibrationConfig(offsets_path=tmp_path / "calibration.json")
    calibrator = Calibrator(adc, adc, FailingStore(config.offsets_path), config)
    result = calibrator.calibrate("cf_axi_adc", [0, 1])
    assert result.written == [0, 1]
    assert not result.persisted
    assert len(result.warnings) == 2
    assert calibrator.read_offset("cf_axi_adc", 1) == -750


class CancellingRegisters:
    def __init__(self, adc: SimulatedAdc) -> None:
        self.adc = adc
        self.calibrator: Calibrator | None = None

    def read_byte(self, device: str, address: int) -> int:
        return self.adc.read_byte(device, address)

    def write_byte(self, device: str, address: int, value: int) -> None:
        self.adc.write_byte(device, address, value)
        if self.calibrator is not None:
            self.calibrator.cancel("cf_axi_adc")


def test_cancellation_only_between_channels(tmp_path: Path) -> None:
    adc = make_adc()
    registers = CancellingRegisters(adc)
    config = CalibrationConfig(offsets_path=tmp_path / "calibration.json")
    calibrator = Calibrator(adc, registers, OffsetStore(config.offsets_path), config)
    registers.calibrator = calibrator
    with pytest.raises(CalibrationCancelled):
        calibrator.calibrate("cf_axi_adc", [0, 1, 2])
    assert len(adc.writes) == 3
    assert calibrator.store.load() == {"cf_axi_adc": {0: -750}}

    registers.calibrator = None
    result = calibrator.calibrate("cf_axi_adc", [1])
    assert result.written == [1]


def test_cancel_issued_while_run_waits_for_lock_is_honoured(tmp_path: Path) -> None:
    calibrator = make_calibrator(tmp_path)
    adc = calibrator.registers
    outcome: List[object] = []

    def run() -> None:
        try:
            outcome.append(calibrator.calibrate("cf_axi_adc", [0, 1]))
        except CalibrationCancelled as exc:
            outcome.append(exc)

    with calibrator.device_lock("cf_axi_adc"):
        worker = threading.Thread(target=run)
        worker.start()
        calibrator.cancel("cf_axi_adc")
    worker.join(timeout=5)
    assert len(outcome) == 1
    assert isinstance(outcome[0], CalibrationCancelled)
    assert adc.writes == []

    result = calibrator.calibrate("cf_axi_adc", [0])
    assert result.written == [0]


def test_calibrate_all_then_read_back(tmp_path: Path) -> None:
    calibrator = make_calibrator(tmp_path)
    results = calibrator.calibrate_all()
    assert [r.device for r in results] == ["cf_axi_adc", "cf_axi_adc_1"]
    expected: Dict[str, Dict[int, int]] = {
        "cf_axi_adc": {ch: -750 for ch in range(7)},
        "cf_axi_adc_1": {ch: -750 for ch in range(8)},
    }
    assert calibrator.read_offsets() == expected
    assert calibrator.store.load() == expected


def test_calibrate_all_stops_at_first_failing_device(tmp_path: Path) -> None:
    adc = SimulatedAdc({"cf_axi_adc": [1000] * 7})
    calibrator = make_calibrator(tmp_path, adc)
    with pytest.raises(AcquisitionError):
        calibrator.calibrate_all()
    assert [entry[0] for entry in adc.acquisitions] == ["cf_axi_adc", "cf_axi_adc_1"]
    assert set(calibrator.store.load()) == {"cf_axi_adc"}


def test_read_failure_propagates(tmp_path: Path) -> None:
    adc = make_adc()
    adc.fail_read = True
    calibrator = make_calibrator(tmp_path, adc)
    with pytest.raises(RegisterIOError):
        calibrator.read_offsets()


def test_clear_zeroes_registers_and_keeps_store(tmp_path: Path) -> None:
    calibrator = make_calibrator(tmp_path)
    calibrator.calibrate_all()
    calibrator.clear_offsets()
    cleared = calibrator.read_offsets()
    assert all(offset == 0 for channels in cleared.values() for offset in channels.values())
    assert calibrator.store.load()["cf_axi_adc"][0] == -750


def test_restore_writes_persisted_offsets(tmp_path: Path) -> None:
    calibrator = make_calibrator(tmp_path)
    calibrator.store.save({"cf_axi_adc": {2: -750, 5: 1234}, "cf_axi_adc_1": {7: -8388608}})
    assert calibrator.restore_offsets() == {"cf_axi_adc": {2: -750, 5: 1234}, "cf_axi_adc_1": {7: -8388608}}
    assert calibrator.read_offset("cf_axi_adc", 2) == -750
    assert calibrator.read_offset("cf_axi_adc", 5) == 1234
    assert calibrator.read_offset("cf_axi_adc_1", 7) == -8388608


def test_restore_without_file_is_noop(tmp_path: Path) -> None:
    calibrator = make_calibrator(tmp_path)
    assert calibrator.restore_offsets() == {}
    assert calibrator.registers.writes == []


def test_restore_rejects_out_of_range_values(tmp_path: Path) -> None:
    calibrator = make_calibrator(tmp_path)
    calibrator.store.save({"cf_axi_adc": {0: 1 << 24}})
    with pytest.raises(OffsetRangeError):
        calibrator.restore_offsets()
    assert calibrator.registers.writes == []


class FlakyAcquisition:
    def __init__(self, adc: SimulatedAdc, failures: int) -> None:
        self.adc = adc
        self.failures = failures

    def acquire(self, device: str, sample_count: int, channels) -> bytes:
        if self.failures:
            self.failures -= 1
            raise AcquisitionError("device busy")
        return self.adc.acquire(device, sample_count, channels)


def test_transient_acquisition_failure_retried(tmp_path: Path) -> None:
    adc = make_adc()
    config = CalibrationConfig(offsets_path=tmp_path / "calibration.json", retries=2, retry_delay_sec=0.0)
    calibrator = Calibrator(FlakyAcquisition(adc, failures=2), adc, OffsetStore(config.offsets_path), config)
    assert calibrator.calibrate("cf_axi_adc", [0]).offsets == {0: -750}
