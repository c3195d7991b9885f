"""Wrappers around the libiio command line tools used to reach the ADC."""
from __future__ import annotations

import logging
import subprocess
import time
from dataclasses import dataclass
from typing import Callable, List, Protocol, Sequence, TypeVar

from .config import CalibrationConfig
from .errors import AcquisitionError, CalibrationError, RegisterIOError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Acquisition(Protocol):
    def acquire(self, device: str, sample_count: int, channels: Sequence[int]) -> bytes:
        ...


class RegisterIO(Protocol):
    def read_byte(self, device: str, address: int) -> int:
        ...

    def write_byte(self, device: str, address: int, value: int) -> None:
        ...


@dataclass
class CmdResult:
    code: int
    stdout: bytes
    stderr: bytes

    def stderr_text(self) -> str:
        return self.stderr.decode("utf-8", errors="ignore").strip()


def run_tool(args: Sequence[str], timeout: float) -> CmdResult:
    """Run ``args`` to completion. Raises ``OSError`` or ``TimeoutExpired``."""
    proc = subprocess.run(
        list(args),
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        timeout=timeout,
        check=False,
    )
    return CmdResult(code=proc.returncode, stdout=proc.stdout, stderr=proc.stderr)


def with_retries(
    operation: Callable[[], T],
    *,
    retries: int,
    delay_sec: float,
    label: str,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``operation``, retrying only errors flagged as retriable."""
    attempt = 0
    while True:
        try:
            return operation()
        except CalibrationError as exc:
            if not exc.retriable or attempt >= retries:
                raise
            attempt += 1
            logger.warning("%s failed (%s), retry %d/%d", label, exc, attempt, retries)
            if delay_sec > 0:
                sleep(delay_sec)


class IioReadDev:
    """Acquisition through ``iio_readdev -s <samples> <device> voltageN...``."""

    def __init__(self, executable: str = "iio_readdev", timeout_sec: float = 30.0) -> None:
        self.executable = executable
        self.timeout_sec = timeout_sec

    def command(self, device: str, sample_count: int, channels: Sequence[int]) -> List[str]:
        args = [self.executable, "-s", str(sample_count), device]
        args.extend(f"voltage{channel}" for channel in channels)
        return args

    def acquire(self, device: str, sample_count: int, channels: Sequence[int]) -> bytes:
        args = self.command(device, sample_count, channels)
        logger.info("Sampling: %s", " ".join(args))
        try:
            result = run_tool(args, self.timeout_sec)
        except subprocess.TimeoutExpired as exc:
            raise AcquisitionError(f"{self.executable} timed out after {self.timeout_sec:.1f}s") from exc
        except OSError as exc:
            raise AcquisitionError(f"{self.executable} failed to start: {exc}") from exc
        if result.code != 0:
            raise AcquisitionError(
                f"{self.executable} exited with code {result.code}: {result.stderr_text()}"
            )
        logger.info("%s returned %d bytes", self.executable, len(result.stdout))
        return result.stdout


class IioReg:
    """Register access through ``iio_reg <device> <addr> [value]``."""

    def __init__(self, executable: str = "iio_reg", timeout_sec: float = 30.0) -> None:
        self.executable = executable
        self.timeout_sec = timeout_sec

    def _run(self, args: List[str]) -> CmdResult:
        logger.debug("Register access: %s", " ".join(args))
        try:
            result = run_tool(args, self.timeout_sec)
        except subprocess.TimeoutExpired as exc:
            raise RegisterIOError(f"{' '.join(args)} timed out after {self.timeout_sec:.1f}s") from exc
        except OSError as exc:
            raise RegisterIOError(f"{self.executable} failed to start: {exc}") from exc
        if result.code != 0:
            raise RegisterIOError(
                f"{' '.join(args)} exited with code {result.code}: {result.stderr_text()}"
            )
        return result

    def read_byte(self, device: str, address: int) -> int:
        result = self._run([self.executable, device, f"0x{address:02x}"])
        text = result.stdout.decode("ascii", errors="ignore").replace("\n", "").strip()
        try:
            value = int(text, 0)
        except ValueError as exc:
            raise RegisterIOError(f"unparsable register value {text!r} from {device}@0x{address:02x}") from exc
        return value & 0xFF

    def write_byte(self, device: str, address: int, value: int) -> None:
        if not 0 <= value <= 0xFF:
            raise RegisterIOError(f"register value {value} does not fit in a byte")
        self._run([self.executable, device, f"0x{address:02x}", str(value)])


def tools_from_config(config: CalibrationConfig) -> tuple[IioReadDev, IioReg]:
    return (
        IioReadDev(config.tools.readdev, timeout_sec=config.tool_timeout_sec),
        IioReg(config.tools.reg, timeout_sec=config.tool_timeout_sec),
    )
