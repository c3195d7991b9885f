from __future__ import annotations

import copy
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

DEFAULT_OFFSETS_PATH = Path("/media/sd-mmcblk1p2/calibration.json")


@dataclass
class DeviceLayout:
    name: str
    channels: int

    @staticmethod
    def from_mapping(data: Dict[str, Any]) -> "DeviceLayout":
        if "name" not in data or "channels" not in data:
            raise ValueError("devices entries require fields 'name' and 'channels'")
        channels = int(data["channels"])
        if channels <= 0:
            raise ValueError(f"device {data['name']!r} must expose at least one channel")
        return DeviceLayout(name=str(data["name"]), channels=channels)

    @property
    def channel_ids(self) -> List[int]:
        return list(range(self.channels))


def _default_devices() -> List[DeviceLayout]:
    return [DeviceLayout("cf_axi_adc", 7), DeviceLayout("cf_axi_adc_1", 8)]


@dataclass
class ToolPaths:
    readdev: str = "iio_readdev"
    reg: str = "iio_reg"


@dataclass
class CalibrationConfig:
    sample_count: int = 1024
    damping: float = 0.75
    offsets_path: Path = DEFAULT_OFFSETS_PATH
    devices: List[DeviceLayout] = field(default_factory=_default_devices)
    tools: ToolPaths = field(default_factory=ToolPaths)
    tool_timeout_sec: float = 30.0
    retries: int = 0
    retry_delay_sec: float = 0.5
    listen: str = ":80"

    def device(self, name: str) -> DeviceLayout:
        for layout in self.devices:
            if layout.name == name:
                return layout
        raise KeyError(name)

    @property
    def total_channels(self) -> int:
        return sum(layout.channels for layout in self.devices)

    def locate_channel(self, global_id: int) -> Tuple[str, int]:
        """Map a global channel id onto ``(device name, local channel)``."""
        base = 0
        for layout in self.devices:
            if base <= global_id < base + layout.channels:
                return layout.name, global_id - base
            base += layout.channels
        raise IndexError(global_id)


def _load_json(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as fh:
        return json.load(fh)


def load_config(path: Optional[Path | str] = None, overrides: Sequence[str] | None = None) -> CalibrationConfig:
    """
    Load the calibration service configuration from JSON and apply overrides.

    ``path`` may be omitted to start from built-in defaults. Overrides are
    dotted ``key=value`` pairs, e.g.:
        ["sample_count=2048", "tools.readdev=/usr/local/bin/iio_readdev"]
    """
    data: Dict[str, Any] = _load_json(Path(path)) if path else {}
    merged = _apply_overrides(data, overrides or [])
    tools_data = merged.get("tools") or {}
    devices_data = merged.get("devices")
    devices = (
        [DeviceLayout.from_mapping(entry) for entry in devices_data]
        if devices_data
        else _default_devices()
    )
    names = [layout.name for layout in devices]
    if len(set(names)) != len(names):
        raise ValueError(f"Duplicate device names in config: {names}")
    sample_count = int(merged.get("sample_count", 1024))
    if sample_count <= 0:
        raise ValueError("sample_count must be positive")
    return CalibrationConfig(
        sample_count=sample_count,
        damping=float(merged.get("damping", 0.75)),
        offsets_path=Path(merged.get("offsets_path") or DEFAULT_OFFSETS_PATH),
        devices=devices,
        tools=ToolPaths(
            readdev=str(tools_data.get("readdev", "iio_readdev")),
            reg=str(tools_data.get("reg", "iio_reg")),
        ),
        tool_timeout_sec=float(merged.get("tool_timeout_sec", 30.0)),
        retries=max(int(merged.get("retries", 0)), 0),
        retry_delay_sec=float(merged.get("retry_delay_sec", 0.5)),
        listen=str(merged.get("listen", ":80")),
    )


def _parse_value(raw: str) -> Any:
    """Interpret an override value as bool, JSON list/object, number or plain string."""
    lowered = raw.lower()
    if lowered in ("true", "false"):
        return lowered == "true"
    if raw[:1] in ("[", "{"):
        return json.loads(raw)
    for cast in (int, float):
        try:
            return cast(raw)
        except ValueError:
            continue
    return raw


def _apply_overrides(data: Dict[str, Any], overrides: Sequence[str]) -> Dict[str, Any]:
    """Return a copy of ``data`` with each dotted ``key=value`` override set in place."""
    result = copy.deepcopy(data)
    for item in overrides:
        dotted, sep, raw_value = item.partition("=")
        parts = [part.strip() for part in dotted.split(".")]
        if not sep or not all(parts):
            raise ValueError(f"--set {item!r} must use key=value syntax")
        *sections, leaf = parts
        node = result
        for section in sections:
            node = node.setdefault(section, {})
            if not isinstance(node, dict):
                raise ValueError(f"--set {item!r}: {section!r} is not a config section")
        node[leaf] = _parse_value(raw_value.strip())
    return result
