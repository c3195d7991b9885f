"""Persistence of the per-device offset map."""
from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Dict

from .errors import PersistenceError

logger = logging.getLogger(__name__)

OffsetMap = Dict[str, Dict[int, int]]


def normalize_offsets(data: Any) -> OffsetMap:
    """Convert a decoded JSON document into ``{device: {channel: offset}}``."""
    if not isinstance(data, dict):
        raise ValueError("offset map must be a JSON object")
    result: OffsetMap = {}
    for device, channels in data.items():
        if not isinstance(channels, dict):
            raise ValueError(f"offsets for {device!r} must be a JSON object")
        result[str(device)] = {int(channel): int(offset) for channel, offset in channels.items()}
    return result


def offsets_to_json(offsets: OffsetMap) -> Dict[str, Dict[str, int]]:
    return {
        device: {str(channel): int(offset) for channel, offset in sorted(channels.items())}
        for device, channels in offsets.items()
    }


class OffsetStore:
    """
    Owns the on-disk offset map.

    Every update reads the current file, applies the change and rewrites the
    whole document through a temporary file, so a failed write leaves the
    previous file intact.
    """

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def load(self, *, strict: bool = False) -> OffsetMap:
        """
        Return the persisted map. A missing file yields ``{}``; a corrupt one
        yields ``{}`` unless ``strict`` is set, in which case
        :class:`PersistenceError` is raised.
        """
        with self._lock:
            return self._load_unlocked(strict=strict)

    def _load_unlocked(self, *, strict: bool) -> OffsetMap:
        if not self.path.exists():
            return {}
        try:
            with self.path.open("r", encoding="utf-8") as fh:
                return normalize_offsets(json.load(fh))
        except (OSError, ValueError) as exc:
            if strict:
                raise PersistenceError(f"read offsets file {self.path} error: {exc}") from exc
            logger.warning("Ignoring unreadable offsets file %s: %s", self.path, exc)
            return {}

    def save(self, offsets: OffsetMap) -> None:
        with self._lock:
            self._write_unlocked(offsets)

    def save_offset(self, device: str, channel: int, offset: int) -> OffsetMap:
        with self._lock:
            offsets = self._load_unlocked(strict=False)
            offsets.setdefault(device, {})[int(channel)] = int(offset)
            self._write_unlocked(offsets)
            return offsets

    def _write_unlocked(self, offsets: OffsetMap) -> None:
        tmp = self.path.with_name(self.path.name + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with tmp.open("w", encoding="utf-8") as fh:
                json.dump(offsets_to_json(offsets), fh, indent=2)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp, self.path)
        except OSError as exc:
            tmp.unlink(missing_ok=True)
            raise PersistenceError(f"write offsets file {self.path} error: {exc}") from exc
