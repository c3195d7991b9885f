"""Tabular views of persisted and read-back offsets."""
from __future__ import annotations

from pathlib import Path
from typing import Optional

import pandas as pd

from .codec import encode_offset
from .config import CalibrationConfig
from .errors import OffsetRangeError
from .store import OffsetMap

COLUMNS = ["device", "channel", "global_channel", "persisted", "register", "triplet", "in_sync"]


def _triplet_text(offset: Optional[int]) -> Optional[str]:
    if offset is None:
        return None
    try:
        return str(encode_offset(offset))
    except OffsetRangeError:
        # a hand-edited offsets file can hold values the registers cannot
        return None


def offsets_frame(
    config: CalibrationConfig,
    *,
    persisted: Optional[OffsetMap] = None,
    registers: Optional[OffsetMap] = None,
) -> pd.DataFrame:
    """One row per configured channel comparing stored and register offsets."""

    persisted = persisted or {}
    registers = registers or {}
    rows: list[dict[str, object]] = []
    base = 0
    for layout in config.devices:
        for channel in layout.channel_ids:
            stored = persisted.get(layout.name, {}).get(channel)
            current = registers.get(layout.name, {}).get(channel)
            reference = current if current is not None else stored
            rows.append(
                {
                    "device": layout.name,
                    "channel": channel,
                    "global_channel": base + channel,
                    "persisted": stored,
                    "register": current,
                    "triplet": _triplet_text(reference),
                    "in_sync": stored is not None and current is not None and stored == current,
                }
            )
        base += layout.channels
    df = pd.DataFrame(rows, columns=COLUMNS)
    df["persisted"] = df["persisted"].astype("Int64")
    df["register"] = df["register"].astype("Int64")
    return df


def export_offsets(frame: pd.DataFrame, path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    frame.to_csv(path, index=False)
    return path


def render_offsets(frame: pd.DataFrame) -> str:
    return frame.to_string(index=False, na_rep="-")
