"""Export metadata sidecar (``export_info.json``).

Images are grouped by channel signature so that a batch mixing differently
configured images documents each configuration once. Writing the sidecar is
best-effort: failures are logged and never raised.
"""

from __future__ import annotations

import json
import logging
import os
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from .categories import ExportCategory

__all__ = ["ChannelGroup", "ChannelGroupTracker", "channel_signature", "write_export_info"]

logger = logging.getLogger(__name__)

EXPORT_INFO_FILENAME = "export_info.json"


def channel_signature(names: Sequence[str], colors: Sequence[int]) -> str:
    """Order-sensitive ``name|hexcolor,`` signature of a channel configuration."""

    return "".join(f"{name}|{int(color) & 0xFFFFFFFF:x}," for name, color in zip(names, colors))


@dataclass
class ChannelGroup:
    channel_names: List[str]
    channel_colors: List[int]
    pixel_type: str
    filenames: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, object]:
        return {
            "channels": [
                {"name": name, "color": f"#{int(color) & 0xFFFFFF:06x}"}
                for name, color in zip(self.channel_names, self.channel_colors)
            ],
            "pixel_type": self.pixel_type,
            "filenames": list(self.filenames),
        }


class ChannelGroupTracker:
    """Collects exported filenames per channel signature."""

    def __init__(self) -> None:
        self._groups: "OrderedDict[str, ChannelGroup]" = OrderedDict()

    def track(self, handle, exported_name: str) -> None:
        names = list(handle.channel_names)
        colors = [int(c) for c in handle.channel_colors]
        signature = channel_signature(names, colors)
        group = self._groups.get(signature)
        if group is None:
            group = ChannelGroup(names, colors, str(getattr(handle, "dtype", "unknown")))
            self._groups[signature] = group
        group.filenames.append(exported_name)

    @property
    def groups(self) -> List[ChannelGroup]:
        return list(self._groups.values())

    @property
    def consistent(self) -> bool:
        return len(self._groups) <= 1


def write_export_info(
    groups: Sequence[ChannelGroup],
    category: ExportCategory,
    downsample: float,
    output_dir: Optional[str],
    channels_consistent: bool = True,
) -> Optional[str]:
    if not output_dir:
        return None
    path = os.path.join(output_dir, EXPORT_INFO_FILENAME)
    payload = {
        "category": category.display_name,
        "downsample": float(downsample),
        "channels_consistent": bool(channels_consistent),
        "group_count": len(groups),
        "groups": [group.to_dict() for group in groups],
    }
    try:
        os.makedirs(output_dir, exist_ok=True)
        with open(path, "w", encoding="utf-8") as fh:
            json.dump(payload, fh, indent=2)
    except OSError as exc:
        logger.warning("Failed to write metadata sidecar file: %s", exc)
        return None
    logger.info("Wrote export info: %s", path)
    return path
