"""Reproducibility records attached to successfully exported images."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone

from .categories import ExportCategory

__all__ = ["JsonHistoryRecorder", "WorkflowStep", "step_name_for"]

logger = logging.getLogger(__name__)

_STEP_NAMES = {
    ExportCategory.RENDERED: "Rendered Image Export",
    ExportCategory.MASK: "Mask Export",
    ExportCategory.RAW: "Raw Image Export",
    ExportCategory.TILED: "Tiled Export",
}


@dataclass(frozen=True)
class WorkflowStep:
    """A named history step carrying the script that reproduces it."""

    name: str
    script: str


def step_name_for(category: ExportCategory) -> str:
    return _STEP_NAMES[category]


class JsonHistoryRecorder:
    """Append workflow steps to ``<source>.history.json`` beside each image."""

    suffix = ".history.json"

    def history_path(self, item) -> str:
        return f"{item.path}{self.suffix}"

    def __call__(self, item, handle, step: WorkflowStep) -> None:
        path = self.history_path(item)
        history = []
        if os.path.isfile(path):
            with open(path, "r", encoding="utf-8") as fh:
                history = json.load(fh)
        history.append(
            {
                "name": step.name,
                "script": step.script,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
        )
        with open(path, "w", encoding="utf-8") as fh:
            json.dump(history, fh, indent=2)
        logger.debug("Added workflow step for: %s", item.name)
