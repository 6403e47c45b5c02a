"""Export categories and output formats."""

from __future__ import annotations

import os
import time
from enum import Enum

__all__ = ["ExportCategory", "OutputFormat"]


class OutputFormat(str, Enum):
    """Supported output image formats."""

    PNG = "png"
    TIFF = "tif"
    JPEG = "jpg"
    OME_TIFF = "ome.tif"
    OME_TIFF_PYRAMID = "ome.tif (pyramid)"

    @property
    def extension(self) -> str:
        return "ome.tif" if self is OutputFormat.OME_TIFF_PYRAMID else self.value

    @property
    def is_tiff(self) -> bool:
        return self in (OutputFormat.TIFF, OutputFormat.OME_TIFF, OutputFormat.OME_TIFF_PYRAMID)

    def __str__(self) -> str:
        return self.name.replace("_", " ")


class ExportCategory(str, Enum):
    """The export flavours a batch can run."""

    RENDERED = "rendered"
    MASK = "masks"
    RAW = "raw"
    TILED = "tiles"

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES[self]

    @property
    def default_subdirectory(self) -> str:
        return self.value

    def default_output_dir(self, project_dir: str) -> str:
        """``<project_dir>/exports/<subdirectory>``."""

        return os.path.join(project_dir, "exports", self.default_subdirectory)

    def next_available_output_dir(self, project_dir: str) -> str:
        """First output directory that does not already hold exported files.

        Tries the default directory, then ``<subdirectory>_2`` up to
        ``<subdirectory>_999``, then a millisecond timestamp suffix.
        """

        base_dir = self.default_output_dir(project_dir)
        if not _has_content(base_dir):
            return base_dir
        exports_dir = os.path.join(project_dir, "exports")
        for i in range(2, 1000):
            candidate = os.path.join(exports_dir, f"{self.default_subdirectory}_{i}")
            if not _has_content(candidate):
                return candidate
        return os.path.join(exports_dir, f"{self.default_subdirectory}_{int(time.time() * 1000)}")

    def __str__(self) -> str:
        return self.display_name


_DISPLAY_NAMES = {
    ExportCategory.RENDERED: "Rendered Image",
    ExportCategory.MASK: "Label / Mask",
    ExportCategory.RAW: "Raw Image Data",
    ExportCategory.TILED: "Tiled Export (ML)",
}


def _has_content(directory: str) -> bool:
    return os.path.isdir(directory) and bool(os.listdir(directory))
