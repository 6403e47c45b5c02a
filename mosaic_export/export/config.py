"""Immutable per-category export configuration values.

Configs are validated when constructed; the batch job treats them as opaque
values apart from ``output_directory``, ``format``, ``downsample`` and
``add_to_workflow``.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Mapping, Optional, Tuple

from ..constants import DEFAULT_MATCHED_PERCENTILE, DEFAULT_SCAN_DOWNSAMPLE, INVALID_FILENAME_CHARS
from ..rendering.engine import ChannelRenderSettings
from .categories import ExportCategory, OutputFormat

__all__ = [
    "DisplaySettingsMode",
    "MaskExportConfig",
    "MaskType",
    "RawExportConfig",
    "RenderedExportConfig",
    "TiledExportConfig",
    "sanitize_filename",
]


def sanitize_filename(name: Optional[str]) -> str:
    """Strip characters that are invalid in file names; ``"unnamed"`` if nothing is left."""

    if name is None:
        return "unnamed"
    cleaned = "".join(
        ch for ch in str(name) if ch not in INVALID_FILENAME_CHARS and ord(ch) >= 32
    ).strip()
    return cleaned or "unnamed"


class DisplaySettingsMode(str, Enum):
    """How rendered exports pick per-channel contrast."""

    PER_IMAGE = "per_image"
    CAPTURED = "captured"
    GLOBAL_MATCHED = "global_matched"


class _ExportConfigMixin:
    category: ExportCategory
    format: OutputFormat

    def build_output_filename(self, entry_name: str, suffix: str = "") -> str:
        return f"{sanitize_filename(entry_name)}{suffix}.{self.format.extension}"

    def _validate_common(self, allowed_formats: Tuple[OutputFormat, ...]) -> None:
        if self.format not in allowed_formats:
            raise ValueError(
                f"{type(self).__name__} does not support format {self.format}"
            )
        if self.downsample < 1.0:
            raise ValueError("downsample must be >= 1.0")


@dataclass(frozen=True)
class RenderedExportConfig(_ExportConfigMixin):
    output_directory: Optional[str] = None
    format: OutputFormat = OutputFormat.PNG
    downsample: float = 4.0
    add_to_workflow: bool = True
    display_mode: DisplaySettingsMode = DisplaySettingsMode.PER_IMAGE
    display_settings: Mapping[str, ChannelRenderSettings] = field(default_factory=dict)
    matched_display_percentile: float = DEFAULT_MATCHED_PERCENTILE
    scan_downsample: float = DEFAULT_SCAN_DOWNSAMPLE
    selected_channels: Tuple[str, ...] = ()

    category = ExportCategory.RENDERED

    def __post_init__(self) -> None:
        object.__setattr__(self, "display_settings", MappingProxyType(dict(self.display_settings)))
        object.__setattr__(self, "selected_channels", tuple(self.selected_channels))
        self._validate_common((OutputFormat.PNG, OutputFormat.TIFF, OutputFormat.JPEG))
        if not 0.0 <= self.matched_display_percentile < 50.0:
            raise ValueError("matched_display_percentile must be in [0, 50)")
        if self.display_mode is DisplaySettingsMode.CAPTURED and not self.display_settings:
            raise ValueError("CAPTURED display mode requires display_settings")

    def with_display_settings(
        self, settings: Mapping[str, ChannelRenderSettings]
    ) -> "RenderedExportConfig":
        """Copy of this config with *settings* injected; every other field is kept."""

        return dataclasses.replace(self, display_settings=settings)


class MaskType(str, Enum):
    """How annotation objects are turned into label values."""

    BINARY = "binary"
    GRAYSCALE_LABELS = "grayscale_labels"
    INSTANCE = "instance"


@dataclass(frozen=True)
class MaskExportConfig(_ExportConfigMixin):
    output_directory: Optional[str] = None
    format: OutputFormat = OutputFormat.PNG
    downsample: float = 4.0
    add_to_workflow: bool = True
    mask_type: MaskType = MaskType.BINARY
    background_label: int = 0
    selected_classifications: Tuple[str, ...] = ()

    category = ExportCategory.MASK

    def __post_init__(self) -> None:
        object.__setattr__(self, "selected_classifications", tuple(self.selected_classifications))
        self._validate_common((OutputFormat.PNG, OutputFormat.TIFF, OutputFormat.OME_TIFF))
        if self.background_label < 0:
            raise ValueError("background_label must be >= 0")


@dataclass(frozen=True)
class RawExportConfig(_ExportConfigMixin):
    output_directory: Optional[str] = None
    format: OutputFormat = OutputFormat.TIFF
    downsample: float = 4.0
    add_to_workflow: bool = True
    selected_channels: Optional[Tuple[int, ...]] = None
    pyramid_levels: int = 4
    compression: Optional[str] = None
    tile_size: int = 512

    category = ExportCategory.RAW

    def __post_init__(self) -> None:
        if self.selected_channels is not None:
            object.__setattr__(self, "selected_channels", tuple(int(c) for c in self.selected_channels))
        self._validate_common(
            (OutputFormat.TIFF, OutputFormat.OME_TIFF, OutputFormat.OME_TIFF_PYRAMID)
        )
        if self.pyramid_levels < 1:
            raise ValueError("pyramid_levels must be >= 1")
        if self.tile_size < 16 or self.tile_size % 16:
            raise ValueError("tile_size must be a positive multiple of 16")


@dataclass(frozen=True)
class TiledExportConfig(_ExportConfigMixin):
    output_directory: Optional[str] = None
    format: OutputFormat = OutputFormat.TIFF
    downsample: float = 1.0
    add_to_workflow: bool = True
    tile_size: int = 512
    overlap: int = 0
    skip_empty_tiles: bool = False

    category = ExportCategory.TILED

    def __post_init__(self) -> None:
        if self.output_directory is None:
            raise ValueError("Tiled exports require an output_directory")
        self._validate_common((OutputFormat.TIFF, OutputFormat.PNG))
        if self.tile_size < 1:
            raise ValueError("tile_size must be >= 1")
        if self.overlap < 0:
            raise ValueError("overlap must be >= 0")
        if self.overlap >= self.tile_size:
            raise ValueError("overlap must be smaller than tile_size")
