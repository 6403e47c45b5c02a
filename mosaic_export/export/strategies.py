"""Pluggable per-category export strategies.

An :class:`ExportPlan` pairs one :class:`ExportCategory` with its immutable
config and an exporter callable ``(handle, config, name) -> output``. The
batch job only ever calls :meth:`ExportPlan.export`; exporters signal that an
image cannot be handled by the selected strategy with
:class:`IncompatibleImageError`, which the job counts as a skip rather than a
failure.

Default writers are provided for every category. Masks are rasterised from
the GeoJSON features returned by ``handle.annotations()``.
"""

from __future__ import annotations

import dataclasses
import functools
import logging
import math
import os
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence

import numpy as np

from ..rendering.engine import ChannelRenderSettings, render_channels_to_array, rgb_from_packed, to_uint8
from .categories import ExportCategory, OutputFormat
from .config import (
    MaskExportConfig,
    MaskType,
    RawExportConfig,
    RenderedExportConfig,
    TiledExportConfig,
)

__all__ = [
    "ExportPlan",
    "IncompatibleImageError",
    "export_mask",
    "export_raw",
    "export_rendered",
    "export_tiled",
    "write_ome_pyramid",
]

logger = logging.getLogger(__name__)

Exporter = Callable[[Any, Any, str], Any]
PyramidWriter = Callable[[str, np.ndarray, RawExportConfig, Sequence[str]], None]


class IncompatibleImageError(ValueError):
    """The image is structurally incompatible with the selected export."""


def _ensure_tifffile():
    try:
        import tifffile  # type: ignore
    except ModuleNotFoundError as exc:  # pragma: no cover - optional dependency
        raise ImportError("tifffile is required to write TIFF exports.") from exc
    return tifffile


def _ensure_imsave():
    try:
        from skimage.io import imsave  # type: ignore
    except ModuleNotFoundError as exc:  # pragma: no cover - optional dependency
        raise ImportError("scikit-image is required to write PNG/JPEG exports.") from exc
    return imsave


@dataclass(frozen=True)
class ExportPlan:
    """Export strategy selected once per batch."""

    category: ExportCategory
    config: Any
    exporter: Exporter

    def __post_init__(self) -> None:
        config_category = getattr(self.config, "category", None)
        if config_category is not self.category:
            raise ValueError(
                f"{type(self.config).__name__} cannot be used for {self.category.display_name} exports"
            )

    @property
    def output_directory(self) -> Optional[str]:
        return getattr(self.config, "output_directory", None)

    @property
    def add_to_workflow(self) -> bool:
        return bool(getattr(self.config, "add_to_workflow", False))

    def export(self, handle, name: str):
        return self.exporter(handle, self.config, name)

    def with_config(self, config) -> "ExportPlan":
        return dataclasses.replace(self, config=config)

    @classmethod
    def rendered(cls, config: RenderedExportConfig, exporter: Optional[Exporter] = None) -> "ExportPlan":
        return cls(ExportCategory.RENDERED, config, exporter or export_rendered)

    @classmethod
    def mask(cls, config: MaskExportConfig, exporter: Optional[Exporter] = None) -> "ExportPlan":
        return cls(ExportCategory.MASK, config, exporter or export_mask)

    @classmethod
    def raw(
        cls,
        config: RawExportConfig,
        exporter: Optional[Exporter] = None,
        *,
        pyramid_writer: Optional[PyramidWriter] = None,
    ) -> "ExportPlan":
        if exporter is None:
            exporter = functools.partial(export_raw, pyramid_writer=pyramid_writer)
        return cls(ExportCategory.RAW, config, exporter)

    @classmethod
    def tiled(cls, config: TiledExportConfig, exporter: Optional[Exporter] = None) -> "ExportPlan":
        return cls(ExportCategory.TILED, config, exporter or export_tiled)


# ----------------------------------------------------------------------
# Shared helpers
# ----------------------------------------------------------------------


def _require_output_dir(config) -> str:
    output_dir = getattr(config, "output_directory", None)
    if not output_dir:
        raise ValueError(f"{type(config).__name__} has no output_directory")
    os.makedirs(output_dir, exist_ok=True)
    return output_dir


def _write_image(path: str, array: np.ndarray, fmt: OutputFormat) -> None:
    """Write an ``(H, W)`` or ``(H, W, 3)`` array in a non-OME format."""

    if fmt.is_tiff:
        tifffile = _ensure_tifffile()
        photometric = "rgb" if array.ndim == 3 and array.shape[-1] == 3 else "minisblack"
        tifffile.imwrite(path, array, photometric=photometric)
        return
    imsave = _ensure_imsave()
    imsave(path, array, check_contrast=False)


# ----------------------------------------------------------------------
# Rendered
# ----------------------------------------------------------------------


def _per_image_settings(planes: np.ndarray, channel_names, channel_colors, percentile: float):
    settings: Dict[str, ChannelRenderSettings] = {}
    for idx, name in enumerate(channel_names[: planes.shape[0]]):
        values = np.asarray(planes[idx], dtype=np.float64)
        values = values[np.isfinite(values)]
        if values.size == 0:
            low, high = 0.0, 1.0
        else:
            low, high = (float(v) for v in np.percentile(values, [percentile, 100.0 - percentile]))
        if high <= low:
            high = low + 1.0
        settings[name] = ChannelRenderSettings(
            color=rgb_from_packed(channel_colors[idx]),
            contrast_min=low,
            contrast_max=high,
        )
    return settings


def export_rendered(handle, config: RenderedExportConfig, name: str) -> str:
    """Composite the image with its display settings and write 8-bit RGB."""

    output_dir = _require_output_dir(config)
    channel_names = list(handle.channel_names)

    settings = dict(config.display_settings)
    selected = list(config.selected_channels) or (list(settings) if settings else channel_names)
    missing = [ch for ch in selected if ch not in channel_names]
    if missing:
        raise IncompatibleImageError(
            f"image has no channel(s) {', '.join(missing)} required by the display settings"
        )

    planes = np.asarray(handle.read_region(config.downsample))
    if not settings:
        settings = _per_image_settings(
            planes, channel_names, list(handle.channel_colors), config.matched_display_percentile
        )

    rgb = render_channels_to_array(
        name, planes, channel_names, settings, selected_channels=selected
    )
    path = os.path.join(output_dir, config.build_output_filename(name))
    _write_image(path, to_uint8(rgb), config.format)
    logger.debug("Wrote rendered image %s", path)
    return path


# ----------------------------------------------------------------------
# Raw
# ----------------------------------------------------------------------


def write_ome_pyramid(
    path: str,
    planes: np.ndarray,
    config: RawExportConfig,
    channel_names: Sequence[str],
) -> None:
    """Write a tiled, pyramidal OME-TIFF with ``pyramid_levels`` levels."""

    tifffile = _ensure_tifffile()
    options = {"tile": (config.tile_size, config.tile_size), "compression": config.compression}
    with tifffile.TiffWriter(path, bigtiff=True, ome=True) as tif:
        tif.write(
            planes,
            subifds=config.pyramid_levels - 1,
            metadata={"axes": "CYX", "Channel": {"Name": list(channel_names)}},
            **options,
        )
        level = planes
        for _ in range(config.pyramid_levels - 1):
            level = level[:, ::2, ::2]
            tif.write(level, subfiletype=1, **options)


def export_raw(
    handle,
    config: RawExportConfig,
    name: str,
    *,
    pyramid_writer: Optional[PyramidWriter] = None,
) -> str:
    """Write the pixel data at ``config.downsample`` without any rendering."""

    output_dir = _require_output_dir(config)
    planes = np.asarray(handle.read_region(config.downsample))
    channel_names = list(handle.channel_names)[: planes.shape[0]]

    if config.selected_channels is not None:
        invalid = [c for c in config.selected_channels if c < 0 or c >= planes.shape[0]]
        if invalid:
            raise IncompatibleImageError(
                f"image has {planes.shape[0]} channel(s); cannot export channel index(es) "
                f"{', '.join(str(c) for c in invalid)}"
            )
        indices = list(config.selected_channels)
        planes = planes[indices]
        channel_names = [channel_names[c] for c in indices]

    path = os.path.join(output_dir, config.build_output_filename(name))
    tifffile = _ensure_tifffile()

    if config.format is OutputFormat.OME_TIFF_PYRAMID:
        if pyramid_writer is not None:
            pyramid_writer(path, planes, config, channel_names)
            return path
        logger.info("No pyramid writer configured; writing %s as a flat OME-TIFF", path)

    if config.format in (OutputFormat.OME_TIFF, OutputFormat.OME_TIFF_PYRAMID):
        tifffile.imwrite(
            path,
            planes,
            ome=True,
            metadata={"axes": "CYX", "Channel": {"Name": channel_names}},
            compression=config.compression,
        )
    else:
        tifffile.imwrite(path, planes, photometric="minisblack", compression=config.compression)
    return path


# ----------------------------------------------------------------------
# Tiled
# ----------------------------------------------------------------------


def _tile_origins(extent: int, tile_size: int, overlap: int):
    step = tile_size - overlap
    return range(0, max(extent - overlap, 1), step)


def export_tiled(handle, config: TiledExportConfig, name: str) -> int:
    """Cut the image into overlapping tiles under ``<output>/<output filename>/``."""

    output_dir = _require_output_dir(config)
    planes = np.asarray(handle.read_region(config.downsample))

    if config.format is OutputFormat.PNG:
        if planes.shape[0] not in (1, 3):
            raise IncompatibleImageError(
                f"PNG tiles need 1 or 3 channels, image has {planes.shape[0]}"
            )
        if planes.dtype not in (np.uint8, np.uint16):
            raise IncompatibleImageError(f"PNG tiles cannot store {planes.dtype} pixels")

    tile_dir = os.path.join(output_dir, config.build_output_filename(name))
    os.makedirs(tile_dir, exist_ok=True)

    _, height, width = planes.shape
    count = 0
    for y in _tile_origins(height, config.tile_size, config.overlap):
        for x in _tile_origins(width, config.tile_size, config.overlap):
            tile = planes[:, y : y + config.tile_size, x : x + config.tile_size]
            if config.skip_empty_tiles and not np.any(tile):
                continue
            full_x = int(round(x * config.downsample))
            full_y = int(round(y * config.downsample))
            filename = config.build_output_filename(name, f"_x{full_x}_y{full_y}")
            image = tile[0] if tile.shape[0] == 1 else np.moveaxis(tile, 0, -1)
            if config.format.is_tiff and tile.shape[0] not in (1, 3):
                _ensure_tifffile().imwrite(os.path.join(tile_dir, filename), tile, photometric="minisblack")
            else:
                _write_image(os.path.join(tile_dir, filename), image, config.format)
            count += 1

    logger.debug("Wrote %d tiles for %s", count, name)
    return count


# ----------------------------------------------------------------------
# Mask
# ----------------------------------------------------------------------


def _ensure_draw_polygon():
    try:
        from skimage.draw import polygon  # type: ignore
    except ModuleNotFoundError as exc:  # pragma: no cover - optional dependency
        raise ImportError("scikit-image is required to rasterise mask exports.") from exc
    return polygon


def _feature_classification(feature) -> Optional[str]:
    properties = feature.get("properties") or {}
    classification = properties.get("classification")
    if isinstance(classification, dict):
        return classification.get("name")
    return classification


def _polygon_rings(geometry) -> Iterator[List[Sequence[Sequence[float]]]]:
    """Yield ``[exterior, *holes]`` rings for Polygon and MultiPolygon geometries."""

    if not geometry:
        return
    kind = geometry.get("type")
    coords = geometry.get("coordinates") or []
    if kind == "Polygon":
        yield coords
    elif kind == "MultiPolygon":
        yield from coords
    elif kind == "GeometryCollection":
        for child in geometry.get("geometries") or []:
            yield from _polygon_rings(child)


def _mask_labels(features, config: MaskExportConfig) -> List[tuple]:
    """Pair each feature that takes part in the mask with its label value."""

    selected = list(config.selected_classifications)
    labelled = []
    if config.mask_type is MaskType.INSTANCE:
        for feature in features:
            if selected and _feature_classification(feature) not in selected:
                continue
            labelled.append((feature, len(labelled) + 1))
        return labelled

    if config.mask_type is MaskType.GRAYSCALE_LABELS:
        classes = selected or []
        if not classes:
            for feature in features:
                name = _feature_classification(feature)
                if name is not None and name not in classes:
                    classes.append(name)
        for feature in features:
            name = _feature_classification(feature)
            if name in classes:
                labelled.append((feature, classes.index(name) + 1))
        return labelled

    for feature in features:
        if selected and _feature_classification(feature) not in selected:
            continue
        labelled.append((feature, 1))
    return labelled


def _label_dtype(max_label: int, fmt: OutputFormat) -> np.dtype:
    if max_label <= np.iinfo(np.uint8).max:
        return np.dtype(np.uint8)
    if max_label <= np.iinfo(np.uint16).max:
        return np.dtype(np.uint16)
    if not fmt.is_tiff:
        raise IncompatibleImageError(f"{max_label} labels do not fit in a {fmt.extension} mask")
    return np.dtype(np.uint32)


def export_mask(handle, config: MaskExportConfig, name: str) -> str:
    """Burn the handle's annotation polygons into a label image at ``downsample``.

    ``BINARY`` masks label every kept object 1, ``GRAYSCALE_LABELS`` give each
    classification its own value (in ``selected_classifications`` order, or
    first-seen order when none are selected) and ``INSTANCE`` masks number
    objects from 1. Everything else is ``background_label``; holes are cut
    back to background.
    """

    output_dir = _require_output_dir(config)
    polygon = _ensure_draw_polygon()

    full_h, full_w = (int(v) for v in handle.shape)
    height = int(math.ceil(full_h / config.downsample))
    width = int(math.ceil(full_w / config.downsample))

    labelled = _mask_labels(list(handle.annotations()), config)
    max_label = max([config.background_label] + [label for _, label in labelled])
    raster = np.full((height, width), config.background_label, dtype=_label_dtype(max_label, config.format))

    for feature, label in labelled:
        for rings in _polygon_rings(feature.get("geometry")):
            for index, ring in enumerate(rings):
                points = np.asarray(ring, dtype=np.float64).reshape(-1, 2) / config.downsample
                if points.shape[0] < 3:
                    continue
                rr, cc = polygon(points[:, 1], points[:, 0], shape=raster.shape)
                raster[rr, cc] = label if index == 0 else config.background_label

    path = os.path.join(output_dir, config.build_output_filename(name))
    _write_image(path, raster, config.format)
    logger.info("Exported mask (%d objects): %s", len(labelled), path)
    return path
