"""Image resource provider for batch exports.

Opens (OME-)TIFF files through tifffile and exposes pyramid levels as lazy
dask arrays. Handles are heavyweight: they keep the TIFF file open until
:meth:`OMEImageHandle.close` is called.
"""

from __future__ import annotations

import glob
import json
import logging
import math
import os
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

import numpy as np

from .constants import DEFAULT_CHANNEL_COLORS

TIFF_PATTERNS: Tuple[str, ...] = ("*.tiff", "*.tif")
_OME_NS = {"ome": "http://www.openmicroscopy.org/Schemas/OME/2016-06"}

__all__ = [
    "ImageEntry",
    "OMEImageHandle",
    "discover_images",
    "extract_ome_channels",
    "image_stem",
]

logger = logging.getLogger(__name__)


def _ensure_dask():
    try:
        import dask  # type: ignore
        import dask.array as da  # type: ignore
    except ModuleNotFoundError as exc:  # pragma: no cover - optional dependency
        raise ImportError(
            "dask and dask[array] are required to read tiled imagery."
        ) from exc
    return dask, da


def _ensure_tifffile():
    try:
        import tifffile  # type: ignore
    except ModuleNotFoundError as exc:  # pragma: no cover - optional dependency
        raise ImportError(
            "tifffile is required to read (OME-)TIFF images."
        ) from exc
    return tifffile


def image_stem(path: str) -> str:
    """File name without directory and without ``.ome.tif``/``.tif`` suffixes."""

    name = os.path.basename(path)
    lowered = name.lower()
    for suffix in (".ome.tiff", ".ome.tif", ".tiff", ".tif"):
        if lowered.endswith(suffix):
            return name[: -len(suffix)]
    return os.path.splitext(name)[0]


def discover_images(folder: str) -> List[str]:
    files: List[str] = []
    for pattern in TIFF_PATTERNS:
        files.extend(glob.glob(os.path.join(folder, pattern)))
    return sorted(set(files))


def _ome_color_to_rgb(value) -> Optional[int]:
    """Convert an OME ``Color`` attribute (signed 32-bit RGBA) to 0xRRGGBB."""

    try:
        rgba = int(value) & 0xFFFFFFFF
    except (TypeError, ValueError):
        return None
    return (rgba >> 8) & 0xFFFFFF


def extract_ome_channels(ome_xml: Optional[str]) -> List[Tuple[str, Optional[int]]]:
    """Return ``(name, colour)`` pairs from an OME-XML document."""

    if not ome_xml:
        return []
    try:
        root = ET.fromstring(ome_xml)
    except ET.ParseError:
        logger.debug("Unparseable OME-XML; falling back to default channel names")
        return []

    channels = root.findall(".//ome:Channel", _OME_NS)
    if not channels:
        channels = [elem for elem in root.iter() if elem.tag.endswith("Channel")]

    result: List[Tuple[str, Optional[int]]] = []
    for i, ch in enumerate(channels):
        name = ch.attrib.get("Name") or ch.attrib.get("ID", f"Channel_{i}")
        result.append((name, _ome_color_to_rgb(ch.attrib.get("Color"))))
    return result


class OMEImageHandle:
    """Open (OME-)TIFF image with pyramid-aware region reads."""

    def __init__(self, path: str, *, series_index: int = 0):
        self.path = path
        self.name = image_stem(path)
        self._level_specs: List[Dict[str, object]] = []
        self._closed = False

        tifffile = _ensure_tifffile()
        self._tif = tifffile.TiffFile(path)
        try:
            self._series = self._tif.series[series_index]
            self._init_levels()
            self.dtype = np.dtype(self._series.dtype)
            self._init_channels(getattr(self._tif, "ome_metadata", None))
        except Exception:
            self._tif.close()
            raise

    def _init_levels(self) -> None:
        levels = list(getattr(self._series, "levels", ()))
        if not levels:
            levels = [self._series]
        base_axes = getattr(levels[0], "axes", getattr(self._series, "axes", ""))
        base_shape = getattr(levels[0], "shape", self._series.shape)
        base_y = self._axis_size(base_shape, base_axes, "Y") or 1

        for idx, level in enumerate(levels):
            axes = getattr(level, "axes", base_axes)
            shape = tuple(int(dim) for dim in getattr(level, "shape", base_shape))
            level_y = self._axis_size(shape, axes, "Y") or base_y
            scale = max(1, int(round(base_y / level_y)))
            self._level_specs.append(
                {
                    "level_index": idx,
                    "axes": axes,
                    "shape": shape,
                    "scale": scale,
                    "array": None,
                }
            )

    def _init_channels(self, ome_xml: Optional[str]) -> None:
        n_channels = self._infer_channel_count()
        parsed = extract_ome_channels(ome_xml)[:n_channels]

        names = [name for name, _ in parsed]
        colors = [color for _, color in parsed]
        for i in range(len(parsed), n_channels):
            names.append(f"Channel_{i}")
            colors.append(None)

        self.channel_names: List[str] = names
        self.channel_colors: List[int] = [
            color if color is not None else DEFAULT_CHANNEL_COLORS[i % len(DEFAULT_CHANNEL_COLORS)]
            for i, color in enumerate(colors)
        ]

    @staticmethod
    def _axis_size(shape: Tuple[int, ...], axes: str, label: str) -> Optional[int]:
        try:
            idx = axes.index(label)
        except ValueError:
            return None
        return int(shape[idx]) if 0 <= idx < len(shape) else None

    @staticmethod
    def _channel_axis(axes: str) -> Optional[str]:
        for label in ("C", "S"):
            if label in axes:
                return label
        # Plain TIFF stacks report e.g. "QYX"/"IYX"; the leading axis holds channels
        if len(axes) >= 3 and axes[0] not in "YX":
            return axes[0]
        return None

    def _infer_channel_count(self) -> int:
        if not self._level_specs:
            return 1
        axes = self._level_specs[0]["axes"]
        shape = self._level_specs[0]["shape"]
        label = self._channel_axis(axes)
        if label is not None:
            return int(shape[axes.index(label)])
        return 1

    # ------------------------------------------------------------------
    # Image metadata
    # ------------------------------------------------------------------

    @property
    def shape(self) -> Tuple[int, int]:
        if not self._level_specs:
            return (0, 0)
        level0 = self._level_specs[0]
        h = self._axis_size(level0["shape"], level0["axes"], "Y") or 0
        w = self._axis_size(level0["shape"], level0["axes"], "X") or 0
        return (h, w)

    @property
    def n_channels(self) -> int:
        return len(self.channel_names)

    @property
    def bits_per_pixel(self) -> int:
        return int(self.dtype.itemsize * 8)

    @property
    def is_floating_point(self) -> bool:
        return bool(np.issubdtype(self.dtype, np.floating))

    # ------------------------------------------------------------------
    # Pixel access
    # ------------------------------------------------------------------

    def _select_level(self, downsample: float) -> Tuple[Dict[str, object], int]:
        ds = max(1.0, float(downsample))
        best = self._level_specs[0]
        for level in self._level_specs:
            if level["scale"] <= ds and level["scale"] >= best["scale"]:
                best = level
        residual = max(1, int(math.ceil(ds / best["scale"] - 1e-9)))
        return best, residual

    def _get_level_array(self, level: Dict[str, object]):
        cached = level.get("array")
        if cached is not None:
            return cached
        _, da = _ensure_dask()
        level_param = level["level_index"] if len(self._level_specs) > 1 else None
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(
                "[OMEImageHandle] materializing pyramid level %s (scale=%s) for %s",
                level.get("level_index"),
                level.get("scale"),
                self.path,
            )
        store = self._series.aszarr(level=level_param)
        array = da.from_zarr(store)
        level["array"] = array
        return array

    def read_region(
        self,
        downsample: float = 1.0,
        x: int = 0,
        y: int = 0,
        width: Optional[int] = None,
        height: Optional[int] = None,
    ) -> np.ndarray:
        """Read a full-resolution rectangle at *downsample* as ``(C, H, W)``."""

        if self._closed:
            raise RuntimeError(f"Image handle for {self.path} is closed")

        full_h, full_w = self.shape
        width = full_w - x if width is None else width
        height = full_h - y if height is None else height

        level, residual = self._select_level(downsample)
        scale = int(level["scale"])
        arr = self._get_level_array(level)
        axes = level["axes"]
        channel_label = self._channel_axis(axes)

        y0, y1 = y // scale, int(math.ceil((y + height) / scale))
        x0, x1 = x // scale, int(math.ceil((x + width) / scale))

        slices = []
        kept_axes = []
        for axis in axes:
            if axis == "Y":
                slices.append(slice(y0, y1, residual))
                kept_axes.append(axis)
            elif axis == "X":
                slices.append(slice(x0, x1, residual))
                kept_axes.append(axis)
            elif axis == channel_label:
                slices.append(slice(None))
                kept_axes.append(axis)
            else:
                slices.append(0)

        region = arr[tuple(slices)]
        try:
            region = region.compute()
        except AttributeError:
            pass
        region = np.asarray(region)

        if channel_label is None:
            return region[np.newaxis, ...]
        return np.moveaxis(region, kept_axes.index(channel_label), 0)

    def annotations(self) -> List[dict]:
        """GeoJSON features stored beside the image as ``<stem>.geojson``."""

        sidecar = os.path.join(os.path.dirname(self.path), f"{self.name}.geojson")
        if not os.path.isfile(sidecar):
            return []
        with open(sidecar, "r", encoding="utf-8") as handle:
            payload = json.load(handle)
        if isinstance(payload, dict):
            if payload.get("type") == "FeatureCollection":
                return list(payload.get("features", []))
            return [payload]
        return list(payload)

    def close(self) -> None:
        if self._closed:
            return
        for level in self._level_specs:
            level["array"] = None
        self._tif.close()
        self._closed = True

    def __enter__(self) -> "OMEImageHandle":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


@dataclass(frozen=True)
class ImageEntry:
    """One batch item: a source image reference plus its display name."""

    path: str
    name: str = ""
    opener: Callable[[str], object] = field(default=OMEImageHandle, repr=False, compare=False)

    def __post_init__(self) -> None:
        if not self.name:
            object.__setattr__(self, "name", image_stem(self.path))

    def open(self):
        return self.opener(self.path)

    @classmethod
    def from_folder(cls, folder: str, **kwargs) -> List["ImageEntry"]:
        return [cls(path, **kwargs) for path in discover_images(folder)]
