"""Channel compositing used by rendered exports."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional, Sequence, Tuple

import numpy as np


ColorTuple = Tuple[float, float, float]


def _to_numpy(array) -> np.ndarray:
    """Materialise array-like inputs (NumPy or Dask) as ``float32`` arrays."""
    try:
        materialised = array.compute()
    except AttributeError:
        materialised = np.asarray(array)
    return np.asarray(materialised, dtype=np.float32)


def rgb_from_packed(color: int) -> ColorTuple:
    """Convert a packed ``0xRRGGBB`` integer into an ``(r, g, b)`` float tuple."""

    value = int(color) & 0xFFFFFF
    return (
        ((value >> 16) & 0xFF) / 255.0,
        ((value >> 8) & 0xFF) / 255.0,
        (value & 0xFF) / 255.0,
    )


@dataclass(frozen=True)
class ChannelRenderSettings:
    color: ColorTuple
    contrast_min: float
    contrast_max: float


def _normalise_color(color: ColorTuple) -> np.ndarray:
    return np.asarray(color, dtype=np.float32).reshape(1, 1, 3)


def _contrast_bounds(settings: ChannelRenderSettings) -> Tuple[float, float]:
    min_val = float(settings.contrast_min)
    max_val = float(settings.contrast_max)
    if not np.isfinite(min_val):
        min_val = 0.0
    if not np.isfinite(max_val):
        max_val = min_val + 1.0
    return min_val, max_val


def render_channels_to_array(
    image_name: str,
    planes,
    channel_names: Sequence[str],
    channel_settings: Mapping[str, ChannelRenderSettings],
    *,
    selected_channels: Optional[Sequence[str]] = None,
) -> np.ndarray:
    """Additively composite ``(C, H, W)`` *planes* into an RGB float image.

    Every selected channel is clipped to its ``[contrast_min, contrast_max]``
    window, scaled to ``[0, 1]`` and tinted with its colour. The result has
    shape ``(H, W, 3)`` with values in ``[0, 1]``.
    """

    planes = _to_numpy(planes)
    if planes.ndim == 2:
        planes = planes[np.newaxis, ...]
    if planes.ndim != 3:
        raise ValueError(f"Image '{image_name}' planes must be (C, H, W), got {planes.shape}")

    selected = list(selected_channels) if selected_channels else list(channel_names)
    index_of = {name: idx for idx, name in enumerate(channel_names)}
    missing = [ch for ch in selected if ch not in index_of or index_of[ch] >= planes.shape[0]]
    if missing:
        raise KeyError(f"Image '{image_name}' does not provide channels: {', '.join(missing)}")

    composite = np.zeros((planes.shape[1], planes.shape[2], 3), dtype=np.float32)
    for channel in selected:
        settings = channel_settings.get(channel)
        if settings is None:
            raise KeyError(f"Missing render settings for channel '{channel}'")
        min_val, max_val = _contrast_bounds(settings)
        scale = max(max_val - min_val, np.finfo(np.float32).eps)
        normalised = np.clip((planes[index_of[channel]] - min_val) / scale, 0.0, 1.0)
        composite += normalised[..., np.newaxis] * _normalise_color(settings.color)

    return np.clip(composite, 0.0, 1.0)


def to_uint8(rgb: np.ndarray) -> np.ndarray:
    return np.round(np.clip(rgb, 0.0, 1.0) * 255.0).astype(np.uint8)


__all__ = [
    "ChannelRenderSettings",
    "render_channels_to_array",
    "rgb_from_packed",
    "to_uint8",
]
