"""Rendering helpers for exports."""

from .engine import (
    ChannelRenderSettings,
    render_channels_to_array,
    rgb_from_packed,
    to_uint8,
)

__all__ = [
    "ChannelRenderSettings",
    "render_channels_to_array",
    "rgb_from_packed",
    "to_uint8",
]
