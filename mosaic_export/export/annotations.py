"""GeoJSON export of image annotations.

Orthogonal to the image export categories: it can run alongside any of them
and writes one ``<name>.geojson`` per image.
"""

from __future__ import annotations

import json
import logging
import os
from typing import Optional

from .config import sanitize_filename

__all__ = ["export_geojson"]

logger = logging.getLogger(__name__)


def export_geojson(handle, output_dir: str, entry_name: str) -> Optional[str]:
    """Write the handle's annotation features as a GeoJSON FeatureCollection.

    Returns the written path, or ``None`` when the image has no annotations.
    Any failure is re-raised as :class:`OSError`.
    """

    try:
        features = list(handle.annotations())
        if not features:
            logger.debug("No objects to export as GeoJSON for: %s", entry_name)
            return None

        os.makedirs(output_dir, exist_ok=True)
        path = os.path.join(output_dir, f"{sanitize_filename(entry_name)}.geojson")
        payload = {"type": "FeatureCollection", "features": features}
        with open(path, "w", encoding="utf-8") as fh:
            json.dump(payload, fh, indent=2)
    except Exception as exc:
        raise OSError(f"Failed to export GeoJSON for: {entry_name}") from exc

    logger.info("Exported GeoJSON (%d objects): %s", len(features), path)
    return path
