"""Batch export of multiplexed microscopy images.

Rendered composites, raw pixel data, label masks and tiles are written for
every image of a batch, optionally with display ranges matched across the
whole batch.
"""

from .data_loader import ImageEntry, OMEImageHandle, discover_images
from .export import (
    BatchExportJob,
    ExportCategory,
    ExportPlan,
    ExportResult,
    IncompatibleImageError,
    compute_global_ranges,
)
from .runner import configure_logging, run_batch_export

__all__ = [
    "BatchExportJob",
    "ExportCategory",
    "ExportPlan",
    "ExportResult",
    "ImageEntry",
    "IncompatibleImageError",
    "OMEImageHandle",
    "compute_global_ranges",
    "configure_logging",
    "discover_images",
    "run_batch_export",
]

__version__ = "0.1.0"
