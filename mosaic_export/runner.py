"""Script-friendly entry points for running a batch export over a folder."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional, Union

from .data_loader import ImageEntry
from .export.job import BatchExportJob, ExportResult
from .export.strategies import ExportPlan

__all__ = ["configure_logging", "run_batch_export"]

PathLike = Union[str, Path]

LOG_LEVEL_ENV = "MOSAIC_EXPORT_LOG_LEVEL"
_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

logger = logging.getLogger(__name__)


def configure_logging(level: Union[int, str, None] = None) -> None:
    """Install a basic stderr handler for the ``mosaic_export`` loggers.

    When *level* is omitted the ``MOSAIC_EXPORT_LOG_LEVEL`` environment
    variable is consulted, defaulting to ``INFO``.
    """

    if level is None:
        level = os.environ.get(LOG_LEVEL_ENV, "INFO")
    if isinstance(level, str):
        resolved = logging.getLevelName(level.strip().upper())
        if not isinstance(resolved, int):
            raise ValueError(f"Unknown log level: {level!r}")
        level = resolved
    logging.basicConfig(level=level, format=_LOG_FORMAT)
    logging.getLogger("mosaic_export").setLevel(level)


def _normalise_directory(path: PathLike, *, argument: str) -> str:
    """Expand and validate a required directory argument."""

    directory = Path(path).expanduser()
    if not directory.exists():
        raise FileNotFoundError(f"{argument} '{directory}' does not exist")
    if not directory.is_dir():
        raise NotADirectoryError(f"{argument} '{directory}' is not a directory")
    return str(directory)


def run_batch_export(
    image_folder: PathLike,
    plan: ExportPlan,
    *,
    background: bool = False,
    **job_kwargs,
):
    """Export every TIFF image found in *image_folder* with *plan*.

    Parameters
    ----------
    image_folder:
        Directory scanned (non-recursively) for ``*.tif``, ``*.tiff`` and
        ``*.ome.tif`` files.
    plan:
        The export strategy, typically built with one of the
        :class:`~mosaic_export.export.strategies.ExportPlan` constructors.
    background:
        When ``True`` return the ``(job, future)`` pair from
        :meth:`BatchExportJob.start_in_background` instead of blocking.
    **job_kwargs:
        Forwarded to :class:`~mosaic_export.export.job.BatchExportJob`.

    Returns
    -------
    ExportResult
        The frozen outcome of the batch, or ``(job, future)`` when
        ``background`` is true.
    """

    folder = _normalise_directory(image_folder, argument="image_folder")
    items = ImageEntry.from_folder(folder)
    if not items:
        logger.warning("No TIFF images found in %s", folder)

    job = BatchExportJob(items=items, plan=plan, **job_kwargs)
    if background:
        return job, job.start_in_background()

    result: ExportResult = job.start()
    logger.info("%s", result.summary())
    return result
