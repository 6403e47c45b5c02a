"""Batch export job orchestration.

The job runs export work items serially: each image is opened, exported with
the selected :class:`~mosaic_export.export.strategies.ExportPlan`, classified
as succeeded / skipped / failed and closed again before the next image is
touched. One bad image never aborts the batch; only :meth:`BatchExportJob.cancel`
stops it early, and only between items.

Progress and status messages are published under a lock so another thread
(typically a UI) can poll :meth:`BatchExportJob.status` while the job runs.
"""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from threading import Event, Lock
from typing import Callable, List, Optional, Sequence, Tuple

from .annotations import export_geojson
from .categories import ExportCategory
from .config import DisplaySettingsMode
from .metadata import ChannelGroupTracker, write_export_info
from .scanner import build_display_settings, compute_global_ranges
from .strategies import ExportPlan, IncompatibleImageError
from .workflow import WorkflowStep, step_name_for

__all__ = [
    "BatchExportJob",
    "ExportOutcomeTally",
    "ExportResult",
    "JobState",
    "JobStatus",
]

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]
MessageCallback = Callable[[str], None]


class JobState(str, Enum):
    """Lifecycle state for a job."""

    PENDING = "pending"
    RUNNING = "running"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


@dataclass(frozen=True)
class ExportResult:
    """Final, read-only outcome of a batch export."""

    succeeded: int
    failed: int
    skipped: int
    errors: Tuple[str, ...] = ()
    total: int = 0
    cancelled: bool = False

    @property
    def processed(self) -> int:
        return self.succeeded + self.failed + self.skipped

    @property
    def has_errors(self) -> bool:
        # Skips are expected for heterogeneous batches and do not count
        return self.failed > 0

    def summary(self) -> str:
        text = f"Exported {self.succeeded} images."
        if self.skipped > 0:
            text += f" {self.skipped} skipped (incompatible)."
        if self.failed > 0:
            text += f" {self.failed} failed."
        return text


@dataclass
class ExportOutcomeTally:
    """Mutable per-batch accumulator, touched once per processed item."""

    total: int
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return self.succeeded + self.failed + self.skipped

    def record_success(self) -> None:
        self.succeeded += 1

    def record_skip(self, name: str, message: str) -> None:
        self.skipped += 1
        self.errors.append(f"{name}: {message}")

    def record_failure(self, name: str, message: str) -> None:
        self.failed += 1
        self.errors.append(f"{name}: {message}")

    def freeze(self, *, cancelled: bool = False) -> ExportResult:
        return ExportResult(
            succeeded=self.succeeded,
            failed=self.failed,
            skipped=self.skipped,
            errors=tuple(self.errors),
            total=self.total,
            cancelled=cancelled,
        )


@dataclass(frozen=True)
class JobStatus:
    """Snapshot of the current job state and counters."""

    state: JobState
    total: int
    completed: int
    succeeded: int
    failed: int
    skipped: int
    progress: float
    message: str
    cancelled: bool
    current: Optional[str] = None


def _error_message(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


class BatchExportJob:
    """Serial batch export runner.

    Parameters
    ----------
    items:
        Batch items exposing ``name`` and ``open()``; ``open()`` returns a
        handle with a ``close()`` method.
    plan:
        The export strategy and its configuration, selected once per batch.
    annotation_exporter:
        Callable ``(handle, output_dir, name)`` run after the main export
        when ``export_annotations`` is true and the plan has an output
        directory. Failures are logged only.
    workflow_script / workflow_recorder:
        When both are set and the config has ``add_to_workflow``, each
        successful item gets a :class:`WorkflowStep` recorded through
        ``workflow_recorder(item, handle, step)``.
    filename_prefix / filename_suffix:
        Added around each item name before it is passed to the exporter.
    progress_callback / message_callback:
        Receive ``(done, total)`` and human-readable status strings.
    global_range_scanner:
        Used for ``GLOBAL_MATCHED`` rendered exports to compute shared
        display ranges before the first item is exported.
    """

    def __init__(
        self,
        *,
        items: Sequence,
        plan: ExportPlan,
        annotation_exporter: Optional[Callable] = export_geojson,
        export_annotations: bool = False,
        workflow_script: Optional[str] = None,
        workflow_recorder: Optional[Callable] = None,
        filename_prefix: str = "",
        filename_suffix: str = "",
        progress_callback: Optional[ProgressCallback] = None,
        message_callback: Optional[MessageCallback] = None,
        global_range_scanner: Optional[Callable] = compute_global_ranges,
        write_metadata: bool = True,
    ) -> None:
        self.plan = plan
        self.effective_plan = plan
        self.annotation_exporter = annotation_exporter
        self.export_annotations = export_annotations
        self.workflow_script = workflow_script
        self.workflow_recorder = workflow_recorder
        self.filename_prefix = filename_prefix or ""
        self.filename_suffix = filename_suffix or ""
        self.global_range_scanner = global_range_scanner
        self.write_metadata = write_metadata
        self._items = tuple(items)
        self._total = len(self._items)
        self._progress_callback = progress_callback
        self._message_callback = message_callback

        self._state = JobState.PENDING
        self._tally = ExportOutcomeTally(total=self._total)
        self._lock = Lock()
        self._cancel_event = Event()
        self._current: Optional[str] = None
        self._progress: Tuple[int, int] = (0, max(self._total, 1))
        self._message = ""

    @property
    def category(self) -> ExportCategory:
        return self.plan.category

    def entry_name(self, item) -> str:
        return f"{self.filename_prefix}{item.name}{self.filename_suffix}"

    def cancel(self) -> None:
        """Request cancellation for the job.

        Cancellation is cooperative; the currently running item is allowed to
        finish. Remaining items are neither exported nor counted.
        """

        self._cancel_event.set()

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_event.is_set()

    def start(self) -> ExportResult:
        """Execute the job synchronously and return the final result."""

        with self._lock:
            if self._state is not JobState.PENDING:
                raise RuntimeError("Job has already been started")
            self._state = JobState.RUNNING

        logger.info(
            "Starting export job category=%s total_items=%d",
            self.category.value,
            self._total,
        )

        self.effective_plan = self._resolve_effective_plan()
        tracker = ChannelGroupTracker()

        for index, item in enumerate(self._items):
            if self._cancel_event.is_set():
                logger.info("Export cancelled by user after %d of %d images", index, self._total)
                break

            name = self.entry_name(item)
            with self._lock:
                self._current = name
            self._update_message(f"Exporting {index + 1} of {self._total}: {name}")
            self._update_progress(index, self._total)

            self._process_item(self.effective_plan, item, name, tracker)

        cancelled = self._tally.processed < self._total
        if self.write_metadata and self._tally.succeeded > 0:
            self._write_metadata(tracker)

        with self._lock:
            self._state = JobState.CANCELLED if cancelled else JobState.COMPLETED
            self._current = None

        result = self._tally.freeze(cancelled=cancelled)
        logger.info(
            "Export job finished state=%s succeeded=%d failed=%d skipped=%d",
            self._state.value,
            result.succeeded,
            result.failed,
            result.skipped,
        )
        self._update_progress(self._total, self._total)
        if cancelled:
            self._update_message(
                f"Export cancelled after {result.processed} of {self._total} images"
            )
        else:
            self._update_message("Export complete")
        return result

    def start_in_background(self, executor: Optional[ThreadPoolExecutor] = None) -> "Future[ExportResult]":
        """Run :meth:`start` on a worker thread and return its future."""

        if executor is not None:
            return executor.submit(self.start)
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="mosaic-export")
        try:
            return executor.submit(self.start)
        finally:
            executor.shutdown(wait=False)

    def status(self) -> JobStatus:
        """Return a snapshot of the current job status."""

        with self._lock:
            tally = self._tally
            done, total = self._progress
            return JobStatus(
                state=self._state,
                total=self._total,
                completed=tally.processed,
                succeeded=tally.succeeded,
                failed=tally.failed,
                skipped=tally.skipped,
                progress=(done / total) if total else 1.0,
                message=self._message,
                cancelled=self._state is JobState.CANCELLED,
                current=self._current,
            )

    # ------------------------------------------------------------------
    # Per-item processing
    # ------------------------------------------------------------------

    def _process_item(self, plan: ExportPlan, item, name: str, tracker: ChannelGroupTracker) -> None:
        handle = None
        try:
            handle = item.open()
            plan.export(handle, name)
            if self.export_annotations and plan.output_directory:
                self._export_annotations(handle, plan.output_directory, name)
        except IncompatibleImageError as exc:
            with self._lock:
                self._tally.record_skip(name, _error_message(exc))
            logger.warning("Skipping %s: %s", name, exc)
        except Exception as exc:
            with self._lock:
                self._tally.record_failure(name, _error_message(exc))
            logger.exception("Failed to export image: %s", name)
        else:
            with self._lock:
                self._tally.record_success()
            self._track_channel_group(tracker, plan, handle, name)
            if plan.add_to_workflow and self.workflow_script and self.workflow_recorder is not None:
                self._record_workflow_step(plan, item, handle)
        finally:
            if handle is not None:
                try:
                    handle.close()
                except Exception:
                    logger.warning("Error closing image for: %s", name, exc_info=True)

    def _export_annotations(self, handle, output_dir: str, name: str) -> None:
        if self.annotation_exporter is None:
            return
        try:
            self.annotation_exporter(handle, output_dir, name)
        except Exception as exc:
            logger.warning("GeoJSON export failed for %s: %s", name, exc)

    def _record_workflow_step(self, plan: ExportPlan, item, handle) -> None:
        step = WorkflowStep(step_name_for(plan.category), self.workflow_script)
        try:
            self.workflow_recorder(item, handle, step)
        except Exception:
            logger.warning("Failed to add workflow step for: %s", item.name, exc_info=True)

    def _track_channel_group(self, tracker: ChannelGroupTracker, plan: ExportPlan, handle, name: str) -> None:
        try:
            tracker.track(handle, plan.config.build_output_filename(name))
        except Exception as exc:
            logger.debug("Failed to track channel group for %s: %s", name, exc)

    def _write_metadata(self, tracker: ChannelGroupTracker) -> None:
        plan = self.effective_plan
        try:
            write_export_info(
                tracker.groups,
                plan.category,
                getattr(plan.config, "downsample", 1.0),
                plan.output_directory,
                tracker.consistent,
            )
        except Exception as exc:
            logger.warning("Failed to write metadata sidecar file: %s", exc)

    # ------------------------------------------------------------------
    # Global display range pre-scan
    # ------------------------------------------------------------------

    def _resolve_effective_plan(self) -> ExportPlan:
        plan = self.plan
        config = plan.config
        if (
            plan.category is not ExportCategory.RENDERED
            or config.display_mode is not DisplaySettingsMode.GLOBAL_MATCHED
            or self.global_range_scanner is None
            or not self._items
            or self._cancel_event.is_set()
        ):
            return plan

        self._update_message("Scanning images for display range matching...")

        def _scan_progress(index: int, scan_total: int) -> None:
            self._update_message(f"Scanning {index + 1} of {scan_total} for display ranges...")
            self._update_progress(index, scan_total + self._total)

        try:
            ranges = self.global_range_scanner(
                list(self._items),
                config.matched_display_percentile,
                config.scan_downsample,
                _scan_progress,
            )
        except Exception:
            logger.exception("Global display range scan failed; using per-image display settings")
            return plan

        settings = build_display_settings(ranges)
        if not settings:
            logger.warning("No global display ranges available; using per-image display settings")
            return plan

        logger.info("Global matched display ranges computed for %d channels", len(settings))
        return plan.with_config(config.with_display_settings(settings))

    # ------------------------------------------------------------------
    # Progress publishing
    # ------------------------------------------------------------------

    def _update_progress(self, done: int, total: int) -> None:
        with self._lock:
            self._progress = (done, total)
        callback = self._progress_callback
        if callback is None:
            return
        try:
            callback(done, total)
        except Exception:
            logger.exception("Progress callback raised an exception")

    def _update_message(self, message: str) -> None:
        with self._lock:
            self._message = message
        callback = self._message_callback
        if callback is None:
            return
        try:
            callback(message)
        except Exception:
            logger.exception("Message callback raised an exception")
