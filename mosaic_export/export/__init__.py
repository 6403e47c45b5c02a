"""Batch export: categories, configs, strategies and the job runner."""

from .categories import ExportCategory, OutputFormat
from .config import (
    DisplaySettingsMode,
    MaskExportConfig,
    MaskType,
    RawExportConfig,
    RenderedExportConfig,
    TiledExportConfig,
    sanitize_filename,
)
from .job import BatchExportJob, ExportOutcomeTally, ExportResult, JobState, JobStatus
from .scanner import ChannelRange, build_display_settings, compute_global_ranges
from .strategies import ExportPlan, IncompatibleImageError
from .workflow import JsonHistoryRecorder, WorkflowStep, step_name_for

__all__ = [
    "BatchExportJob",
    "ChannelRange",
    "DisplaySettingsMode",
    "ExportCategory",
    "ExportOutcomeTally",
    "ExportPlan",
    "ExportResult",
    "IncompatibleImageError",
    "JobState",
    "JobStatus",
    "JsonHistoryRecorder",
    "MaskExportConfig",
    "MaskType",
    "OutputFormat",
    "RawExportConfig",
    "RenderedExportConfig",
    "TiledExportConfig",
    "WorkflowStep",
    "build_display_settings",
    "compute_global_ranges",
    "sanitize_filename",
    "step_name_for",
]
