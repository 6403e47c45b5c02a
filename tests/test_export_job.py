import json
import os
import threading
import unittest
from tempfile import TemporaryDirectory

import numpy as np

from mosaic_export.export.categories import ExportCategory
from mosaic_export.export.config import DisplaySettingsMode, RawExportConfig, RenderedExportConfig
from mosaic_export.export.job import BatchExportJob, ExportResult, JobState
from mosaic_export.export.scanner import ChannelRange
from mosaic_export.export.strategies import ExportPlan, IncompatibleImageError
from mosaic_export.export.workflow import WorkflowStep

from .fakes import FakeHandle, FakeItem, make_item


def _items(*names):
    return [make_item(name, np.zeros((1, 4, 4), dtype=np.uint8)) for name in names]


class RecordingExporter:
    def __init__(self, failures=None) -> None:
        self.calls = []
        self.failures = dict(failures or {})

    def __call__(self, handle, config, name):
        self.calls.append((handle, config, name))
        error = self.failures.get(name)
        if error is not None:
            raise error
        return name


def _raw_plan(exporter, **config_kwargs):
    return ExportPlan.raw(RawExportConfig(**config_kwargs), exporter=exporter)


class BatchExportJobTests(unittest.TestCase):
    def test_all_items_succeed(self) -> None:
        items = _items("a", "b", "c")
        exporter = RecordingExporter()
        progress = []
        messages = []
        job = BatchExportJob(
            items=items,
            plan=_raw_plan(exporter),
            progress_callback=lambda done, total: progress.append((done, total)),
            message_callback=messages.append,
        )

        result = job.start()

        self.assertEqual((result.succeeded, result.failed, result.skipped), (3, 0, 0))
        self.assertFalse(result.cancelled)
        self.assertEqual([call[2] for call in exporter.calls], ["a", "b", "c"])
        self.assertEqual(progress, [(0, 3), (1, 3), (2, 3), (3, 3)])
        self.assertEqual(messages[0], "Exporting 1 of 3: a")
        self.assertEqual(messages[-1], "Export complete")
        for item in items:
            self.assertEqual(item.open_count, 1)
            self.assertEqual(item.handle.close_count, 1)

        status = job.status()
        self.assertEqual(status.state, JobState.COMPLETED)
        self.assertEqual(status.completed, 3)
        self.assertEqual(status.progress, 1.0)
        self.assertIsNone(status.current)

    def test_incompatible_images_are_skipped_and_errors_failed(self) -> None:
        items = _items("a", "b", "c")
        exporter = RecordingExporter(
            {"b": IncompatibleImageError("missing channel CD8"), "c": RuntimeError("boom")}
        )
        job = BatchExportJob(items=items, plan=_raw_plan(exporter))

        with self.assertLogs("mosaic_export.export.job", level="WARNING") as logs:
            result = job.start()

        self.assertEqual((result.succeeded, result.skipped, result.failed), (1, 1, 1))
        self.assertEqual(result.errors, ("b: missing channel CD8", "c: boom"))
        self.assertTrue(result.has_errors)
        self.assertEqual(result.summary(), "Exported 1 images. 1 skipped (incompatible). 1 failed.")
        self.assertTrue(any("Skipping b" in line for line in logs.output))
        self.assertTrue(any(line.startswith("ERROR") and "c" in line for line in logs.output))
        for item in items:
            self.assertEqual(item.handle.close_count, 1)

    def test_skips_alone_are_not_errors(self) -> None:
        exporter = RecordingExporter({"a": IncompatibleImageError("no")})
        result = BatchExportJob(items=_items("a", "b"), plan=_raw_plan(exporter)).start()

        self.assertFalse(result.has_errors)
        self.assertEqual(result.summary(), "Exported 1 images. 1 skipped (incompatible).")

    def test_open_failure_counts_as_failure_and_batch_continues(self) -> None:
        items = [FakeItem("broken", open_error=OSError("unreadable")), *_items("ok")]
        exporter = RecordingExporter()

        result = BatchExportJob(items=items, plan=_raw_plan(exporter)).start()

        self.assertEqual((result.succeeded, result.failed), (1, 1))
        self.assertEqual(result.errors, ("broken: unreadable",))
        self.assertEqual([call[2] for call in exporter.calls], ["ok"])

    def test_close_failure_does_not_change_classification(self) -> None:
        handle = FakeHandle("a", np.zeros((1, 2, 2), np.uint8), close_error=RuntimeError("close"))
        job = BatchExportJob(items=[FakeItem("a", handle)], plan=_raw_plan(RecordingExporter()))

        result = job.start()

        self.assertEqual(result.succeeded, 1)
        self.assertEqual(handle.close_count, 1)

    def test_cancel_stops_between_items(self) -> None:
        items = _items("a", "b", "c", "d", "e")
        job = None

        def exporter(handle, config, name):
            if name == "b":
                job.cancel()

        progress = []
        messages = []
        job = BatchExportJob(
            items=items,
            plan=_raw_plan(exporter),
            progress_callback=lambda done, total: progress.append((done, total)),
            message_callback=messages.append,
        )
        result = job.start()

        self.assertTrue(result.cancelled)
        self.assertEqual(result.total, 5)
        self.assertEqual(result.succeeded + result.failed + result.skipped, 2)
        self.assertEqual([item.open_count for item in items], [1, 1, 0, 0, 0])
        self.assertEqual(progress[-1], (5, 5))
        self.assertEqual(messages[-1], "Export cancelled after 2 of 5 images")
        self.assertEqual(job.status().state, JobState.CANCELLED)
        self.assertTrue(job.status().cancelled)

    def test_cancel_before_start_processes_nothing(self) -> None:
        items = _items("a", "b")
        job = BatchExportJob(items=items, plan=_raw_plan(RecordingExporter()))
        job.cancel()

        result = job.start()

        self.assertEqual(result.succeeded, 0)
        self.assertTrue(result.cancelled)
        self.assertEqual(items[0].open_count, 0)

    def test_filename_prefix_and_suffix_wrap_item_names(self) -> None:
        exporter = RecordingExporter()
        BatchExportJob(
            items=_items("slide1"),
            plan=_raw_plan(exporter),
            filename_prefix="run_",
            filename_suffix="_v2",
        ).start()

        self.assertEqual(exporter.calls[0][2], "run_slide1_v2")

    def test_status_reports_current_item_while_running(self) -> None:
        seen = []
        job = None

        def exporter(handle, config, name):
            status = job.status()
            seen.append((status.state, status.current, status.message))

        job = BatchExportJob(items=_items("a"), plan=_raw_plan(exporter))
        job.start()

        self.assertEqual(seen, [(JobState.RUNNING, "a", "Exporting 1 of 1: a")])

    def test_second_start_raises(self) -> None:
        job = BatchExportJob(items=_items("a"), plan=_raw_plan(RecordingExporter()))
        job.start()

        with self.assertRaises(RuntimeError):
            job.start()

    def test_raising_callbacks_are_ignored(self) -> None:
        def explode(*_args):
            raise ValueError("callback broke")

        job = BatchExportJob(
            items=_items("a", "b"),
            plan=_raw_plan(RecordingExporter()),
            progress_callback=explode,
            message_callback=explode,
        )

        with self.assertLogs("mosaic_export.export.job", level="ERROR"):
            result = job.start()

        self.assertEqual(result.succeeded, 2)

    def test_background_start_returns_future(self) -> None:
        started = threading.Event()

        def exporter(handle, config, name):
            started.set()

        job = BatchExportJob(items=_items("a", "b"), plan=_raw_plan(exporter))
        future = job.start_in_background()
        result = future.result(timeout=10)

        self.assertTrue(started.is_set())
        self.assertIsInstance(result, ExportResult)
        self.assertEqual(result.succeeded, 2)
        self.assertEqual(job.status().state, JobState.COMPLETED)


class AnnotationAndWorkflowTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = TemporaryDirectory()
        self.output_dir = self._tmp.name

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_annotation_exporter_runs_after_main_export(self) -> None:
        calls = []
        items = _items("a")
        job = BatchExportJob(
            items=items,
            plan=_raw_plan(RecordingExporter(), output_directory=self.output_dir),
            annotation_exporter=lambda handle, out, name: calls.append((handle, out, name)),
            export_annotations=True,
        )

        job.start()

        self.assertEqual(calls, [(items[0].handle, self.output_dir, "a")])

    def test_annotations_need_flag_and_output_directory(self) -> None:
        calls = []

        def annotate(*args):
            calls.append(args)

        BatchExportJob(
            items=_items("a"),
            plan=_raw_plan(RecordingExporter(), output_directory=self.output_dir),
            annotation_exporter=annotate,
        ).start()
        BatchExportJob(
            items=_items("b"),
            plan=_raw_plan(RecordingExporter()),
            annotation_exporter=annotate,
            export_annotations=True,
        ).start()

        self.assertEqual(calls, [])

    def test_annotation_failure_keeps_success(self) -> None:
        def annotate(handle, out, name):
            raise OSError("disk full")

        job = BatchExportJob(
            items=_items("a"),
            plan=_raw_plan(RecordingExporter(), output_directory=self.output_dir),
            annotation_exporter=annotate,
            export_annotations=True,
        )

        with self.assertLogs("mosaic_export.export.job", level="WARNING"):
            result = job.start()

        self.assertEqual((result.succeeded, result.failed), (1, 0))

    def test_workflow_step_recorded_for_successes_only(self) -> None:
        recorded = []
        items = _items("a", "b")
        exporter = RecordingExporter({"b": RuntimeError("boom")})

        BatchExportJob(
            items=items,
            plan=_raw_plan(exporter),
            workflow_script="export('raw')",
            workflow_recorder=lambda item, handle, step: recorded.append((item.name, step)),
        ).start()

        self.assertEqual(recorded, [("a", WorkflowStep("Raw Image Export", "export('raw')"))])

    def test_workflow_needs_script_and_config_flag(self) -> None:
        recorded = []

        def recorder(item, handle, step):
            recorded.append(step)

        BatchExportJob(
            items=_items("a"),
            plan=_raw_plan(RecordingExporter(), add_to_workflow=False),
            workflow_script="script",
            workflow_recorder=recorder,
        ).start()
        BatchExportJob(
            items=_items("b"),
            plan=_raw_plan(RecordingExporter()),
            workflow_recorder=recorder,
        ).start()

        self.assertEqual(recorded, [])

    def test_recorder_failure_keeps_success(self) -> None:
        def recorder(item, handle, step):
            raise RuntimeError("history locked")

        result = BatchExportJob(
            items=_items("a"),
            plan=_raw_plan(RecordingExporter()),
            workflow_script="script",
            workflow_recorder=recorder,
        ).start()

        self.assertEqual(result.succeeded, 1)

    def test_metadata_sidecar_written_when_anything_succeeds(self) -> None:
        BatchExportJob(
            items=_items("a", "b"),
            plan=_raw_plan(RecordingExporter(), output_directory=self.output_dir),
        ).start()

        with open(os.path.join(self.output_dir, "export_info.json"), encoding="utf-8") as fh:
            info = json.load(fh)
        self.assertEqual(info["category"], ExportCategory.RAW.display_name)
        self.assertEqual(info["group_count"], 1)
        self.assertTrue(info["channels_consistent"])
        self.assertEqual(info["groups"][0]["filenames"], ["a.tif", "b.tif"])

    def test_metadata_sidecar_skipped_without_successes(self) -> None:
        exporter = RecordingExporter({"a": RuntimeError("boom")})
        BatchExportJob(
            items=_items("a"),
            plan=_raw_plan(exporter, output_directory=self.output_dir),
        ).start()

        self.assertFalse(os.path.exists(os.path.join(self.output_dir, "export_info.json")))


class GlobalMatchedPrescanTests(unittest.TestCase):
    def _plan(self, exporter, mode=DisplaySettingsMode.GLOBAL_MATCHED):
        return ExportPlan.rendered(
            RenderedExportConfig(display_mode=mode, matched_display_percentile=0.5, scan_downsample=16.0),
            exporter=exporter,
        )

    def test_scanned_ranges_are_injected_into_rendered_config(self) -> None:
        scanner_calls = []

        def scanner(items, percentile, scan_downsample, progress_callback):
            scanner_calls.append((len(items), percentile, scan_downsample))
            progress_callback(0, 2)
            progress_callback(1, 2)
            return [ChannelRange("Channel_0", 0x00FF00, 10.0, 200.0)]

        exporter = RecordingExporter()
        progress = []
        messages = []
        job = BatchExportJob(
            items=_items("a", "b"),
            plan=self._plan(exporter),
            global_range_scanner=scanner,
            progress_callback=lambda done, total: progress.append((done, total)),
            message_callback=messages.append,
        )
        job.start()

        self.assertEqual(scanner_calls, [(2, 0.5, 16.0)])
        self.assertEqual(messages[0], "Scanning images for display range matching...")
        self.assertEqual(progress[:2], [(0, 4), (1, 4)])
        for _handle, config, _name in exporter.calls:
            settings = config.display_settings["Channel_0"]
            self.assertEqual((settings.contrast_min, settings.contrast_max), (10.0, 200.0))
            self.assertEqual(settings.color, (0.0, 1.0, 0.0))
        self.assertEqual(job.plan.config.display_settings, {})
        self.assertIn("Channel_0", job.effective_plan.config.display_settings)

    def test_empty_scan_falls_back_to_unchanged_config(self) -> None:
        exporter = RecordingExporter()
        plan = self._plan(exporter)

        with self.assertLogs("mosaic_export.export.job", level="WARNING"):
            result = BatchExportJob(
                items=_items("a"),
                plan=plan,
                global_range_scanner=lambda *args: [],
            ).start()

        self.assertEqual(result.succeeded, 1)
        self.assertIs(exporter.calls[0][1], plan.config)

    def test_per_image_mode_skips_scan(self) -> None:
        calls = []

        def scanner(*args):
            calls.append(args)
            return []

        BatchExportJob(
            items=_items("a"),
            plan=self._plan(RecordingExporter(), mode=DisplaySettingsMode.PER_IMAGE),
            global_range_scanner=scanner,
        ).start()

        self.assertEqual(calls, [])

    def test_default_scanner_reads_every_item(self) -> None:
        items = [make_item(n, np.full((1, 4, 4), v, dtype=np.uint8)) for n, v in (("a", 10), ("b", 90))]
        exporter = RecordingExporter()

        BatchExportJob(items=items, plan=self._plan(exporter)).start()

        settings = exporter.calls[0][1].display_settings["Channel_0"]
        self.assertEqual(settings.contrast_min, 10.0)
        self.assertEqual(settings.contrast_max, 90.0)
        for item in items:
            self.assertEqual(item.handle.close_count, item.open_count)


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
