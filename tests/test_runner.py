import logging
import os
import unittest
from pathlib import Path
from tempfile import TemporaryDirectory
from unittest.mock import patch

import numpy as np
import tifffile

from mosaic_export.export.config import RawExportConfig
from mosaic_export.export.strategies import ExportPlan
from mosaic_export.runner import LOG_LEVEL_ENV, configure_logging, run_batch_export


class RunBatchExportTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp_dir = TemporaryDirectory()
        self.tmp_root = Path(self._tmp_dir.name)

    def tearDown(self) -> None:
        self._tmp_dir.cleanup()

    def _write_images(self, folder: Path, *names: str) -> None:
        folder.mkdir(parents=True, exist_ok=True)
        for name in names:
            tifffile.imwrite(str(folder / name), np.ones((2, 8, 8), dtype=np.uint16), photometric="minisblack")

    def test_exports_every_image_in_folder(self) -> None:
        images = self.tmp_root / "images"
        output = self.tmp_root / "out"
        self._write_images(images, "a.tif", "b.ome.tif")
        plan = ExportPlan.raw(RawExportConfig(output_directory=str(output), downsample=2.0))

        result = run_batch_export(images, plan)

        self.assertEqual(result.succeeded, 2)
        self.assertEqual(tifffile.imread(str(output / "a.tif")).shape, (2, 4, 4))
        self.assertTrue((output / "b.tif").exists())
        self.assertTrue((output / "export_info.json").exists())

    def test_background_mode_returns_job_and_future(self) -> None:
        images = self.tmp_root / "images"
        self._write_images(images, "a.tif")
        calls = []
        plan = ExportPlan.raw(RawExportConfig(), exporter=lambda handle, config, name: calls.append(name))

        job, future = run_batch_export(images, plan, background=True, filename_prefix="p_")

        self.assertEqual(future.result(timeout=10).succeeded, 1)
        self.assertEqual(calls, ["p_a"])
        self.assertEqual(job.status().completed, 1)

    def test_missing_or_invalid_directory(self) -> None:
        plan = ExportPlan.raw(RawExportConfig())
        with self.assertRaises(FileNotFoundError):
            run_batch_export(self.tmp_root / "missing", plan)

        not_a_dir = self.tmp_root / "file.txt"
        not_a_dir.write_text("x")
        with self.assertRaises(NotADirectoryError):
            run_batch_export(not_a_dir, plan)


class ConfigureLoggingTests(unittest.TestCase):
    def setUp(self) -> None:
        self.package_logger = logging.getLogger("mosaic_export")
        self._previous_level = self.package_logger.level

    def tearDown(self) -> None:
        self.package_logger.setLevel(self._previous_level)

    def test_level_from_environment(self) -> None:
        with patch.dict(os.environ, {LOG_LEVEL_ENV: "debug"}):
            configure_logging()
        self.assertEqual(self.package_logger.level, logging.DEBUG)

    def test_explicit_level_wins(self) -> None:
        with patch.dict(os.environ, {LOG_LEVEL_ENV: "debug"}):
            configure_logging(logging.WARNING)
        self.assertEqual(self.package_logger.level, logging.WARNING)

    def test_unknown_level_rejected(self) -> None:
        with self.assertRaises(ValueError):
            configure_logging("chatty")


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
