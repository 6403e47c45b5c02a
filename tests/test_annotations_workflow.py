import json
import os
import unittest
from tempfile import TemporaryDirectory

import numpy as np

from mosaic_export.export.annotations import export_geojson
from mosaic_export.export.categories import ExportCategory
from mosaic_export.export.workflow import JsonHistoryRecorder, WorkflowStep, step_name_for

from .fakes import FakeHandle, FakeItem

_FEATURE = {
    "type": "Feature",
    "geometry": {"type": "Point", "coordinates": [1.0, 2.0]},
    "properties": {"classification": "Tumor"},
}


class GeoJsonExportTests(unittest.TestCase):
    def test_writes_feature_collection(self) -> None:
        handle = FakeHandle("img", np.zeros((1, 2, 2)), annotations=[_FEATURE])

        with TemporaryDirectory() as out:
            path = export_geojson(handle, out, "core:1")
            with open(path, encoding="utf-8") as fh:
                payload = json.load(fh)

        self.assertEqual(os.path.basename(path), "core1.geojson")
        self.assertEqual(payload, {"type": "FeatureCollection", "features": [_FEATURE]})

    def test_no_features_writes_nothing(self) -> None:
        handle = FakeHandle("img", np.zeros((1, 2, 2)))

        with TemporaryDirectory() as out:
            self.assertIsNone(export_geojson(handle, out, "img"))
            self.assertEqual(os.listdir(out), [])

    def test_failures_are_wrapped_in_os_error(self) -> None:
        class BrokenHandle:
            def annotations(self):
                raise KeyError("hierarchy")

        with TemporaryDirectory() as out:
            with self.assertRaises(OSError):
                export_geojson(BrokenHandle(), out, "img")


class WorkflowTests(unittest.TestCase):
    def test_step_names_per_category(self) -> None:
        self.assertEqual(step_name_for(ExportCategory.RENDERED), "Rendered Image Export")
        self.assertEqual(step_name_for(ExportCategory.MASK), "Mask Export")
        self.assertEqual(step_name_for(ExportCategory.RAW), "Raw Image Export")
        self.assertEqual(step_name_for(ExportCategory.TILED), "Tiled Export")

    def test_history_recorder_appends_steps(self) -> None:
        with TemporaryDirectory() as folder:
            item = FakeItem("slide")
            item.path = os.path.join(folder, "slide.ome.tif")
            recorder = JsonHistoryRecorder()

            recorder(item, None, WorkflowStep("Raw Image Export", "first()"))
            recorder(item, None, WorkflowStep("Tiled Export", "second()"))

            with open(item.path + ".history.json", encoding="utf-8") as fh:
                history = json.load(fh)

        self.assertEqual([entry["name"] for entry in history], ["Raw Image Export", "Tiled Export"])
        self.assertEqual(history[1]["script"], "second()")
        self.assertIn("timestamp", history[0])


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
