"""
Field Closeout — Structured Logging Tests

Tests:
  - trace ids are unique and OTel-shaped
  - every pipeline entry carries trace_id and work_id
  - step start/end share a span_id and end carries latency
  - failed/blocked step ends log at WARNING
  - remote payloads only appear at DEBUG
  - text format for local runs
"""

import io
import json
import os
import sys
import unittest

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from fieldengine.logging import (
    PipelineLogger, configure_logging, generate_span_id, generate_trace_id, get_logger,
)


def _capture(level="DEBUG", fmt="json"):
    buf = io.StringIO()
    configure_logging(level=level, stream=buf, fmt=fmt)
    return buf


def _parse(buf):
    buf.seek(0)
    return [json.loads(line) for line in buf.read().splitlines() if line.strip()]


class TestIds(unittest.TestCase):

    def test_unique_trace_ids(self):
        ids = {generate_trace_id() for _ in range(100)}
        self.assertEqual(len(ids), 100)

    def test_id_lengths(self):
        self.assertEqual(len(generate_trace_id()), 32)
        self.assertEqual(len(generate_span_id()), 16)

    def test_pipeline_logger_trace_id(self):
        self.assertEqual(PipelineLogger(work_id="WO-1", trace_id="abc").trace_id, "abc")
        self.assertNotEqual(PipelineLogger().trace_id, PipelineLogger().trace_id)


class TestPipelineEntries(unittest.TestCase):

    def test_entry_schema(self):
        buf = _capture()
        plog = PipelineLogger(work_id="WO-1001", kind="terminate")
        plog.on_run_start()
        entries = _parse(buf)
        self.assertEqual(len(entries), 1)
        entry = entries[0]
        for key in ("timestamp", "level", "logger", "message", "service.name",
                    "trace_id", "work_id", "kind", "action"):
            self.assertIn(key, entry)
        self.assertEqual(entry["work_id"], "WO-1001")
        self.assertEqual(entry["action"], "run_start")
        self.assertEqual(entry["logger"], "fieldops.trace")

    def test_step_span_pairing(self):
        buf = _capture()
        plog = PipelineLogger(work_id="WO-1")
        plog.on_step_start("signal")
        plog.on_step_end("signal", "applied")
        start, end = _parse(buf)
        self.assertEqual(start["span_id"], end["span_id"])
        self.assertIn("latency_ms", end)
        self.assertEqual(end["status"], "applied")

    def test_failed_step_is_warning(self):
        buf = _capture()
        plog = PipelineLogger(work_id="WO-1")
        plog.on_step_end("signal", "blocked", reason="voip")
        self.assertEqual(_parse(buf)[0]["level"], "WARNING")

    def test_payload_only_at_debug(self):
        buf = _capture(level="INFO")
        plog = PipelineLogger(work_id="WO-1")
        plog.on_remote_call("submit_completion", {"workInfo": {"WRK_ID": "WO-1"}})
        self.assertEqual(_parse(buf), [])

        buf = _capture(level="DEBUG")
        plog.on_remote_call("submit_completion", {"workInfo": {"WRK_ID": "WO-1"}})
        entry = _parse(buf)[0]
        self.assertEqual(entry["payload"]["workInfo"]["WRK_ID"], "WO-1")

    def test_run_end_fields(self):
        buf = _capture()
        PipelineLogger(work_id="WO-1").on_run_end("completed", 1.23456, steps_applied=3)
        entry = _parse(buf)[0]
        self.assertEqual(entry["status"], "completed")
        self.assertEqual(entry["elapsed_s"], 1.235)
        self.assertEqual(entry["steps_applied"], 3)

    def test_classification_reason_truncated(self):
        buf = _capture()
        PipelineLogger(work_id="WO-1").on_classification("signal", "blocking", "x" * 800)
        self.assertEqual(len(_parse(buf)[0]["reason"]), 500)


class TestFormats(unittest.TestCase):

    def test_module_logger_json(self):
        buf = _capture(level="INFO")
        get_logger("pipeline").info("Work order completed: work=%s", "WO-9")
        entry = _parse(buf)[0]
        self.assertEqual(entry["message"], "Work order completed: work=WO-9")
        self.assertEqual(entry["logger"], "fieldops.pipeline")

    def test_text_format(self):
        buf = _capture(level="INFO", fmt="text")
        get_logger("pipeline").warning("plain line")
        buf.seek(0)
        line = buf.read()
        self.assertIn("WARNING", line)
        self.assertIn("fieldops.pipeline: plain line", line)

    def test_exception_fields(self):
        buf = _capture(level="INFO")
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            get_logger("pipeline").error("failed", exc_info=True)
        entry = _parse(buf)[0]
        self.assertEqual(entry["exception.type"], "RuntimeError")
        self.assertEqual(entry["exception.message"], "boom")


if __name__ == "__main__":
    unittest.main()
