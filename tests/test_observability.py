"""Tests for observability: correlation ids, JSON logs, metrics and the token audit."""

from __future__ import annotations

import csv
import json
import logging
import tempfile
import unittest
from pathlib import Path

from clirun_mcp.audit import TokenAuditWriter
from clirun_mcp.config import ObservabilityConfig
from clirun_mcp.observability import (
    JsonLogFormatter,
    MetricsCollector,
    ObservabilityContext,
    generate_correlation_id,
    setup_logging,
)


def make_record(msg: str = "Test") -> logging.LogRecord:
    return logging.LogRecord(
        name="clirun-mcp.server",
        level=logging.INFO,
        pathname="",
        lineno=0,
        msg=msg,
        args=(),
        exc_info=None,
    )


class TestCorrelationId(unittest.TestCase):

    def test_generates_8_char_id(self):
        self.assertEqual(len(generate_correlation_id()), 8)

    def test_generates_unique_ids(self):
        ids = {generate_correlation_id() for _ in range(100)}
        self.assertEqual(len(ids), 100)


class TestJsonLogFormatter(unittest.TestCase):
    """Test JSON log formatting."""

    def test_basic_format(self):
        data = json.loads(JsonLogFormatter().format(make_record("Hello world")))

        self.assertEqual(data["level"], "info")
        self.assertEqual(data["logger"], "clirun-mcp.server")
        self.assertEqual(data["msg"], "Hello world")
        self.assertIn("ts", data)

    def test_includes_correlation_id(self):
        record = make_record()
        record.correlation_id = "abc12345"
        data = json.loads(JsonLogFormatter(include_correlation_id=True).format(record))
        self.assertEqual(data["cid"], "abc12345")

    def test_excludes_correlation_id_when_disabled(self):
        record = make_record()
        record.correlation_id = "abc12345"
        data = json.loads(JsonLogFormatter(include_correlation_id=False).format(record))
        self.assertNotIn("cid", data)

    def test_includes_tool_fields(self):
        record = make_record()
        record.server = "git"
        record.tool = "status"
        record.latency_ms = 12.5
        record.compacted = True
        record.category = "not-found"
        data = json.loads(JsonLogFormatter().format(record))

        self.assertEqual(data["server"], "git")
        self.assertEqual(data["tool"], "status")
        self.assertEqual(data["latency_ms"], 12.5)
        self.assertTrue(data["compacted"])
        self.assertEqual(data["category"], "not-found")


class TestMetricsCollector(unittest.TestCase):

    def test_records_calls_errors_and_compaction(self):
        metrics = MetricsCollector()
        metrics.record_call("run", 10.0, True, tokens_in=5, tokens_out=20, compacted=True)
        metrics.record_call("run", 30.0, False)
        metrics.record_call("status", 5.0, True)

        stats = metrics.get_stats()
        self.assertEqual(stats["total_requests"], 3)
        self.assertEqual(stats["total_errors"], 1)
        self.assertEqual(stats["tokens_in"], 5)
        self.assertEqual(stats["tokens_out"], 20)
        self.assertEqual(stats["tools"]["run"]["calls"], 2)
        self.assertEqual(stats["tools"]["run"]["errors"], 1)
        self.assertEqual(stats["tools"]["run"]["compacted"], 1)
        self.assertEqual(stats["tools"]["run"]["avg_ms"], 20.0)
        self.assertEqual(stats["tools"]["run"]["min_ms"], 10.0)
        self.assertEqual(stats["tools"]["run"]["max_ms"], 30.0)

    def test_reset(self):
        metrics = MetricsCollector()
        metrics.record_call("run", 1.0, True)
        metrics.reset()

        stats = metrics.get_stats()
        self.assertEqual(stats["total_requests"], 0)
        self.assertEqual(stats["tools"], {})


class TestTokenAuditWriter(unittest.TestCase):

    def test_writes_header_and_rows(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "nested" / "audit.csv"
            writer = TokenAuditWriter(path)
            writer.record("cid1", "git", "log", 100, 40, True, 12.345, True)
            writer.record("cid2", "git", "status", 10, 10, False, 3.0, False)

            with open(path, newline="") as f:
                rows = list(csv.reader(f))

        self.assertEqual(rows[0], TokenAuditWriter.CSV_HEADERS)
        self.assertEqual(rows[1][1:], ["cid1", "git", "log", "100", "40", "1", "12.35", "ok"])
        self.assertEqual(rows[2][-1], "error")

    def test_disabled_writes_nothing(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "audit.csv"
            TokenAuditWriter(path, enabled=False).record("c", "git", "log", 1, 1, False, 1.0, True)
            self.assertFalse(path.exists())


class TestObservabilityContext(unittest.TestCase):

    def test_disabled_context_records_nothing(self):
        obs = ObservabilityContext(ObservabilityConfig(enabled=False), "process")
        obs.record("cid", "run", 1.0, True)
        self.assertEqual(obs.get_stats()["total_requests"], 0)

    def test_enabled_context_writes_audit(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "audit.csv"
            config = ObservabilityConfig(
                enabled=True, csv_token_audit_enabled=True, csv_path=str(path)
            )
            obs = ObservabilityContext(config, "process")
            obs.record(obs.correlation_id(), "run", 2.0, True, tokens_in=3, tokens_out=4)

            with open(path, newline="") as f:
                rows = list(csv.reader(f))

        self.assertEqual(len(rows), 2)
        self.assertEqual(rows[1][2:4], ["process", "run"])
        self.assertEqual(obs.get_stats()["total_requests"], 1)


class TestSetupLogging(unittest.TestCase):

    def test_json_handler(self):
        logger = setup_logging(ObservabilityConfig(log_format="json", log_level="debug"), "clirun-test-json")

        self.assertEqual(logger.level, logging.DEBUG)
        self.assertEqual(len(logger.handlers), 1)
        self.assertIsInstance(logger.handlers[0].formatter, JsonLogFormatter)
        self.assertFalse(logger.propagate)

    def test_text_handler_replaces_previous(self):
        setup_logging(ObservabilityConfig(log_format="json"), "clirun-test-text")
        logger = setup_logging(ObservabilityConfig(log_format="text"), "clirun-test-text")

        self.assertEqual(len(logger.handlers), 1)
        self.assertNotIsInstance(logger.handlers[0].formatter, JsonLogFormatter)


if __name__ == "__main__":
    unittest.main()
