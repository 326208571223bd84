"""Tests for cycle metrics and logging helpers."""

from __future__ import annotations

import logging

import pytest

from replisync.logging_utils import configure_logging, emit
from replisync.metrics import SyncMetrics, TargetMetrics


class TestSyncMetrics:
    def test_record(self):
        metrics = SyncMetrics()
        metrics.record(0, rows_synced=3, statements_executed=1)
        metrics.record(0, rows_synced=2)
        metrics.record(1, rows_failed=1)

        assert metrics.target(0).rows_synced == 5
        assert metrics.rows_synced == 5
        assert metrics.rows_failed == 1

    def test_unknown_counter(self):
        with pytest.raises(AttributeError):
            SyncMetrics().record(0, rows_lost=1)

    def test_to_dict(self):
        metrics = SyncMetrics(rows_loaded=4)
        metrics.record(1, rows_skipped=2)
        data = metrics.to_dict()

        assert data["rows_loaded"] == 4
        assert data["targets"]["1"]["rows_skipped"] == 2
        assert set(data["targets"]["1"]) == set(TargetMetrics().to_dict())


class TestEmit:
    def test_logs_and_forwards(self, caplog):
        logger = logging.getLogger("replisync.test")
        received = []

        with caplog.at_level(logging.INFO, logger="replisync.test"):
            emit(logger, received.append, "3 Customer rows to sync.")

        assert received == ["3 Customer rows to sync."]
        assert "3 Customer rows to sync." in caplog.text

    def test_without_sink(self, caplog):
        logger = logging.getLogger("replisync.test")
        with caplog.at_level(logging.WARNING, logger="replisync.test"):
            emit(logger, None, "careful", logging.WARNING)
        assert "careful" in caplog.text

    def test_sink_errors_are_logged(self, caplog):
        logger = logging.getLogger("replisync.test")

        def sink(message: str) -> None:
            raise RuntimeError("sink down")

        with caplog.at_level(logging.WARNING, logger="replisync.test"):
            emit(logger, sink, "hello")

        assert "Log sink raised" in caplog.text


class TestConfigureLogging:
    def test_single_handler(self):
        configure_logging("DEBUG")
        configure_logging("INFO")
        package_logger = logging.getLogger("replisync")
        handlers = [h for h in package_logger.handlers if getattr(h, "_replisync", False)]
        assert len(handlers) == 1
        assert package_logger.level == logging.INFO
