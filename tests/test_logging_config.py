"""Tests for structured logging and fetch-id correlation."""

import io
import json
import logging

import pytest

from stealthfetch.core import metrics
from stealthfetch.core.fetch_context import bind_fetch_id, get_fetch_id, new_fetch_id
from stealthfetch.core.logging_config import (
    FetchIDFilter,
    PlaywrightPipeFilter,
    configure_logging,
)


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


def make_record(msg="hello"):
    return logging.LogRecord("stealthfetch.test", logging.INFO, __file__, 1, msg, None, None)


class TestFetchContext:
    def test_bind_and_reset(self):
        assert get_fetch_id() == ""
        with bind_fetch_id("abc123") as fid:
            assert fid == "abc123"
            assert get_fetch_id() == "abc123"
        assert get_fetch_id() == ""

    def test_generated_ids_are_unique(self):
        assert new_fetch_id() != new_fetch_id()
        with bind_fetch_id() as fid:
            assert len(fid) == 12


class TestFilters:
    def test_fetch_id_injected(self):
        record = make_record()
        with bind_fetch_id("f00d"):
            assert FetchIDFilter().filter(record) is True
        assert record.fetch_id == "f00d"

    def test_pipe_closed_dropped(self):
        pipe_filter = PlaywrightPipeFilter()
        assert pipe_filter.filter(make_record("pipe closed by peer")) is False
        assert pipe_filter.filter(make_record("navigation finished")) is True


class TestConfigureLogging:
    def test_json_output(self, restore_root_logger):
        stream = io.StringIO()
        configure_logging("json", "DEBUG", stream=stream)

        with bind_fetch_id("beef"):
            logging.getLogger("stealthfetch.test").info("fetched page")

        line = json.loads(stream.getvalue().strip().splitlines()[-1])
        assert line["message"] == "fetched page"
        assert line["level"] == "INFO"
        assert line["logger"] == "stealthfetch.test"
        assert line["fetch_id"] == "beef"
        assert "timestamp" in line

    def test_text_output(self, restore_root_logger):
        stream = io.StringIO()
        configure_logging("text", "INFO", stream=stream)

        logging.getLogger("stealthfetch.test").debug("hidden")
        with bind_fetch_id("cafe"):
            logging.getLogger("stealthfetch.test").warning("visible")

        output = stream.getvalue()
        assert "hidden" not in output
        assert "WARNING stealthfetch.test [cafe] visible" in output

    def test_playwright_logger_quieted(self, restore_root_logger):
        configure_logging("text", "DEBUG", stream=io.StringIO())
        assert logging.getLogger("playwright").level == logging.ERROR


class TestMetrics:
    def test_exposition_lists_fetch_metrics(self):
        metrics.fetch_requests_total.labels(status="success").inc()
        output = metrics.get_metrics().decode()
        assert "stealthfetch_fetch_requests_total" in output
        assert metrics.get_metrics_content_type().startswith("text/plain")
