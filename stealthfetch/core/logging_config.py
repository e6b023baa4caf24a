"""Log setup shared by the library and the CLI.

``LOG_FORMAT=json`` writes one JSON object per line, ``text`` a readable
line. Both carry the fetch_id of the ``fetch_html`` call that emitted them.
"""

import logging
import sys

from pythonjsonlogger.json import JsonFormatter

from stealthfetch.core.fetch_context import get_fetch_id

TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s [%(fetch_id)s] %(message)s"
JSON_FIELDS = "%(asctime)s %(name)s %(levelname)s %(message)s %(fetch_id)s"


class FetchIDFilter(logging.Filter):
    """Stamp records with the current fetch_id ("" outside a fetch)."""

    def filter(self, record):
        record.fetch_id = get_fetch_id()
        return True


class PlaywrightPipeFilter(logging.Filter):
    """Drop "pipe closed by peer" lines.

    A crashed browser makes the Playwright driver log one per pending
    write; the pool already reports the crash once.
    """

    def filter(self, record):
        return "pipe closed by peer" not in record.getMessage()


def _formatter(log_format: str) -> logging.Formatter:
    if log_format == "json":
        return JsonFormatter(
            fmt=JSON_FIELDS,
            rename_fields={"asctime": "timestamp", "levelname": "level", "name": "logger"},
        )
    return logging.Formatter(TEXT_FORMAT)


def configure_logging(log_format: str = "json", log_level: str = "INFO", stream=None):
    """Replace the root handlers with a single stream handler.

    Returns the handler so callers (tests, the CLI) can inspect or remove it.
    """
    handler = logging.StreamHandler(stream or sys.stdout)
    handler.addFilter(FetchIDFilter())
    handler.addFilter(PlaywrightPipeFilter())
    handler.setFormatter(_formatter(log_format))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    logging.getLogger("playwright").setLevel(logging.ERROR)
    return handler
