"""
Tests for structured install events.
"""

import json
import logging

from depfarm.structured_logging import (
    StructuredFormatter,
    clear_run_context,
    get_downloader_logger,
    log_stage_start,
    set_run_context,
)


def test_formatter_emits_extra_fields_as_json():
    record = logging.LogRecord("depfarm.events.install", logging.INFO, "", 0, "", (), None)
    record.event_type = "install_started"
    record.projects = 3

    entry = json.loads(StructuredFormatter().format(record))

    assert entry["level"] == "INFO"
    assert entry["component"] == "depfarm.events.install"
    assert entry["event_type"] == "install_started"
    assert entry["projects"] == 3
    assert "msg" not in entry


def test_run_context_is_attached_to_events():
    events = get_downloader_logger()
    set_run_context(run_id="abc123")
    try:
        log_stage_start(2, packages=5, versions=7)
        assert events.run_context == {"run_id": "abc123", "stage": 2}
    finally:
        clear_run_context()

    assert events.run_context == {}
