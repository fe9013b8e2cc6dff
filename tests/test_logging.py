"""Tests for the JSON log formatter and context logger."""

import json
import logging

from demand_engine.logging_config import (
    CustomJsonFormatter,
    LoggerAdapter,
    get_logger,
    mask_voter_key,
)


def _format(**extra) -> dict:
    formatter = CustomJsonFormatter("%(timestamp)s %(level)s %(name)s %(message)s")
    record = logging.LogRecord(
        name="demand_engine.aggregate.store",
        level=logging.WARNING,
        pathname="store.py",
        lineno=42,
        msg="Status override on 012345",
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return json.loads(formatter.format(record))


def test_demand_context_grouped():
    data = _format(barcode="012345", actor="admin")

    assert data["demand"] == {"barcode": "012345", "actor": "admin"}
    assert "barcode" not in data
    assert data["level"] == "WARNING"
    assert data["source"] == "store.py:42"


def test_plain_record_has_no_demand_block():
    data = _format()
    assert "demand" not in data
    assert data["message"] == "Status override on 012345"


def test_voter_key_masked():
    data = _format(voter_key="device-fingerprint-abc")

    assert data["voter_key"] == mask_voter_key("device-fingerprint-abc")
    assert "device-fingerprint-abc" not in json.dumps(data)


def test_get_logger_binds_context(caplog):
    logger = get_logger("demand_engine.test", barcode="012345", component="worker")
    assert isinstance(logger, LoggerAdapter)

    with caplog.at_level(logging.INFO, logger="demand_engine.test"):
        logger.info("refreshed", extra={"event_type": "scan"})

    record = caplog.records[-1]
    assert record.barcode == "012345"
    assert record.component == "worker"
    assert record.event_type == "scan"
