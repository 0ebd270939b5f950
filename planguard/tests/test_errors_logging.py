"""Error taxonomy, structured logging, models and database plumbing."""

import json
import logging
import sys
from datetime import datetime, timedelta, timezone

import pytest

from planguard.core.clock import ensure_utc, to_epoch
from planguard.core.config import settings
from planguard.core.errors import (
    ConfigurationError,
    FeatureDeniedError,
    LimitBlockedError,
    LockContentionError,
    PlanGuardError,
    PlanNotFoundError,
)
from planguard.core.logging import JsonFormatter, PrettyFormatter, _safe_truncate, log_event
from planguard.models.owner import OwnerRef
from planguard.models.result import LimitState, Result, ResultMetadata


def _record(msg="hello", **extra):
    record = logging.LogRecord("planguard", logging.INFO, __file__, 1, msg, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


@pytest.mark.parametrize(
    "error,code,status",
    [
        (ConfigurationError("bad"), "configuration_error", 500),
        (PlanNotFoundError("missing"), "plan_not_found", 404),
        (LockContentionError("busy"), "lock_contention", 503),
        (FeatureDeniedError("nope", feature_key="sso"), "feature_denied", 403),
        (PlanGuardError("custom", code="teapot", status_code=418), "teapot", 418),
    ],
)
def test_error_codes(error, code, status):
    assert error.code == code
    assert error.status_code == status
    assert isinstance(error, PlanGuardError)


def test_limit_blocked_error_carries_result():
    result = Result.denied("Over the limit", limit_key="seats", owner="org")
    error = LimitBlockedError(result)
    assert error.message == "Over the limit"
    assert error.limit_key == "seats"
    assert error.owner == "org"
    assert error.result is result


def test_json_formatter_includes_context():
    line = JsonFormatter().format(_record(owner="Organization:1", limit_key="seats", state="blocked"))
    payload = json.loads(line)
    assert payload["message"] == "hello"
    assert payload["logger"] == "planguard"
    assert payload["owner"] == "Organization:1"
    assert payload["state"] == "blocked"
    assert payload["timestamp"].endswith("Z")
    assert "requested" not in payload


def test_json_formatter_includes_exception():
    try:
        raise RuntimeError("boom")
    except RuntimeError:
        record = _record()
        record.exc_info = sys.exc_info()
    payload = json.loads(JsonFormatter().format(record))
    assert "RuntimeError: boom" in payload["exc_info"]


def test_pretty_formatter():
    line = PrettyFormatter().format(_record("evaluated", limit_key="projects"))
    assert "INFO [planguard] limit_key=projects evaluated" in line


def test_log_event_attaches_extras(caplog):
    with caplog.at_level(logging.INFO, logger="planguard"):
        log_event(
            "warning",
            "callback_error",
            owner=OwnerRef(owner_type="Organization", owner_id="1"),
            limit_key="seats",
            error_code="callback_error",
            extra={"detail": "x" * 600},
        )

    record = caplog.records[-1]
    assert record.levelno == logging.WARNING
    assert record.owner == "Organization:1"
    assert record.error_code == "callback_error"
    assert record.detail.endswith("...<truncated>")


def test_log_event_configures_level_from_settings(monkeypatch):
    logger = logging.getLogger("planguard")
    previous_level = logger.level
    monkeypatch.setattr(logger, "handlers", [])
    monkeypatch.setattr(settings, "LOG_LEVEL", "WARNING")

    try:
        log_event("info", "quiet")
        assert logger.level == logging.WARNING
        assert len(logger.handlers) == 1
    finally:
        logger.setLevel(previous_level)


def test_safe_truncate():
    assert _safe_truncate("short") == "short"
    assert _safe_truncate("abcdef", limit=3) == "abc...<truncated>"

    class Unprintable:
        def __str__(self):
            raise ValueError("no")

    assert _safe_truncate(Unprintable()) == "<unserializable>"


def test_owner_ref():
    class Team:
        id = 9

    ref = OwnerRef.of(Team())
    assert ref == OwnerRef(owner_type="Team", owner_id="9")
    assert str(ref) == "Team:9"
    assert OwnerRef.of(ref) is ref
    with pytest.raises(ValueError):
        OwnerRef.of(object())


def test_result_predicates():
    grace = Result.in_grace(
        "over",
        limit_key="projects",
        metadata=ResultMetadata(current_usage=11, limit_amount=10, percent_used=100.0),
    )
    assert grace.state == LimitState.GRACE
    assert grace.success and not grace.failure
    assert not grace.ok and not grace.warning and not grace.blocked
    assert grace.to_dict()["metadata"]["limit_amount"] == 10

    blocked = Result.denied("no", metadata=ResultMetadata(system_override=True))
    assert blocked.failure
    assert blocked.system_override


def test_clock_helpers():
    naive = datetime(2025, 1, 1, 12, 0)
    assert ensure_utc(naive) == datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)
    shifted = datetime(2025, 1, 1, 14, 0, tzinfo=timezone(timedelta(hours=2)))
    assert ensure_utc(shifted).hour == 12
    assert ensure_utc(None) is None
    assert to_epoch(naive) == 1735732800


def test_database_plumbing(database):
    assert database.dialect_name == "sqlite"
    assert database.check_connection() is True
    database.reset()
    assert database.check_connection() is True
