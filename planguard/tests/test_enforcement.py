"""Tests for the enforcement state machine (grace manager)."""

import logging
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from planguard.core.database import enforcement_states
from planguard.core.errors import LockContentionError
from planguard.features.enforcement.policy import (
    crossed_threshold,
    exceeded_now,
    stale_for_window,
    time_remaining_phrase,
)
from planguard.models.enforcement_state import EnforcementState
from planguard.models.owner import OwnerRef
from planguard.models.plan import UNLIMITED


NOW = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "usage,cap,after_limit,expected",
    [
        (10, 10, "grace_then_block", False),
        (11, 10, "grace_then_block", True),
        (10, 10, "block_usage", True),
        (9, 10, "block_usage", False),
        (10, 10, "just_warn", True),
        (0, 0, "grace_then_block", False),
        (0, 0, "block_usage", False),
        (1, 0, "grace_then_block", True),
        (1, 0, "block_usage", True),
        (10_000, UNLIMITED, "block_usage", False),
    ],
)
def test_exceeded_now(usage, cap, after_limit, expected):
    assert exceeded_now(usage, cap, after_limit) is expected


def test_mark_exceeded_is_idempotent(guard, events, clock, org):
    first = guard.grace.mark_exceeded(org, "projects")
    clock.advance(hours=1)
    second = guard.grace.mark_exceeded(org, "projects")

    assert first.exceeded_at == NOW
    assert second.exceeded_at == NOW
    assert first.grace_period == timedelta(days=7)
    assert events.of("grace_start", "projects") == [NOW + timedelta(days=7)]


def test_mark_exceeded_explicit_grace_wins(guard, events, org):
    state = guard.grace.mark_exceeded(org, "projects", grace_period=timedelta(hours=2))
    assert state.grace_ends_at == NOW + timedelta(hours=2)
    assert guard.grace.grace_ends_at(org, "projects") == NOW + timedelta(hours=2)
    assert events.of("grace_start") == [NOW + timedelta(hours=2)]


def test_grace_expires_then_blocks(guard, clock, org):
    guard.grace.mark_exceeded(org, "projects")
    assert guard.grace.grace_active(org, "projects") is True
    assert guard.grace.should_block(org, "projects") is False

    clock.advance(days=7)
    assert guard.grace.grace_active(org, "projects") is False
    assert guard.grace.should_block(org, "projects") is True


def test_should_block_by_policy(guard, org):
    assert guard.grace.should_block(org, "seats") is True  # block_usage
    assert guard.grace.should_block(org, "exports") is False  # just_warn
    assert guard.grace.should_block(org, "projects") is False  # clean grace_then_block
    assert guard.grace.should_block(org, "nonexistent") is False


def test_mark_blocked_is_idempotent(guard, events, clock, org):
    first = guard.grace.mark_blocked(org, "seats")
    clock.advance(minutes=5)
    second = guard.grace.mark_blocked(org, "seats")

    assert first.blocked_at == NOW
    assert second.blocked_at == NOW
    assert events.of("block", "seats") == [None]


def test_warnings_are_monotonic(guard, events, org):
    guard.grace.maybe_emit_warning(org, "projects", 0.6)
    guard.grace.maybe_emit_warning(org, "projects", 0.6)
    guard.grace.maybe_emit_warning(org, "projects", 0.8)
    state = guard.grace.maybe_emit_warning(org, "projects", 0.6)

    assert events.of("warning", "projects") == [0.6, 0.8]
    assert state.last_warning_threshold == 0.8
    assert state.last_warning_at == NOW


def test_heal_clears_flags_when_back_in_range(guard, org):
    guard.grace.mark_exceeded(org, "projects")

    still_over = guard.grace.heal(org, "projects", 11)
    assert still_over.exceeded

    healed = guard.grace.heal(org, "projects", 10)
    assert not healed.exceeded
    assert not healed.blocked
    assert guard.grace.state_for(org, "projects").exceeded_at is None


def test_heal_without_state_is_noop(guard, org):
    assert guard.grace.heal(org, "projects", 0) is None


def test_stale_per_period_state_is_discarded(guard, clock, database, org):
    guard.grace.mark_exceeded(org, "api_calls")
    state = guard.grace.state_for(org, "api_calls")
    assert state.window_start_epoch == int(datetime(2025, 1, 1, tzinfo=timezone.utc).timestamp())
    assert guard.grace.grace_active(org, "api_calls") is True

    clock.set(datetime(2025, 2, 1, 0, 0, 1, tzinfo=timezone.utc))
    assert guard.grace.grace_active(org, "api_calls") is False
    assert guard.grace.state_for(org, "api_calls") is None

    with database.session() as session:
        assert session.execute(select(enforcement_states)).first() is None


def test_stale_state_is_replaced_inside_lock(guard, events, clock, org):
    guard.grace.mark_exceeded(org, "api_calls")
    clock.set(datetime(2025, 2, 3, tzinfo=timezone.utc))

    state = guard.grace.mark_exceeded(org, "api_calls")
    assert state.exceeded_at == datetime(2025, 2, 3, tzinfo=timezone.utc)
    assert len(events.of("grace_start", "api_calls")) == 2


def test_outdated_read_keeps_row_replaced_for_current_window(guard, events, clock, monkeypatch, org):
    guard.grace.mark_exceeded(org, "api_calls")
    feb = datetime(2025, 2, 3, tzinfo=timezone.utc)
    clock.set(feb)

    # A reader picked up January's row before a writer replaced it for February.
    january = guard.grace._find_state(OwnerRef.of(org), "api_calls")
    guard.grace.mark_exceeded(org, "api_calls")
    monkeypatch.setattr(guard.grace, "_find_state", lambda ref, limit_key: january)

    assert guard.grace.grace_active(org, "api_calls") is True

    monkeypatch.undo()
    assert guard.grace.state_for(org, "api_calls").exceeded_at == feb
    guard.grace.mark_exceeded(org, "api_calls")
    assert events.of("grace_start", "api_calls") == [
        NOW + timedelta(days=7),
        feb + timedelta(days=7),
    ]


def test_heal_logs_only_when_flags_cleared(guard, monkeypatch, caplog, org):
    guard.grace.mark_exceeded(org, "projects")
    outdated = guard.grace.state_for(org, "projects")

    with caplog.at_level(logging.INFO, logger="planguard.enforcement"):
        guard.grace.heal(org, "projects", 3)
        monkeypatch.setattr(guard.grace, "_fresh_state", lambda *args: outdated)
        guard.grace.heal(org, "projects", 3)

    healed = [r for r in caplog.records if r.getMessage() == "[enforcement] state healed"]
    assert len(healed) == 1


def test_reset_state(guard, org):
    guard.grace.mark_blocked(org, "seats")
    assert guard.grace.reset_state(org, "seats") is True
    assert guard.grace.state_for(org, "seats") is None
    assert guard.grace.reset_state(org, "seats") is False


def test_events_fire_after_commit(guard, configuration, org):
    seen = []

    def on_grace_start(owner, limit_key, grace_ends_at):
        # Runs after commit: a fresh session sees the transition.
        seen.append(guard.grace.state_for(owner, limit_key).exceeded)

    configuration.on_grace_start("projects", on_grace_start)
    guard.grace.mark_exceeded(org, "projects")
    assert seen == [True]


def _locked():
    return OperationalError("SELECT ... FOR UPDATE", {}, Exception("database is locked"))


def test_lock_contention_retries_then_raises(guard, events, monkeypatch, org):
    calls = []

    def always_locked(session, ref, limit_key):
        calls.append(limit_key)
        raise _locked()

    monkeypatch.setattr(guard.grace, "_lock_row", always_locked)
    with pytest.raises(LockContentionError) as exc_info:
        guard.grace.mark_exceeded(org, "projects")

    assert len(calls) == 3
    assert isinstance(exc_info.value.__cause__, OperationalError)
    assert events.of("grace_start") == []


def test_lock_contention_recovers_on_retry(guard, events, monkeypatch, org):
    original = guard.grace._lock_row
    calls = []

    def locked_once(session, ref, limit_key):
        calls.append(limit_key)
        if len(calls) == 1:
            raise _locked()
        return original(session, ref, limit_key)

    monkeypatch.setattr(guard.grace, "_lock_row", locked_once)
    state = guard.grace.mark_exceeded(org, "projects")

    assert state.exceeded
    assert len(calls) == 2
    assert len(events.of("grace_start")) == 1


def test_non_lock_database_errors_propagate(guard, monkeypatch, org):
    calls = []

    def broken(session, ref, limit_key):
        calls.append(limit_key)
        raise OperationalError("SELECT 1", {}, Exception("no such table: enforcement_states"))

    monkeypatch.setattr(guard.grace, "_lock_row", broken)
    with pytest.raises(OperationalError):
        guard.grace.mark_blocked(org, "seats")
    assert len(calls) == 1


def test_stale_for_window():
    owner = OwnerRef(owner_type="Organization", owner_id="1")
    jan = datetime(2025, 1, 1, tzinfo=timezone.utc)
    feb = datetime(2025, 2, 1, tzinfo=timezone.utc)

    current = EnforcementState(
        owner=owner, limit_key="api_calls", exceeded_at=jan + timedelta(days=3),
        data={"window_start_epoch": int(jan.timestamp())},
    )
    assert stale_for_window(current, jan) is False
    assert stale_for_window(current, feb) is True

    warned_only = EnforcementState(
        owner=owner, limit_key="api_calls", data={"window_start_epoch": int(jan.timestamp())}
    )
    assert stale_for_window(warned_only, feb) is True

    assert stale_for_window(EnforcementState(owner=owner, limit_key="api_calls"), feb) is False


def test_crossed_threshold():
    thresholds = (0.6, 0.8, 0.95)
    assert crossed_threshold(thresholds, 0, 6, 10) == 0.6
    assert crossed_threshold(thresholds, 0, 5, 10) is None
    assert crossed_threshold(thresholds, 6, 4, 10, last_threshold=0.6) == 0.8
    assert crossed_threshold(thresholds, 6, 4, 10, last_threshold=0.8) == 0.95
    assert crossed_threshold(thresholds, 0, 6, 10, last_threshold=0.8) is None
    assert crossed_threshold(thresholds, 0, 1, 0) is None


def test_time_remaining_phrase():
    assert time_remaining_phrase(NOW + timedelta(seconds=30), NOW) == "30 seconds"
    assert time_remaining_phrase(NOW + timedelta(minutes=5), NOW) == "5 minutes"
    assert time_remaining_phrase(NOW + timedelta(hours=2), NOW) == "2 hours"
    assert time_remaining_phrase(NOW + timedelta(days=7), NOW) == "7 days"
    assert time_remaining_phrase(NOW - timedelta(seconds=1), NOW) == "no time"
    assert time_remaining_phrase(None, NOW) == "no time"
