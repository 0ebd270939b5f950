"""Tests for usage accounting (persistent counts + per-period counters)."""

from datetime import datetime, timezone

import pytest
from sqlalchemy import select

from planguard.core.database import usages
from planguard.features.plans.configuration import PlanBuilder
from planguard.models.plan import UNLIMITED


def test_persistent_usage_is_counted_live(guard, usage_counts, org):
    assert guard.usage.current_usage_for(org, "projects") == 0

    usage_counts["projects"][org.id] = 4
    assert guard.usage.current_usage_for(org, "projects") == 4

    # Deleting a resource frees capacity immediately
    usage_counts["projects"][org.id] = 3
    assert guard.usage.current_usage_for(org, "projects") == 3


def test_unconfigured_limit_has_zero_usage(guard, org):
    assert guard.usage.current_usage_for(org, "nonexistent") == 0


def test_persistent_limit_without_counter_is_zero(make_configuration, make_guard, org):
    configuration = make_configuration(PlanBuilder("free").default().limit("widgets", to=5))
    guard = make_guard(configuration)
    assert guard.usage.current_usage_for(org, "widgets") == 0


def test_count_scope_is_passed_to_counter(make_configuration, make_guard, org):
    calls = []

    def count_widgets(owner, scope):
        calls.append((owner.id, scope))
        return 2

    configuration = make_configuration(
        PlanBuilder("free").default().limit("widgets", to=5, count_scope="active")
    )
    configuration.register_counter("widgets", count_widgets)
    guard = make_guard(configuration)

    assert guard.usage.current_usage_for(org, "widgets") == 2
    assert calls == [(org.id, "active")]


def test_record_usage_increments_current_window(guard, database, org):
    first = guard.record_usage(org, "api_calls")
    second = guard.record_usage(org, "api_calls", 2)

    assert first.used == 1
    assert second.used == 3
    assert second.period_start == datetime(2025, 1, 1, tzinfo=timezone.utc)
    assert second.period_end == datetime(2025, 2, 1, tzinfo=timezone.utc)
    assert second.last_used_at == datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)
    assert guard.usage.current_usage_for(org, "api_calls") == 3

    with database.session() as session:
        rows = session.execute(select(usages)).all()
    assert len(rows) == 1


def test_per_period_usage_resets_on_rollover(guard, clock, database, org):
    for _ in range(3):
        guard.record_usage(org, "api_calls")
    assert guard.usage.current_usage_for(org, "api_calls") == 3

    clock.set(datetime(2025, 2, 1, 0, 0, tzinfo=timezone.utc))
    assert guard.usage.current_usage_for(org, "api_calls") == 0

    guard.record_usage(org, "api_calls")
    assert guard.usage.current_usage_for(org, "api_calls") == 1

    with database.session() as session:
        rows = session.execute(select(usages.c.used).order_by(usages.c.period_start)).all()
    # The previous window's counter is kept, never decremented
    assert [row.used for row in rows] == [3, 1]


def test_record_usage_ignores_persistent_limits(guard, org):
    assert guard.record_usage(org, "projects") is None
    assert guard.record_usage(org, "nonexistent") is None


def test_record_usage_rejects_negative_amount(guard, org):
    with pytest.raises(ValueError):
        guard.record_usage(org, "api_calls", -1)


def test_usage_is_scoped_per_owner(guard, org):
    from planguard.conftest import Organization

    other = Organization(7)
    guard.record_usage(org, "api_calls", 2)
    guard.record_usage(other, "api_calls")

    assert guard.usage.current_usage_for(org, "api_calls") == 2
    assert guard.usage.current_usage_for(other, "api_calls") == 1


def test_remaining(guard, usage_counts, org):
    usage_counts["projects"][org.id] = 4
    assert guard.remaining(org, "projects") == 6

    usage_counts["projects"][org.id] = 12
    assert guard.remaining(org, "projects") == 0

    assert guard.remaining(org, "nonexistent") == UNLIMITED

    guard.assign_plan(org, "pro")
    assert guard.remaining(org, "projects") == UNLIMITED


def test_percent_used(guard, usage_counts, org):
    usage_counts["projects"][org.id] = 4
    assert guard.usage.percent_used(org, "projects") == 40.0

    usage_counts["projects"][org.id] = 25
    assert guard.usage.percent_used(org, "projects") == 100.0

    assert guard.usage.percent_used(org, "nonexistent") == 0.0


def test_percent_used_for_zero_cap(make_configuration, make_guard, usage_counts, org):
    configuration = make_configuration(PlanBuilder("free").default().limit("projects", to=0))
    guard = make_guard(configuration)
    usage_counts["projects"][org.id] = 3
    assert guard.usage.percent_used(org, "projects") == 0.0


def test_warning_thresholds_sorted(make_configuration, make_guard, org):
    configuration = make_configuration(
        PlanBuilder("free").default().limit("projects", to=10, warn_at=[0.9, 0.5, 0.75])
    )
    guard = make_guard(configuration)
    assert guard.usage.warning_thresholds(org, "projects") == [0.5, 0.75, 0.9]
    assert guard.usage.warning_thresholds(org, "nonexistent") == []
