# planguard/conftest.py
from collections import defaultdict
from datetime import datetime, timedelta, timezone

import pytest

from planguard import PlanGuard
from planguard.core.database import Database
from planguard.features.plans.configuration import EVENT_TYPES, Configuration, PlanBuilder


class FrozenClock:
    """Controllable clock handed to Configuration(clock=...)."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, value: datetime) -> datetime:
        self.now = value
        return self.now


class Organization:
    owner_type = "Organization"

    def __init__(self, id):
        self.id = id

    def __repr__(self):
        return f"<Organization {self.id}>"


class EventRecorder:
    def __init__(self):
        self.calls = []

    def handler(self, event_type):
        def record(owner, limit_key, payload):
            self.calls.append((event_type, limit_key, payload))
        return record

    def of(self, event_type, limit_key=None):
        return [
            payload
            for kind, key, payload in self.calls
            if kind == event_type and (limit_key is None or key == limit_key)
        ]


def default_plans():
    free = (
        PlanBuilder("free")
        .name("Free")
        .default()
        .limit("projects", to=10, after_limit="grace_then_block", grace=timedelta(days=7))
        .limit("seats", to=1, after_limit="block_usage")
        .limit("api_calls", to=5, per="month", after_limit="block_usage")
        .limit("exports", to=2, after_limit="just_warn")
    )
    pro = (
        PlanBuilder("pro")
        .name("Pro")
        .highlighted()
        .stripe_price({"month": "price_pro_month", "year": "price_pro_year"})
        .allows("api_access", "custom_domains")
        .unlimited("projects")
        .limit("seats", to=10, after_limit="block_usage")
        .limit("api_calls", to=1000, per="month", after_limit="block_usage")
        .limit("exports", to=100, after_limit="just_warn")
    )
    return [free, pro]


@pytest.fixture
def clock():
    return FrozenClock(datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def database(tmp_path):
    """File-backed SQLite database, fresh per test."""
    db = Database.from_url(f"sqlite:///{tmp_path / 'planguard.db'}")
    db.create_all()
    yield db
    db.dispose()


@pytest.fixture
def usage_counts():
    """limit_key -> {owner_id: count}; backs the persistent counters."""
    return defaultdict(lambda: defaultdict(int))


@pytest.fixture
def make_configuration(clock, usage_counts):
    def build(*plans, **kwargs):
        kwargs.setdefault("clock", clock)
        kwargs.setdefault("lock_retry_backoff", 0.0)
        configuration = Configuration(**kwargs)
        for plan in plans or default_plans():
            configuration.add_plan(plan)
        for limit_key in ("projects", "seats", "exports"):
            configuration.register_counter(
                limit_key, lambda owner, key=limit_key: usage_counts[key][owner.id]
            )
        return configuration
    return build


@pytest.fixture
def configuration(make_configuration):
    return make_configuration()


@pytest.fixture
def events(configuration):
    recorder = EventRecorder()
    for event_type in EVENT_TYPES:
        configuration.on(event_type, "*", recorder.handler(event_type))
    return recorder


@pytest.fixture
def make_guard(database):
    def build(configuration):
        return PlanGuard(configuration, database)
    return build


@pytest.fixture
def guard(configuration, database, events):
    return PlanGuard(configuration, database)


@pytest.fixture
def org():
    return Organization(42)
