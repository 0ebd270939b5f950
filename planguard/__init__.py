"""
planguard: plan-based entitlement enforcement.

Tracks usage against plan quotas, applies grace periods before hard
blocking, and fires lifecycle callbacks (warning, grace_start, block).

    configuration = Configuration()
    configuration.add_plan(PlanBuilder("free").default().limit("projects", to=3))
    guard = PlanGuard(configuration, Database.from_url("sqlite:///planguard.db"))
    result = guard.evaluate(org, "projects")
"""

from typing import Any

from planguard.core.database import Database
from planguard.core.errors import (
    ConfigurationError,
    FeatureDeniedError,
    LimitBlockedError,
    LockContentionError,
    PlanGuardError,
    PlanNotFoundError,
)
from planguard.features.callbacks.service import CallbackDispatcher
from planguard.features.enforcement.service import GraceManager
from planguard.features.limits.messages import MessageBuilder
from planguard.features.limits.service import LimitEvaluator
from planguard.features.overage.service import OverageReporter
from planguard.features.periods.service import PeriodCalculator
from planguard.features.plans.configuration import Configuration, PlanBuilder
from planguard.features.plans.service import PlanResolver
from planguard.features.status.service import StatusContext
from planguard.features.usage.service import UsageCounter
from planguard.models.owner import OwnerRef
from planguard.models.plan import UNLIMITED, AfterLimit, PeriodCycle
from planguard.models.result import LimitState, Result


class PlanGuard:
    """Wires every service around one validated Configuration and Database."""

    def __init__(self, configuration: Configuration, database: Database, *, validate: bool = True):
        if validate:
            configuration.validate()
        self.configuration = configuration
        self.database = database
        self.messages = MessageBuilder(configuration)
        self.plans = PlanResolver(configuration, database)
        self.periods = PeriodCalculator(configuration, self.plans)
        self.usage = UsageCounter(configuration, database, self.plans, self.periods)
        self.dispatcher = CallbackDispatcher(configuration)
        self.grace = GraceManager(configuration, database, self.plans, self.periods, self.dispatcher)
        self.limits = LimitEvaluator(configuration, self.plans, self.usage, self.grace, self.messages)
        self.overage = OverageReporter(configuration, self.usage, self.grace, self.messages)

    def evaluate(self, owner: Any, limit_key: str, requested: int = 1, *, allow_system_override: bool = False) -> Result:
        return self.limits.evaluate(owner, limit_key, requested, allow_system_override=allow_system_override)

    def within_limit(self, owner: Any, limit_key: str, by: int = 1) -> bool:
        return self.limits.within_limit(owner, limit_key, by)

    def require_feature(self, owner: Any, feature_key: str) -> bool:
        return self.limits.require_feature(owner, feature_key)

    def with_plan_limit(self, owner: Any, limit_key: str, work=None, *, by: int = 1, allow_system_override: bool = False) -> Result:
        return self.limits.with_plan_limit(
            owner, limit_key, work, by=by, allow_system_override=allow_system_override
        )

    def record_usage(self, owner: Any, limit_key: str, amount: int = 1):
        return self.usage.record_usage(owner, limit_key, amount)

    def remaining(self, owner: Any, limit_key: str):
        return self.usage.remaining(owner, limit_key)

    def status(self, owner: Any) -> StatusContext:
        return StatusContext(
            owner,
            plan_resolver=self.plans,
            usage=self.usage,
            grace=self.grace,
            messages=self.messages,
        )

    def effective_plan_for(self, owner: Any):
        return self.plans.effective_plan_for(owner)

    def assign_plan(self, owner: Any, plan_key: str, **kwargs: Any):
        return self.plans.assign_plan(owner, plan_key, **kwargs)


__all__ = [
    "AfterLimit",
    "CallbackDispatcher",
    "Configuration",
    "ConfigurationError",
    "Database",
    "FeatureDeniedError",
    "GraceManager",
    "LimitBlockedError",
    "LimitEvaluator",
    "LimitState",
    "LockContentionError",
    "OverageReporter",
    "OwnerRef",
    "PeriodCalculator",
    "PeriodCycle",
    "PlanBuilder",
    "PlanGuard",
    "PlanGuardError",
    "PlanNotFoundError",
    "PlanResolver",
    "Result",
    "StatusContext",
    "UNLIMITED",
    "UsageCounter",
]
