"""
planguard/features/status/service.py

Request-scoped status snapshot for UI helpers.

A StatusContext caches everything it computes for one owner, so rendering a
page that asks for severity, message and overage of several limits resolves
the plan and counts usage once per limit. Build a new context per request.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, Optional, Union

from pydantic import BaseModel, ConfigDict

from planguard.features.enforcement.policy import exceeded_now
from planguard.features.enforcement.service import GraceManager
from planguard.features.limits.messages import MessageBuilder, humanize
from planguard.features.usage.service import UsageCounter
from planguard.models.plan import AfterLimit, LimitConfig, Plan


class Severity(str, Enum):
    OK = "ok"
    WARNING = "warning"
    AT_LIMIT = "at_limit"
    GRACE = "grace"
    BLOCKED = "blocked"


SEVERITY_ORDER = (Severity.OK, Severity.WARNING, Severity.AT_LIMIT, Severity.GRACE, Severity.BLOCKED)


class LimitStatus(BaseModel):
    model_config = ConfigDict(frozen=True)

    configured: bool
    limit_key: str
    limit_amount: Optional[Union[int, str]] = None
    current_usage: int = 0
    percent_used: float = 0.0
    grace_active: bool = False
    grace_ends_at: Optional[datetime] = None
    blocked: bool = False
    after_limit: Optional[AfterLimit] = None
    per: bool = False


class StatusContext:
    def __init__(
        self,
        owner: Any,
        *,
        plan_resolver,
        usage: UsageCounter,
        grace: GraceManager,
        messages: MessageBuilder,
    ):
        self.owner = owner
        self.plan_resolver = plan_resolver
        self.usage = usage
        self.grace = grace
        self.messages = messages
        self._plan_loaded = False
        self._plan: Optional[Plan] = None
        self._usage_cache: Dict[str, int] = {}
        self._status_cache: Dict[str, LimitStatus] = {}
        self._severity_cache: Dict[str, Severity] = {}

    @property
    def effective_plan(self) -> Optional[Plan]:
        if not self._plan_loaded:
            self._plan = self.plan_resolver.effective_plan_for(self.owner)
            self._plan_loaded = True
        return self._plan

    def limit_config_for(self, limit_key: str) -> Optional[LimitConfig]:
        plan = self.effective_plan
        return plan.limit_for(limit_key) if plan else None

    def current_usage_for(self, limit_key: str) -> int:
        key = str(limit_key)
        if key not in self._usage_cache:
            limit_config = self.limit_config_for(key)
            self._usage_cache[key] = (
                self.usage.current_usage_for(self.owner, key, limit_config) if limit_config else 0
            )
        return self._usage_cache[key]

    def limit_status(self, limit_key: str) -> LimitStatus:
        key = str(limit_key)
        if key not in self._status_cache:
            self._status_cache[key] = self._compute_status(key)
        return self._status_cache[key]

    def _compute_status(self, limit_key: str) -> LimitStatus:
        limit_config = self.limit_config_for(limit_key)
        if limit_config is None:
            return LimitStatus(configured=False, limit_key=limit_key)

        usage = self.current_usage_for(limit_key)
        if limit_config.unlimited or limit_config.to == 0:
            percent = 0.0
        else:
            percent = min((usage / limit_config.to) * 100, 100.0)

        state = self.grace.state_for(self.owner, limit_key)
        now = self.grace.configuration.now()
        grace_active = bool(state and state.exceeded and not state.grace_expired(now))

        return LimitStatus(
            configured=True,
            limit_key=limit_key,
            limit_amount=limit_config.to,
            current_usage=usage,
            percent_used=percent,
            grace_active=grace_active,
            grace_ends_at=state.grace_ends_at if state else None,
            blocked=self._blocked(limit_config, usage, state, now),
            after_limit=limit_config.after_limit,
            per=limit_config.per_period,
        )

    def _blocked(self, limit_config: LimitConfig, usage: int, state, now: datetime) -> bool:
        if limit_config.unlimited or limit_config.after_limit == AfterLimit.JUST_WARN:
            return False
        if not exceeded_now(usage, limit_config.to, AfterLimit.BLOCK_USAGE):
            return False
        if limit_config.after_limit == AfterLimit.BLOCK_USAGE:
            return True
        if state is None or not state.exceeded:
            return False
        return state.blocked or state.grace_expired(now)

    def severity_for(self, limit_key: str) -> Severity:
        key = str(limit_key)
        if key not in self._severity_cache:
            self._severity_cache[key] = self._compute_severity(key)
        return self._severity_cache[key]

    def _compute_severity(self, limit_key: str) -> Severity:
        status = self.limit_status(limit_key)
        if not status.configured:
            return Severity.OK
        if status.grace_active:
            return Severity.GRACE

        amount = status.limit_amount
        if isinstance(amount, int) and amount > 0:
            if status.current_usage > amount:
                return Severity.BLOCKED
            if status.current_usage == amount:
                return Severity.AT_LIMIT

        thresholds = self.limit_config_for(limit_key).warn_at
        if not thresholds:
            return Severity.OK
        highest = max(thresholds) * 100.0
        return Severity.WARNING if status.percent_used >= highest else Severity.OK

    def highest_severity_for(self, *limit_keys: Union[str, Iterable[str]]) -> Severity:
        keys = []
        for key in limit_keys:
            if isinstance(key, str):
                keys.append(key)
            else:
                keys.extend(key)
        severities = {self.severity_for(k) for k in keys}
        for severity in reversed(SEVERITY_ORDER):
            if severity in severities:
                return severity
        return Severity.OK

    def message_for(self, limit_key: str) -> Optional[str]:
        status = self.limit_status(limit_key)
        if not status.configured:
            return None
        severity = self.severity_for(limit_key)
        if severity == Severity.OK:
            return None

        context = {
            Severity.BLOCKED: "over_limit",
            Severity.GRACE: "grace",
            Severity.AT_LIMIT: "at_limit",
        }.get(severity, "warning")
        custom = self.messages.custom(
            context,
            limit_key=limit_key,
            current_usage=status.current_usage,
            limit_amount=status.limit_amount,
            grace_ends_at=status.grace_ends_at,
        )
        if custom:
            return custom

        resource = humanize(limit_key)
        counts = f" ({status.current_usage}/{status.limit_amount})" if isinstance(status.limit_amount, int) else ""
        if severity == Severity.BLOCKED:
            return f"You've gone over your limit for {resource}{counts}. Please upgrade your plan."
        if severity == Severity.GRACE:
            deadline = ""
            if status.grace_ends_at is not None:
                deadline = f", and your grace period ends {status.grace_ends_at.strftime('%B %d at %I:%M%p')}"
            return (
                f"Heads up! You're currently over your limit for {resource}{counts}{deadline}. "
                "Please upgrade soon to avoid any interruptions."
            )
        if severity == Severity.AT_LIMIT:
            return f"You've reached your limit for {resource}{counts}. Upgrade your plan to unlock more."
        return (
            f"You're getting close to your limit for {resource}{counts}. "
            "Keep an eye on your usage, or upgrade your plan now to stay ahead."
        )

    def overage_for(self, limit_key: str) -> int:
        status = self.limit_status(limit_key)
        if not status.configured or not isinstance(status.limit_amount, int):
            return 0
        return max(status.current_usage - status.limit_amount, 0)
