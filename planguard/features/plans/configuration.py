"""
planguard/features/plans/configuration.py

Plan configuration: builder + the configuration object every service reads.

Handles:
- Building immutable Plan objects (PlanBuilder)
- Default / highlighted plan selection
- Lifecycle event handler registration (specific key or wildcard)
- Persistent counter registry (limit_key -> live count callable)
- Setup-time validation (fail fast before traffic)
"""

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
import logging

from pydantic import ValidationError

from planguard.core.clock import Clock, ensure_utc, utcnow
from planguard.core.config import Settings, settings
from planguard.core.errors import ConfigurationError, PlanNotFoundError
from planguard.models.plan import (
    DEFAULT_WARN_AT,
    UNLIMITED,
    AfterLimit,
    LimitConfig,
    Plan,
    normalize_period,
)


logger = logging.getLogger("planguard.plans")

WILDCARD = "*"
EVENT_TYPES = ("warning", "grace_start", "block")

Handler = Callable[[Any, str, Any], Any]
Counter = Callable[..., int]


class PlanBuilder:
    """Explicit builder for a Plan.

    Usage:
        PlanBuilder("pro")
            .name("Pro")
            .limit("projects", to=25, after_limit="grace_then_block", grace=timedelta(days=3))
            .limit("api_calls", to=10_000, per="month", after_limit="block_usage")
            .unlimited("seats")
            .allows("api_access", "exports")
            .build()
    """

    def __init__(self, key: str):
        if not key or not isinstance(key, str):
            raise ConfigurationError("Plan key must be a non-empty string")
        self._key = key
        self._name: Optional[str] = None
        self._description: Optional[str] = None
        self._features: set = set()
        self._limits: Dict[str, LimitConfig] = {}
        self._stripe_price: Optional[Union[str, Dict[str, str]]] = None
        self._default = False
        self._highlighted = False
        self._meta: Dict[str, Any] = {}

    def name(self, value: str) -> "PlanBuilder":
        self._name = str(value)
        return self

    def description(self, value: str) -> "PlanBuilder":
        self._description = str(value)
        return self

    def stripe_price(self, value: Union[str, Dict[str, str]]) -> "PlanBuilder":
        if not isinstance(value, (str, dict)):
            raise ConfigurationError("stripe_price must be a string or a mapping of interval to price id")
        self._stripe_price = value
        return self

    def meta(self, **values: Any) -> "PlanBuilder":
        self._meta.update(values)
        return self

    def default(self) -> "PlanBuilder":
        self._default = True
        return self

    def highlighted(self) -> "PlanBuilder":
        self._highlighted = True
        return self

    def allows(self, *feature_keys: str) -> "PlanBuilder":
        self._features.update(str(k) for k in feature_keys)
        return self

    def disallows(self, *feature_keys: str) -> "PlanBuilder":
        self._features.difference_update(str(k) for k in feature_keys)
        return self

    def limit(
        self,
        key: str,
        *,
        to: Union[int, str],
        per: Any = None,
        after_limit: Union[AfterLimit, str] = AfterLimit.GRACE_THEN_BLOCK,
        grace: Optional[timedelta] = None,
        warn_at: Optional[Iterable[float]] = DEFAULT_WARN_AT,
        count_scope: Optional[Callable[..., Any]] = None,
    ) -> "PlanBuilder":
        try:
            self._limits[str(key)] = LimitConfig(
                key=str(key),
                to=to,
                per=per,
                after_limit=after_limit,
                grace=grace,
                warn_at=warn_at,
                count_scope=count_scope,
            )
        except ValidationError as exc:
            raise ConfigurationError(f"Limit {key} on plan {self._key} is invalid: {exc}") from exc
        return self

    def unlimited(self, *keys: str) -> "PlanBuilder":
        for key in keys:
            self.limit(key, to=UNLIMITED)
        return self

    def build(self) -> Plan:
        return Plan(
            key=self._key,
            name=self._name,
            description=self._description,
            features=frozenset(self._features),
            limits=dict(self._limits),
            stripe_price=self._stripe_price,
            default=self._default,
            highlighted=self._highlighted,
            meta=dict(self._meta),
        )


class Configuration:
    """Everything the enforcement core needs to know, built once at setup.

    Not a global: construct one per application (or per test) and hand it to
    PlanGuard. Collaborator hooks:

    - subscription_lookup(owner) -> object with current_period_start/current_period_end
      (or created_at), or None. Used by billing_cycle windows.
    - billing_plan_resolver(owner) -> plan key or processor price id, or None.
    - message_builder(context=..., **kwargs) -> str or None. Contexts:
      over_limit, grace, warning, at_limit, feature_denied, overage_report.
    """

    def __init__(
        self,
        *,
        default_plan: Optional[str] = None,
        highlighted_plan: Optional[str] = None,
        period_cycle: Any = None,
        timezone: Optional[str] = None,
        default_grace: Optional[timedelta] = None,
        lock_retry_attempts: Optional[int] = None,
        lock_retry_backoff: Optional[float] = None,
        clock: Optional[Clock] = None,
        message_builder: Optional[Callable[..., Optional[str]]] = None,
        subscription_lookup: Optional[Callable[[Any], Any]] = None,
        billing_plan_resolver: Optional[Callable[[Any], Optional[str]]] = None,
        settings_obj: Optional[Settings] = None,
    ):
        cfg = settings_obj or settings
        self.default_plan = default_plan
        self.highlighted_plan = highlighted_plan
        try:
            self.period_cycle = normalize_period(period_cycle if period_cycle is not None else cfg.PERIOD_CYCLE)
        except ValueError as exc:
            raise ConfigurationError(f"Invalid period_cycle: {exc}") from exc
        self.timezone = timezone or cfg.TIMEZONE
        try:
            self.tzinfo = ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ConfigurationError(f"Unknown timezone {self.timezone!r}") from exc
        self.default_grace = default_grace if default_grace is not None else timedelta(seconds=cfg.DEFAULT_GRACE_SECONDS)
        self.lock_retry_attempts = lock_retry_attempts if lock_retry_attempts is not None else cfg.LOCK_RETRY_ATTEMPTS
        self.lock_retry_backoff = lock_retry_backoff if lock_retry_backoff is not None else cfg.LOCK_RETRY_BACKOFF_SECONDS
        self.clock = clock or utcnow
        self.message_builder = message_builder
        self.subscription_lookup = subscription_lookup
        self.billing_plan_resolver = billing_plan_resolver

        self.plans: Dict[str, Plan] = {}
        self.event_handlers: Dict[str, Dict[str, Handler]] = {event: {} for event in EVENT_TYPES}
        self.counters: Dict[str, Counter] = {}

    # Plans

    def add_plan(self, plan: Union[Plan, PlanBuilder]) -> Plan:
        if isinstance(plan, PlanBuilder):
            plan = plan.build()
        if plan.key in self.plans:
            raise ConfigurationError(f"Plan {plan.key} already defined")
        self.plans[plan.key] = plan
        return plan

    def get_plan(self, plan_key: str) -> Plan:
        plan = self.plans.get(str(plan_key))
        if plan is None:
            raise PlanNotFoundError(f"Plan {plan_key} not found")
        return plan

    def has_plan(self, plan_key: str) -> bool:
        return str(plan_key) in self.plans

    def get_default_plan(self) -> Optional[Plan]:
        if not self.default_plan:
            return None
        return self.get_plan(self.default_plan)

    def get_highlighted_plan(self) -> Optional[Plan]:
        if not self.highlighted_plan:
            return None
        return self.get_plan(self.highlighted_plan)

    def plan_for_price(self, price_id: str) -> Optional[Plan]:
        for plan in self.plans.values():
            if price_id in plan.stripe_price_ids():
                return plan
        return None

    # Lifecycle events

    def on(self, event_type: str, limit_key: str = WILDCARD, handler: Optional[Handler] = None):
        """Register a handler(owner, limit_key, payload). Usable as a decorator."""
        if event_type not in self.event_handlers:
            raise ConfigurationError(f"Unknown event type {event_type!r}; expected one of {', '.join(EVENT_TYPES)}")

        def register(fn: Handler) -> Handler:
            if not callable(fn):
                raise ConfigurationError(f"Handler for {event_type}:{limit_key} must be callable")
            self.event_handlers[event_type][str(limit_key)] = fn
            return fn

        if handler is None:
            return register
        return register(handler)

    def on_warning(self, limit_key: str = WILDCARD, handler: Optional[Handler] = None):
        return self.on("warning", limit_key, handler)

    def on_grace_start(self, limit_key: str = WILDCARD, handler: Optional[Handler] = None):
        return self.on("grace_start", limit_key, handler)

    def on_block(self, limit_key: str = WILDCARD, handler: Optional[Handler] = None):
        return self.on("block", limit_key, handler)

    def handlers_for(self, event_type: str, limit_key: str) -> List[Tuple[str, Handler]]:
        """Specific handler first, then the wildcard one."""
        registered = self.event_handlers.get(event_type, {})
        found = []
        if str(limit_key) in registered:
            found.append((str(limit_key), registered[str(limit_key)]))
        if WILDCARD in registered and str(limit_key) != WILDCARD:
            found.append((WILDCARD, registered[WILDCARD]))
        return found

    # Persistent counters

    def register_counter(self, limit_key: str, counter: Counter) -> Counter:
        if not callable(counter):
            raise ConfigurationError(f"Counter for {limit_key} must be callable")
        self.counters[str(limit_key)] = counter
        return counter

    def counter_for(self, limit_key: str) -> Optional[Counter]:
        return self.counters.get(str(limit_key))

    # Time

    def now(self) -> datetime:
        return ensure_utc(self.clock())

    # Validation

    def validate(self) -> "Configuration":
        self._select_defaults_from_markers()
        self._validate_markers()
        self._validate_plan_references()
        self._validate_stripe_prices()
        self._validate_limit_consistency()
        logger.info(
            "[plans] configuration validated",
            extra={"plans": sorted(self.plans), "default_plan": self.default_plan},
        )
        return self

    def _select_defaults_from_markers(self) -> None:
        if self.default_plan is None:
            marked = [p.key for p in self.plans.values() if p.default]
            if len(marked) == 1:
                self.default_plan = marked[0]
        if self.highlighted_plan is None:
            marked = [p.key for p in self.plans.values() if p.highlighted]
            if len(marked) == 1:
                self.highlighted_plan = marked[0]

    def _validate_markers(self) -> None:
        defaults = [p.key for p in self.plans.values() if p.default]
        highlights = [p.key for p in self.plans.values() if p.highlighted]
        if len(defaults) > 1:
            raise ConfigurationError(
                f"Multiple plans marked default: {', '.join(defaults)}. Only one plan can be default."
            )
        if len(highlights) > 1:
            raise ConfigurationError(
                f"Multiple plans marked highlighted: {', '.join(highlights)}. Only one plan can be highlighted."
            )

    def _validate_plan_references(self) -> None:
        if not self.default_plan:
            raise ConfigurationError("default_plan is required")
        if self.default_plan not in self.plans:
            raise ConfigurationError(f"default_plan {self.default_plan} is not defined")
        if self.highlighted_plan and self.highlighted_plan not in self.plans:
            raise ConfigurationError(f"highlighted_plan {self.highlighted_plan} is not defined")

    def _validate_stripe_prices(self) -> None:
        seen: Dict[str, str] = {}
        duplicates = []
        for plan in self.plans.values():
            for price_id in plan.stripe_price_ids():
                if price_id in seen and price_id not in duplicates:
                    duplicates.append(price_id)
                seen.setdefault(price_id, plan.key)
        if duplicates:
            raise ConfigurationError(f"Duplicate Stripe price IDs found: {', '.join(duplicates)}")

    def _validate_limit_consistency(self) -> None:
        per_by_key: Dict[str, List[Any]] = {}
        for plan in self.plans.values():
            for limit_key, limit in plan.limits.items():
                if limit.unlimited:
                    continue
                values = per_by_key.setdefault(limit_key, [])
                if limit.per not in values:
                    values.append(limit.per)

        for limit_key, values in per_by_key.items():
            has_persistent = None in values
            periodic = [v for v in values if v is not None]
            if (has_persistent and periodic) or len(periodic) > 1:
                raise ConfigurationError(
                    f"Inconsistent 'per' configuration for limit '{limit_key}': {periodic}"
                )
