"""
planguard/models/plan.py

Plan and limit configuration models.

Plans are built once at configuration time (see PlanBuilder) and are
read-only afterwards.
"""

from datetime import timedelta
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

UNLIMITED = "unlimited"

DEFAULT_WARN_AT: Tuple[float, ...] = (0.6, 0.8, 0.95)


class AfterLimit(str, Enum):
    """What happens once usage goes over the cap."""
    GRACE_THEN_BLOCK = "grace_then_block"
    BLOCK_USAGE = "block_usage"
    JUST_WARN = "just_warn"


class PeriodCycle(str, Enum):
    BILLING_CYCLE = "billing_cycle"
    CALENDAR_MONTH = "calendar_month"
    CALENDAR_WEEK = "calendar_week"
    CALENDAR_DAY = "calendar_day"


PERIOD_ALIASES = {
    "month": PeriodCycle.CALENDAR_MONTH,
    "week": PeriodCycle.CALENDAR_WEEK,
    "day": PeriodCycle.CALENDAR_DAY,
}


def normalize_period(value: Any) -> Any:
    """Coerce a `per` value into a PeriodCycle, a positive timedelta or a callable."""
    if value is None or isinstance(value, PeriodCycle):
        return value
    if isinstance(value, str):
        if value in PERIOD_ALIASES:
            return PERIOD_ALIASES[value]
        try:
            return PeriodCycle(value)
        except ValueError:
            raise ValueError(f"unknown period {value!r}") from None
    if isinstance(value, timedelta):
        if value <= timedelta(0):
            raise ValueError("period duration must be positive")
        return value
    if callable(value):
        return value
    raise ValueError(f"unsupported period {value!r}")


class LimitConfig(BaseModel):
    """
    LimitConfig describes one metered quantity on a plan.

    - to: cap (non-negative int) or UNLIMITED
    - per: None for persistent caps (live count); otherwise the window policy
      of a per-period counter (PeriodCycle, timedelta, or callable owner -> (start, end))
    - after_limit: enforcement policy once over the cap
    - grace: grace duration for blocking policies (None = configuration default)
    - warn_at: ascending fractions of the cap that trigger one-time warnings
    - count_scope: optional predicate handed to the persistent counter
    """
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    key: str
    to: Union[int, Literal["unlimited"]]
    per: Optional[Any] = None
    after_limit: AfterLimit = AfterLimit.GRACE_THEN_BLOCK
    grace: Optional[timedelta] = None
    warn_at: Tuple[float, ...] = DEFAULT_WARN_AT
    count_scope: Optional[Any] = None

    @field_validator("to", mode="before")
    @classmethod
    def _validate_to(cls, value: Any) -> Any:
        if isinstance(value, bool):
            raise ValueError("'to' must be an integer or 'unlimited'")
        if isinstance(value, int) and value < 0:
            raise ValueError("'to' must not be negative")
        return value

    @field_validator("per", mode="before")
    @classmethod
    def _validate_per(cls, value: Any) -> Any:
        return normalize_period(value)

    @field_validator("grace")
    @classmethod
    def _validate_grace(cls, value: Optional[timedelta]) -> Optional[timedelta]:
        if value is not None and value < timedelta(0):
            raise ValueError("grace must not be negative")
        return value

    @field_validator("warn_at", mode="before")
    @classmethod
    def _validate_warn_at(cls, value: Any) -> Tuple[float, ...]:
        if value is None:
            return ()
        thresholds = []
        for threshold in value:
            if isinstance(threshold, bool) or not isinstance(threshold, (int, float)):
                raise ValueError("warn_at thresholds must be numbers")
            if not 0 < threshold <= 1:
                raise ValueError("warn_at thresholds must be between 0 (exclusive) and 1")
            thresholds.append(float(threshold))
        return tuple(sorted(set(thresholds)))

    @model_validator(mode="after")
    def _validate_policy(self) -> "LimitConfig":
        if self.after_limit == AfterLimit.JUST_WARN and self.grace is not None:
            raise ValueError("grace cannot be combined with after_limit=just_warn")
        return self

    @property
    def unlimited(self) -> bool:
        return self.to == UNLIMITED

    @property
    def per_period(self) -> bool:
        return self.per is not None


class Plan(BaseModel):
    """
    Plan represents a capability tier.

    Plans do NOT include pricing logic; stripe_price only identifies which
    processor price maps to this plan.
    """
    model_config = ConfigDict(frozen=True)

    key: str
    name: Optional[str] = None
    description: Optional[str] = None
    features: FrozenSet[str] = frozenset()
    limits: Dict[str, LimitConfig] = Field(default_factory=dict)
    stripe_price: Optional[Union[str, Dict[str, str]]] = None
    default: bool = False
    highlighted: bool = False
    meta: Dict[str, Any] = Field(default_factory=dict)

    @property
    def display_name(self) -> str:
        return self.name or self.key.replace("_", " ").title()

    def limit_for(self, limit_key: str) -> Optional[LimitConfig]:
        return self.limits.get(str(limit_key))

    def allows_feature(self, feature_key: str) -> bool:
        return str(feature_key) in self.features

    def stripe_price_ids(self) -> List[str]:
        if self.stripe_price is None:
            return []
        if isinstance(self.stripe_price, str):
            return [self.stripe_price]
        return [value for value in self.stripe_price.values() if value]
