"""
planguard/features/periods/service.py

Period window calculation for per-period limits.

Handles:
- Cycle selection (limit's `per` -> configuration period_cycle)
- Calendar month / week / day windows aligned in the configured timezone
- Rolling duration windows
- Billing-cycle windows from the subscription lookup collaborator
- Custom callable windows (validated)

All windows are half-open [start, end) and returned as UTC datetimes.
"""

import calendar
import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any, Optional, Tuple

from planguard.core.clock import ensure_utc
from planguard.core.errors import ConfigurationError
from planguard.features.plans.configuration import Configuration
from planguard.models.plan import LimitConfig, PeriodCycle, normalize_period


logger = logging.getLogger("planguard.periods")

Window = Tuple[datetime, datetime]


def add_months(value: datetime, months: int) -> datetime:
    """Shift by whole months, clamping the day to the target month's length."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


class PeriodCalculator:
    def __init__(self, configuration: Configuration, plan_resolver=None):
        self.configuration = configuration
        self.plan_resolver = plan_resolver

    def window_for(self, owner: Any, limit_key: str) -> Window:
        """
        Current window for `limit_key` on the owner's effective plan.

        Falls back to the configured period_cycle when the limit has no `per`
        (or the owner's plan doesn't define the limit).
        """
        limit_config = None
        if self.plan_resolver is not None:
            plan = self.plan_resolver.effective_plan_for(owner)
            limit_config = plan.limit_for(limit_key) if plan else None
        return self.window_for_limit(owner, limit_config)

    def window_for_limit(self, owner: Any, limit_config: Optional[LimitConfig]) -> Window:
        period = limit_config.per if limit_config is not None and limit_config.per is not None else None
        if period is None:
            period = self.configuration.period_cycle
        return self.window_for_period(owner, period)

    def window_for_period(self, owner: Any, period: Any) -> Window:
        try:
            period = normalize_period(period)
        except ValueError as exc:
            raise ConfigurationError(f"Unknown period type: {period!r}") from exc

        if period == PeriodCycle.BILLING_CYCLE:
            return self._billing_cycle_window(owner)
        if period == PeriodCycle.CALENDAR_MONTH:
            return self._calendar_month_window()
        if period == PeriodCycle.CALENDAR_WEEK:
            return self._calendar_week_window()
        if period == PeriodCycle.CALENDAR_DAY:
            return self._calendar_day_window()
        if isinstance(period, timedelta):
            return self._duration_window(period)
        if callable(period):
            return self._validate_custom_window(period(owner))
        raise ConfigurationError(f"Unknown period type: {period!r}")

    # Calendar windows

    def _local_now(self) -> datetime:
        return self.configuration.now().astimezone(self.configuration.tzinfo)

    def _local_midnight(self, day: date) -> datetime:
        return datetime(day.year, day.month, day.day, tzinfo=self.configuration.tzinfo)

    def _to_utc(self, start: datetime, end: datetime) -> Window:
        return start.astimezone(timezone.utc), end.astimezone(timezone.utc)

    def _calendar_month_window(self) -> Window:
        today = self._local_now().date()
        first = today.replace(day=1)
        next_first = add_months(datetime(first.year, first.month, 1), 1).date()
        return self._to_utc(self._local_midnight(first), self._local_midnight(next_first))

    def _calendar_week_window(self) -> Window:
        today = self._local_now().date()
        monday = today - timedelta(days=today.weekday())
        return self._to_utc(self._local_midnight(monday), self._local_midnight(monday + timedelta(days=7)))

    def _calendar_day_window(self) -> Window:
        today = self._local_now().date()
        return self._to_utc(self._local_midnight(today), self._local_midnight(today + timedelta(days=1)))

    def _duration_window(self, duration: timedelta) -> Window:
        start = self._local_midnight(self._local_now().date())
        return self._to_utc(start, start + duration)

    # Billing cycle

    def _billing_cycle_window(self, owner: Any) -> Window:
        lookup = self.configuration.subscription_lookup
        if lookup is None:
            return self._calendar_month_window()

        try:
            subscription = lookup(owner)
        except Exception:
            logger.warning(
                "[periods] subscription lookup failed, using calendar month",
                exc_info=True,
            )
            return self._calendar_month_window()

        if subscription is None:
            return self._calendar_month_window()

        period_start = getattr(subscription, "current_period_start", None)
        period_end = getattr(subscription, "current_period_end", None)
        if isinstance(period_start, datetime) and isinstance(period_end, datetime):
            return ensure_utc(period_start), ensure_utc(period_end)

        created_at = getattr(subscription, "created_at", None)
        if isinstance(created_at, datetime):
            return self._monthly_window_from(ensure_utc(created_at))

        return self._calendar_month_window()

    def _monthly_window_from(self, anchor: datetime) -> Window:
        now = self.configuration.now()
        months_since = (now.year - anchor.year) * 12 + (now.month - anchor.month)
        start = add_months(anchor, months_since)
        if start > now:
            months_since -= 1
            start = add_months(anchor, months_since)
        end = add_months(anchor, months_since + 1)
        if now >= end:
            start, end = end, add_months(anchor, months_since + 2)
        return start, end

    # Custom windows

    def _validate_custom_window(self, window: Any) -> Window:
        if not isinstance(window, (tuple, list)) or len(window) != 2:
            raise ConfigurationError("Custom period callable must return (start_time, end_time)")
        start, end = window
        if not isinstance(start, datetime) or not isinstance(end, datetime):
            raise ConfigurationError("Custom period window times must be datetimes")
        start, end = ensure_utc(start), ensure_utc(end)
        if end <= start:
            raise ConfigurationError("Custom period end_time must be after start_time")
        return start, end
