"""
planguard/features/usage/service.py

Usage accounting service.

Handles:
- Current usage for a limit (per-period counter row, or live persistent count)
- Remaining / percent used / warning thresholds
- Per-period usage recording (atomic increment, unique-insert race retry)

Per-period counters never decrease; persistent caps are counted live on
every call so deleting a resource frees capacity immediately.
"""

import logging
from typing import Any, List, Optional, Union

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError

from planguard.core.clock import ensure_utc
from planguard.core.database import Database, usages
from planguard.features.periods.service import PeriodCalculator
from planguard.features.plans.configuration import Configuration
from planguard.models.owner import OwnerRef
from planguard.models.plan import UNLIMITED, LimitConfig
from planguard.models.usage import UsageRecord


logger = logging.getLogger("planguard.usage")


def _usage_filter(ref: OwnerRef, limit_key: str, period_start):
    return (
        (usages.c.owner_type == ref.owner_type)
        & (usages.c.owner_id == ref.owner_id)
        & (usages.c.limit_key == str(limit_key))
        & (usages.c.period_start == period_start)
    )


class UsageCounter:
    def __init__(
        self,
        configuration: Configuration,
        database: Database,
        plan_resolver,
        periods: PeriodCalculator,
    ):
        self.configuration = configuration
        self.database = database
        self.plan_resolver = plan_resolver
        self.periods = periods

    def limit_config_for(self, owner: Any, limit_key: str) -> Optional[LimitConfig]:
        plan = self.plan_resolver.effective_plan_for(owner)
        return plan.limit_for(limit_key) if plan else None

    def current_usage_for(
        self, owner: Any, limit_key: str, limit_config: Optional[LimitConfig] = None
    ) -> int:
        """
        Current consumption of `limit_key` for owner.

        Returns 0 when the limit isn't configured on the owner's plan.
        """
        if limit_config is None:
            limit_config = self.limit_config_for(owner, limit_key)
        if limit_config is None:
            return 0
        if limit_config.per_period:
            return self._per_period_usage(owner, limit_key, limit_config)
        return self._persistent_usage(owner, limit_key, limit_config)

    def usage_record_for(
        self, owner: Any, limit_key: str, limit_config: Optional[LimitConfig] = None
    ) -> Optional[UsageRecord]:
        if limit_config is None:
            limit_config = self.limit_config_for(owner, limit_key)
        if limit_config is None or not limit_config.per_period:
            return None

        ref = OwnerRef.of(owner)
        period_start, _ = self.periods.window_for_limit(owner, limit_config)
        with self.database.session() as session:
            row = session.execute(
                select(usages).where(_usage_filter(ref, limit_key, period_start))
            ).first()
            if not row:
                return None
            return UsageRecord(
                owner=ref,
                limit_key=row.limit_key,
                period_start=ensure_utc(row.period_start),
                period_end=ensure_utc(row.period_end),
                used=row.used,
                last_used_at=ensure_utc(row.last_used_at),
            )

    def _per_period_usage(self, owner: Any, limit_key: str, limit_config: LimitConfig) -> int:
        record = self.usage_record_for(owner, limit_key, limit_config)
        return record.used if record else 0

    def _persistent_usage(self, owner: Any, limit_key: str, limit_config: LimitConfig) -> int:
        counter = self.configuration.counter_for(limit_key)
        if counter is None:
            return 0
        if limit_config.count_scope is not None:
            return int(counter(owner, limit_config.count_scope))
        return int(counter(owner))

    def remaining(self, owner: Any, limit_key: str) -> Union[int, str]:
        limit_config = self.limit_config_for(owner, limit_key)
        if limit_config is None or limit_config.unlimited:
            return UNLIMITED
        usage = self.current_usage_for(owner, limit_key, limit_config)
        return max(0, limit_config.to - usage)

    def percent_used(self, owner: Any, limit_key: str) -> float:
        limit_config = self.limit_config_for(owner, limit_key)
        if limit_config is None or limit_config.unlimited or limit_config.to == 0:
            return 0.0
        usage = self.current_usage_for(owner, limit_key, limit_config)
        return min((usage / limit_config.to) * 100, 100.0)

    def warning_thresholds(self, owner: Any, limit_key: str) -> List[float]:
        limit_config = self.limit_config_for(owner, limit_key)
        if limit_config is None:
            return []
        return sorted(limit_config.warn_at)

    def record_usage(self, owner: Any, limit_key: str, amount: int = 1) -> Optional[UsageRecord]:
        """
        Increment the current window's counter by `amount`.

        No-op (returns None) for persistent or unconfigured limits; those are
        counted live.
        """
        if amount < 0:
            raise ValueError("usage amount must not be negative")

        limit_config = self.limit_config_for(owner, limit_key)
        if limit_config is None or not limit_config.per_period:
            logger.debug(
                "[usage] record_usage skipped for non per-period limit",
                extra={"limit_key": limit_key},
            )
            return None

        ref = OwnerRef.of(owner)
        period_start, period_end = self.periods.window_for_limit(owner, limit_config)
        now = self.configuration.now()
        increment = (
            update(usages)
            .where(_usage_filter(ref, limit_key, period_start))
            .values(used=usages.c.used + amount, last_used_at=now, updated_at=now)
        )

        try:
            with self.database.session() as session:
                updated = session.execute(increment)
                if updated.rowcount == 0:
                    session.execute(
                        insert(usages).values(
                            owner_type=ref.owner_type,
                            owner_id=ref.owner_id,
                            limit_key=str(limit_key),
                            period_start=period_start,
                            period_end=period_end,
                            used=amount,
                            last_used_at=now,
                            created_at=now,
                            updated_at=now,
                        )
                    )
        except IntegrityError:
            # Another writer created this window's row first.
            with self.database.session() as session:
                session.execute(increment)

        logger.info(
            "[usage] usage recorded",
            extra={"owner": str(ref), "limit_key": limit_key, "requested": amount},
        )
        return self.usage_record_for(owner, limit_key, limit_config)
