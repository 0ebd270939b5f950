"""
planguard/features/limits/service.py

Limit evaluation: plan + usage + enforcement state -> Result.

Handles:
- evaluate / within_limit (fail closed on unknown plan or limit)
- Feature gating (require_feature)
- Job guard (with_plan_limit)
- Post-consumption hook (after_consumption)
"""

import logging
from datetime import datetime
from typing import Any, Callable, Optional, Union

from planguard.core.errors import FeatureDeniedError
from planguard.features.enforcement.policy import crossed_threshold, exceeded_now
from planguard.features.enforcement.service import GraceManager
from planguard.features.limits.messages import MessageBuilder
from planguard.features.plans.configuration import Configuration
from planguard.features.usage.service import UsageCounter
from planguard.models.enforcement_state import EnforcementState
from planguard.models.owner import OwnerRef
from planguard.models.plan import AfterLimit, LimitConfig
from planguard.models.result import Result, ResultMetadata


logger = logging.getLogger("planguard.limits")


def build_metadata(
    usage: Optional[int],
    limit_amount: Optional[Union[int, str]],
    *,
    grace_ends_at: Optional[datetime] = None,
    system_override: bool = False,
) -> ResultMetadata:
    if isinstance(limit_amount, int) and limit_amount > 0 and usage is not None:
        percent = min((usage / limit_amount) * 100, 100.0)
    else:
        percent = 0.0
    return ResultMetadata(
        current_usage=usage,
        limit_amount=limit_amount,
        percent_used=percent,
        grace_ends_at=grace_ends_at,
        system_override=system_override,
    )


class LimitEvaluator:
    def __init__(
        self,
        configuration: Configuration,
        plan_resolver,
        usage: UsageCounter,
        grace: GraceManager,
        messages: Optional[MessageBuilder] = None,
    ):
        self.configuration = configuration
        self.plan_resolver = plan_resolver
        self.usage = usage
        self.grace = grace
        self.messages = messages or MessageBuilder(configuration)

    def limit_config_for(self, owner: Any, limit_key: str) -> Optional[LimitConfig]:
        plan = self.plan_resolver.effective_plan_for(owner)
        return plan.limit_for(limit_key) if plan else None

    def evaluate(
        self,
        owner: Any,
        limit_key: str,
        requested: int = 1,
        *,
        allow_system_override: bool = False,
    ) -> Result:
        """
        Decide whether `owner` may consume `requested` more of `limit_key`.

        Side effects: may record a warning threshold, start grace or confirm a
        block (each fires its lifecycle event once).
        """
        if requested < 0:
            raise ValueError("requested amount must not be negative")

        limit_key = str(limit_key)
        limit_config = self.limit_config_for(owner, limit_key)
        if limit_config is None:
            logger.warning(
                "[limits] limit not configured, denying",
                extra={"owner": str(OwnerRef.of(owner)), "limit_key": limit_key, "state": "blocked"},
            )
            return Result.denied(
                self.messages.not_configured(limit_key),
                limit_key=limit_key,
                owner=owner,
            )

        if limit_config.unlimited:
            return Result.within(
                f"Unlimited {limit_key}",
                limit_key=limit_key,
                owner=owner,
                metadata=build_metadata(None, limit_config.to),
            )

        usage = self.usage.current_usage_for(owner, limit_key, limit_config)
        cap = limit_config.to
        remaining = cap - usage

        if remaining >= requested:
            return self._within_bounds(owner, limit_key, limit_config, usage, requested)

        if allow_system_override:
            logger.info(
                "[limits] over limit, system override",
                extra={"owner": str(OwnerRef.of(owner)), "limit_key": limit_key, "current_usage": usage, "limit_amount": cap},
            )
            return Result.denied(
                self.messages.over_limit(limit_key, usage, cap),
                limit_key=limit_key,
                owner=owner,
                metadata=build_metadata(usage, cap, system_override=True),
            )

        return self._over_limit(owner, limit_key, limit_config, usage, requested)

    def _within_bounds(
        self, owner: Any, limit_key: str, limit_config: LimitConfig, usage: int, requested: int
    ) -> Result:
        cap = limit_config.to
        state = self.grace.heal(owner, limit_key, usage, limit_config)
        last_threshold = state.last_warning_threshold if state else None

        threshold = crossed_threshold(limit_config.warn_at, usage, requested, cap, last_threshold)
        left_after = cap - usage - requested
        metadata = build_metadata(usage + requested, cap)

        if threshold is not None:
            self.grace.maybe_emit_warning(owner, limit_key, threshold)
            return Result.warned(
                self.messages.warning(limit_key, left_after, cap),
                limit_key=limit_key,
                owner=owner,
                metadata=metadata,
            )
        return Result.within(
            self.messages.within(limit_key, left_after),
            limit_key=limit_key,
            owner=owner,
            metadata=metadata,
        )

    def _over_limit(
        self, owner: Any, limit_key: str, limit_config: LimitConfig, usage: int, requested: int
    ) -> Result:
        cap = limit_config.to
        log_extra = {
            "owner": str(OwnerRef.of(owner)),
            "limit_key": limit_key,
            "current_usage": usage,
            "limit_amount": cap,
            "requested": requested,
        }

        if limit_config.after_limit == AfterLimit.JUST_WARN:
            logger.info("[limits] over limit, warn only", extra={**log_extra, "state": "warning"})
            return Result.warned(
                self.messages.over_limit(limit_key, usage, cap),
                limit_key=limit_key,
                owner=owner,
                metadata=build_metadata(usage, cap),
            )

        if limit_config.after_limit == AfterLimit.BLOCK_USAGE or self.grace.should_block(owner, limit_key):
            self.grace.mark_blocked(owner, limit_key)
            logger.info("[limits] over limit, blocked", extra={**log_extra, "state": "blocked"})
            return Result.denied(
                self.messages.over_limit(limit_key, usage, cap),
                limit_key=limit_key,
                owner=owner,
                metadata=build_metadata(usage, cap),
            )

        if not self.grace.grace_active(owner, limit_key):
            self.grace.mark_exceeded(owner, limit_key, grace_period=limit_config.grace)
        ends_at = self.grace.grace_ends_at(owner, limit_key)
        logger.info("[limits] over limit, in grace", extra={**log_extra, "state": "grace"})
        return Result.in_grace(
            self.messages.grace(limit_key, usage, cap, ends_at),
            limit_key=limit_key,
            owner=owner,
            metadata=build_metadata(usage, cap, grace_ends_at=ends_at),
        )

    def within_limit(self, owner: Any, limit_key: str, by: int = 1) -> bool:
        """Side-effect free capacity check; unconfigured limits count as no capacity."""
        limit_config = self.limit_config_for(owner, limit_key)
        if limit_config is None:
            return False
        if limit_config.unlimited:
            return True
        usage = self.usage.current_usage_for(owner, limit_key, limit_config)
        return limit_config.to - usage >= by

    def require_feature(self, owner: Any, feature_key: str) -> bool:
        """
        Raises:
            FeatureDeniedError: If the owner's plan doesn't allow `feature_key`
        """
        plan = self.plan_resolver.effective_plan_for(owner)
        if plan is not None and plan.allows_feature(feature_key):
            return True
        logger.info(
            "[limits] feature denied",
            extra={"owner": str(OwnerRef.of(owner)), "feature_key": feature_key},
        )
        raise FeatureDeniedError(
            self.messages.feature_denied(feature_key, plan),
            feature_key=str(feature_key),
            owner=owner,
        )

    def with_plan_limit(
        self,
        owner: Any,
        limit_key: str,
        work: Optional[Callable[[Result], Any]] = None,
        *,
        by: int = 1,
        allow_system_override: bool = False,
    ) -> Result:
        """Run `work(result)` unless blocked without override. Always returns the Result."""
        result = self.evaluate(owner, limit_key, by, allow_system_override=allow_system_override)
        if result.blocked and not (allow_system_override and result.system_override):
            return result
        if work is not None:
            work(result)
        return result

    def after_consumption(self, owner: Any, limit_key: str) -> Optional[EnforcementState]:
        """
        Bookkeeping once a resource has been created: emit the highest warning
        threshold now reached (if new) and, for grace_then_block, start grace
        when usage is over the cap.
        """
        limit_config = self.limit_config_for(owner, limit_key)
        if limit_config is None or limit_config.unlimited:
            return None

        cap = limit_config.to
        usage = self.usage.current_usage_for(owner, limit_key, limit_config)
        state = self.grace.state_for(owner, limit_key)
        last_threshold = state.last_warning_threshold if state else None

        if cap > 0:
            reached = [t for t in limit_config.warn_at if usage >= round(t * cap, 9)]
            if reached and max(reached) > (last_threshold or 0.0):
                state = self.grace.maybe_emit_warning(owner, limit_key, max(reached))

        if limit_config.after_limit == AfterLimit.GRACE_THEN_BLOCK and exceeded_now(
            usage, cap, limit_config.after_limit
        ):
            state = self.grace.mark_exceeded(owner, limit_key, grace_period=limit_config.grace)
        return state
