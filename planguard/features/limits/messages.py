"""
planguard/features/limits/messages.py

Human-facing messages for limit results.

A configured `message_builder(context=..., **kwargs)` wins whenever it returns
a string; otherwise (or if it raises) the defaults below are used.
"""

import logging
from datetime import datetime
from typing import Any, Optional, Union

from planguard.features.enforcement.policy import time_remaining_phrase
from planguard.features.plans.configuration import Configuration
from planguard.models.plan import Plan


logger = logging.getLogger("planguard.limits")


def humanize(key: str) -> str:
    """'api_calls' -> 'api calls'"""
    text = str(key)
    if text.endswith("_id"):
        text = text[:-3]
    return text.replace("_", " ").strip().lower()


class MessageBuilder:
    def __init__(self, configuration: Configuration):
        self.configuration = configuration

    def custom(self, context: str, **kwargs: Any) -> Optional[str]:
        builder = self.configuration.message_builder
        if builder is None:
            return None
        try:
            built = builder(context=context, **kwargs)
        except Exception:
            logger.warning(
                "[limits] message builder failed, using default message",
                exc_info=True,
                extra={"context": context},
            )
            return None
        return str(built) if built else None

    def _upgrade_plan(self) -> Optional[Plan]:
        return self.configuration.get_highlighted_plan()

    def over_limit(self, limit_key: str, current_usage: int, limit_amount: Union[int, str]) -> str:
        custom = self.custom(
            "over_limit", limit_key=limit_key, current_usage=current_usage, limit_amount=limit_amount
        )
        if custom:
            return custom
        base = f"You've reached your limit of {limit_amount} {humanize(limit_key)} (currently using {current_usage})"
        upgrade = self._upgrade_plan()
        if upgrade is None:
            return base
        return f"{base}. Upgrade to {upgrade.display_name} for higher limits"

    def grace(
        self,
        limit_key: str,
        current_usage: int,
        limit_amount: Union[int, str],
        grace_ends_at: Optional[datetime],
    ) -> str:
        custom = self.custom(
            "grace",
            limit_key=limit_key,
            current_usage=current_usage,
            limit_amount=limit_amount,
            grace_ends_at=grace_ends_at,
        )
        if custom:
            return custom
        remaining = time_remaining_phrase(grace_ends_at, self.configuration.now())
        base = (
            f"You've exceeded your limit of {limit_amount} {humanize(limit_key)}. "
            f"You have {remaining} remaining in your grace period"
        )
        upgrade = self._upgrade_plan()
        if upgrade is None:
            return base
        return f"{base}. Upgrade to {upgrade.display_name} to avoid service interruption"

    def warning(self, limit_key: str, remaining: int, limit_amount: Union[int, str]) -> str:
        custom = self.custom(
            "warning", limit_key=limit_key, remaining=remaining, limit_amount=limit_amount
        )
        if custom:
            return custom
        return f"You have {remaining} {humanize(limit_key)} remaining out of {limit_amount}"

    def within(self, limit_key: str, remaining: int) -> str:
        return f"{remaining} {humanize(limit_key)} remaining"

    def not_configured(self, limit_key: str) -> str:
        custom = self.custom("over_limit", limit_key=limit_key, current_usage=None, limit_amount=None)
        if custom:
            return custom
        return f"{humanize(limit_key).capitalize()} is not configured on your current plan"

    def feature_denied(self, feature_key: str, plan: Optional[Plan]) -> str:
        custom = self.custom(
            "feature_denied", feature_key=feature_key, plan_key=plan.key if plan else None
        )
        if custom:
            return custom
        default_plan = self.configuration.get_default_plan() if self.configuration.default_plan else None
        current_name = plan.display_name if plan else (default_plan.display_name if default_plan else "Current")
        feature_human = humanize(feature_key)
        upgrade = self._upgrade_plan()
        if upgrade is not None:
            return (
                f"Your current plan ({current_name}) doesn't allow you to {feature_human}. "
                f"Please upgrade to {upgrade.display_name}."
            )
        return f"{feature_human.capitalize()} is not available on your current plan ({current_name})."
