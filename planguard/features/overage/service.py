"""
planguard/features/overage/service.py

Overage report against a target plan (downgrade UX).
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Any, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from planguard.features.enforcement.service import GraceManager
from planguard.features.limits.messages import MessageBuilder
from planguard.features.plans.configuration import Configuration
from planguard.features.usage.service import UsageCounter
from planguard.models.plan import Plan


logger = logging.getLogger("planguard.overage")


class LimitKind(str, Enum):
    PERSISTENT = "persistent"
    PER_PERIOD = "per_period"


class OverageItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    limit_key: str
    kind: LimitKind
    current_usage: int
    allowed: int
    overage: int
    grace_active: bool = False
    grace_ends_at: Optional[datetime] = None


class OverageReport(BaseModel):
    model_config = ConfigDict(frozen=True)

    items: List[OverageItem] = Field(default_factory=list)
    message: str


class OverageReporter:
    def __init__(
        self,
        configuration: Configuration,
        usage: UsageCounter,
        grace: GraceManager,
        messages: Optional[MessageBuilder] = None,
    ):
        self.configuration = configuration
        self.usage = usage
        self.grace = grace
        self.messages = messages or MessageBuilder(configuration)

    def report(self, owner: Any, target_plan: Union[Plan, str]) -> List[OverageItem]:
        """Limits on which the owner's current usage exceeds `target_plan`."""
        plan = target_plan if isinstance(target_plan, Plan) else self.configuration.get_plan(target_plan)

        items = []
        for limit_key, limit_config in plan.limits.items():
            if limit_config.unlimited:
                continue
            usage = self.usage.current_usage_for(owner, limit_key, limit_config)
            over_by = max(usage - limit_config.to, 0)
            if over_by <= 0:
                continue
            items.append(
                OverageItem(
                    limit_key=limit_key,
                    kind=LimitKind.PER_PERIOD if limit_config.per_period else LimitKind.PERSISTENT,
                    current_usage=usage,
                    allowed=limit_config.to,
                    overage=over_by,
                    grace_active=self.grace.grace_active(owner, limit_key),
                    grace_ends_at=self.grace.grace_ends_at(owner, limit_key),
                )
            )
        return items

    def report_with_message(self, owner: Any, target_plan: Union[Plan, str]) -> OverageReport:
        items = self.report(owner, target_plan)
        if not items:
            return OverageReport(items=[], message="No overages on target plan")

        message = self.messages.custom("overage_report", items=items)
        if not message:
            parts = [f"{i.limit_key}: {i.current_usage} > {i.allowed} (reduce by {i.overage})" for i in items]
            message = f"Over target plan on: {', '.join(parts)}."

        grace_info = [
            f"{i.limit_key} grace ends at {i.grace_ends_at.isoformat()}"
            for i in items
            if i.grace_active and i.grace_ends_at is not None
        ]
        if grace_info:
            message = f"{message} Grace active: {', '.join(grace_info)}."

        logger.info(
            "[overage] report built",
            extra={"items": len(items)},
        )
        return OverageReport(items=items, message=message)
