"""
planguard/models/usage.py

Per-period usage counter row.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict

from planguard.models.owner import OwnerRef


class UsageRecord(BaseModel):
    """
    UsageRecord counts consumption of a per-period limit within one window.

    Constraint: unique per (owner, limit_key, period_start). `used` only grows.
    """
    model_config = ConfigDict(frozen=True)

    owner: OwnerRef
    limit_key: str
    period_start: datetime
    period_end: datetime
    used: int = 0
    last_used_at: Optional[datetime] = None
