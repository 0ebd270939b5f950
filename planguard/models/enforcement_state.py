"""
planguard/models/enforcement_state.py

Snapshot of the enforcement state machine for one (owner, limit_key).

States:
- Clean: no row, or exceeded_at is null
- Exceeded / in grace: exceeded_at set, blocked_at null, grace deadline ahead
- Blocked: blocked_at set, or grace deadline passed
"""

from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from planguard.models.owner import OwnerRef


class EnforcementState(BaseModel):
    model_config = ConfigDict(frozen=True)

    owner: OwnerRef
    limit_key: str
    exceeded_at: Optional[datetime] = None
    blocked_at: Optional[datetime] = None
    last_warning_threshold: Optional[float] = None
    last_warning_at: Optional[datetime] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def exceeded(self) -> bool:
        return self.exceeded_at is not None

    @property
    def blocked(self) -> bool:
        return self.blocked_at is not None

    @property
    def in_grace(self) -> bool:
        return self.exceeded and not self.blocked

    @property
    def grace_period(self) -> Optional[timedelta]:
        seconds = self.data.get("grace_period")
        if seconds is None:
            return None
        return timedelta(seconds=int(seconds))

    @property
    def grace_ends_at(self) -> Optional[datetime]:
        if self.exceeded_at is None or self.grace_period is None:
            return None
        return self.exceeded_at + self.grace_period

    @property
    def window_start_epoch(self) -> Optional[int]:
        return self.data.get("window_start_epoch")

    @property
    def window_end_epoch(self) -> Optional[int]:
        return self.data.get("window_end_epoch")

    def grace_expired(self, now: datetime) -> bool:
        ends_at = self.grace_ends_at
        if ends_at is None:
            return False
        return now >= ends_at
