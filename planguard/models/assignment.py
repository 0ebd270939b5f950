"""
planguard/models/assignment.py

Links owners to an explicitly assigned plan.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict

from planguard.models.owner import OwnerRef


class AssignmentSource(str, Enum):
    MANUAL = "manual"
    ADMIN = "admin"
    BILLING_SYNC = "billing_sync"


class Assignment(BaseModel):
    """
    Assignment represents an owner's explicitly assigned plan.

    Constraint: at most one assignment per owner. Owners without one fall
    back to the default plan.
    """
    model_config = ConfigDict(frozen=True)

    owner: OwnerRef
    plan_key: str
    source: AssignmentSource = AssignmentSource.MANUAL
    assigned_at: Optional[datetime] = None
