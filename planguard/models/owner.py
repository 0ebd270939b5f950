"""
planguard/models/owner.py

Typed reference to the billable entity a plan belongs to.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator


class OwnerRef(BaseModel):
    """
    OwnerRef identifies an owner by kind + identifier.

    Examples:
    - OwnerRef(owner_type="Organization", owner_id="42")
    - OwnerRef.of(organization)  # any object exposing `id`
    """
    model_config = ConfigDict(frozen=True)

    owner_type: str
    owner_id: str

    @field_validator("owner_id", mode="before")
    @classmethod
    def _stringify_id(cls, value: Any) -> str:
        return str(value)

    @classmethod
    def of(cls, owner: Any) -> "OwnerRef":
        if isinstance(owner, OwnerRef):
            return owner
        owner_type = getattr(owner, "owner_type", None) or type(owner).__name__
        owner_id = getattr(owner, "id", None)
        if owner_id is None:
            raise ValueError(f"Cannot build an owner reference for {owner!r}: no id")
        return cls(owner_type=owner_type, owner_id=owner_id)

    def __str__(self) -> str:
        return f"{self.owner_type}:{self.owner_id}"
