"""
planguard/models/result.py

Outcome of a limit evaluation.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class LimitState(str, Enum):
    WITHIN = "within"
    WARNING = "warning"
    GRACE = "grace"
    BLOCKED = "blocked"


class ResultMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    current_usage: Optional[int] = None
    limit_amount: Optional[Union[int, str]] = None
    percent_used: float = 0.0
    grace_ends_at: Optional[datetime] = None
    system_override: bool = False


class Result(BaseModel):
    """
    Result is what callers branch on: controller guards, job guards, UI helpers.

    A blocked Result is a normal return value, not an error.
    """
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    state: LimitState
    message: str
    limit_key: Optional[str] = None
    owner: Optional[Any] = None
    metadata: ResultMetadata = Field(default_factory=ResultMetadata)

    @property
    def ok(self) -> bool:
        return self.state == LimitState.WITHIN

    @property
    def warning(self) -> bool:
        return self.state == LimitState.WARNING

    @property
    def grace(self) -> bool:
        return self.state == LimitState.GRACE

    @property
    def blocked(self) -> bool:
        return self.state == LimitState.BLOCKED

    @property
    def success(self) -> bool:
        return not self.blocked

    @property
    def failure(self) -> bool:
        return self.blocked

    @property
    def system_override(self) -> bool:
        return self.metadata.system_override

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "message": self.message,
            "limit_key": self.limit_key,
            "metadata": self.metadata.model_dump(mode="json"),
            "ok": self.ok,
            "warning": self.warning,
            "grace": self.grace,
            "blocked": self.blocked,
        }

    @classmethod
    def within(cls, message: str = "Within limit", **kwargs: Any) -> "Result":
        return cls(state=LimitState.WITHIN, message=message, **kwargs)

    @classmethod
    def warned(cls, message: str, **kwargs: Any) -> "Result":
        return cls(state=LimitState.WARNING, message=message, **kwargs)

    @classmethod
    def in_grace(cls, message: str, **kwargs: Any) -> "Result":
        return cls(state=LimitState.GRACE, message=message, **kwargs)

    @classmethod
    def denied(cls, message: str, **kwargs: Any) -> "Result":
        return cls(state=LimitState.BLOCKED, message=message, **kwargs)

    def __repr__(self) -> str:
        return f"<Result state={self.state.value} message={self.message!r}>"
