"""
FastAPI adapter for limit and feature guards.

Usage:
    app = FastAPI()
    register_exception_handlers(app)

    @app.post("/projects")
    def create_project(result: Result = Depends(limit_guard(guard, "projects", owner=current_org))):
        ...

A blocked Result becomes LimitBlockedError (HTTP 403) unless the guard was
built with allow_system_override=True. Warning and grace results pass
through so handlers can surface them.
"""

from typing import Any, Callable

from fastapi import Depends, FastAPI

from planguard.core.errors import PlanGuardError, LimitBlockedError, planguard_error_handler
from planguard.models.result import Result


def limit_guard(
    guard,
    limit_key: str,
    *,
    owner: Callable[..., Any],
    by: int = 1,
    allow_system_override: bool = False,
):
    """Build a dependency that evaluates `limit_key` for the owner returned by `owner`."""

    def dependency(current_owner: Any = Depends(owner)) -> Result:
        result = guard.evaluate(
            current_owner, limit_key, by, allow_system_override=allow_system_override
        )
        if result.blocked and not (allow_system_override and result.system_override):
            raise LimitBlockedError(result)
        return result

    return dependency


def feature_guard(guard, feature_key: str, *, owner: Callable[..., Any]):
    """Build a dependency that raises FeatureDeniedError (HTTP 403) when the plan lacks the feature."""

    def dependency(current_owner: Any = Depends(owner)) -> bool:
        return guard.require_feature(current_owner, feature_key)

    return dependency


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(PlanGuardError, planguard_error_handler)
