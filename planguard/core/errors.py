"""Error taxonomy and FastAPI handlers."""

import logging
from typing import Any, Optional

from fastapi.responses import JSONResponse
from starlette.requests import Request


class PlanGuardError(Exception):
    code = "planguard_error"
    status_code = 500

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code


class ConfigurationError(PlanGuardError):
    """Invalid plan or limit configuration. Raised at setup time."""
    code = "configuration_error"
    status_code = 500


class PlanNotFoundError(PlanGuardError, LookupError):
    code = "plan_not_found"
    status_code = 404


class LockContentionError(PlanGuardError):
    """Enforcement state row stayed locked after every retry."""
    code = "lock_contention"
    status_code = 503


class FeatureDeniedError(PlanGuardError):
    code = "feature_denied"
    status_code = 403

    def __init__(self, message: str, *, feature_key: str, owner: Any = None):
        super().__init__(message)
        self.feature_key = feature_key
        self.owner = owner


class LimitBlockedError(PlanGuardError):
    code = "limit_blocked"
    status_code = 403

    def __init__(self, result):
        super().__init__(result.message)
        self.result = result
        self.limit_key = result.limit_key
        self.owner = result.owner


def _error_payload(code: str, message: str, **extra: Any) -> dict:
    error = {"code": code, "message": message}
    error.update({k: v for k, v in extra.items() if v is not None})
    return {"error": error, "detail": message}


async def planguard_error_handler(request: Request, exc: PlanGuardError):
    logger = logging.getLogger("planguard")
    log_level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        log_level,
        "planguard.error",
        extra={"error_code": exc.code, "error_message": exc.message, "status": exc.status_code, "path": request.url.path},
    )
    extra = {}
    if isinstance(exc, FeatureDeniedError):
        extra["feature_key"] = exc.feature_key
    if isinstance(exc, LimitBlockedError):
        extra["limit_key"] = exc.limit_key
        extra["metadata"] = exc.result.metadata.model_dump(mode="json")
    payload = _error_payload(exc.code, exc.message, **extra)
    return JSONResponse(status_code=exc.status_code, content=payload)
