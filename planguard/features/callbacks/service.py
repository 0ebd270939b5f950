"""
planguard/features/callbacks/service.py

Lifecycle event dispatch (warning, grace_start, block).

Handlers are registered on the Configuration at setup time. For each event
the handler registered for the exact limit key runs first, then the wildcard
handler. A failing handler is logged and never interrupts enforcement.
"""

import logging
from typing import Any, Optional

from planguard.core.logging import log_event
from planguard.features.plans.configuration import EVENT_TYPES, Configuration
from planguard.models.owner import OwnerRef


logger = logging.getLogger("planguard.callbacks")


class CallbackDispatcher:
    def __init__(self, configuration: Configuration):
        self.configuration = configuration

    def dispatch(self, event_type: str, limit_key: str, owner: Any, payload: Optional[Any] = None) -> int:
        """
        Call every handler for (event_type, limit_key) as handler(owner, limit_key, payload).

        Returns the number of handlers that completed without raising.
        """
        if event_type not in EVENT_TYPES:
            logger.warning("[callbacks] unknown event type", extra={"event_type": event_type})
            return 0

        handlers = self.configuration.handlers_for(event_type, limit_key)
        completed = 0
        for registered_key, handler in handlers:
            try:
                handler(owner, str(limit_key), payload)
                completed += 1
            except Exception:
                logger.exception(
                    "[callbacks] handler failed",
                    extra={
                        "owner": str(OwnerRef.of(owner)),
                        "event_type": event_type,
                        "limit_key": str(limit_key),
                        "registered_key": registered_key,
                        "error_code": "callback_error",
                    },
                )

        if handlers:
            log_event(
                "info",
                "callback_dispatched",
                owner=owner,
                limit_key=str(limit_key),
                event_type=event_type,
                extra={"handlers": len(handlers), "completed": completed},
            )
        return completed

    def warning(self, owner: Any, limit_key: str, threshold: float) -> int:
        return self.dispatch("warning", limit_key, owner, threshold)

    def grace_start(self, owner: Any, limit_key: str, grace_ends_at) -> int:
        return self.dispatch("grace_start", limit_key, owner, grace_ends_at)

    def block(self, owner: Any, limit_key: str) -> int:
        return self.dispatch("block", limit_key, owner, None)
