"""
planguard/features/enforcement/service.py

Grace manager: the enforcement state machine for one (owner, limit_key).

Handles:
- Clean -> Exceeded (grace) -> Blocked transitions
- Monotonic warning threshold bookkeeping
- Self-healing (stale per-period rows, usage back under the cap)
- Row locking with bounded retry on lock contention

Every mutation runs in its own transaction holding the row lock
(SELECT ... FOR UPDATE, insert-then-reselect when the row doesn't exist yet).
Lifecycle events are collected inside the transaction and dispatched only
after it commits, so a retried transaction never fires twice.
"""

import logging
import time
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from sqlalchemy import delete, insert, select, update
from sqlalchemy.exc import DBAPIError, IntegrityError

from planguard.core.clock import ensure_utc, to_epoch
from planguard.core.database import Database, enforcement_states
from planguard.core.errors import LockContentionError
from planguard.features.callbacks.service import CallbackDispatcher
from planguard.features.enforcement.policy import exceeded_now, stale_for_window
from planguard.features.periods.service import PeriodCalculator
from planguard.features.plans.configuration import Configuration
from planguard.models.enforcement_state import EnforcementState
from planguard.models.owner import OwnerRef
from planguard.models.plan import AfterLimit, LimitConfig


logger = logging.getLogger("planguard.enforcement")

# Driver messages that mean "someone else holds the lock", across backends.
LOCK_ERROR_MARKERS = (
    "deadlock",
    "lock wait timeout",
    "lock timeout",
    "could not obtain lock",
    "database is locked",
    "database table is locked",
)

Event = Tuple[str, Any]
Mutation = Callable[[EnforcementState], Tuple[Optional[Dict[str, Any]], List[Event]]]


def is_lock_error(exc: Exception) -> bool:
    text = str(getattr(exc, "orig", None) or exc).lower()
    return any(marker in text for marker in LOCK_ERROR_MARKERS)


def _state_filter(ref: OwnerRef, limit_key: str):
    return (
        (enforcement_states.c.owner_type == ref.owner_type)
        & (enforcement_states.c.owner_id == ref.owner_id)
        & (enforcement_states.c.limit_key == str(limit_key))
    )


def _to_state(ref: OwnerRef, row) -> EnforcementState:
    return EnforcementState(
        owner=ref,
        limit_key=row.limit_key,
        exceeded_at=ensure_utc(row.exceeded_at),
        blocked_at=ensure_utc(row.blocked_at),
        last_warning_threshold=row.last_warning_threshold,
        last_warning_at=ensure_utc(row.last_warning_at),
        data=dict(row.data or {}),
        created_at=ensure_utc(row.created_at),
        updated_at=ensure_utc(row.updated_at),
    )


class GraceManager:
    def __init__(
        self,
        configuration: Configuration,
        database: Database,
        plan_resolver,
        periods: PeriodCalculator,
        dispatcher: CallbackDispatcher,
    ):
        self.configuration = configuration
        self.database = database
        self.plan_resolver = plan_resolver
        self.periods = periods
        self.dispatcher = dispatcher

    def limit_config_for(self, owner: Any, limit_key: str) -> Optional[LimitConfig]:
        plan = self.plan_resolver.effective_plan_for(owner)
        return plan.limit_for(limit_key) if plan else None

    def _current_window(self, owner: Any, limit_config: Optional[LimitConfig]) -> Optional[Tuple[datetime, datetime]]:
        if limit_config is None or not limit_config.per_period:
            return None
        return self.periods.window_for_limit(owner, limit_config)

    def _resolve_grace(self, limit_config: Optional[LimitConfig], grace_period: Any) -> timedelta:
        if grace_period is not None:
            if isinstance(grace_period, timedelta):
                return grace_period
            return timedelta(seconds=int(grace_period))
        if limit_config is not None and limit_config.grace is not None:
            return limit_config.grace
        return self.configuration.default_grace

    # Transitions

    def mark_exceeded(
        self, owner: Any, limit_key: str, grace_period: Union[timedelta, int, None] = None
    ) -> EnforcementState:
        """
        Start grace for (owner, limit_key). Idempotent: an already exceeded
        state is returned untouched and no event fires.
        """
        limit_config = self.limit_config_for(owner, limit_key)
        grace = self._resolve_grace(limit_config, grace_period)
        window = self._current_window(owner, limit_config)
        now = self.configuration.now()

        def mutate(state: EnforcementState):
            if state.exceeded:
                return None, []
            data = dict(state.data)
            data["grace_period"] = int(grace.total_seconds())
            data["window_start_epoch"] = to_epoch(window[0]) if window else None
            data["window_end_epoch"] = to_epoch(window[1]) if window else None
            values = {"exceeded_at": now, "data": data, "updated_at": now}
            return values, [("grace_start", now + grace)]

        state = self._with_lock(owner, limit_key, mutate, window)
        return state

    def mark_blocked(self, owner: Any, limit_key: str) -> EnforcementState:
        """Confirm a hard block. Idempotent; `block` fires once per transition."""
        limit_config = self.limit_config_for(owner, limit_key)
        window = self._current_window(owner, limit_config)
        now = self.configuration.now()

        def mutate(state: EnforcementState):
            if state.blocked:
                return None, []
            values: Dict[str, Any] = {"blocked_at": now, "updated_at": now}
            if window and state.window_start_epoch is None:
                data = dict(state.data)
                data["window_start_epoch"] = to_epoch(window[0])
                data["window_end_epoch"] = to_epoch(window[1])
                values["data"] = data
            return values, [("block", None)]

        return self._with_lock(owner, limit_key, mutate, window)

    def maybe_emit_warning(self, owner: Any, limit_key: str, threshold: float) -> EnforcementState:
        """Record and emit `threshold` only if it's above the last one notified this window."""
        limit_config = self.limit_config_for(owner, limit_key)
        window = self._current_window(owner, limit_config)
        now = self.configuration.now()
        threshold = float(threshold)

        def mutate(state: EnforcementState):
            if threshold <= (state.last_warning_threshold or 0.0):
                return None, []
            values: Dict[str, Any] = {
                "last_warning_threshold": threshold,
                "last_warning_at": now,
                "updated_at": now,
            }
            if window:
                data = dict(state.data)
                data["window_start_epoch"] = to_epoch(window[0])
                data["window_end_epoch"] = to_epoch(window[1])
                values["data"] = data
            return values, [("warning", threshold)]

        return self._with_lock(owner, limit_key, mutate, window)

    def heal(
        self, owner: Any, limit_key: str, usage: int, limit_config: Optional[LimitConfig] = None
    ) -> Optional[EnforcementState]:
        """
        Clear exceeded/blocked flags once usage is genuinely back in range.

        Returns the (possibly updated) state, or None when there is no row.
        """
        if limit_config is None:
            limit_config = self.limit_config_for(owner, limit_key)
        state = self._fresh_state(owner, limit_key, limit_config)
        if state is None or limit_config is None or limit_config.unlimited:
            return state
        if not (state.exceeded or state.blocked):
            return state
        if exceeded_now(usage, limit_config.to, limit_config.after_limit):
            return state

        now = self.configuration.now()
        cleared = [False]

        def mutate(current: EnforcementState):
            cleared[0] = current.exceeded or current.blocked
            if not cleared[0]:
                return None, []
            return {"exceeded_at": None, "blocked_at": None, "updated_at": now}, []

        healed = self._with_lock(owner, limit_key, mutate, self._current_window(owner, limit_config))
        if cleared[0]:
            logger.info(
                "[enforcement] state healed",
                extra={"owner": str(OwnerRef.of(owner)), "limit_key": limit_key, "current_usage": usage},
            )
        return healed

    def reset_state(self, owner: Any, limit_key: str) -> bool:
        ref = OwnerRef.of(owner)
        with self.database.session() as session:
            result = session.execute(delete(enforcement_states).where(_state_filter(ref, limit_key)))
            return result.rowcount > 0

    # Reads

    def grace_active(self, owner: Any, limit_key: str) -> bool:
        state = self._fresh_state(owner, limit_key)
        if state is None or not state.exceeded:
            return False
        return not state.grace_expired(self.configuration.now())

    def should_block(self, owner: Any, limit_key: str) -> bool:
        limit_config = self.limit_config_for(owner, limit_key)
        if limit_config is None:
            return False
        if limit_config.after_limit == AfterLimit.JUST_WARN:
            return False
        if limit_config.after_limit == AfterLimit.BLOCK_USAGE:
            return True

        state = self._fresh_state(owner, limit_key, limit_config)
        if state is None or not state.exceeded:
            return False
        return state.blocked or state.grace_expired(self.configuration.now())

    def grace_ends_at(self, owner: Any, limit_key: str) -> Optional[datetime]:
        state = self._fresh_state(owner, limit_key)
        return state.grace_ends_at if state else None

    def state_for(self, owner: Any, limit_key: str) -> Optional[EnforcementState]:
        return self._fresh_state(owner, limit_key)

    def _find_state(self, ref: OwnerRef, limit_key: str) -> Optional[EnforcementState]:
        with self.database.session() as session:
            row = session.execute(
                select(enforcement_states).where(_state_filter(ref, limit_key))
            ).first()
            return _to_state(ref, row) if row else None

    def _fresh_state(
        self, owner: Any, limit_key: str, limit_config: Optional[LimitConfig] = None
    ) -> Optional[EnforcementState]:
        """Stored state, or None after deleting a row left over from an earlier window."""
        ref = OwnerRef.of(owner)
        state = self._find_state(ref, limit_key)
        if state is None:
            return None
        if limit_config is None:
            limit_config = self.limit_config_for(owner, limit_key)
        window = self._current_window(owner, limit_config)
        if window is None or not stale_for_window(state, window[0]):
            return state
        return self._discard_if_stale(ref, limit_key, window[0])

    def _discard_if_stale(self, ref: OwnerRef, limit_key: str, period_start: datetime) -> Optional[EnforcementState]:
        """
        Delete the row under its lock if it still belongs to an earlier window.

        The unlocked read may be outdated: a writer can have replaced the row
        for the current window in the meantime. That row is returned as is.
        """
        with self.database.session() as session:
            locked = select(enforcement_states).where(_state_filter(ref, limit_key)).with_for_update()
            row = session.execute(locked).first()
            if row is None:
                return None
            current = _to_state(ref, row)
            if not stale_for_window(current, period_start):
                return current
            session.execute(delete(enforcement_states).where(enforcement_states.c.id == row.id))
        logger.info(
            "[enforcement] stale window state discarded",
            extra={"owner": str(ref), "limit_key": limit_key},
        )
        return None

    # Locking

    def _lock_row(self, session, ref: OwnerRef, limit_key: str):
        locked = select(enforcement_states).where(_state_filter(ref, limit_key)).with_for_update()
        row = session.execute(locked).first()
        if row:
            return row
        now = self.configuration.now()
        try:
            with session.begin_nested():
                session.execute(
                    insert(enforcement_states).values(
                        owner_type=ref.owner_type,
                        owner_id=ref.owner_id,
                        limit_key=str(limit_key),
                        data={},
                        created_at=now,
                        updated_at=now,
                    )
                )
        except IntegrityError:
            # Concurrent creation; the other writer's row is there now.
            pass
        return session.execute(locked).one()

    def _with_lock(
        self,
        owner: Any,
        limit_key: str,
        mutate: Mutation,
        window: Optional[Tuple[datetime, datetime]] = None,
    ) -> EnforcementState:
        ref = OwnerRef.of(owner)
        attempts = max(1, int(self.configuration.lock_retry_attempts))

        for attempt in range(1, attempts + 1):
            try:
                with self.database.session() as session:
                    row = self._lock_row(session, ref, limit_key)
                    state = _to_state(ref, row)
                    if window is not None and stale_for_window(state, window[0]):
                        session.execute(delete(enforcement_states).where(enforcement_states.c.id == row.id))
                        row = self._lock_row(session, ref, limit_key)
                        state = _to_state(ref, row)

                    values, events = mutate(state)
                    if values:
                        session.execute(
                            update(enforcement_states)
                            .where(enforcement_states.c.id == row.id)
                            .values(**values)
                        )
                        state = state.model_copy(update=values)
                break
            except DBAPIError as exc:
                if not is_lock_error(exc):
                    raise
                if attempt >= attempts:
                    logger.error(
                        "[enforcement] lock contention, giving up",
                        extra={"owner": str(ref), "limit_key": limit_key, "error_code": LockContentionError.code},
                    )
                    raise LockContentionError(
                        f"Enforcement state for {ref} / {limit_key} stayed locked after {attempts} attempts"
                    ) from exc
                logger.warning(
                    "[enforcement] lock contention, retrying",
                    extra={"owner": str(ref), "limit_key": limit_key, "attempt": attempt},
                )
                time.sleep(self.configuration.lock_retry_backoff * attempt)

        for event_type, payload in events:
            logger.info(
                "[enforcement] transition",
                extra={"owner": str(ref), "limit_key": limit_key, "event_type": event_type},
            )
            self.dispatcher.dispatch(event_type, limit_key, owner, payload)
        return state
