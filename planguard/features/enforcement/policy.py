"""Pure enforcement predicates shared by the grace manager, evaluator and status helpers."""

from datetime import datetime
from typing import Iterable, Optional, Union

from planguard.core.clock import ensure_utc, to_epoch
from planguard.models.enforcement_state import EnforcementState
from planguard.models.plan import UNLIMITED, AfterLimit


def exceeded_now(usage: int, cap: Union[int, str], after_limit: Union[AfterLimit, str]) -> bool:
    """
    grace_then_block: exceeded means strictly over the cap (the Nth item is allowed).
    block_usage / just_warn: exceeded means at or over the cap.
    0-of-0 is never exceeded.
    """
    if cap == UNLIMITED:
        return False
    cap = int(cap)
    usage = int(usage)
    if cap == 0 and usage == 0:
        return False
    if AfterLimit(after_limit) == AfterLimit.GRACE_THEN_BLOCK:
        return usage > cap
    return usage >= cap


def stale_for_window(state: EnforcementState, period_start: datetime) -> bool:
    """True when a per-period state row belongs to an earlier window."""
    period_start = ensure_utc(period_start)
    if state.exceeded_at is not None and ensure_utc(state.exceeded_at) < period_start:
        return True
    window_start_epoch = state.window_start_epoch
    if window_start_epoch is not None and int(window_start_epoch) != to_epoch(period_start):
        return True
    return False


def crossed_threshold(
    thresholds: Iterable[float],
    usage: int,
    requested: int,
    cap: int,
    last_threshold: Optional[float] = None,
) -> Optional[float]:
    """Lowest threshold crossed by moving from `usage` to `usage + requested`, above `last_threshold`."""
    if cap <= 0:
        return None
    floor = last_threshold or 0.0
    for threshold in sorted(thresholds):
        # Rounded so 0.6 * 10 lands on 6 and not 6.000000000000001.
        boundary = round(threshold * cap, 9)
        if usage < boundary <= usage + requested and threshold > floor:
            return threshold
    return None


def time_remaining_phrase(ends_at: Optional[datetime], now: datetime) -> str:
    if ends_at is None or ensure_utc(ends_at) <= ensure_utc(now):
        return "no time"
    distance = (ensure_utc(ends_at) - ensure_utc(now)).total_seconds()
    if distance < 60:
        return f"{round(distance)} seconds"
    if distance < 3600:
        return f"{round(distance / 60)} minutes"
    if distance < 86400:
        return f"{round(distance / 3600)} hours"
    return f"{round(distance / 86400)} days"
