"""Fixed-window-reset rate limiter for mutating calls.

Each actor has a TransactionMonitor (last_height, count). On a call at
height h:

- no monitor, or h - window_length >= last_height: the window has fully
  elapsed since the last recorded activity, so reset to count 1
- count < max_per_window: count += 1
- otherwise: deny, leaving the monitor untouched

Allowed calls always move last_height to h. So a window restarts from the
most recent call, not from the first call of a burst. That makes this a
fixed-window-reset, not a rolling log.

check() is read-only; record() commits. Callers check before doing work
and record only once the work succeeded, so failed calls never consume
quota.

Usage:
    tracker = RateTracker(store, state)
    result = tracker.check("alice", height=0)
    if result.success:
        ...  # do the work
        tracker.record("alice", height=0)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .constants import MONITORS_TABLE
from .errors import OperationResult, RegistryError, rate_limited
from .state import RegistryState
from .storage import KeyValueStore


@dataclass
class TransactionMonitor:
    """Per-actor activity within the current window."""

    actor: str
    last_height: int
    count: int

    def to_dict(self) -> dict[str, Any]:
        return {"actor": self.actor, "last_height": self.last_height, "count": self.count}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TransactionMonitor:
        return cls(actor=data["actor"], last_height=data["last_height"], count=data["count"])


@dataclass
class RateStatus:
    """Snapshot of an actor's standing in the current window."""

    actor: str
    count: int
    remaining: int
    window_length: int
    max_per_window: int
    resets_at: int | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "actor": self.actor,
            "count": self.count,
            "remaining": self.remaining,
            "window_length": self.window_length,
            "max_per_window": self.max_per_window,
            "resets_at": self.resets_at,
        }


class RateTracker:
    """Per-actor fixed-window-reset counters.

    Tunables (window_length, max_per_window) are read from RegistryState on
    every call, so an admin adjustment applies immediately.
    """

    _store: KeyValueStore
    _state: RegistryState

    def __init__(self, store: KeyValueStore, state: RegistryState) -> None:
        self._store = store
        self._state = state

    def get_monitor(self, actor: str) -> TransactionMonitor | None:
        row = self._store.get(MONITORS_TABLE, (actor,))
        return TransactionMonitor.from_dict(row) if row is not None else None

    def _next_monitor(self, actor: str, height: int) -> TransactionMonitor | None:
        """The monitor an allowed call at height would leave behind, or None if denied."""
        window_length = self._state.window_length
        max_per_window = self._state.max_per_window
        monitor = self.get_monitor(actor)

        if monitor is None or height - window_length >= monitor.last_height:
            return TransactionMonitor(actor=actor, last_height=height, count=1)
        if monitor.count < max_per_window:
            return TransactionMonitor(actor=actor, last_height=height, count=monitor.count + 1)
        return None

    def _limit_error(self, actor: str, height: int) -> RegistryError:
        current = self.get_monitor(actor)
        resets_at = current.last_height + self._state.window_length if current else height
        return rate_limited(
            f"Rate limit exceeded for {actor}: "
            f"{self._state.max_per_window} calls per {self._state.window_length} heights",
            actor=actor,
            retry_at_height=resets_at,
        )

    def denial(self, actor: str, height: int) -> RegistryError | None:
        """The error a call at height would get, or None if it is allowed."""
        if self._next_monitor(actor, height) is not None:
            return None
        return self._limit_error(actor, height)

    def check(self, actor: str, height: int) -> OperationResult[TransactionMonitor]:
        """Would a call at height be allowed? No state change either way."""
        monitor = self._next_monitor(actor, height)
        if monitor is None:
            return OperationResult.fail(self._limit_error(actor, height))
        return OperationResult.ok(monitor)

    def record(self, actor: str, height: int) -> OperationResult[TransactionMonitor]:
        """Check and, if allowed, commit the call. Denial mutates nothing."""
        result = self.check(actor, height)
        if result.success and result.value is not None:
            self._store.put(MONITORS_TABLE, (actor,), result.value.to_dict())
        return result

    def status(self, actor: str, height: int) -> RateStatus:
        """Count and remaining quota as seen by a call at height."""
        window_length = self._state.window_length
        max_per_window = self._state.max_per_window
        monitor = self.get_monitor(actor)
        if monitor is None or height - window_length >= monitor.last_height:
            count = 0
            resets_at = None
        else:
            count = monitor.count
            resets_at = monitor.last_height + window_length
        return RateStatus(
            actor=actor,
            count=count,
            remaining=max(0, max_per_window - count),
            window_length=window_length,
            max_per_window=max_per_window,
            resets_at=resets_at,
        )

    def reset(self, actor: str | None = None) -> None:
        """Drop monitors for one actor, or all actors."""
        if actor is not None:
            self._store.delete(MONITORS_TABLE, (actor,))
            return
        for key, _ in self._store.items(MONITORS_TABLE):
            self._store.delete(MONITORS_TABLE, key)
