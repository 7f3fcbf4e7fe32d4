"""Process-wide registry state with a single owner.

Sequence counters, the pause flag and the rate-limit tunables live in one
persisted row owned by RegistryState. Nothing else writes that row, so the
counters stay monotonic and the tunables have one source of truth.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any

from .storage import KeyValueStore

STATE_TABLE = "state"
STATE_KEY = ("registry",)


@dataclass
class StateSnapshot:
    """The persisted state row."""

    next_record_id: int = 1
    next_sequence: int = 1
    paused: bool = False
    pause_reason: str | None = None
    window_length: int = 100
    max_per_window: int = 10

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StateSnapshot:
        return cls(
            next_record_id=data.get("next_record_id", 1),
            next_sequence=data.get("next_sequence", 1),
            paused=data.get("paused", False),
            pause_reason=data.get("pause_reason"),
            window_length=data.get("window_length", 100),
            max_per_window=data.get("max_per_window", 10),
        )


class RegistryState:
    """Owner of the registry's global counters and switches.

    The admin identity is fixed at construction (deployment) and is not
    persisted. Rate-limit tunables are seeded from config the first time a
    store is initialized; afterwards the persisted values win, so an admin
    adjustment survives a restart.
    """

    admin: str
    _store: KeyValueStore

    def __init__(
        self,
        store: KeyValueStore,
        admin: str,
        window_length: int = 100,
        max_per_window: int = 10,
    ) -> None:
        self._store = store
        self.admin = admin
        if store.get(STATE_TABLE, STATE_KEY) is None:
            self._save(StateSnapshot(
                window_length=window_length,
                max_per_window=max_per_window,
            ))

    def snapshot(self) -> StateSnapshot:
        row = self._store.get(STATE_TABLE, STATE_KEY)
        return StateSnapshot.from_dict(row) if row is not None else StateSnapshot()

    def _save(self, snap: StateSnapshot) -> None:
        self._store.put(STATE_TABLE, STATE_KEY, snap.to_dict())

    def is_admin(self, actor: str) -> bool:
        return actor == self.admin

    # ---- sequence counters ----

    def peek_record_id(self) -> int:
        """Id the next registration will receive."""
        return self.snapshot().next_record_id

    def next_record_id(self) -> int:
        """Consume and return the next record id. Ids are never reused."""
        snap = self.snapshot()
        record_id = snap.next_record_id
        snap.next_record_id += 1
        self._save(snap)
        return record_id

    def next_sequence(self) -> int:
        """Consume and return the next scheduled-operation sequence number."""
        snap = self.snapshot()
        sequence = snap.next_sequence
        snap.next_sequence += 1
        self._save(snap)
        return sequence

    # ---- pause switch ----

    @property
    def paused(self) -> bool:
        return self.snapshot().paused

    @property
    def pause_reason(self) -> str | None:
        return self.snapshot().pause_reason

    def set_paused(self, reason: str | None) -> None:
        snap = self.snapshot()
        snap.paused = True
        snap.pause_reason = reason
        self._save(snap)

    def clear_paused(self) -> None:
        snap = self.snapshot()
        snap.paused = False
        snap.pause_reason = None
        self._save(snap)

    # ---- rate-limit tunables ----

    @property
    def window_length(self) -> int:
        return self.snapshot().window_length

    @property
    def max_per_window(self) -> int:
        return self.snapshot().max_per_window

    def set_rate_limits(self, window_length: int, max_per_window: int) -> None:
        snap = self.snapshot()
        snap.window_length = window_length
        snap.max_per_window = max_per_window
        self._save(snap)
