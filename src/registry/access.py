"""Access control for registry records.

Two tables gate access to a record:

- granular permissions: (record, participant) -> level in
  none < view < edit < manage, written only by the creator
- viewer privileges: (record, observer) -> boolean view flag, a coarser
  read-only channel; the creator gets one at registration

The creator implicitly holds "manage" on every record they own. The
permission table is never consulted for them.

has_access() answers graded questions from the permission table alone.
can_view() gates reads. A granular entry for (record, actor) supersedes
the viewer flag: if one exists, its level decides. Otherwise the viewer
flag decides.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import IntEnum
from typing import Any

from .constants import PERMISSIONS_TABLE, VIEWERS_TABLE
from .errors import ErrorCode, OperationResult, RegistryError, validation_error
from .records import Record, RecordStore
from .storage import KeyValueStore

logger = logging.getLogger(__name__)


class AccessLevel(IntEnum):
    """Graduated access levels, totally ordered."""

    NONE = 0
    VIEW = 1
    EDIT = 2
    MANAGE = 3


def parse_level(level: Any) -> AccessLevel | None:
    """Coerce an int or AccessLevel to AccessLevel. None if out of range."""
    if isinstance(level, bool) or not isinstance(level, int):
        return None
    try:
        return AccessLevel(level)
    except ValueError:
        return None


@dataclass
class GranularPermission:
    """One row of the permission table."""

    record_id: int
    participant: str
    level: AccessLevel
    granted_by: str
    granted_at: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "record_id": self.record_id,
            "participant": self.participant,
            "level": int(self.level),
            "granted_by": self.granted_by,
            "granted_at": self.granted_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GranularPermission:
        return cls(
            record_id=data["record_id"],
            participant=data["participant"],
            level=AccessLevel(data["level"]),
            granted_by=data["granted_by"],
            granted_at=data["granted_at"],
        )


@dataclass
class ViewerPrivilege:
    """One row of the viewer table."""

    record_id: int
    observer: str
    can_view: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "record_id": self.record_id,
            "observer": self.observer,
            "can_view": self.can_view,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ViewerPrivilege:
        return cls(
            record_id=data["record_id"],
            observer=data["observer"],
            can_view=bool(data["can_view"]),
        )


class AccessControl:
    """Evaluates and maintains per-record access.

    Registered as a record lifecycle listener: grants the creator a viewer
    privilege at registration and purges both tables on unregister.
    """

    _store: KeyValueStore
    _records: RecordStore

    def __init__(self, store: KeyValueStore, records: RecordStore) -> None:
        self._store = store
        self._records = records
        records.add_listener(self)

    # ---- queries ----

    def permission_for(self, record_id: int, participant: str) -> GranularPermission | None:
        row = self._store.get(PERMISSIONS_TABLE, (record_id, participant))
        return GranularPermission.from_dict(row) if row is not None else None

    def permissions_of(self, record_id: int) -> list[GranularPermission]:
        """All granular entries for a record."""
        return [
            GranularPermission.from_dict(row)
            for key, row in self._store.items(PERMISSIONS_TABLE)
            if key[0] == record_id
        ]

    def viewer_privilege(self, record_id: int, observer: str) -> ViewerPrivilege | None:
        row = self._store.get(VIEWERS_TABLE, (record_id, observer))
        return ViewerPrivilege.from_dict(row) if row is not None else None

    def viewers_of(self, record_id: int) -> list[str]:
        """Observers currently holding a view flag on a record."""
        return [
            row["observer"]
            for key, row in self._store.items(VIEWERS_TABLE)
            if key[0] == record_id and row["can_view"]
        ]

    def has_access(self, record_id: int, actor: str, required_level: AccessLevel | int) -> bool:
        """Does actor hold at least required_level on the record?

        The creator always does. Everyone else needs a permission entry
        at or above the level. Missing record or entry means no.
        """
        record = self._records.get(record_id)
        if record is None:
            return False
        if actor == record.creator:
            return True
        entry = self.permission_for(record_id, actor)
        if entry is None:
            return False
        return entry.level >= required_level

    def can_view(self, record_id: int, actor: str) -> bool:
        """Read gate: creator, then granular entry, then viewer flag."""
        record = self._records.get(record_id)
        if record is None:
            return False
        if actor == record.creator:
            return True
        entry = self.permission_for(record_id, actor)
        if entry is not None:
            return entry.level >= AccessLevel.VIEW
        privilege = self.viewer_privilege(record_id, actor)
        return privilege is not None and privilege.can_view

    # ---- creator-only writes ----

    def authorize(
        self,
        record_id: int,
        participant: str,
        level: AccessLevel | int,
        actor: str,
        height: int,
    ) -> OperationResult[GranularPermission]:
        """Upsert a granular permission. Creator only."""
        record = self._records.require_creator(record_id, actor)
        if isinstance(record, RegistryError):
            return OperationResult.fail(record)
        parsed = parse_level(level)
        if parsed is None:
            return OperationResult.fail(
                validation_error(
                    f"level must be between {int(AccessLevel.NONE)} and {int(AccessLevel.MANAGE)}",
                    code=ErrorCode.INVALID_LEVEL,
                    level=repr(level),
                )
            )
        if not isinstance(participant, str) or not participant:
            return OperationResult.fail(
                validation_error("participant must be a non-empty actor id")
            )

        entry = GranularPermission(
            record_id=record_id,
            participant=participant,
            level=parsed,
            granted_by=actor,
            granted_at=height,
        )
        self._store.put(PERMISSIONS_TABLE, (record_id, participant), entry.to_dict())
        logger.debug(
            "Record %s: %s granted %s to %s", record_id, actor, parsed.name, participant
        )
        return OperationResult.ok(entry)

    def _set_viewer(
        self, record_id: int, observer: str, can_view: bool, actor: str
    ) -> OperationResult[ViewerPrivilege]:
        record = self._records.require_creator(record_id, actor)
        if isinstance(record, RegistryError):
            return OperationResult.fail(record)
        if not isinstance(observer, str) or not observer:
            return OperationResult.fail(
                validation_error("observer must be a non-empty actor id")
            )
        privilege = ViewerPrivilege(record_id=record_id, observer=observer, can_view=can_view)
        self._store.put(VIEWERS_TABLE, (record_id, observer), privilege.to_dict())
        return OperationResult.ok(privilege)

    def grant_viewer(self, record_id: int, observer: str, actor: str) -> OperationResult[ViewerPrivilege]:
        """Set the view flag for observer. Creator only."""
        return self._set_viewer(record_id, observer, True, actor)

    def revoke_viewer(self, record_id: int, observer: str, actor: str) -> OperationResult[ViewerPrivilege]:
        """Clear the view flag for observer. Creator only."""
        return self._set_viewer(record_id, observer, False, actor)

    # ---- lifecycle ----

    def record_registered(self, record: Record) -> None:
        privilege = ViewerPrivilege(record_id=record.id, observer=record.creator, can_view=True)
        self._store.put(VIEWERS_TABLE, (record.id, record.creator), privilege.to_dict())

    def record_transferred(self, record: Record, previous_owner: str) -> None:
        # Rows stay attached to the record across ownership change
        pass

    def purge_record(self, record_id: int) -> None:
        for table in (PERMISSIONS_TABLE, VIEWERS_TABLE):
            for key, _ in self._store.items(table):
                if key[0] == record_id:
                    self._store.delete(table, key)
