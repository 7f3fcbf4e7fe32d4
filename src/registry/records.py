"""Record store - authoritative map from record id to record metadata

Records are registered by any actor, who becomes the creator. Only the
current creator may update, transfer or unregister a record. Ids come from
RegistryState and are never reused, even after a record is deleted.

Other components keep rows keyed by record id (viewer privileges, granular
permissions, attestations, scheduled transfers). They subscribe as
RecordLifecycleListener so registration, ownership change and deletion
propagate in the same atomic block as the record write.

Ownership transfer leaves granular permissions and viewer privileges
attached to the record. Collaborators granted access by a former owner
keep it until the new owner changes it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

from .constants import (
    CATEGORY_MAX_COUNT,
    CATEGORY_MAX_LENGTH,
    DETAILS_MAX_LENGTH,
    NAME_MAX_LENGTH,
    RECORDS_TABLE,
    SIZE_LIMIT,
    SIZE_MIN,
)
from .errors import (
    ErrorCode,
    OperationResult,
    RegistryError,
    not_found,
    permission_error,
    validation_error,
)
from .state import RegistryState
from .storage import KeyValueStore


@dataclass(frozen=True)
class RecordFields:
    """The mutable fields of a record, validated as a unit."""

    name: str
    size: int
    details: str
    categories: list[str] = field(default_factory=list)

    def validate(self) -> RegistryError | None:
        """Check every bound. Returns the first violation, or None."""
        if not isinstance(self.name, str) or not 1 <= len(self.name) <= NAME_MAX_LENGTH:
            return validation_error(
                f"name must be 1-{NAME_MAX_LENGTH} characters",
                code=ErrorCode.INVALID_NAME,
            )
        # bool is an int subclass; a flag is not a size
        if (
            not isinstance(self.size, int)
            or isinstance(self.size, bool)
            or not SIZE_MIN <= self.size < SIZE_LIMIT
        ):
            return validation_error(
                f"size must be an integer with {SIZE_MIN} <= size < {SIZE_LIMIT}",
                code=ErrorCode.INVALID_SIZE,
                size=repr(self.size),
            )
        if not isinstance(self.details, str) or not 1 <= len(self.details) <= DETAILS_MAX_LENGTH:
            return validation_error(
                f"details must be 1-{DETAILS_MAX_LENGTH} characters",
                code=ErrorCode.INVALID_DETAILS,
            )
        return validate_categories(self.categories)


def validate_categories(categories: Any) -> RegistryError | None:
    """Categories: a list of 1-10 tags, each 1-32 characters."""
    if not isinstance(categories, (list, tuple)):
        return validation_error(
            "categories must be a list of tags",
            code=ErrorCode.INVALID_CATEGORY_LIST,
        )
    if not 1 <= len(categories) <= CATEGORY_MAX_COUNT:
        return validation_error(
            f"categories must hold 1-{CATEGORY_MAX_COUNT} tags, got {len(categories)}",
            code=ErrorCode.INVALID_CATEGORY_LIST,
        )
    for tag in categories:
        if not isinstance(tag, str) or not 1 <= len(tag) <= CATEGORY_MAX_LENGTH:
            return validation_error(
                f"each category tag must be 1-{CATEGORY_MAX_LENGTH} characters",
                code=ErrorCode.INVALID_CATEGORY_LIST,
                tag=repr(tag),
            )
    return None


@dataclass
class Record:
    """A registered collectible's metadata entry."""

    id: int
    name: str
    creator: str
    size: int
    details: str
    categories: list[str]
    created_at: int
    updated_at: int

    @property
    def fields(self) -> RecordFields:
        return RecordFields(
            name=self.name,
            size=self.size,
            details=self.details,
            categories=list(self.categories),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "creator": self.creator,
            "size": self.size,
            "details": self.details,
            "categories": list(self.categories),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Record:
        return cls(
            id=data["id"],
            name=data["name"],
            creator=data["creator"],
            size=data["size"],
            details=data["details"],
            categories=list(data["categories"]),
            created_at=data["created_at"],
            updated_at=data.get("updated_at", data["created_at"]),
        )


class RecordLifecycleListener(Protocol):
    """Components holding rows keyed by record id."""

    def record_registered(self, record: Record) -> None:
        ...

    def record_transferred(self, record: Record, previous_owner: str) -> None:
        ...

    def purge_record(self, record_id: int) -> None:
        ...


class RecordStore:
    """Authoritative record table.

    Every mutating method validates all preconditions first, then writes
    inside store.atomic() together with any listener writes.
    """

    _store: KeyValueStore
    _state: RegistryState
    _listeners: list[RecordLifecycleListener]

    def __init__(self, store: KeyValueStore, state: RegistryState) -> None:
        self._store = store
        self._state = state
        self._listeners = []

    def add_listener(self, listener: RecordLifecycleListener) -> None:
        self._listeners.append(listener)

    def exists(self, record_id: int) -> bool:
        return self._store.get(RECORDS_TABLE, (record_id,)) is not None

    def get(self, record_id: int) -> Record | None:
        """Pure lookup."""
        row = self._store.get(RECORDS_TABLE, (record_id,))
        return Record.from_dict(row) if row is not None else None

    def get_creator(self, record_id: int) -> str | None:
        record = self.get(record_id)
        return record.creator if record else None

    def count(self) -> int:
        return len(self._store.items(RECORDS_TABLE))

    def records_by_creator(self, creator: str) -> list[Record]:
        """All records currently owned by creator, in id order."""
        return [
            Record.from_dict(row)
            for _, row in self._store.items(RECORDS_TABLE)
            if row["creator"] == creator
        ]

    def require_creator(self, record_id: int, actor: str) -> Record | RegistryError:
        """Resolve a record the actor must own, or the error explaining why not."""
        record = self.get(record_id)
        if record is None:
            return not_found(f"Record {record_id} not found", record_id=record_id)
        if record.creator != actor:
            return permission_error(
                f"Only the creator of record {record_id} may do this",
                record_id=record_id,
                actor=actor,
            )
        return record

    def register(
        self, fields: RecordFields, creator: str, height: int
    ) -> OperationResult[Record]:
        """Validate, assign the next id, insert, and notify listeners."""
        error = fields.validate()
        if error is not None:
            return OperationResult.fail(error)

        with self._store.atomic():
            record = Record(
                id=self._state.next_record_id(),
                name=fields.name,
                creator=creator,
                size=fields.size,
                details=fields.details,
                categories=list(fields.categories),
                created_at=height,
                updated_at=height,
            )
            self._store.put(RECORDS_TABLE, (record.id,), record.to_dict())
            for listener in self._listeners:
                listener.record_registered(record)
        return OperationResult.ok(record)

    def update_metadata(
        self, record_id: int, fields: RecordFields, actor: str, height: int
    ) -> OperationResult[Record]:
        """Replace name, size, details and categories in one write."""
        record = self.require_creator(record_id, actor)
        if isinstance(record, RegistryError):
            return OperationResult.fail(record)
        error = fields.validate()
        if error is not None:
            return OperationResult.fail(error)

        updated = Record(
            id=record.id,
            name=fields.name,
            creator=record.creator,
            size=fields.size,
            details=fields.details,
            categories=list(fields.categories),
            created_at=record.created_at,
            updated_at=height,
        )
        self._store.put(RECORDS_TABLE, (record_id,), updated.to_dict())
        return OperationResult.ok(updated)

    def transfer_ownership(
        self, record_id: int, new_owner: str, actor: str, height: int | None = None
    ) -> OperationResult[Record]:
        """Swap the creator. Permissions and viewer rows stay with the record."""
        record = self.require_creator(record_id, actor)
        if isinstance(record, RegistryError):
            return OperationResult.fail(record)
        if not isinstance(new_owner, str) or not new_owner:
            return OperationResult.fail(
                validation_error("new_owner must be a non-empty actor id")
            )
        return OperationResult.ok(self.reassign(record, new_owner, height))

    def reassign(self, record: Record, new_owner: str, height: int | None = None) -> Record:
        """Write an already-authorized ownership change and notify listeners."""
        previous_owner = record.creator
        record.creator = new_owner
        if height is not None:
            record.updated_at = height
        with self._store.atomic():
            self._store.put(RECORDS_TABLE, (record.id,), record.to_dict())
            for listener in self._listeners:
                listener.record_transferred(record, previous_owner)
        return record

    def unregister(self, record_id: int, actor: str) -> OperationResult[Record]:
        """Hard delete plus cascade to every dependent table."""
        record = self.require_creator(record_id, actor)
        if isinstance(record, RegistryError):
            return OperationResult.fail(record)

        with self._store.atomic():
            for listener in self._listeners:
                listener.purge_record(record_id)
            self._store.delete(RECORDS_TABLE, (record_id,))
        return OperationResult.ok(record)
