"""Transfer scheduler - two-phase, time-bound ownership changes

Flow:
1. The creator schedules a transfer to a recipient with an opaque
   verification hash. The operation is persisted as pending with
   expires_at = requested_at + delay.
2. Before the deadline, an allowed executor presents the same hash. The
   operation is marked executed and the record's creator becomes the
   recipient.
3. Alternatively the requester (or the record's current creator) cancels.
4. Past the deadline the operation can no longer execute. sweep_expired()
   persists the expired status and frees the record's pending slot.

State machine: pending -> executed | cancelled | expired (all terminal).

At most one pending operation exists per record, enforced through the
pending table (record_id -> sequence). An operation whose deadline has
passed is expired for every decision even before a sweep persists it.

Who may execute is the executor_policy: "requester", "recipient", or
"either" (default).

A direct transfer_ownership or unregister of the record cancels or
removes its pending operation, since the requester no longer owns the
record.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .constants import PENDING_TABLE, SCHEDULES_TABLE, TRANSFER_OPERATION
from .errors import (
    ErrorCode,
    OperationResult,
    RegistryError,
    conflict,
    expired,
    not_found,
    permission_error,
    validation_error,
)
from .records import Record, RecordStore
from .state import RegistryState
from .storage import KeyValueStore

logger = logging.getLogger(__name__)


class OperationStatus(str, Enum):
    """Lifecycle of a scheduled operation."""

    PENDING = "pending"
    EXECUTED = "executed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


@dataclass
class ScheduledOperation:
    """A persisted two-phase state change."""

    sequence: int
    record_id: int
    category: str
    requester: str
    recipient: str | None
    requested_at: int
    verification_hash: str
    expires_at: int
    status: OperationStatus = OperationStatus.PENDING
    resolved_at: int | None = None

    def effective_status(self, height: int) -> OperationStatus:
        """Status as seen at height; an overdue pending op counts as expired."""
        if self.status is OperationStatus.PENDING and height > self.expires_at:
            return OperationStatus.EXPIRED
        return self.status

    def to_dict(self) -> dict[str, Any]:
        return {
            "sequence": self.sequence,
            "record_id": self.record_id,
            "category": self.category,
            "requester": self.requester,
            "recipient": self.recipient,
            "requested_at": self.requested_at,
            "verification_hash": self.verification_hash,
            "expires_at": self.expires_at,
            "status": self.status.value,
            "resolved_at": self.resolved_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ScheduledOperation:
        return cls(
            sequence=data["sequence"],
            record_id=data["record_id"],
            category=data["category"],
            requester=data["requester"],
            recipient=data.get("recipient"),
            requested_at=data["requested_at"],
            verification_hash=data["verification_hash"],
            expires_at=data["expires_at"],
            status=OperationStatus(data["status"]),
            resolved_at=data.get("resolved_at"),
        )


class TransferScheduler:
    """Persists and enforces scheduled ownership transfers."""

    _store: KeyValueStore
    _records: RecordStore
    _state: RegistryState
    delay: int
    executor_policy: str

    def __init__(
        self,
        store: KeyValueStore,
        records: RecordStore,
        state: RegistryState,
        delay: int = 10,
        executor_policy: str = "either",
    ) -> None:
        if executor_policy not in ("requester", "recipient", "either"):
            raise ValueError(f"Unknown executor policy: {executor_policy}")
        self._store = store
        self._records = records
        self._state = state
        self.delay = delay
        self.executor_policy = executor_policy
        records.add_listener(self)

    # ---- queries ----

    def get(self, sequence: int, record_id: int) -> ScheduledOperation | None:
        row = self._store.get(SCHEDULES_TABLE, (sequence, record_id))
        return ScheduledOperation.from_dict(row) if row is not None else None

    def pending_for(self, record_id: int, height: int) -> ScheduledOperation | None:
        """The record's pending operation, if one exists and has not expired."""
        row = self._store.get(PENDING_TABLE, (record_id,))
        if row is None:
            return None
        op = self.get(row["sequence"], record_id)
        if op is None or op.effective_status(height) is not OperationStatus.PENDING:
            return None
        return op

    def history(self, record_id: int) -> list[ScheduledOperation]:
        """Every operation ever scheduled for a record, oldest first."""
        return [
            ScheduledOperation.from_dict(row)
            for key, row in self._store.items(SCHEDULES_TABLE)
            if key[1] == record_id
        ]

    # ---- transitions ----

    def _resolve(self, op: ScheduledOperation, status: OperationStatus, height: int) -> ScheduledOperation:
        op.status = status
        op.resolved_at = height
        self._store.put(SCHEDULES_TABLE, (op.sequence, op.record_id), op.to_dict())
        pending = self._store.get(PENDING_TABLE, (op.record_id,))
        if pending is not None and pending["sequence"] == op.sequence:
            self._store.delete(PENDING_TABLE, (op.record_id,))
        return op

    def _lookup(self, sequence: int, record_id: int, height: int) -> ScheduledOperation | RegistryError:
        """Find an operation that is still pending at height."""
        op = self.get(sequence, record_id)
        if op is None:
            return not_found(
                f"No scheduled operation {sequence} for record {record_id}",
                code=ErrorCode.OPERATION_NOT_FOUND,
                sequence=sequence,
                record_id=record_id,
            )
        if op.effective_status(height) is OperationStatus.EXPIRED:
            return expired(
                f"Operation {sequence} expired at height {op.expires_at}",
                sequence=sequence,
                expires_at=op.expires_at,
            )
        if op.status is not OperationStatus.PENDING:
            return conflict(
                f"Operation {sequence} is no longer pending (status: {op.status.value})",
                code=ErrorCode.NOT_PENDING,
                sequence=sequence,
                status=op.status.value,
            )
        return op

    def _may_execute(self, op: ScheduledOperation, actor: str) -> bool:
        if self.executor_policy == "requester":
            return actor == op.requester
        if self.executor_policy == "recipient":
            return actor == op.recipient
        return actor in (op.requester, op.recipient)

    def schedule(
        self,
        record_id: int,
        new_owner: str,
        verification_hash: str,
        actor: str,
        height: int,
    ) -> OperationResult[ScheduledOperation]:
        """Persist a pending transfer. Creator only; one pending per record."""
        record = self._records.require_creator(record_id, actor)
        if isinstance(record, RegistryError):
            return OperationResult.fail(record)
        if not isinstance(new_owner, str) or not new_owner:
            return OperationResult.fail(
                validation_error("new_owner must be a non-empty actor id")
            )
        if not isinstance(verification_hash, str) or not verification_hash:
            return OperationResult.fail(
                validation_error(
                    "verification hash must be a non-empty string",
                    code=ErrorCode.INVALID_HASH,
                )
            )
        current = self.pending_for(record_id, height)
        if current is not None:
            return OperationResult.fail(
                conflict(
                    f"Record {record_id} already has pending operation {current.sequence}",
                    record_id=record_id,
                    sequence=current.sequence,
                    expires_at=current.expires_at,
                )
            )

        with self._store.atomic():
            self._sweep_record(record_id, height)
            op = ScheduledOperation(
                sequence=self._state.next_sequence(),
                record_id=record_id,
                category=TRANSFER_OPERATION,
                requester=actor,
                recipient=new_owner,
                requested_at=height,
                verification_hash=verification_hash,
                expires_at=height + self.delay,
            )
            self._store.put(SCHEDULES_TABLE, (op.sequence, record_id), op.to_dict())
            self._store.put(PENDING_TABLE, (record_id,), {"sequence": op.sequence})
        return OperationResult.ok(op)

    def execute(
        self,
        sequence: int,
        record_id: int,
        actor: str,
        supplied_hash: str,
        height: int,
    ) -> OperationResult[ScheduledOperation]:
        """Complete a pending transfer before its deadline."""
        op = self._lookup(sequence, record_id, height)
        if isinstance(op, RegistryError):
            return OperationResult.fail(op)
        if supplied_hash != op.verification_hash:
            return OperationResult.fail(
                validation_error(
                    f"Hash does not match operation {sequence}",
                    code=ErrorCode.HASH_MISMATCH,
                    sequence=sequence,
                )
            )
        if not self._may_execute(op, actor):
            return OperationResult.fail(
                permission_error(
                    f"{actor} may not execute operation {sequence} "
                    f"(policy: {self.executor_policy})",
                    sequence=sequence,
                    actor=actor,
                )
            )
        if not op.recipient:
            return OperationResult.fail(
                validation_error(
                    f"Operation {sequence} has no recipient",
                    code=ErrorCode.INVALID_ARGUMENT,
                    sequence=sequence,
                )
            )
        record = self._records.get(record_id)
        if record is None or record.creator != op.requester:
            return OperationResult.fail(
                conflict(
                    f"{op.requester} no longer owns record {record_id}",
                    code=ErrorCode.OWNER_CHANGED,
                    sequence=sequence,
                    record_id=record_id,
                )
            )

        with self._store.atomic():
            # Resolve first so the transfer listener finds no pending op
            self._resolve(op, OperationStatus.EXECUTED, height)
            self._records.reassign(record, op.recipient, height)
        return OperationResult.ok(op)

    def cancel(
        self,
        sequence: int,
        record_id: int,
        actor: str,
        height: int,
    ) -> OperationResult[ScheduledOperation]:
        """Cancel a pending operation. Requester or current creator only."""
        op = self._lookup(sequence, record_id, height)
        if isinstance(op, RegistryError):
            return OperationResult.fail(op)
        if actor != op.requester and actor != self._records.get_creator(record_id):
            return OperationResult.fail(
                permission_error(
                    f"Only the requester or creator may cancel operation {sequence}",
                    sequence=sequence,
                    actor=actor,
                )
            )
        return OperationResult.ok(self._resolve(op, OperationStatus.CANCELLED, height))

    def _sweep_record(self, record_id: int, height: int) -> bool:
        row = self._store.get(PENDING_TABLE, (record_id,))
        if row is None:
            return False
        op = self.get(row["sequence"], record_id)
        if op is None:
            self._store.delete(PENDING_TABLE, (record_id,))
            return False
        if op.effective_status(height) is OperationStatus.EXPIRED and op.status is OperationStatus.PENDING:
            self._resolve(op, OperationStatus.EXPIRED, height)
            return True
        return False

    def sweep_expired(self, height: int) -> list[ScheduledOperation]:
        """Persist expired status on overdue pending operations."""
        swept: list[ScheduledOperation] = []
        with self._store.atomic():
            for key, row in self._store.items(PENDING_TABLE):
                record_id = key[0]
                op = self.get(row["sequence"], record_id)
                if self._sweep_record(record_id, height) and op is not None:
                    op.status = OperationStatus.EXPIRED
                    op.resolved_at = height
                    swept.append(op)
        if swept:
            logger.info("Swept %d expired scheduled operation(s) at height %d", len(swept), height)
        return swept

    # ---- lifecycle ----

    def record_registered(self, record: Record) -> None:
        pass

    def record_transferred(self, record: Record, previous_owner: str) -> None:
        row = self._store.get(PENDING_TABLE, (record.id,))
        if row is None:
            return
        op = self.get(row["sequence"], record.id)
        if op is not None and op.status is OperationStatus.PENDING:
            # Requester no longer owns the record
            self._resolve(op, OperationStatus.CANCELLED, record.updated_at)
            logger.info(
                "Operation %s cancelled: record %s transferred directly", op.sequence, record.id
            )

    def purge_record(self, record_id: int) -> None:
        for key, _ in self._store.items(SCHEDULES_TABLE):
            if key[1] == record_id:
                self._store.delete(SCHEDULES_TABLE, key)
        self._store.delete(PENDING_TABLE, (record_id,))
