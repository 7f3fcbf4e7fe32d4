"""Authenticity ledger - one opaque attestation per record.

Hashes are caller-supplied strings, compared only for equality; the
registry never computes them. The method tag must be one of the configured
algorithms.

Overwrite policy is explicit: with allow_overwrite (the default) a second
attest() replaces the first and reports replaced=True; without it the
second attest() fails AlreadyAttested.

verify() is public and read-only. Anyone may check a candidate hash
against a record's attestation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from .constants import ATTESTATIONS_TABLE
from .errors import (
    ErrorCode,
    OperationResult,
    RegistryError,
    conflict,
    not_found,
    validation_error,
)
from .records import Record, RecordStore
from .storage import KeyValueStore

logger = logging.getLogger(__name__)


@dataclass
class AuthenticityRecord:
    """The attestation stored for a record."""

    record_id: int
    hash: str
    method: str
    attestor: str
    attested_at: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "record_id": self.record_id,
            "hash": self.hash,
            "method": self.method,
            "attestor": self.attestor,
            "attested_at": self.attested_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AuthenticityRecord:
        return cls(
            record_id=data["record_id"],
            hash=data["hash"],
            method=data["method"],
            attestor=data["attestor"],
            attested_at=data["attested_at"],
        )


@dataclass
class AttestResult:
    """Stored attestation plus whether it replaced an earlier one."""

    attestation: AuthenticityRecord
    replaced: bool

    def to_dict(self) -> dict[str, Any]:
        return {"attestation": self.attestation.to_dict(), "replaced": self.replaced}


class AuthenticityLedger:
    """Stores and verifies record attestations."""

    _store: KeyValueStore
    _records: RecordStore
    methods: tuple[str, ...]
    allow_overwrite: bool

    def __init__(
        self,
        store: KeyValueStore,
        records: RecordStore,
        methods: list[str] | tuple[str, ...] = ("sha256", "keccak256"),
        allow_overwrite: bool = True,
    ) -> None:
        self._store = store
        self._records = records
        self.methods = tuple(methods)
        self.allow_overwrite = allow_overwrite
        records.add_listener(self)

    def get(self, record_id: int) -> AuthenticityRecord | None:
        row = self._store.get(ATTESTATIONS_TABLE, (record_id,))
        return AuthenticityRecord.from_dict(row) if row is not None else None

    def attest(
        self,
        record_id: int,
        hash_value: str,
        method: str,
        actor: str,
        height: int,
    ) -> OperationResult[AttestResult]:
        """Record the attestation for a record. Creator only."""
        record = self._records.require_creator(record_id, actor)
        if isinstance(record, RegistryError):
            return OperationResult.fail(record)
        if method not in self.methods:
            return OperationResult.fail(
                validation_error(
                    f"Unsupported hash method '{method}'. Use one of: {', '.join(self.methods)}",
                    code=ErrorCode.INVALID_METHOD,
                    method=repr(method),
                )
            )
        if not isinstance(hash_value, str) or not hash_value:
            return OperationResult.fail(
                validation_error("hash must be a non-empty string", code=ErrorCode.INVALID_HASH)
            )

        existing = self.get(record_id)
        if existing is not None and not self.allow_overwrite:
            return OperationResult.fail(
                conflict(
                    f"Record {record_id} is already attested",
                    code=ErrorCode.ALREADY_ATTESTED,
                    record_id=record_id,
                )
            )

        attestation = AuthenticityRecord(
            record_id=record_id,
            hash=hash_value,
            method=method,
            attestor=actor,
            attested_at=height,
        )
        self._store.put(ATTESTATIONS_TABLE, (record_id,), attestation.to_dict())
        if existing is not None:
            logger.info("Record %s attestation replaced by %s", record_id, actor)
        return OperationResult.ok(AttestResult(attestation=attestation, replaced=existing is not None))

    def verify(self, record_id: int, candidate_hash: str) -> OperationResult[AuthenticityRecord]:
        """Compare a candidate against the stored hash. No access check."""
        attestation = self.get(record_id)
        if attestation is None:
            return OperationResult.fail(
                not_found(
                    f"No attestation recorded for record {record_id}",
                    code=ErrorCode.NO_ATTESTATION,
                    record_id=record_id,
                )
            )
        if candidate_hash != attestation.hash:
            return OperationResult.fail(
                validation_error(
                    f"Hash does not match the attestation for record {record_id}",
                    code=ErrorCode.HASH_MISMATCH,
                    record_id=record_id,
                )
            )
        return OperationResult.ok(attestation)

    # ---- lifecycle ----

    def record_registered(self, record: Record) -> None:
        pass

    def record_transferred(self, record: Record, previous_owner: str) -> None:
        # The attestation describes the collectible, not its owner
        pass

    def purge_record(self, record_id: int) -> None:
        self._store.delete(ATTESTATIONS_TABLE, (record_id,))
