"""CollectibleRegistry - the public surface of the registry.

Composes the components over one storage substrate and runs every
mutating call through the same pipeline:

    pause gate -> rate limiter (check) -> component (access + validation
    + write) -> rate limiter (record) -> event log

The component and the quota write share one atomic block, so a failed
operation never consumes quota and a substrate fault rolls back both.

Reads skip the pause gate and the rate limiter. view() still requires
view access.

All public methods hold one re-entrant lock, and events are logged before
it is released. Operations are linearizable across threads and event
sequence numbers follow the order in which state changed.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, TypeVar

from ..config import get_validated_config
from ..config_schema import AppConfig
from .access import AccessControl, AccessLevel, GranularPermission, ViewerPrivilege
from .authenticity import AttestResult, AuthenticityLedger, AuthenticityRecord
from .clock import HeightSource, TickClock
from .constants import PAUSE_REASON_MAX_LENGTH
from .errors import (
    ErrorCode,
    OperationResult,
    RegistryError,
    not_found,
    permission_error,
    unavailable,
    validation_error,
)
from .logger import EventLogger
from .rate_tracker import RateStatus, RateTracker
from .records import Record, RecordFields, RecordStore
from .scheduler import ScheduledOperation, TransferScheduler
from .state import RegistryState
from .storage import KeyValueStore, create_store

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CollectibleRegistry:
    """Registry of creator-owned collectible records.

    Usage:
        registry = CollectibleRegistry(config, clock=TickClock())
        result = registry.register("Art1", 100, "oil on canvas", ["painting"], "alice")
        if result.success:
            record = result.value
    """

    config: AppConfig
    clock: HeightSource
    store: KeyValueStore
    state: RegistryState
    records: RecordStore
    access: AccessControl
    rate_tracker: RateTracker
    authenticity: AuthenticityLedger
    scheduler: TransferScheduler
    logger: EventLogger

    def __init__(
        self,
        config: AppConfig | None = None,
        clock: HeightSource | None = None,
        store: KeyValueStore | None = None,
        admin: str | None = None,
        event_logger: EventLogger | None = None,
    ) -> None:
        """
        Args:
            config: Validated config; defaults to the loaded config file
            clock: Height source; defaults to a TickClock at 0
            store: Storage substrate; defaults to the configured backend
            admin: Administrative identity; overrides registry.admin
            event_logger: Event log; defaults to one built from logging config
        """
        self.config = config if config is not None else get_validated_config()
        self.clock = clock if clock is not None else TickClock()

        if store is None:
            storage = self.config.storage
            store = create_store(
                storage.backend,
                storage.path,
                retry_max=storage.retry_max,
                retry_base=storage.retry_base,
                retry_max_delay=storage.retry_max_delay,
            )
        self.store = store

        rate_config = self.config.rate_limiting
        self.state = RegistryState(
            store,
            admin or self.config.registry.admin,
            window_length=rate_config.window_length,
            max_per_window=rate_config.max_per_window,
        )
        self.records = RecordStore(store, self.state)
        self.access = AccessControl(store, self.records)
        self.rate_tracker = RateTracker(store, self.state)
        self.authenticity = AuthenticityLedger(
            store,
            self.records,
            methods=self.config.authenticity.methods,
            allow_overwrite=self.config.authenticity.allow_overwrite,
        )
        self.scheduler = TransferScheduler(
            store,
            self.records,
            self.state,
            delay=self.config.scheduler.delay,
            executor_policy=self.config.scheduler.executor_policy,
        )
        self.logger = event_logger if event_logger is not None else EventLogger(
            output_file=self.config.logging.output_file,
            default_recent=self.config.logging.default_recent,
        )
        self._lock = threading.RLock()

        self.logger.log("registry_init", {
            "height": self.clock.height(),
            "admin": self.state.admin,
            "rate_limiting_enabled": rate_config.enabled,
            "window_length": self.state.window_length,
            "max_per_window": self.state.max_per_window,
            "scheduler_delay": self.scheduler.delay,
            "executor_policy": self.scheduler.executor_policy,
        })

    # -------------------------------------------------------------------------
    # Pipeline
    # -------------------------------------------------------------------------

    def _mutate(
        self,
        operation: str,
        actor: str,
        work: Callable[[int], OperationResult[T]],
        on_success: Callable[[T, int], None] | None = None,
        rate_limit: bool | None = None,
    ) -> OperationResult[T]:
        """Run a mutating call through pause gate, limiter and component.

        Args:
            operation: Name used in diagnostics
            actor: Caller identity
            work: Component call, given the current height
            on_success: Event hook, given the value and height; runs under the lock
            rate_limit: Force the limiter on or off; None follows config
        """
        with self._lock:
            height = self.clock.height()
            if self.state.paused and not self.state.is_admin(actor):
                reason = self.state.pause_reason
                logger.debug("%s by %s rejected: registry paused", operation, actor)
                return OperationResult.fail(
                    unavailable(
                        f"Registry is paused{f': {reason}' if reason else ''}",
                        reason=reason,
                    )
                )

            gated = self.config.rate_limiting.enabled if rate_limit is None else rate_limit
            if gated:
                denied = self.rate_tracker.denial(actor, height)
                if denied is not None:
                    logger.debug("%s by %s rejected: rate limited", operation, actor)
                    return OperationResult.fail(denied)

            with self.store.atomic():
                result = work(height)
                if result.success and gated:
                    self.rate_tracker.record(actor, height)

            if not result.success:
                logger.debug(
                    "%s by %s failed: %s",
                    operation,
                    actor,
                    result.code.value if result.code else "unknown",
                )
            elif on_success is not None and result.value is not None:
                on_success(result.value, height)
            return result

    def _require_admin(self, actor: str, operation: str) -> RegistryError | None:
        if self.state.is_admin(actor):
            return None
        logger.debug("%s by %s rejected: not admin", operation, actor)
        return permission_error(
            f"Only the administrator may {operation}",
            actor=actor,
        )

    # -------------------------------------------------------------------------
    # Records
    # -------------------------------------------------------------------------

    def _register(
        self,
        name: str,
        size: int,
        details: str,
        categories: list[str],
        actor: str,
        rate_limit: bool | None,
    ) -> OperationResult[Record]:
        fields = RecordFields(name=name, size=size, details=details, categories=categories)

        def log_registered(record: Record, height: int) -> None:
            self.logger.log("record_registered", {
                "height": record.created_at,
                "record_id": record.id,
                "creator": actor,
                "name": record.name,
                "size": record.size,
                "categories": list(record.categories),
            })

        return self._mutate(
            "register",
            actor,
            lambda height: self.records.register(fields, actor, height),
            on_success=log_registered,
            rate_limit=rate_limit,
        )

    def register(
        self,
        name: str,
        size: int,
        details: str,
        categories: list[str],
        actor: str,
    ) -> OperationResult[Record]:
        """Register a record; actor becomes its creator.

        Gated by the rate limiter when rate_limiting.enabled is set.
        """
        return self._register(name, size, details, categories, actor, rate_limit=None)

    def register_rate_limited(
        self,
        name: str,
        size: int,
        details: str,
        categories: list[str],
        actor: str,
    ) -> OperationResult[Record]:
        """Register a record, always passing the rate limiter first."""
        return self._register(name, size, details, categories, actor, rate_limit=True)

    def update_metadata(
        self,
        record_id: int,
        name: str,
        size: int,
        details: str,
        categories: list[str],
        actor: str,
    ) -> OperationResult[Record]:
        """Replace a record's metadata. Creator only."""
        fields = RecordFields(name=name, size=size, details=details, categories=categories)
        return self._mutate(
            "update_metadata",
            actor,
            lambda height: self.records.update_metadata(record_id, fields, actor, height),
            on_success=lambda record, height: self.logger.log("record_updated", {
                "height": record.updated_at,
                "record_id": record_id,
                "updated_by": actor,
            }),
        )

    def transfer_ownership(
        self, record_id: int, new_owner: str, actor: str
    ) -> OperationResult[Record]:
        """Hand the record to new_owner immediately. Creator only.

        Cancels any pending scheduled transfer of the record.
        """
        return self._mutate(
            "transfer_ownership",
            actor,
            lambda height: self.records.transfer_ownership(record_id, new_owner, actor, height),
            on_success=lambda record, height: self.logger.log("ownership_transferred", {
                "height": record.updated_at,
                "record_id": record_id,
                "from_id": actor,
                "to_id": new_owner,
                "scheduled": False,
            }),
        )

    def unregister(self, record_id: int, actor: str) -> OperationResult[Record]:
        """Hard delete a record and every row that depends on it. Creator only."""
        return self._mutate(
            "unregister",
            actor,
            lambda height: self.records.unregister(record_id, actor),
            on_success=lambda record, height: self.logger.log("record_unregistered", {
                "height": height,
                "record_id": record_id,
                "deleted_by": actor,
            }),
        )

    # -------------------------------------------------------------------------
    # Access control
    # -------------------------------------------------------------------------

    def authorize(
        self,
        record_id: int,
        participant: str,
        level: AccessLevel | int,
        actor: str,
    ) -> OperationResult[GranularPermission]:
        """Set participant's access level on a record. Creator only."""
        return self._mutate(
            "authorize",
            actor,
            lambda height: self.access.authorize(record_id, participant, level, actor, height),
            on_success=lambda permission, height: self.logger.log("permission_granted", {
                "height": permission.granted_at,
                "record_id": record_id,
                "participant": participant,
                "level": permission.level.name.lower(),
                "granted_by": actor,
            }),
        )

    def grant_viewer(
        self, record_id: int, observer: str, actor: str
    ) -> OperationResult[ViewerPrivilege]:
        """Give observer the view flag. Creator only."""
        return self._mutate(
            "grant_viewer",
            actor,
            lambda height: self.access.grant_viewer(record_id, observer, actor),
            on_success=lambda privilege, height: self.logger.log("viewer_granted", {
                "height": height,
                "record_id": record_id,
                "observer": observer,
                "granted_by": actor,
            }),
        )

    def revoke_viewer(
        self, record_id: int, observer: str, actor: str
    ) -> OperationResult[ViewerPrivilege]:
        """Clear observer's view flag. Creator only."""
        return self._mutate(
            "revoke_viewer",
            actor,
            lambda height: self.access.revoke_viewer(record_id, observer, actor),
            on_success=lambda privilege, height: self.logger.log("viewer_revoked", {
                "height": height,
                "record_id": record_id,
                "observer": observer,
                "revoked_by": actor,
            }),
        )

    # -------------------------------------------------------------------------
    # Authenticity
    # -------------------------------------------------------------------------

    def attest(
        self, record_id: int, hash_value: str, method: str, actor: str
    ) -> OperationResult[AttestResult]:
        """Store the record's authenticity hash. Creator only."""
        return self._mutate(
            "attest",
            actor,
            lambda height: self.authenticity.attest(record_id, hash_value, method, actor, height),
            on_success=lambda attested, height: self.logger.log("record_attested", {
                "height": attested.attestation.attested_at,
                "record_id": record_id,
                "method": method,
                "attestor": actor,
                "replaced": attested.replaced,
            }),
        )

    def verify(self, record_id: int, candidate_hash: str) -> OperationResult[AuthenticityRecord]:
        """Check a candidate hash against the record's attestation. Open to anyone."""
        with self._lock:
            return self.authenticity.verify(record_id, candidate_hash)

    # -------------------------------------------------------------------------
    # Scheduled transfers
    # -------------------------------------------------------------------------

    def schedule_transfer(
        self,
        record_id: int,
        new_owner: str,
        verification_hash: str,
        actor: str,
    ) -> OperationResult[ScheduledOperation]:
        """Start a two-phase transfer that expires after the configured delay."""
        return self._mutate(
            "schedule_transfer",
            actor,
            lambda height: self.scheduler.schedule(
                record_id, new_owner, verification_hash, actor, height
            ),
            on_success=lambda op, height: self.logger.log("transfer_scheduled", {
                "height": op.requested_at,
                "sequence": op.sequence,
                "record_id": record_id,
                "requester": actor,
                "recipient": new_owner,
                "expires_at": op.expires_at,
            }),
        )

    def execute_transfer(
        self,
        sequence: int,
        record_id: int,
        verification_hash: str,
        actor: str,
    ) -> OperationResult[ScheduledOperation]:
        """Complete a scheduled transfer by presenting its hash."""

        def log_executed(op: ScheduledOperation, height: int) -> None:
            self.logger.log("transfer_executed", {
                "height": op.resolved_at,
                "sequence": sequence,
                "record_id": record_id,
                "executed_by": actor,
            })
            self.logger.log("ownership_transferred", {
                "height": op.resolved_at,
                "record_id": record_id,
                "from_id": op.requester,
                "to_id": op.recipient,
                "scheduled": True,
            })

        return self._mutate(
            "execute_transfer",
            actor,
            lambda height: self.scheduler.execute(
                sequence, record_id, actor, verification_hash, height
            ),
            on_success=log_executed,
        )

    def cancel_transfer(
        self, sequence: int, record_id: int, actor: str
    ) -> OperationResult[ScheduledOperation]:
        """Cancel a pending transfer. Requester or current creator only."""
        return self._mutate(
            "cancel_transfer",
            actor,
            lambda height: self.scheduler.cancel(sequence, record_id, actor, height),
            on_success=lambda op, height: self.logger.log("transfer_cancelled", {
                "height": op.resolved_at,
                "sequence": sequence,
                "record_id": record_id,
                "cancelled_by": actor,
            }),
        )

    def sweep_expired(self) -> list[ScheduledOperation]:
        """Persist the expired status of overdue transfers.

        Housekeeping only: overdue operations already behave as expired,
        so this runs for anyone and is allowed while paused.
        """
        with self._lock:
            height = self.clock.height()
            swept = self.scheduler.sweep_expired(height)
            if swept:
                self.logger.log("transfers_expired", {
                    "height": height,
                    "sequences": [op.sequence for op in swept],
                })
            return swept

    # -------------------------------------------------------------------------
    # Administration
    # -------------------------------------------------------------------------

    def pause(self, reason: str | None, actor: str) -> OperationResult[None]:
        """Block every mutating non-admin call. Admin only."""
        with self._lock:
            error = self._require_admin(actor, "pause the registry")
            if error is not None:
                return OperationResult.fail(error)
            if reason is not None and (
                not isinstance(reason, str) or len(reason) > PAUSE_REASON_MAX_LENGTH
            ):
                return OperationResult.fail(
                    validation_error(
                        f"pause reason must be at most {PAUSE_REASON_MAX_LENGTH} characters",
                        code=ErrorCode.INVALID_REASON,
                    )
                )
            self.state.set_paused(reason)
            self.logger.log("protocol_paused", {
                "height": self.clock.height(),
                "paused_by": actor,
                "reason": reason,
            })
            return OperationResult.ok(None)

    def resume(self, actor: str) -> OperationResult[None]:
        """Lift a pause and clear its reason. Admin only."""
        with self._lock:
            error = self._require_admin(actor, "resume the registry")
            if error is not None:
                return OperationResult.fail(error)
            self.state.clear_paused()
            self.logger.log("protocol_resumed", {
                "height": self.clock.height(),
                "resumed_by": actor,
            })
            return OperationResult.ok(None)

    def set_rate_limits(
        self, window_length: int, max_per_window: int, actor: str
    ) -> OperationResult[None]:
        """Adjust the limiter tunables. Admin only; applies to the next call."""
        with self._lock:
            error = self._require_admin(actor, "change rate limits")
            if error is not None:
                return OperationResult.fail(error)
            for label, value in (("window_length", window_length), ("max_per_window", max_per_window)):
                if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                    return OperationResult.fail(
                        validation_error(
                            f"{label} must be a positive integer",
                            **{label: repr(value)},
                        )
                    )
            self.state.set_rate_limits(window_length, max_per_window)
            self.logger.log("rate_limits_updated", {
                "height": self.clock.height(),
                "window_length": window_length,
                "max_per_window": max_per_window,
                "updated_by": actor,
            })
            return OperationResult.ok(None)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get(self, record_id: int) -> Record | None:
        with self._lock:
            return self.records.get(record_id)

    def view(self, record_id: int, actor: str) -> OperationResult[Record]:
        """Read a record through the view gate."""
        with self._lock:
            record = self.records.get(record_id)
            if record is None:
                return OperationResult.fail(
                    not_found(f"Record {record_id} not found", record_id=record_id)
                )
            if not self.access.can_view(record_id, actor):
                logger.debug("view of record %s by %s denied", record_id, actor)
                return OperationResult.fail(
                    permission_error(
                        f"{actor} may not view record {record_id}",
                        record_id=record_id,
                        actor=actor,
                    )
                )
            return OperationResult.ok(record)

    def has_access(
        self, record_id: int, actor: str, required_level: AccessLevel | int
    ) -> bool:
        with self._lock:
            return self.access.has_access(record_id, actor, required_level)

    def can_view(self, record_id: int, actor: str) -> bool:
        with self._lock:
            return self.access.can_view(record_id, actor)

    def get_attestation(self, record_id: int) -> AuthenticityRecord | None:
        with self._lock:
            return self.authenticity.get(record_id)

    def get_operation(self, sequence: int, record_id: int) -> ScheduledOperation | None:
        with self._lock:
            return self.scheduler.get(sequence, record_id)

    def pending_transfer(self, record_id: int) -> ScheduledOperation | None:
        """The record's unexpired pending transfer, if any."""
        with self._lock:
            return self.scheduler.pending_for(record_id, self.clock.height())

    def records_by_creator(self, creator: str) -> list[Record]:
        with self._lock:
            return self.records.records_by_creator(creator)

    def rate_limit_status(self, actor: str) -> RateStatus:
        with self._lock:
            return self.rate_tracker.status(actor, self.clock.height())

    def is_paused(self) -> bool:
        with self._lock:
            return self.state.paused

    def pause_reason(self) -> str | None:
        with self._lock:
            return self.state.pause_reason

    def recent_events(self, n: int | None = None) -> list[dict[str, Any]]:
        """Most recent audit events, oldest first."""
        with self._lock:
            return self.logger.get_recent_events(n)
