# Collectible registry package
from .registry import CollectibleRegistry
from .records import Record, RecordFields, RecordStore, RecordLifecycleListener
from .access import AccessControl, AccessLevel, GranularPermission, ViewerPrivilege
from .rate_tracker import RateTracker, RateStatus, TransactionMonitor
from .authenticity import AuthenticityLedger, AuthenticityRecord, AttestResult
from .scheduler import TransferScheduler, ScheduledOperation, OperationStatus
from .state import RegistryState
from .storage import KeyValueStore, InMemoryStore, SqliteStore, create_store
from .clock import HeightSource, TickClock
from .logger import EventLogger
from .errors import (
    ErrorCategory, ErrorCode, RegistryError, OperationResult,
)

__all__ = [
    "CollectibleRegistry",
    "Record", "RecordFields", "RecordStore", "RecordLifecycleListener",
    "AccessControl", "AccessLevel", "GranularPermission", "ViewerPrivilege",
    "RateTracker", "RateStatus", "TransactionMonitor",
    "AuthenticityLedger", "AuthenticityRecord", "AttestResult",
    "TransferScheduler", "ScheduledOperation", "OperationStatus",
    "RegistryState",
    "KeyValueStore", "InMemoryStore", "SqliteStore", "create_store",
    "HeightSource", "TickClock",
    "EventLogger",
    "ErrorCategory", "ErrorCode", "RegistryError", "OperationResult",
]
