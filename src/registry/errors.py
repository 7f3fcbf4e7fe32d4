"""Typed failure results for registry operations.

Registry operations never raise for expected failures. They return an
OperationResult carrying either a value or a RegistryError with a
machine-readable code, a category and retry guidance.

Usage:
    from src.registry.errors import OperationResult, ErrorCode, not_found

    def get_thing(thing_id: int) -> OperationResult[Thing]:
        thing = things.get(thing_id)
        if thing is None:
            return OperationResult.fail(
                not_found(f"Record {thing_id} not found", record_id=thing_id)
            )
        return OperationResult.ok(thing)
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar

T = TypeVar("T")


class ErrorCategory(str, Enum):
    """Categories for error classification.

    - NOT_FOUND: Record or scheduled operation absent
    - PERMISSION: Caller lacks the required relationship or level
    - VALIDATION: Field bounds, enum membership, hash equality
    - RATE_LIMITED: Quota exceeded; retry after the window
    - CONFLICT: State forbids the operation (already pending, resolved)
    - EXPIRED: Time-bound operation past its deadline
    - UNAVAILABLE: Registry paused by the administrator
    """

    NOT_FOUND = "not_found"
    PERMISSION = "permission"
    VALIDATION = "validation"
    RATE_LIMITED = "rate_limited"
    CONFLICT = "conflict"
    EXPIRED = "expired"
    UNAVAILABLE = "unavailable"


class ErrorCode(str, Enum):
    """Specific error codes for programmatic handling."""

    # Not found
    RECORD_NOT_FOUND = "record_not_found"
    OPERATION_NOT_FOUND = "operation_not_found"
    NO_ATTESTATION = "no_attestation"

    # Permission
    UNAUTHORIZED = "unauthorized"

    # Validation
    INVALID_NAME = "invalid_name"
    INVALID_SIZE = "invalid_size"
    INVALID_DETAILS = "invalid_details"
    INVALID_CATEGORY_LIST = "invalid_category_list"
    INVALID_LEVEL = "invalid_level"
    INVALID_METHOD = "invalid_method"
    INVALID_HASH = "invalid_hash"
    INVALID_REASON = "invalid_reason"
    INVALID_ARGUMENT = "invalid_argument"
    HASH_MISMATCH = "hash_mismatch"

    # Rate limiting
    RATE_LIMITED = "rate_limited"

    # Conflict
    ALREADY_PENDING = "already_pending"
    ALREADY_ATTESTED = "already_attested"
    NOT_PENDING = "not_pending"
    OWNER_CHANGED = "owner_changed"

    # Expired
    EXPIRED = "expired"

    # Unavailable
    PAUSED = "paused"


@dataclass(frozen=True)
class RegistryError:
    """A typed failure.

    retriable is True only where waiting can change the outcome
    (rate limiting, pause).
    """

    code: ErrorCode
    category: ErrorCategory
    message: str
    retriable: bool = False
    details: dict[str, object] | None = None

    def to_dict(self) -> dict[str, object]:
        """Convert to dictionary for serialization."""
        result: dict[str, object] = {
            "error": self.message,
            "code": self.code.value,
            "category": self.category.value,
            "retriable": self.retriable,
        }
        if self.details:
            result["details"] = self.details
        return result


@dataclass(frozen=True)
class OperationResult(Generic[T]):
    """Outcome of a registry operation: a value or a RegistryError."""

    success: bool
    value: T | None = None
    error: RegistryError | None = None

    @classmethod
    def ok(cls, value: T | None = None) -> "OperationResult[T]":
        return cls(success=True, value=value)

    @classmethod
    def fail(cls, error: RegistryError) -> "OperationResult[T]":
        return cls(success=False, error=error)

    @property
    def code(self) -> ErrorCode | None:
        """Error code on failure, None on success."""
        return self.error.code if self.error is not None else None

    def to_dict(self) -> dict[str, object]:
        result: dict[str, object] = {"success": self.success}
        if self.error is not None:
            result.update(self.error.to_dict())
        else:
            to_dict = getattr(self.value, "to_dict", None)
            result["value"] = to_dict() if callable(to_dict) else self.value
        return result


# Factory functions for creating errors


def not_found(
    message: str,
    code: ErrorCode = ErrorCode.RECORD_NOT_FOUND,
    **details: object,
) -> RegistryError:
    """Create a not-found error.

    Args:
        message: Human-readable error message
        code: Specific error code (default: RECORD_NOT_FOUND)
        **details: Additional context (e.g., record_id=7)
    """
    return RegistryError(
        code=code,
        category=ErrorCategory.NOT_FOUND,
        message=message,
        details=dict(details) if details else None,
    )


def permission_error(
    message: str,
    code: ErrorCode = ErrorCode.UNAUTHORIZED,
    **details: object,
) -> RegistryError:
    """Create a permission error.

    Use when the caller is not the creator, not the admin, or lacks the
    required access level.
    """
    return RegistryError(
        code=code,
        category=ErrorCategory.PERMISSION,
        message=message,
        details=dict(details) if details else None,
    )


def validation_error(
    message: str,
    code: ErrorCode = ErrorCode.INVALID_ARGUMENT,
    **details: object,
) -> RegistryError:
    """Create a validation error."""
    return RegistryError(
        code=code,
        category=ErrorCategory.VALIDATION,
        message=message,
        details=dict(details) if details else None,
    )


def rate_limited(message: str, **details: object) -> RegistryError:
    """Create a rate-limit error. Always retriable."""
    return RegistryError(
        code=ErrorCode.RATE_LIMITED,
        category=ErrorCategory.RATE_LIMITED,
        message=message,
        retriable=True,
        details=dict(details) if details else None,
    )


def conflict(
    message: str,
    code: ErrorCode = ErrorCode.ALREADY_PENDING,
    **details: object,
) -> RegistryError:
    """Create a conflict error."""
    return RegistryError(
        code=code,
        category=ErrorCategory.CONFLICT,
        message=message,
        details=dict(details) if details else None,
    )


def expired(message: str, **details: object) -> RegistryError:
    """Create an expiry error."""
    return RegistryError(
        code=ErrorCode.EXPIRED,
        category=ErrorCategory.EXPIRED,
        message=message,
        details=dict(details) if details else None,
    )


def unavailable(message: str, **details: object) -> RegistryError:
    """Create a paused-registry error. Retriable once the admin resumes."""
    return RegistryError(
        code=ErrorCode.PAUSED,
        category=ErrorCategory.UNAVAILABLE,
        message=message,
        retriable=True,
        details=dict(details) if details else None,
    )
