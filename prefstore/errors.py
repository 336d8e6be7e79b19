"""
Error types for prefstore.

This module defines every exception the core raises to its callers:
- PrefStoreError: Base exception
- NotFoundError: Entry or category absent
- VersionConflictError: Conditional write lost the compare-and-set
- RenumberRequiredError: No free position left between two neighbours
- UnavailableError / StoreTimeoutError: Backend unreachable or too slow
- InvalidValueKindError: Value does not match its declared kind
- PartitionLimitError: Owner partition is full

Invariants:
    - All errors inherit from PrefStoreError
    - Each error carries a stable code for programmatic handling
    - Conflicts and renumbering are distinct, actionable outcomes
"""

from __future__ import annotations

from typing import Any


class PrefStoreError(Exception):
    """Base exception for all prefstore errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "PREFSTORE_ERROR"
        self.details = details or {}


class NotFoundError(PrefStoreError):
    """Entry or category does not exist.

    Returned for reads only; deleting something absent is not an error.
    """

    def __init__(
        self,
        message: str,
        owner_id: str,
        category: str | None = None,
        key: str | None = None,
    ) -> None:
        super().__init__(
            message,
            code="NOT_FOUND",
            details={"owner_id": owner_id, "category": category, "key": key},
        )
        self.owner_id = owner_id
        self.category = category
        self.key = key


class VersionConflictError(PrefStoreError):
    """Conditional write rejected because the stored version moved on.

    The caller must re-read the entry and retry with the fresh version.

    Attributes:
        expected_version: Version the caller supplied
        actual_version: Version found in the store (None if absent)
    """

    def __init__(
        self,
        owner_id: str,
        category: str,
        key: str,
        expected_version: int,
        actual_version: int | None,
    ) -> None:
        super().__init__(
            f"Version conflict on {category}/{key}: "
            f"expected {expected_version}, found {actual_version}",
            code="VERSION_CONFLICT",
            details={
                "owner_id": owner_id,
                "category": category,
                "key": key,
                "expected_version": expected_version,
                "actual_version": actual_version,
            },
        )
        self.owner_id = owner_id
        self.category = category
        self.key = key
        self.expected_version = expected_version
        self.actual_version = actual_version


class RenumberRequiredError(PrefStoreError):
    """No integer position exists strictly between two neighbours.

    The caller must renumber the category and then retry the move.
    """

    def __init__(
        self,
        before: int,
        after: int,
        category: str | None = None,
    ) -> None:
        super().__init__(
            f"No free position between {before} and {after}",
            code="RENUMBER_REQUIRED",
            details={"before": before, "after": after, "category": category},
        )
        self.before = before
        self.after = after
        self.category = category


class UnavailableError(PrefStoreError):
    """Backend could not serve the request.

    Reads may be retried with backoff. Unconditional writes must be
    re-verified against the store before they are retried.
    """

    def __init__(self, message: str, operation: str | None = None) -> None:
        super().__init__(
            message,
            code="UNAVAILABLE",
            details={"operation": operation},
        )
        self.operation = operation


class StoreTimeoutError(UnavailableError):
    """Backend call exceeded its deadline; outcome is unknown."""

    def __init__(self, operation: str, timeout: float) -> None:
        super().__init__(f"{operation} timed out after {timeout:.3f}s", operation=operation)
        self.code = "TIMEOUT"
        self.details["timeout"] = timeout
        self.timeout = timeout


class InvalidValueKindError(PrefStoreError):
    """Value does not agree with its value_kind or its category.

    This is a programming error and is never retried.
    """

    def __init__(
        self,
        message: str,
        expected_kind: str | None = None,
        actual: str | None = None,
    ) -> None:
        super().__init__(
            message,
            code="INVALID_VALUE_KIND",
            details={"expected_kind": expected_kind, "actual": actual},
        )
        self.expected_kind = expected_kind
        self.actual = actual


class PartitionLimitError(PrefStoreError):
    """Creating another entry would exceed the owner's partition bound."""

    def __init__(self, owner_id: str, limit: int) -> None:
        super().__init__(
            f"Owner {owner_id} already holds the maximum of {limit} entries",
            code="PARTITION_LIMIT",
            details={"owner_id": owner_id, "limit": limit},
        )
        self.owner_id = owner_id
        self.limit = limit
