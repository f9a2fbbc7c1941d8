"""
Error taxonomy for the mutation kernel.

Recoverable kinds (schema, reference, business rule, concurrency) travel as
data on ExecutionResult. Only StorageUnavailable halts a submission, and
NotReversible is terminal for the rollback request that raised it.
"""

from enum import Enum
from typing import List, Optional


class ErrorKind(str, Enum):
    SCHEMA_VIOLATION = "schema_violation"
    REFERENCE_ERROR = "reference_error"
    BUSINESS_RULE_VIOLATION = "business_rule_violation"
    CONCURRENT_MODIFICATION = "concurrent_modification"
    NOT_REVERSIBLE = "not_reversible"
    STORAGE_UNAVAILABLE = "storage_unavailable"


RECOVERABLE_KINDS = frozenset({
    ErrorKind.SCHEMA_VIOLATION,
    ErrorKind.REFERENCE_ERROR,
    ErrorKind.BUSINESS_RULE_VIOLATION,
    ErrorKind.CONCURRENT_MODIFICATION,
})


class CrmKernelError(Exception):
    """Base class for kernel failures."""

    kind: Optional[ErrorKind] = None


class StorageUnavailable(CrmKernelError):
    """The event log could not durably complete a read or append."""

    kind = ErrorKind.STORAGE_UNAVAILABLE

    def __init__(self, operation: str, cause: Optional[BaseException] = None):
        self.operation = operation
        self.cause = cause
        detail = f": {cause}" if cause else ""
        super().__init__(f"Event log unavailable during {operation}{detail}")


class NotReversible(CrmKernelError):
    """Rollback was requested for an event that has no defined inverse."""

    kind = ErrorKind.NOT_REVERSIBLE

    def __init__(self, event_id: int, event_kind: str, reason: str):
        self.event_id = event_id
        self.event_kind = event_kind
        self.reason = reason
        super().__init__(
            f"Event {event_id} ({event_kind}) cannot be rolled back: {reason}"
        )


class ConcurrentModification(CrmKernelError):
    """The target entity changed under a writer holding a stale version."""

    kind = ErrorKind.CONCURRENT_MODIFICATION

    def __init__(
        self,
        entity_id: str,
        expected_version: Optional[int],
        actual_version: int,
        violations: Optional[List] = None,
    ):
        self.entity_id = entity_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        self.violations = violations or []
        super().__init__(
            f"Entity {entity_id} is at version {actual_version}, "
            f"expected {expected_version}"
        )


class EventNotFound(CrmKernelError):
    """No event with this id is visible to the caller."""

    def __init__(self, event_id: int):
        self.event_id = event_id
        super().__init__(f"Event {event_id} not found")
