"""Domain Ports - Abstract Contracts for Record Storage, Audit and Access.

This module defines the Port interfaces (abstract contracts) that Adapters must implement.
Following Hexagonal Architecture, the Domain Core defines what it needs, not how it's provided.

Security Impact:
    - Access decisions are delegated to AccessControlPort; the core never
      interprets family membership itself
    - Conditional updates are enforced by the storage layer, not in memory
    - Audit storage is append-only (no update or delete operations exposed)

Architecture:
    - Pure abstract interfaces with zero infrastructure dependencies
    - Adapters (DuckDB, PostgreSQL) implement these ports
    - Domain Core is isolated from storage specifics
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Generic, List, Optional, Tuple, TypeVar, Union

# Type variable for Result generic
T = TypeVar('T')


# ============================================================================
# Result Type for Success/Failure Communication
# ============================================================================

@dataclass(frozen=True)
class Result(Generic[T]):
    """Result type for communicating success or failure without exceptions.

    Read-side services (history listing, schema initialization, health
    checks) return Result so routes can decide how to surface failures.
    The write path raises RecordError subclasses instead.

    Attributes:
        success: True if the operation succeeded, False otherwise
        value: The successful result value (only present if success=True)
        error: Error information (only present if success=False)
        error_type: Type of error (StorageError, NotFoundError, etc.)
        error_details: Additional error context

    Example:
        ```python
        result = history_service.get_history("visit", 42, page=1, limit=50)
        if result.is_success():
            render(result.value)
        ```
    """

    success: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    error_details: Optional[dict] = None

    @classmethod
    def success_result(cls, value: T) -> 'Result[T]':
        """Create a successful result.

        Parameters:
            value: The successful result value

        Returns:
            Result: Success result with the value
        """
        return cls(
            success=True,
            value=value,
            error=None,
            error_type=None,
            error_details=None
        )

    @classmethod
    def failure_result(
        cls,
        error: Union[str, Exception],
        error_type: Optional[str] = None,
        error_details: Optional[dict] = None
    ) -> 'Result[T]':
        """Create a failure result.

        Parameters:
            error: Error message or exception
            error_type: Type of error (e.g., "StorageError")
            error_details: Additional context

        Returns:
            Result: Failure result with error information
        """
        error_message = str(error) if isinstance(error, Exception) else error
        error_type_name = error_type or (type(error).__name__ if isinstance(error, Exception) else "UnknownError")

        return cls(
            success=False,
            value=None,
            error=error_message,
            error_type=error_type_name,
            error_details=error_details or {}
        )

    def is_success(self) -> bool:
        """Check if result is successful."""
        return self.success

    def is_failure(self) -> bool:
        """Check if result is a failure."""
        return not self.success


# ============================================================================
# Custom Exception Hierarchy
# ============================================================================

class RecordError(Exception):
    """Base exception for all record mutation errors.

    Each subclass carries the HTTP status it maps to so the API layer can
    translate errors without a lookup table.
    """

    status_code: int = 500


class NotFoundError(RecordError):
    """Raised when an entity is missing or the caller cannot read it.

    Both cases produce the same error so existence is never leaked to a
    caller without read access.

    Attributes:
        entity_type: Entity type that was requested
        entity_id: Identifier that was requested
    """

    status_code = 404

    def __init__(self, entity_type: str, entity_id: Optional[int] = None):
        super().__init__(f"{entity_type.capitalize()} not found")
        self.entity_type = entity_type
        self.entity_id = entity_id


class ForbiddenError(RecordError):
    """Raised when the caller can read an entity but may not edit it."""

    status_code = 403

    def __init__(self, message: str = "You do not have permission to edit this record."):
        super().__init__(message)


class BadRequestError(RecordError):
    """Raised when a field fails validation.

    Attributes:
        field: Name of the offending field (None for request-level errors)
    """

    status_code = 400

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class ConflictError(RecordError):
    """Raised when the client's version stamp is stale or a conditional write lost.

    Attributes:
        current_version: Server-side version stamp at the time of the check
        your_version: Version stamp the client submitted
    """

    status_code = 409

    def __init__(
        self,
        message: str = "Record was modified by another user. Please refresh and try again.",
        current_version: Optional[datetime] = None,
        your_version: Optional[str] = None
    ):
        super().__init__(message)
        self.current_version = current_version
        self.your_version = your_version


class StorageError(RecordError):
    """Raised when persistence fails unexpectedly.

    This layer never retries storage failures.

    Attributes:
        operation: The storage operation that failed (load, update, record, etc.)
        details: Additional error details (never contains clinical values)
    """

    status_code = 500

    def __init__(self, message: str, operation: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message)
        self.operation = operation
        self.details = details or {}


class AuditWriteError(StorageError):
    """Raised when an audit event could not be persisted."""
    pass


# ============================================================================
# Ports
# ============================================================================

class AccessControlPort(ABC):
    """Abstract contract for the family/ownership authorization collaborator.

    The domain only asks yes/no questions; membership and role semantics
    live entirely in the adapter.
    """

    @abstractmethod
    def can_read(self, user_id: Optional[int], entity_type: str, entity_id: int) -> bool:
        """Return True if the user may read the entity."""
        pass

    @abstractmethod
    def can_write(self, user_id: Optional[int], entity_type: str, entity_id: int) -> bool:
        """Return True if the user may modify or delete the entity."""
        pass

    @abstractmethod
    def can_read_child(self, user_id: Optional[int], child_id: int) -> bool:
        """Return True if the user may see the child (used when creating entities)."""
        pass

    @abstractmethod
    def can_write_child(self, user_id: Optional[int], child_id: int) -> bool:
        """Return True if the user may add records for the child."""
        pass


class EntityStoragePort(ABC):
    """Abstract contract for row-level entity persistence.

    Rows are plain dictionaries keyed by column name, with structured (JSON)
    columns already decoded. Collection-valued sub-records (visit illnesses,
    illness types) are read separately and written in the same storage
    transaction as the row they belong to.

    Security Impact:
        - update_where() is the authoritative compare-and-swap; a row count
          of zero means the caller lost the race (or the row vanished)
    """

    @abstractmethod
    def initialize_schema(self) -> Result[None]:
        """Create tables and indexes if they do not exist."""
        pass

    @abstractmethod
    def load(self, entity_type: str, entity_id: int) -> Optional[Dict[str, Any]]:
        """Fetch one row by id, or None when it does not exist."""
        pass

    @abstractmethod
    def insert(
        self,
        entity_type: str,
        values: Dict[str, Any],
        collections: Optional[Dict[str, List[str]]] = None
    ) -> Dict[str, Any]:
        """Insert a row (and its sub-records) and return the row as persisted."""
        pass

    @abstractmethod
    def update_where(
        self,
        entity_type: str,
        entity_id: int,
        values: Dict[str, Any],
        expected_version: Optional[datetime],
        collections: Optional[Dict[str, List[str]]] = None
    ) -> Tuple[int, Optional[Dict[str, Any]]]:
        """Conditionally update a row.

        The update applies only when the row's version stamp still equals
        expected_version (when given). values carries the new version stamp.
        Sub-record collections named in collections are replaced (delete all,
        then insert in order) in the same transaction, and only when the row
        update succeeded.

        Parameters:
            entity_type: Entity type (visit, illness)
            entity_id: Row identifier
            values: Column values to set (only fields present in the payload, plus updated_at)
            expected_version: Stamp read before the write, or None to skip the condition
            collections: Collection field -> new ordered values

        Returns:
            Tuple of (rows_affected, updated_row_or_None)
        """
        pass

    @abstractmethod
    def delete(self, entity_type: str, entity_id: int) -> int:
        """Delete a row (and its sub-records); return rows affected."""
        pass

    @abstractmethod
    def load_collection(self, entity_type: str, entity_id: int, field: str) -> List[str]:
        """Return the ordered values of a collection-valued sub-record field."""
        pass


class AuditStoragePort(ABC):
    """Abstract contract for append-only audit event persistence."""

    @abstractmethod
    def append_audit_event(self, row: Dict[str, Any]) -> int:
        """Insert one audit event row and return its monotonic id."""
        pass

    @abstractmethod
    def list_audit_events(
        self,
        entity_type: str,
        entity_id: int,
        limit: int,
        offset: int
    ) -> Tuple[List[Dict[str, Any]], int]:
        """Return (rows newest first by changed_at then id, total_count)."""
        pass
