"""
Custom exceptions for the SQL Server database operator.

Every exception carries a machine ``reason`` that ends up in the resource's
Errored condition, and a ``retryable`` flag the controller uses to pick a
backoff. Legitimate absence (deleted resource, missing database) is never an
exception: adapters return ``None`` for it.
"""
from typing import Any, Dict, List, Optional


class OperatorError(Exception):
    """
    Base exception for all operator errors.

    All custom exceptions should inherit from this base class.
    """

    reason: str = "ErroredDatabase"
    retryable: bool = True

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class InvalidSpecError(OperatorError):
    """Raised when a Database resource spec fails validation."""

    reason = "InvalidSpec"
    retryable = False


class DependencyNotReadyError(OperatorError):
    """
    Raised when the managed SQL server is missing or not ready.

    The caller is expected to retry with backoff.
    """

    reason = "ServerNotReady"

    def __init__(self, server: str, state: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        message = f"Managed server '{server}' is not ready"
        if state:
            message += f" (state: {state})"
        super().__init__(message, details=details or {"server": server, "state": state})


class CredentialsError(OperatorError):
    """Raised when the credentials secret is missing or incomplete."""

    reason = "CredentialsUnavailable"


class ConflictError(OperatorError):
    """
    Raised when external state diverged out-of-band.

    Never remediated automatically; an operator has to intervene.
    """

    reason = "Conflict"
    retryable = False


class DuplicateDatabaseError(ConflictError):
    """Raised when creating a database whose name already exists."""

    reason = "DatabaseAlreadyExists"

    def __init__(self, database_name: str, database_id: Optional[str] = None):
        message = f"Database '{database_name}' already exists on the server and is not managed by this resource"
        super().__init__(message, details={"database_name": database_name, "database_id": database_id})


class DatabaseMismatchError(ConflictError):
    """Raised when identifier and name no longer point at the same database."""

    reason = "DatabaseMismatch"

    def __init__(
        self,
        database_id: str,
        expected_name: str,
        actual_name: Optional[str] = None,
        actual_id: Optional[str] = None,
    ):
        if actual_name is not None:
            message = (
                f"Database with id '{database_id}' is named '{actual_name}', "
                f"expected '{expected_name}'"
            )
        else:
            message = (
                f"Database '{expected_name}' has id '{actual_id}', "
                f"expected '{database_id}'"
            )
        super().__init__(
            message,
            details={
                "database_id": database_id,
                "expected_name": expected_name,
                "actual_name": actual_name,
                "actual_id": actual_id,
            },
        )


class DatabaseNotFoundError(ConflictError):
    """Raised when a recorded database identifier no longer resolves."""

    reason = "DatabaseMissing"

    def __init__(self, database_id: str, database_name: str):
        message = f"Database '{database_name}' with id '{database_id}' no longer exists on the server"
        super().__init__(message, details={"database_id": database_id, "database_name": database_name})


class StaleResourceError(OperatorError):
    """
    Raised when an optimistic-concurrency write is rejected (HTTP 409).

    The whole pass is restarted from a fresh read; nothing is merged.
    """

    reason = "StaleResource"


class KubernetesError(OperatorError):
    """Raised when Kubernetes API operations fail."""

    reason = "KubernetesError"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(f"Kubernetes error: {message}", details=details)


class SQLServerError(OperatorError):
    """Raised when a SQL Server call fails (connection, timeout, statement)."""

    reason = "SQLServerError"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(f"SQL Server error: {message}", details=details)


class PartialApplyError(SQLServerError):
    """
    Raised when some field statements of an ALTER failed.

    Fields that succeeded stay applied; ``failed_fields`` lists every field
    that did not.
    """

    reason = "PartialApply"

    def __init__(
        self,
        database_name: str,
        failed_fields: Dict[str, str],
        applied_fields: List[str],
        database_id: Optional[str] = None,
    ):
        self.failed_fields = failed_fields
        self.applied_fields = applied_fields
        # Set when the database itself was created before its options failed
        self.database_id = database_id
        names = ", ".join(sorted(failed_fields))
        super().__init__(
            f"failed to alter database '{database_name}' fields: {names}",
            details={
                "database_name": database_name,
                "database_id": database_id,
                "failed_fields": failed_fields,
                "applied_fields": applied_fields,
            },
        )


__all__ = [
    "OperatorError",
    "InvalidSpecError",
    "DependencyNotReadyError",
    "CredentialsError",
    "ConflictError",
    "DuplicateDatabaseError",
    "DatabaseMismatchError",
    "DatabaseNotFoundError",
    "StaleResourceError",
    "KubernetesError",
    "SQLServerError",
    "PartialApplyError",
]
