"""
chartguard - Custom Exceptions.

Centralized exception taxonomy with standardized error responses. Every
failure crossing the query boundary is one of these.
"""

from typing import Any
from uuid import UUID


class ChartGuardException(Exception):
    """Base exception for chartguard."""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = 500,
        details: dict[str, Any] | None = None,
        request_id: UUID | None = None,
    ):
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details
        self.request_id = request_id
        super().__init__(message)


class NotFoundException(ChartGuardException):
    """Raised when a resource is not found."""

    def __init__(self, resource_type: str, resource_id: str):
        super().__init__(
            code="NOT_FOUND",
            message=f"{resource_type} not found: {resource_id}",
            status_code=404,
            details={"resource_type": resource_type, "resource_id": str(resource_id)},
        )


class ValidationException(ChartGuardException):
    """Raised for validation errors."""

    def __init__(self, message: str, errors: list[dict[str, Any]] | None = None):
        super().__init__(
            code="VALIDATION_ERROR",
            message=message,
            status_code=400,
            details={"errors": errors} if errors else None,
        )


class FeatureDisabledException(ChartGuardException):
    """Raised when a feature flag is disabled."""

    def __init__(self, feature_name: str):
        super().__init__(
            code="FEATURE_DISABLED",
            message=f"Feature '{feature_name}' is currently disabled",
            status_code=503,
            details={"feature": feature_name},
        )


# =============================================================================
# Data / ingestion errors
# =============================================================================


class NoDataException(ChartGuardException):
    """Raised when a query needs a dataset and none is loaded."""

    def __init__(self, message: str = "No dataset loaded. Load a file first."):
        super().__init__(code="NO_DATA", message=message, status_code=404)


class ReadException(ChartGuardException):
    """Raised when a dataset file cannot be read."""

    def __init__(self, path: str, message: str):
        super().__init__(
            code="READ_ERROR",
            message=f"Failed to read '{path}': {message}",
            status_code=400,
            details={"path": path},
        )


class UnsupportedFormatException(ChartGuardException):
    """Raised for file extensions the loader does not understand."""

    def __init__(self, extension: str, supported: list[str]):
        super().__init__(
            code="UNSUPPORTED_FORMAT",
            message=f"Unsupported file format: '{extension}'",
            status_code=415,
            details={"extension": extension, "supported": supported},
        )


# =============================================================================
# Query validation errors (raised before execution)
# =============================================================================


class ColumnNotFoundException(ChartGuardException):
    """Raised when a referenced column does not exist in the dataset."""

    def __init__(self, column: str, available: list[str]):
        super().__init__(
            code="COLUMN_NOT_FOUND",
            message=f"Column '{column}' not found. Available columns: {', '.join(available)}",
            status_code=400,
            details={"column": column, "available": list(available)},
        )


class TypeMismatchException(ChartGuardException):
    """Raised when a column or filter value has the wrong type for the requested operation."""

    def __init__(self, column: str, actual_type: str, expected_type: str, message: str | None = None):
        super().__init__(
            code="TYPE_MISMATCH",
            message=message or f"Column '{column}' has type {actual_type}, expected {expected_type}",
            status_code=400,
            details={"column": column, "actual_type": actual_type, "expected_type": expected_type},
        )


class InvalidFilterException(ChartGuardException):
    """Raised when a filter spec is invalid or uses unsupported operators."""

    def __init__(self, message: str = "Invalid filter specification.", details: dict[str, Any] | None = None):
        super().__init__(
            code="INVALID_FILTER",
            message=message,
            status_code=400,
            details=details,
        )


# =============================================================================
# Safety errors
# =============================================================================


class SafetyBlockException(ChartGuardException):
    """Raised when a plan is unsafe and the executor refuses to run it."""

    def __init__(self, reason: str, original_rows: int, max_allowed: int):
        super().__init__(
            code="SAFETY_BLOCK",
            message=f"Query blocked for safety: {reason}",
            status_code=422,
            details={"reason": reason, "original_rows": original_rows, "max_allowed": max_allowed},
        )


class CardinalityExceededException(ChartGuardException):
    """Raised when a column has too many distinct values for the requested chart."""

    def __init__(self, column: str, unique_count: int, threshold: int):
        super().__init__(
            code="CARDINALITY_EXCEEDED",
            message=f"Column '{column}' has {unique_count} unique values (limit: {threshold})",
            status_code=422,
            details={"column": column, "unique_count": unique_count, "threshold": threshold},
        )


class MemoryBudgetExceededException(ChartGuardException):
    """Raised when a frame would exceed the memory budget."""

    def __init__(self, estimated_mb: float, budget_mb: float):
        super().__init__(
            code="MEMORY_BUDGET_EXCEEDED",
            message=f"Estimated memory {estimated_mb:.0f}MB exceeds budget {budget_mb:.0f}MB",
            status_code=413,
            details={"estimated_mb": round(estimated_mb, 1), "budget_mb": budget_mb},
        )


class TooManyPointsException(ChartGuardException):
    """Raised when a result would exceed the absolute point ceiling."""

    def __init__(self, requested: int, max_allowed: int):
        super().__init__(
            code="TOO_MANY_POINTS",
            message=f"Result has {requested} points, exceeding the maximum of {max_allowed}",
            status_code=422,
            details={"requested": requested, "max_allowed": max_allowed},
        )


class QueryCancelledException(ChartGuardException):
    """Raised when a running query is cancelled by the caller."""

    def __init__(self, message: str = "Query was cancelled"):
        super().__init__(code="QUERY_CANCELLED", message=message, status_code=409)


# =============================================================================
# Execution errors
# =============================================================================


class ExecutionException(ChartGuardException):
    """Raised when the dataframe engine fails while collecting a plan."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            code="EXECUTION_ERROR",
            message=f"Query execution failed: {message}",
            status_code=500,
            details=details,
        )


class UnsupportedTransformationException(ChartGuardException):
    """Raised when the executor meets a transformation it has no handler for."""

    def __init__(self, transformation: str):
        super().__init__(
            code="UNSUPPORTED_TRANSFORMATION",
            message=f"No handler registered for transformation '{transformation}'",
            status_code=500,
            details={"transformation": transformation},
        )


class DatasetStorePoisonedException(ChartGuardException):
    """Raised on every access after a mutation failed while holding the store lock."""

    def __init__(self):
        super().__init__(
            code="STORE_POISONED",
            message="Dataset store is in an inconsistent state after a failed update; reload required",
            status_code=500,
        )
