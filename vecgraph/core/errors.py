"""
Result Monad & Error Types: Exception-Free Control Flow

Every fallible index, quantizer and store operation returns a
Result[T, VecGraphError] instead of raising. Callers branch on
is_ok()/is_err() or chain with map/and_then.

Design Principles:
    - Exhaustive Error Handling: every failure carries an ErrorCode
    - Type Safety: static type checking for error propagation
    - Composability: and_then for chaining fallible operations
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import (
    Any,
    Callable,
    Generic,
    Literal,
    NoReturn,
    Optional,
    TypeVar,
    Union,
    final,
)


# =============================================================================
# TYPE VARIABLES
# =============================================================================
T = TypeVar("T")  # Success value type
E = TypeVar("E")  # Error type
U = TypeVar("U")  # Transform result type


# =============================================================================
# RESULT MONAD: SUCCESS VARIANT
# =============================================================================
@final
@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    """
    Success variant of Result.

    Immutable after construction - safe for concurrent access.

    Example:
        result: Result[int, VecGraphError] = Ok(42)
        if result.is_ok():
            value = result.unwrap()
    """
    _value: T

    def is_ok(self) -> Literal[True]:
        return True

    def is_err(self) -> Literal[False]:
        return False

    def unwrap(self) -> T:
        """Extract value. Safe to call after is_ok() check."""
        return self._value

    def unwrap_or(self, default: T) -> T:
        return self._value

    def expect(self, msg: str) -> T:
        return self._value

    def map(self, fn: Callable[[T], U]) -> "Ok[U]":
        """Apply transformation to success value."""
        return Ok(fn(self._value))

    def map_err(self, fn: Callable[[Any], Any]) -> "Ok[T]":
        return self

    def and_then(self, fn: Callable[[T], "Result[U, Any]"]) -> "Result[U, Any]":
        """Monadic bind for chaining fallible operations."""
        return fn(self._value)

    @property
    def value(self) -> T:
        return self._value

    @property
    def error(self) -> None:
        return None

    def __repr__(self) -> str:
        return f"Ok({self._value!r})"

    def __bool__(self) -> Literal[True]:
        return True


# =============================================================================
# RESULT MONAD: ERROR VARIANT
# =============================================================================
@final
@dataclass(frozen=True, slots=True)
class Err(Generic[E]):
    """
    Error variant of Result.

    Example:
        result = index.insert(VectorId(7), [0.0, 1.0])
        if result.is_err():
            print(result.error.code)
    """
    _error: E

    def is_ok(self) -> Literal[False]:
        return False

    def is_err(self) -> Literal[True]:
        return True

    def unwrap(self) -> NoReturn:
        """
        Unwrapping an error is a programming error.

        Raises:
            RuntimeError: Always, with error context
        """
        raise RuntimeError(f"Called unwrap() on Err: {self._error}")

    def unwrap_or(self, default: T) -> T:
        return default

    def expect(self, msg: str) -> NoReturn:
        raise RuntimeError(f"{msg}: {self._error}")

    def map(self, fn: Callable[[Any], U]) -> "Err[E]":
        return self

    def map_err(self, fn: Callable[[E], U]) -> "Err[U]":
        return Err(fn(self._error))

    def and_then(self, fn: Callable[[Any], "Result[U, E]"]) -> "Err[E]":
        return self

    @property
    def value(self) -> None:
        return None

    @property
    def error(self) -> E:
        return self._error

    def __repr__(self) -> str:
        return f"Err({self._error!r})"

    def __bool__(self) -> Literal[False]:
        return False


# Union type for pattern matching
Result = Union[Ok[T], Err[E]]


# =============================================================================
# ERROR TAXONOMY
# =============================================================================
class ErrorCode(Enum):
    """
    Canonical error codes.

    Ranges:
        1000-1999: Input validation
        2000-2999: Graph / index state
        3000-3999: Quantizer
        4000-4999: Storage
        5000-5999: Configuration
        6000-6999: Query execution
    """
    # Input (1000-1999)
    DIMENSION_MISMATCH = 1001
    INVALID_K = 1002
    INVALID_VECTOR = 1003

    # Graph (2000-2999)
    DUPLICATE_ID = 2001
    INTERNAL_INCONSISTENCY = 2002
    READ_ONLY = 2003

    # Quantizer (3000-3999)
    INSUFFICIENT_SAMPLES = 3001
    NOT_TRAINED = 3002
    TOLERANCE_EXCEEDED = 3003

    # Storage (4000-4999)
    NOT_FOUND = 4001
    STORAGE_IO = 4002
    STORAGE_CORRUPTED = 4003

    # Configuration (5000-5999)
    CONFIG_INVALID = 5001

    # Query (6000-6999)
    QUERY_CANCELLED = 6001
    QUERY_TIMEOUT = 6002

    @property
    def retryable(self) -> bool:
        """Only transient storage I/O is worth retrying."""
        return self is ErrorCode.STORAGE_IO

    @property
    def fatal(self) -> bool:
        """Fatal errors flip the index to read-only."""
        return self is ErrorCode.INTERNAL_INCONSISTENCY


@dataclass(frozen=True, slots=True)
class VecGraphError:
    """
    Base error type for all index operations.

    Structured error with:
        - Error code for categorization
        - Human-readable message
        - Machine-readable details
        - Optional cause chain
        - Timestamp for debugging
    """
    code: ErrorCode
    message: str
    details: dict[str, Any] = field(default_factory=dict)
    cause: Optional["VecGraphError"] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __str__(self) -> str:
        return f"[{self.code.name}] {self.message}"

    def to_dict(self) -> dict[str, Any]:
        """Serialize for logging."""
        return {
            "code": self.code.value,
            "code_name": self.code.name,
            "message": self.message,
            "details": self.details,
            "cause": self.cause.to_dict() if self.cause else None,
            "timestamp": self.timestamp.isoformat(),
        }

    def with_cause(self, cause: "VecGraphError") -> "VecGraphError":
        """Chain errors for root cause analysis."""
        return type(self)(
            code=self.code,
            message=self.message,
            details=self.details,
            cause=cause,
            timestamp=self.timestamp,
        )


# =============================================================================
# SPECIALIZED ERROR TYPES (Convenience constructors)
# =============================================================================
class InputError(VecGraphError):
    """Rejected caller input. Never retried."""

    @classmethod
    def dimension_mismatch(cls, expected: int, actual: int) -> "InputError":
        return cls(
            code=ErrorCode.DIMENSION_MISMATCH,
            message=f"Dimension mismatch: expected {expected}, got {actual}",
            details={"expected": expected, "actual": actual},
        )

    @classmethod
    def invalid_k(cls, k: int) -> "InputError":
        return cls(
            code=ErrorCode.INVALID_K,
            message=f"Invalid k={k}, must be >= 1",
            details={"k": k},
        )

    @classmethod
    def invalid_vector(cls, reason: str) -> "InputError":
        return cls(
            code=ErrorCode.INVALID_VECTOR,
            message=f"Invalid vector: {reason}",
            details={"reason": reason},
        )


class GraphError(VecGraphError):
    """Error during graph mutation or traversal."""

    @classmethod
    def duplicate_id(cls, vector_id: int) -> "GraphError":
        return cls(
            code=ErrorCode.DUPLICATE_ID,
            message=f"Vector {vector_id} already indexed (pass overwrite=True to replace)",
            details={"id": vector_id},
        )

    @classmethod
    def internal_inconsistency(cls, reason: str, **details: Any) -> "GraphError":
        return cls(
            code=ErrorCode.INTERNAL_INCONSISTENCY,
            message=f"Index inconsistent, rebuild required: {reason}",
            details={"reason": reason, **details},
        )

    @classmethod
    def read_only(cls, reason: str) -> "GraphError":
        return cls(
            code=ErrorCode.READ_ONLY,
            message=f"Index is read-only: {reason}",
            details={"reason": reason},
        )


class QuantizerError(VecGraphError):
    """Error during codebook training or coding."""

    @classmethod
    def insufficient_samples(cls, provided: int, required: int) -> "QuantizerError":
        return cls(
            code=ErrorCode.INSUFFICIENT_SAMPLES,
            message=f"Need at least {required} training samples, got {provided}",
            details={"provided": provided, "required": required},
        )

    @classmethod
    def not_trained(cls) -> "QuantizerError":
        return cls(
            code=ErrorCode.NOT_TRAINED,
            message="Quantizer has no trained codebook",
        )

    @classmethod
    def tolerance_exceeded(
        cls, fraction_within: float, tolerance: float,
    ) -> "QuantizerError":
        return cls(
            code=ErrorCode.TOLERANCE_EXCEEDED,
            message=(
                f"Only {fraction_within:.1%} of validation vectors reconstruct "
                f"within {tolerance}"
            ),
            details={"fraction_within": fraction_within, "tolerance": tolerance},
        )


class StoreError(VecGraphError):
    """Error in vector store or blob store operations."""

    @classmethod
    def not_found(cls, vector_id: int) -> "StoreError":
        return cls(
            code=ErrorCode.NOT_FOUND,
            message=f"Vector {vector_id} not found",
            details={"id": vector_id},
        )

    @classmethod
    def blob_not_found(cls, key: str) -> "StoreError":
        return cls(
            code=ErrorCode.NOT_FOUND,
            message=f"Blob '{key}' not found",
            details={"key": key},
        )

    @classmethod
    def io_error(cls, key: str, reason: str) -> "StoreError":
        return cls(
            code=ErrorCode.STORAGE_IO,
            message=f"I/O failure on '{key}': {reason}",
            details={"key": key, "reason": reason},
        )

    @classmethod
    def corrupted(cls, key: str, reason: str) -> "StoreError":
        return cls(
            code=ErrorCode.STORAGE_CORRUPTED,
            message=f"Corrupted record '{key}': {reason}",
            details={"key": key, "reason": reason},
        )


class QueryError(VecGraphError):
    """Query aborted before completion."""

    @classmethod
    def cancelled(cls) -> "QueryError":
        return cls(code=ErrorCode.QUERY_CANCELLED, message="Query cancelled")

    @classmethod
    def timeout(cls, timeout_ms: Optional[float]) -> "QueryError":
        return cls(
            code=ErrorCode.QUERY_TIMEOUT,
            message=f"Query timed out after {timeout_ms}ms",
            details={"timeout_ms": timeout_ms},
        )


class ConfigError(VecGraphError):
    """Error in configuration."""

    @classmethod
    def invalid(cls, reason: str, **details: Any) -> "ConfigError":
        return cls(
            code=ErrorCode.CONFIG_INVALID,
            message=f"Invalid config: {reason}",
            details={"reason": reason, **details},
        )
