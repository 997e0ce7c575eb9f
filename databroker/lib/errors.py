"""Structured exception hierarchy for the broker.

Provides specific exception types for the failure modes a federation
round or a sink submission can run into, with rich context for
debugging and structured logging.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence, TYPE_CHECKING

if TYPE_CHECKING:
    from databroker.lib.constraints import Violation

__all__ = [
    "BrokerError",
    "ConnectionError",
    "FormatError",
    "RejectedError",
    "ConfigurationError",
    "NoSuchRecordError",
    "MergeConflictError",
]


class BrokerError(Exception):
    """Base exception for all broker errors.

    Provides structured error information for debugging.
    """

    def __init__(
        self,
        message: str,
        *,
        connector: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        self.message = message
        self.connector = connector
        self.details = details or {}
        self.suggestion = suggestion

        parts = [f"[{connector}] {message}" if connector else message]

        if details:
            detail_lines = [f"  {k}: {v}" for k, v in details.items()]
            parts.append("\nDetails:")
            parts.extend(detail_lines)

        if suggestion:
            parts.append(f"\nSuggestion: {suggestion}")

        super().__init__("\n".join(parts))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for structured logging."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "connector": self.connector,
            "details": self.details,
            "suggestion": self.suggestion,
        }


class ConnectionError(BrokerError):
    """Transport failure or provider unreachable.

    Retryable at the host's discretion; the broker never retries it.
    """

    def __init__(
        self,
        message: str,
        *,
        host: Optional[str] = None,
        status_code: Optional[int] = None,
        cause: Optional[Exception] = None,
        **kwargs: Any,
    ) -> None:
        self.host = host
        self.status_code = status_code
        self.cause = cause

        details = kwargs.pop("details", {})
        if host:
            details["host"] = host
        if status_code is not None:
            details["status_code"] = status_code
        if cause:
            details["cause"] = str(cause)
            details["cause_type"] = type(cause).__name__

        suggestion = kwargs.pop("suggestion", None)
        if not suggestion:
            suggestion = (
                "Check that the provider is reachable and credentials are correct. "
                "Retrying is safe; the broker does not retry on its own."
            )

        super().__init__(message, details=details, suggestion=suggestion, **kwargs)


class FormatError(BrokerError):
    """Encoding or decoding failure.

    Not retried. Surfaced as a data-quality signal for the source.
    """

    def __init__(
        self,
        message: str,
        *,
        wire_format: Optional[str] = None,
        cause: Optional[Exception] = None,
        **kwargs: Any,
    ) -> None:
        self.wire_format = wire_format
        self.cause = cause

        details = kwargs.pop("details", {})
        if wire_format:
            details["format"] = wire_format
        if cause:
            details["cause"] = str(cause)
            details["cause_type"] = type(cause).__name__

        super().__init__(message, details=details, **kwargs)


class RejectedError(BrokerError):
    """A sink refused a record.

    Terminal for that submission. Carries the failed predicates when the
    rejection came from a declared sink constraint.
    """

    def __init__(
        self,
        message: str,
        *,
        violations: Optional[Sequence["Violation"]] = None,
        **kwargs: Any,
    ) -> None:
        self.violations: List["Violation"] = list(violations or [])

        details = kwargs.pop("details", {})
        if self.violations:
            details["violated"] = ", ".join(v.constraint for v in self.violations)

        super().__init__(message, details=details, **kwargs)


class ConfigurationError(BrokerError):
    """Invalid broker or connector configuration."""

    def __init__(
        self,
        message: str,
        *,
        field: Optional[str] = None,
        value: Any = None,
        **kwargs: Any,
    ) -> None:
        self.field = field
        self.value = value

        details = kwargs.pop("details", {})
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)

        super().__init__(message, details=details, **kwargs)


class NoSuchRecordError(BrokerError):
    """No record matched a query that required one."""


class MergeConflictError(BrokerError):
    """A merged record still holds unresolved conflicting fields."""

    def __init__(self, message: str, *, fields: Sequence[str] = (), **kwargs: Any) -> None:
        self.fields = list(fields)

        details = kwargs.pop("details", {})
        if self.fields:
            details["conflicting_fields"] = ", ".join(self.fields)

        suggestion = kwargs.pop("suggestion", None)
        if not suggestion:
            suggestion = "Call resolve() or resolve_by_priority() before building the record."

        super().__init__(message, details=details, suggestion=suggestion, **kwargs)
