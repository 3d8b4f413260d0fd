"""Canonical failure codes and their HTTP / JSON-RPC renderings."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from apps.toolpacks.executor import ToolInputError, ToolOutputError
from scancore.cancellation import DEADLINE_EXCEEDED
from scancore.errors import (
    CapabilityMissingError,
    ConfigurationError,
    NotFoundError,
    ScanCancelledError,
    SourceError,
    TransportError,
)

__all__ = ["CanonicalError", "canonical_code_for", "failure_details"]


@dataclass(frozen=True)
class _Code:
    http_status: int
    jsonrpc_code: int
    message: str
    retryable: bool = False


_CODES: dict[str, _Code] = {
    "INVALID_INPUT": _Code(400, -32602, "Invalid input payload"),
    "INVALID_OUTPUT": _Code(502, -32002, "Invalid output payload"),
    "NOT_FOUND": _Code(404, -32004, "Resource not found"),
    "TIMEOUT": _Code(504, -32003, "Tool execution timed out", retryable=True),
    "UNAUTHORIZED": _Code(401, -32001, "Unauthorized"),
    "UNAVAILABLE": _Code(503, -32005, "Cluster unavailable", retryable=True),
    "CANCELLED": _Code(499, -32800, "Request cancelled"),
    "INTERNAL_ERROR": _Code(500, -32603, "Internal server error", retryable=True),
}

# First match wins while walking an exception's cause chain.
_CAUSE_CODES: tuple[tuple[type[BaseException] | tuple[type[BaseException], ...], str], ...] = (
    (ToolInputError, "INVALID_INPUT"),
    (ToolOutputError, "INVALID_OUTPUT"),
    ((ConfigurationError, SourceError), "INVALID_INPUT"),
    (NotFoundError, "NOT_FOUND"),
    ((TransportError, CapabilityMissingError), "UNAVAILABLE"),
)


class CanonicalError:
    """Lookups shared by the HTTP routes and the JSON-RPC server."""

    @staticmethod
    def codes() -> Sequence[str]:
        return tuple(_CODES)

    @staticmethod
    def _get(code: str) -> _Code:
        try:
            return _CODES[code]
        except KeyError:
            raise KeyError(f"unknown canonical error code: {code}") from None

    @classmethod
    def to_http_status(cls, code: str) -> int:
        return cls._get(code).http_status

    @classmethod
    def is_retryable(cls, code: str) -> bool:
        return cls._get(code).retryable

    @classmethod
    def to_jsonrpc_error(cls, code: str) -> dict[str, object]:
        spec = cls._get(code)
        return {
            "code": spec.jsonrpc_code,
            "message": spec.message,
            "data": {
                "canonical": code,
                "httpStatus": spec.http_status,
                "message": spec.message,
                "retryable": spec.retryable,
            },
        }


def _causes(exc: BaseException):
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__


def canonical_code_for(exc: BaseException) -> str:
    """Return the canonical code for a tool failure, following its cause chain."""

    for current in _causes(exc):
        if isinstance(current, ScanCancelledError):
            return "TIMEOUT" if current.reason == DEADLINE_EXCEEDED else "CANCELLED"
        for types, code in _CAUSE_CODES:
            if isinstance(current, types):
                return code
    return "INTERNAL_ERROR"


def failure_details(exc: BaseException) -> dict[str, Any] | None:
    """Structured extras for an error envelope, or ``None`` when there are none."""

    for current in _causes(exc):
        if isinstance(current, CapabilityMissingError) and current.guidance:
            return {"guidance": current.guidance}
    return None
