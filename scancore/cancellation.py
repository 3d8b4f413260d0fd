"""Cooperative cancellation shared by resolver and orchestrator workers."""

from __future__ import annotations

import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar

from scancore.errors import ScanCancelledError

__all__ = ["DEADLINE_EXCEEDED", "CancellationToken", "current_token", "use_token"]

DEADLINE_EXCEEDED = "deadline exceeded"


class CancellationToken:
    """Thread-safe cancellation flag with an optional monotonic deadline."""

    def __init__(self, *, timeout_s: float | None = None) -> None:
        self._event = threading.Event()
        self._reason: str | None = None
        self._deadline = time.monotonic() + timeout_s if timeout_s is not None else None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._deadline is not None and time.monotonic() >= self._deadline:
            self.cancel(DEADLINE_EXCEEDED)
            return True
        return False

    @property
    def reason(self) -> str | None:
        return self._reason if self.cancelled else None

    def raise_if_cancelled(self, stage: str) -> None:
        if self.cancelled:
            reason = self._reason or "cancelled"
            raise ScanCancelledError(f"{stage} cancelled: {reason}", reason=reason)


_ACTIVE_TOKEN: ContextVar[CancellationToken | None] = ContextVar(
    "scancore_active_cancellation_token",
    default=None,
)


def current_token() -> CancellationToken:
    """Return the token installed by :func:`use_token` or a fresh one."""

    token = _ACTIVE_TOKEN.get()
    return token if token is not None else CancellationToken()


@contextmanager
def use_token(token: CancellationToken) -> Iterator[CancellationToken]:
    reset = _ACTIVE_TOKEN.set(token)
    try:
        yield token
    finally:
        _ACTIVE_TOKEN.reset(reset)
