"""Cooperative cancellation shared between a caller and a running job."""

from __future__ import annotations

import threading

from stratlab.core.exceptions import CancellationRequestedError


class CancellationToken:
    """Thread-safe flag checked by long-running loops between units of work."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason = ""

    def cancel(self, reason: str = "") -> None:
        self._reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancellationRequestedError(self._reason or "cancelled")


def check_cancelled(token: CancellationToken | None) -> None:
    if token is not None:
        token.raise_if_cancelled()


__all__ = ["CancellationToken", "check_cancelled"]
