"""Cooperative cancellation shared by steps and the deprovision wait loop."""

import threading

from .errors import OperationCancelled


class CancelToken:
    """Thread-safe cancellation flag with an interruptible sleep."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason = ""

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled(self.reason)

    def sleep(self, seconds: float) -> None:
        """Sleep for ``seconds``, raising as soon as the token is cancelled."""
        if self._event.wait(seconds):
            raise OperationCancelled(self.reason)
