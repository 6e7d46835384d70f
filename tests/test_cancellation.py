"""Tests for the cancellation token."""

import threading
import time

import pytest

from proxmox_provider.cancellation import CancelToken
from proxmox_provider.errors import OperationCancelled, ProviderError


def test_not_cancelled_by_default() -> None:
    token = CancelToken()

    assert not token.cancelled
    token.raise_if_cancelled()


def test_first_reason_wins() -> None:
    token = CancelToken()

    token.cancel("SIGTERM")
    token.cancel("SIGINT")

    with pytest.raises(OperationCancelled, match="SIGTERM"):
        token.raise_if_cancelled()


def test_sleep_returns_after_timeout() -> None:
    CancelToken().sleep(0.01)


def test_sleep_interrupted_by_cancel() -> None:
    token = CancelToken()
    timer = threading.Timer(0.05, token.cancel, args=("shutdown",))
    timer.start()
    started = time.monotonic()

    with pytest.raises(OperationCancelled, match="shutdown"):
        token.sleep(30)

    assert time.monotonic() - started < 5
    timer.join()


def test_cancellation_is_not_a_provider_error() -> None:
    assert not issubclass(OperationCancelled, ProviderError)
