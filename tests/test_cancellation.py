import threading
import time

import pytest

from core.exceptions import CancelledError
from utils.cancellation import CancellationToken, cancellable


def test_request_is_idempotent_and_monotonic() -> None:
    token = CancellationToken()
    assert token.is_requested() is False
    assert token() is False

    assert token.request() is True
    assert token.request() is False
    assert token.is_requested() is True
    assert token() is True
    assert not hasattr(token, "reset")


def test_token_is_always_truthy() -> None:
    token = CancellationToken()
    assert bool(token) is True
    token.request()
    assert bool(token) is True


def test_callbacks_fire_once() -> None:
    token = CancellationToken()
    calls = []
    token.on_request(lambda: calls.append("a"))

    token.request()
    token.request()

    assert calls == ["a"]


def test_callback_registered_after_request_fires_immediately() -> None:
    token = CancellationToken()
    token.request()
    calls = []

    token.on_request(lambda: calls.append(1))

    assert calls == [1]


def test_failing_callback_does_not_block_others() -> None:
    token = CancellationToken()
    calls = []

    def broken():
        raise RuntimeError("observer bug")

    token.on_request(broken)
    token.on_request(lambda: calls.append("ok"))

    assert token.request() is True
    assert calls == ["ok"]


def test_remove_callback() -> None:
    token = CancellationToken()
    calls = []
    cb = token.on_request(lambda: calls.append(1))

    assert token.remove_callback(cb) is True
    assert token.remove_callback(cb) is False
    token.request()
    assert calls == []


def test_raise_if_requested() -> None:
    token = CancellationToken()
    token.raise_if_requested()

    token.request()
    with pytest.raises(CancelledError):
        token.raise_if_requested()


def test_wait_wakes_on_request() -> None:
    token = CancellationToken()
    timer = threading.Timer(0.05, token.request)
    timer.start()

    started = time.monotonic()
    assert token.wait(5.0) is True
    assert time.monotonic() - started < 2.0
    timer.join()


def test_wait_times_out_without_request() -> None:
    assert CancellationToken().wait(0.01) is False


def test_cancellable_checkpoint() -> None:
    token = CancellationToken()
    seen = []

    with pytest.raises(CancelledError):
        with cancellable(token) as checkpoint:
            for i in range(5):
                checkpoint()
                seen.append(i)
                if i == 2:
                    token.request()

    assert seen == [0, 1, 2]


def test_cancellable_without_token_is_noop() -> None:
    with cancellable() as checkpoint:
        checkpoint()
