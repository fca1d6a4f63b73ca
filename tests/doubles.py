"""
Lightweight stand-ins for ``requests`` sessions and responses.

The engine only needs ``session.request(**kwargs)`` and
``session.close()``, so these fakes implement exactly that and let
tests script latency, status codes, exceptions and hangs without any
network traffic.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from typing import Any


class FakeResponse:
    """Minimal stand-in for ``requests.Response``."""

    def __init__(self, status_code: int = 200, content: bytes = b"{}", headers: dict | None = None):
        self.status_code = status_code
        self.content = content
        self.headers = headers or {"Content-Type": "application/json"}


class FakeSession:
    """
    Configurable stand-in for ``requests.Session``.

    Args:
        status_code: Status returned for every request.
        content: Body returned for every request.
        delay: Seconds to sleep before answering.
        error: Exception raised instead of answering.
        hang: Event the request blocks on (forever unless set).
        responder: Callable ``(**kwargs) -> FakeResponse`` overriding the above.
    """

    def __init__(
        self,
        status_code: int = 200,
        content: bytes = b"{}",
        delay: float = 0.0,
        error: Exception | None = None,
        hang: threading.Event | None = None,
        responder: Callable[..., FakeResponse] | None = None,
    ):
        self.status_code = status_code
        self.content = content
        self.delay = delay
        self.error = error
        self.hang = hang
        self.responder = responder
        self.calls: list[dict[str, Any]] = []
        self.closed = False

    def request(self, **kwargs: Any) -> FakeResponse:
        self.calls.append(kwargs)
        if self.hang is not None:
            self.hang.wait(30)
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if self.responder is not None:
            return self.responder(**kwargs)
        return FakeResponse(self.status_code, self.content)

    def close(self) -> None:
        self.closed = True


def idle_iteration(ctx: Any) -> None:
    """Scenario body that never touches the network; used by CLI tests."""
    ctx.record("idle_loops", "counter", 1)
    ctx.sleep(0.01)


def session_factory(**kwargs: Any) -> Callable[[], FakeSession]:
    """Return a factory building a fresh :class:`FakeSession` per virtual user."""

    def _factory() -> FakeSession:
        return FakeSession(**kwargs)

    return _factory
