"""In-memory websocket stand-ins for transport and client tests."""

from __future__ import annotations

import json
import queue
import threading
import time
from typing import Any, Callable, Dict, List, Optional

from websockets.exceptions import ConnectionClosedError, ConnectionClosedOK
from websockets.frames import Close

_CLOSE = object()
_DROP = object()


class FakeConnection:
    """Mimics the parts of ``websockets.sync`` connections cqws uses."""

    def __init__(self) -> None:
        self.sent: List[Dict[str, Any]] = []
        self.closed = False
        self._inbox: "queue.Queue[Any]" = queue.Queue()
        self._sent_cv = threading.Condition()

    def send(self, data: str) -> None:
        if self.closed:
            raise ConnectionClosedOK(Close(1000, ""), Close(1000, ""))
        with self._sent_cv:
            self.sent.append(json.loads(data))
            self._sent_cv.notify_all()

    def recv(self) -> str:
        item = self._inbox.get()
        if item is _CLOSE:
            raise ConnectionClosedOK(Close(1000, ""), Close(1000, ""))
        if item is _DROP:
            raise ConnectionClosedError(None, None)
        return item

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._inbox.put(_CLOSE)

    # Test controls -----------------------------------------------------
    def push(self, frame: Any) -> None:
        self._inbox.put(frame if isinstance(frame, str) else json.dumps(frame))

    def drop(self) -> None:
        """Simulate an abrupt remote disconnect."""
        self._inbox.put(_DROP)

    def wait_sent(self, count: int = 1, timeout: float = 1.0) -> List[Dict[str, Any]]:
        with self._sent_cv:
            self._sent_cv.wait_for(lambda: len(self.sent) >= count, timeout=timeout)
            return list(self.sent)


class FakeConnector:
    """Connector callable handing out FakeConnection objects."""

    def __init__(self, failures: int = 0) -> None:
        self.failures = failures
        self.calls: List[Dict[str, Any]] = []
        self.connections: List[FakeConnection] = []

    def __call__(self, url: str, **kwargs: Any) -> FakeConnection:
        self.calls.append({"url": url, **kwargs})
        if self.failures:
            self.failures -= 1
            raise OSError("connection refused")
        conn = FakeConnection()
        self.connections.append(conn)
        return conn

    @property
    def last(self) -> FakeConnection:
        return self.connections[-1]


def wait_for(predicate: Callable[[], bool], timeout: float = 1.0, interval: float = 0.005) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def response(echo: str, data: Optional[Any] = None, *, status: str = "ok", retcode: int = 0, **extra: Any) -> Dict[str, Any]:
    frame = {"status": status, "retcode": retcode, "data": data, "echo": echo}
    frame.update(extra)
    return frame
