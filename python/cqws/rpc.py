"""Request/response correlation over the shared connection.

Every outgoing call gets an ``echo`` token and a :class:`PendingCall` entry.
Removing the entry from the pending table is the single point where a call is
resolved: whoever pops it (matching response, deadline, disconnect sweep or
caller cancellation) settles the future, everybody else finds nothing and
does nothing. A popped call's frame is also withdrawn from the connection's
outbound buffer so a call that already failed is never transmitted.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from concurrent.futures import Future, InvalidStateError
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from .errors import APIError, ConnectionLost, Timeout


logger = logging.getLogger(__name__)

SUCCESS_STATUSES = frozenset({"ok", "async"})

Hook = Callable[["PendingCall", Dict[str, Any]], None]


class FrameSink(Protocol):
    def send(self, frame: Dict[str, Any]) -> None: ...

    def discard(self, echo: Any) -> bool: ...


@dataclass
class PendingCall:
    echo: str
    method: str
    params: Dict[str, Any]
    timeout: Optional[float]
    created_at: float = field(default_factory=time.monotonic)
    future: Future = field(default_factory=Future, repr=False)

    @property
    def deadline(self) -> Optional[float]:
        if self.timeout is None or self.timeout <= 0:
            return None
        return self.created_at + self.timeout


class DeadlineScheduler:
    """Run callbacks at monotonic deadlines from a single daemon thread.

    The thread is started on demand and exits after ``idle_timeout`` seconds
    without scheduled work. Entries cannot be cancelled; callbacks must
    tolerate firing for work that has already finished.
    """

    def __init__(self, *, name: str = "cqws-deadlines", idle_timeout: float = 1.0) -> None:
        self.name = name
        self.idle_timeout = idle_timeout
        self._heap: List[Tuple[float, int, Callable[..., None], Tuple[Any, ...]]] = []
        self._cv = threading.Condition()
        self._seq = itertools.count()
        self._thread: Optional[threading.Thread] = None

    def __len__(self) -> int:
        with self._cv:
            return len(self._heap)

    def call_at(self, deadline: float, callback: Callable[..., None], *args: Any) -> None:
        with self._cv:
            heapq.heappush(self._heap, (deadline, next(self._seq), callback, args))
            if self._thread is None:
                self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
                self._thread.start()
            self._cv.notify()

    def call_later(self, delay: float, callback: Callable[..., None], *args: Any) -> None:
        self.call_at(time.monotonic() + delay, callback, *args)

    def _run(self) -> None:
        while True:
            with self._cv:
                while True:
                    if not self._heap:
                        self._cv.wait(self.idle_timeout)
                        if not self._heap:
                            self._thread = None
                            return
                        continue
                    remaining = self._heap[0][0] - time.monotonic()
                    if remaining <= 0:
                        _, _, callback, args = heapq.heappop(self._heap)
                        break
                    self._cv.wait(remaining)
            try:
                callback(*args)
            except Exception:
                logger.exception("deadline callback %r failed", callback)


def _settle(future: Future, *, result: Any = None, error: Optional[BaseException] = None) -> None:
    try:
        if error is not None:
            future.set_exception(error)
        else:
            future.set_result(result)
    except InvalidStateError:
        # cancelled by the caller in the meantime
        pass


class RequestCorrelator:
    """Pending-call table plus the frame codec for ``{action, params, echo}``."""

    def __init__(
        self,
        sink: FrameSink,
        *,
        default_timeout: Optional[float] = 30.0,
        on_pre_send: Optional[Hook] = None,
        on_response: Optional[Hook] = None,
        scheduler: Optional[DeadlineScheduler] = None,
    ) -> None:
        self.sink = sink
        self.default_timeout = default_timeout
        self.on_pre_send = on_pre_send
        self.on_response = on_response
        self.scheduler = scheduler or DeadlineScheduler()
        self._pending: Dict[str, PendingCall] = {}
        self._lock = threading.Lock()
        self._counter = itertools.count(1)

    @property
    def pending_ids(self) -> List[str]:
        with self._lock:
            return list(self._pending)

    def is_pending(self, echo: Any) -> bool:
        with self._lock:
            return str(echo) in self._pending

    def call(
        self,
        method: str,
        params: Optional[Dict[str, Any]] = None,
        *,
        timeout: Optional[float] = None,
    ) -> Future:
        """Submit ``method`` and return a future for its ``data`` payload.

        Raises :class:`~cqws.errors.NotConnected` straight away when the
        connection cannot take the frame.
        """
        timeout = self.default_timeout if timeout is None else timeout
        with self._lock:
            echo = self._allocate_id()
            pending = PendingCall(echo=echo, method=method, params=dict(params or {}), timeout=timeout)
            self._pending[echo] = pending
        frame = {"action": method, "params": pending.params, "echo": echo}
        self._run_hook(self.on_pre_send, pending, frame)
        if pending.deadline is not None:
            self.scheduler.call_at(pending.deadline, self._expire, echo)
        pending.future.add_done_callback(lambda fut, echo=echo: self._on_done(echo, fut))
        try:
            self.sink.send(frame)
        except Exception:
            self._take(echo, withdraw=False)
            raise
        if not self.is_pending(echo):
            # settled while the frame was being buffered
            self.sink.discard(echo)
        return pending.future

    def handle_frame(self, frame: Dict[str, Any]) -> bool:
        """Resolve the matching pending call; False if ``frame`` is not ours."""
        echo = frame.get("echo")
        if echo is None or ("status" not in frame and "retcode" not in frame):
            return False
        pending = self._take(str(echo), withdraw=False)
        if pending is None:
            return False
        status = frame.get("status")
        retcode = frame.get("retcode")
        if status in SUCCESS_STATUSES and retcode in (0, 1, None):
            _settle(pending.future, result=frame.get("data"))
        else:
            _settle(pending.future, error=APIError(pending.method, frame))
        self._run_hook(self.on_response, pending, frame)
        return True

    def fail_all(self, reason: Optional[str] = None) -> int:
        """Reject every pending call with :class:`ConnectionLost`."""
        with self._lock:
            swept = list(self._pending.values())
            self._pending.clear()
        for pending in swept:
            self.sink.discard(pending.echo)
            _settle(pending.future, error=ConnectionLost(pending.echo, pending.method, reason))
        if swept:
            logger.info("rejected %d pending call(s): connection lost", len(swept))
        return len(swept)

    def reject(self, echo: str, error: BaseException) -> bool:
        pending = self._take(echo)
        if pending is None:
            return False
        _settle(pending.future, error=error)
        return True

    #
    # Internal helpers
    #
    def _allocate_id(self) -> str:
        # caller holds _lock
        while True:
            echo = str(next(self._counter))
            if echo not in self._pending:
                return echo

    def _take(self, echo: str, *, withdraw: bool = True) -> Optional[PendingCall]:
        with self._lock:
            pending = self._pending.pop(echo, None)
        if pending is not None and withdraw:
            self.sink.discard(echo)
        return pending

    def _expire(self, echo: str) -> None:
        pending = self._take(echo)
        if pending is None:
            return
        logger.warning("%s (echo=%s) timed out after %.2fs", pending.method, echo, pending.timeout)
        _settle(pending.future, error=Timeout(echo, pending.method, pending.timeout or 0.0))

    def _on_done(self, echo: str, future: Future) -> None:
        if future.cancelled():
            self._take(echo)

    @staticmethod
    def _run_hook(hook: Optional[Hook], pending: PendingCall, frame: Dict[str, Any]) -> None:
        if hook is None:
            return
        try:
            hook(pending, frame)
        except Exception:
            logger.exception("%s hook failed", getattr(hook, "__name__", "rpc"))
