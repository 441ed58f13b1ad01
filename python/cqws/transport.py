"""
Connection manager for cqws.

Responsibilities:
    * Own the websocket lifecycle (connect, close, detect drops).
    * Deliver inbound JSON frames serially from a single reader thread.
    * Schedule reconnects according to a fixed or exponential backoff policy.
    * Fail fast on sends while not open, or buffer a bounded number of frames
      when configured to.
"""

from __future__ import annotations

import enum
import json
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from websockets.exceptions import ConnectionClosed, ConnectionClosedOK
from websockets.sync.client import connect as ws_connect

from .errors import NotConnected, TransportError


logger = logging.getLogger(__name__)

FrameHandler = Callable[[Dict[str, Any]], None]
LifecycleHandler = Callable[[str, Dict[str, Any]], None]
Connector = Callable[..., Any]


class ConnectionState(enum.Enum):
    CLOSED = "closed"
    CONNECTING = "connecting"
    OPEN = "open"


@dataclass
class ReconnectPolicy:
    enabled: bool = True
    delay: float = 1.0
    strategy: str = "fixed"
    multiplier: float = 2.0
    max_delay: float = 30.0
    max_attempts: Optional[int] = None

    def __post_init__(self) -> None:
        if self.strategy not in ("fixed", "exponential"):
            raise ValueError(f"unknown reconnect strategy {self.strategy!r}")
        if self.delay < 0:
            raise ValueError("reconnect delay must be >= 0")

    def delay_for(self, attempt: int) -> float:
        """Delay before reconnect ``attempt`` (1-based)."""
        if self.strategy == "fixed":
            return self.delay
        return min(self.delay * (self.multiplier ** max(0, attempt - 1)), self.max_delay)

    def exhausted(self, attempt: int) -> bool:
        return self.max_attempts is not None and attempt > self.max_attempts


@dataclass
class TransportConfig:
    url: str = "ws://127.0.0.1:6700"
    access_token: Optional[str] = None
    connect_timeout: float = 5.0
    buffer_size: int = 0
    reconnect: ReconnectPolicy = field(default_factory=ReconnectPolicy)


@dataclass
class ConnectionManager:
    """Single websocket connection carrying both responses and events."""

    config: TransportConfig = field(default_factory=TransportConfig)
    connector: Connector = ws_connect

    _conn: Any = field(init=False, default=None)
    _state: ConnectionState = field(init=False, default=ConnectionState.CLOSED)
    _state_lock: threading.RLock = field(init=False, default_factory=threading.RLock)
    _connect_lock: threading.Lock = field(init=False, default_factory=threading.Lock)
    _send_lock: threading.Lock = field(init=False, default_factory=threading.Lock)
    _closing: bool = field(init=False, default=False)
    _reader_thread: Optional[threading.Thread] = field(init=False, default=None)
    _reconnect_timer: Optional[threading.Timer] = field(init=False, default=None)
    _attempt: int = field(init=False, default=0)
    _buffer: Deque[Tuple[Optional[str], str]] = field(init=False, default_factory=deque)
    _frame_handler: Optional[FrameHandler] = field(init=False, default=None)
    _lifecycle: List[LifecycleHandler] = field(init=False, default_factory=list)

    #
    # Connection lifecycle helpers
    #
    @property
    def state(self) -> ConnectionState:
        with self._state_lock:
            return self._state

    @property
    def buffered(self) -> int:
        with self._send_lock:
            return len(self._buffer)

    def set_frame_handler(self, handler: Optional[FrameHandler]) -> None:
        self._frame_handler = handler

    def register_lifecycle(self, callback: LifecycleHandler) -> None:
        """Register ``callback(name, info)`` for connecting/open/close/error/
        reconnecting/reconnect_failed/overflow notifications."""
        self._lifecycle.append(callback)

    def connect(self) -> None:
        """Open the websocket; raises :class:`TransportError` on failure."""
        with self._connect_lock:
            with self._state_lock:
                if self._state is not ConnectionState.CLOSED:
                    return
                self._closing = False
                self._cancel_reconnect()
            self._open()

    def close(self) -> None:
        """Close the connection and stop reconnecting. Safe to call twice."""
        with self._state_lock:
            self._closing = True
            self._cancel_reconnect()
        self._handle_disconnect(None)
        with self._send_lock:
            self._buffer.clear()
        reader = self._reader_thread
        if reader and reader.is_alive() and reader is not threading.current_thread():
            reader.join(timeout=0.5)

    def send(self, frame: Dict[str, Any]) -> None:
        """Submit one frame; raises :class:`NotConnected` unless open or buffered."""
        data = json.dumps(frame, ensure_ascii=False)
        with self._send_lock:
            conn = self._conn
            if self.state is ConnectionState.OPEN and conn is not None:
                self._transmit(conn, data)
                return
            if self.config.buffer_size <= 0:
                raise NotConnected(f"connection is {self.state.value}")
            echo = frame.get("echo")
            self._buffer.append((None if echo is None else str(echo), data))
            evicted: List[str] = []
            while len(self._buffer) > self.config.buffer_size:
                evicted.append(self._buffer.popleft()[1])
        for dropped in evicted:
            logger.warning("outbound buffer full, evicting oldest frame")
            self._emit("overflow", {"frame": json.loads(dropped)})

    def discard(self, echo: Any) -> bool:
        """Drop a buffered frame by its ``echo`` so it is never transmitted."""
        key = str(echo)
        with self._send_lock:
            kept = deque(item for item in self._buffer if item[0] != key)
            removed = len(kept) != len(self._buffer)
            self._buffer = kept
        return removed

    #
    # Internal helpers
    #
    def _open(self) -> None:
        self._set_state(ConnectionState.CONNECTING)
        self._emit("connecting", {"attempt": self._attempt})
        try:
            conn = self.connector(self.config.url, **self._connect_kwargs())
        except Exception as exc:
            logger.warning("connect to %s failed: %s", self.config.url, exc)
            with self._state_lock:
                self._state = ConnectionState.CLOSED
            self._emit("error", {"error": exc})
            self._emit("close", {"error": exc})
            self._schedule_reconnect()
            raise TransportError(f"connect failed: {exc}") from exc
        with self._send_lock, self._state_lock:
            if self._closing:
                conn.close()
                self._state = ConnectionState.CLOSED
                raise TransportError("connection closed while connecting")
            self._conn = conn
            self._attempt = 0
            self._state = ConnectionState.OPEN
            self._flush_buffer(conn)
        self._reader_thread = threading.Thread(
            target=self._reader_loop,
            args=(conn,),
            name="cqws-reader",
            daemon=True,
        )
        self._reader_thread.start()
        self._emit("open", {"url": self.config.url})

    def _connect_kwargs(self) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {"open_timeout": self.config.connect_timeout}
        if self.config.access_token:
            kwargs["additional_headers"] = {"Authorization": f"Bearer {self.config.access_token}"}
        return kwargs

    def _transmit(self, conn: Any, data: str) -> None:
        try:
            conn.send(data)
        except (ConnectionClosed, OSError) as exc:
            raise NotConnected(f"send failed: {exc}") from exc

    def _flush_buffer(self, conn: Any) -> None:
        # caller holds _send_lock
        while self._buffer:
            item = self._buffer.popleft()
            try:
                conn.send(item[1])
            except (ConnectionClosed, OSError) as exc:
                self._buffer.appendleft(item)
                logger.warning("flushing outbound buffer failed: %s", exc)
                return

    def _reader_loop(self, conn: Any) -> None:
        error: Optional[BaseException] = None
        while True:
            try:
                message = conn.recv()
            except ConnectionClosedOK:
                break
            except ConnectionClosed as exc:
                error = exc
                break
            except Exception as exc:
                error = exc
                break
            if isinstance(message, bytes):
                message = message.decode("utf-8", errors="replace")
            try:
                frame = json.loads(message)
            except json.JSONDecodeError:
                logger.warning("discarding undecodable frame: %.80r", message)
                continue
            if not isinstance(frame, dict):
                logger.warning("discarding non-object frame: %.80r", message)
                continue
            self._dispatch_frame(frame)
        if self._conn is conn:
            self._handle_disconnect(error)

    def _dispatch_frame(self, frame: Dict[str, Any]) -> None:
        handler = self._frame_handler
        if not handler:
            return
        try:
            handler(frame)
        except Exception:
            logger.exception("frame handler failed")

    def _handle_disconnect(self, exc: Optional[BaseException]) -> None:
        with self._state_lock:
            if self._state is ConnectionState.CLOSED and self._conn is None:
                return
            conn = self._conn
            self._conn = None
            self._state = ConnectionState.CLOSED
        if conn is not None:
            try:
                conn.close()
            except Exception:
                logger.debug("closing websocket failed", exc_info=True)
        if exc is not None:
            self._emit("error", {"error": exc})
        self._emit("close", {"error": exc})
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        policy = self.config.reconnect
        with self._state_lock:
            if self._closing or not policy.enabled or self._reconnect_timer is not None:
                return
            self._attempt += 1
            attempt = self._attempt
            if policy.exhausted(attempt):
                self._attempt = 0
                exhausted = True
            else:
                exhausted = False
                delay = policy.delay_for(attempt)
                timer = threading.Timer(delay, self._reconnect)
                timer.daemon = True
                self._reconnect_timer = timer
        if exhausted:
            logger.error("giving up on %s after %d reconnect attempts", self.config.url, attempt - 1)
            self._emit("reconnect_failed", {"attempts": attempt - 1})
            return
        self._emit("reconnecting", {"attempt": attempt, "delay": delay})
        timer.start()

    def _reconnect(self) -> None:
        with self._state_lock:
            self._reconnect_timer = None
            if self._closing:
                return
        with self._connect_lock:
            if self.state is not ConnectionState.CLOSED:
                return
            try:
                self._open()
            except TransportError:
                # the next attempt has already been scheduled by _open
                pass

    def _cancel_reconnect(self) -> None:
        timer = self._reconnect_timer
        self._reconnect_timer = None
        if timer is not None:
            timer.cancel()

    def _set_state(self, new_state: ConnectionState) -> None:
        with self._state_lock:
            self._state = new_state

    def _emit(self, name: str, info: Dict[str, Any]) -> None:
        for callback in list(self._lifecycle):
            try:
                callback(name, info)
            except Exception:
                logger.exception("lifecycle callback failed for %s", name)
