"""Client wiring: connection manager + request correlator + event dispatcher."""

from __future__ import annotations

import os
from concurrent.futures import Future, InvalidStateError
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional

from .codec import WIRE_PREFIX, MessageLike, TagCodec
from .errors import NotConnected
from .events import (
    LIFECYCLE_CATEGORIES,
    APIEvent,
    CategoryLike,
    EventCategory,
    EventDispatcher,
    EventHandler,
    LifecycleEvent,
    Subscription,
)
from .rpc import PendingCall, RequestCorrelator
from .transport import ConnectionManager, ConnectionState, Connector, ReconnectPolicy, TransportConfig

DEFAULT_URL = "ws://127.0.0.1:6700"


def _env_float(environ: Mapping[str, str], name: str, default: Optional[float]) -> Optional[float]:
    value = environ.get(name)
    if value in (None, ""):
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"{name} must be a number (got {value!r})") from None


@dataclass
class ClientConfig:
    url: str = DEFAULT_URL
    access_token: Optional[str] = None
    connect_timeout: float = 5.0
    request_timeout: Optional[float] = 30.0
    buffer_size: int = 0
    reconnect: ReconnectPolicy = field(default_factory=ReconnectPolicy)
    strict_tags: bool = False
    tag_prefix: str = WIRE_PREFIX

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides: Any) -> "ClientConfig":
        """Build a config from ``CQWS_*`` environment variables."""
        env = os.environ if environ is None else environ
        attempts = env.get("CQWS_RECONNECT_ATTEMPTS")
        reconnect = ReconnectPolicy(
            delay=_env_float(env, "CQWS_RECONNECT_DELAY", 1.0) or 0.0,
            max_attempts=int(attempts) if attempts else None,
        )
        values: Dict[str, Any] = {
            "url": env.get("CQWS_URL") or DEFAULT_URL,
            "access_token": env.get("CQWS_ACCESS_TOKEN") or None,
            "request_timeout": _env_float(env, "CQWS_TIMEOUT", 30.0),
            "reconnect": reconnect,
        }
        values.update(overrides)
        return cls(**values)

    def transport_config(self) -> TransportConfig:
        return TransportConfig(
            url=self.url,
            access_token=self.access_token,
            connect_timeout=self.connect_timeout,
            buffer_size=self.buffer_size,
            reconnect=self.reconnect,
        )


class CQWebSocket:
    """One logical connection to a OneBot (go-cqhttp) websocket endpoint."""

    def __init__(
        self,
        config: Optional[ClientConfig] = None,
        *,
        connector: Optional[Connector] = None,
        error_handler: Optional[Callable[[BaseException, Subscription, Any], None]] = None,
    ) -> None:
        self.config = config or ClientConfig()
        self.codec = TagCodec(strict=self.config.strict_tags)
        self.wire_codec = TagCodec(prefix=self.config.tag_prefix, strict=self.config.strict_tags)
        if connector is None:
            self.connection = ConnectionManager(self.config.transport_config())
        else:
            self.connection = ConnectionManager(self.config.transport_config(), connector)
        self.dispatcher = EventDispatcher(codec=self.codec, error_handler=error_handler)
        self.rpc = RequestCorrelator(
            self.connection,
            default_timeout=self.config.request_timeout,
            on_pre_send=self._on_pre_send,
            on_response=self._on_response,
        )
        self.connection.set_frame_handler(self._on_frame)
        self.connection.register_lifecycle(self._on_lifecycle)

    #
    # Connection
    #
    @property
    def state(self) -> ConnectionState:
        return self.connection.state

    def connect(self) -> "CQWebSocket":
        self.connection.connect()
        return self

    def close(self) -> None:
        self.connection.close()
        self.rpc.fail_all("client closed")

    #
    # Calls
    #
    def call(self, method: str, params: Optional[Dict[str, Any]] = None, *, timeout: Optional[float] = None) -> Future:
        return self.rpc.call(method, params, timeout=timeout)

    def render(self, message: MessageLike) -> str:
        """Serialize a message for the wire (``[CQ:kind,...]`` form).

        A bare ``str`` is taken to be wire notation already and is sent
        unchanged, so ``"[CQ:face,id=14]"`` arrives as a face. Strings inside a
        sequence are literal text and get escaped; wrap a string in a list (or
        pass ``auto_escape=True`` to the send helpers) to send it verbatim.
        """
        if isinstance(message, str):
            return message
        return self.wire_codec.serialize(message)

    def send_private_msg(self, user_id: Any, message: MessageLike, *, auto_escape: bool = False) -> Future:
        params = {"user_id": user_id, "message": self.render(message), "auto_escape": auto_escape}
        return self._message_id(self.call("send_private_msg", params))

    def send_group_msg(self, group_id: Any, message: MessageLike, *, auto_escape: bool = False) -> Future:
        params = {"group_id": group_id, "message": self.render(message), "auto_escape": auto_escape}
        return self._message_id(self.call("send_group_msg", params))

    def send_msg(
        self,
        message: MessageLike,
        *,
        user_id: Any = None,
        group_id: Any = None,
        auto_escape: bool = False,
    ) -> Future:
        if (user_id is None) == (group_id is None):
            raise ValueError("send_msg needs exactly one of user_id or group_id")
        params: Dict[str, Any] = {"message": self.render(message), "auto_escape": auto_escape}
        if group_id is not None:
            params.update(message_type="group", group_id=group_id)
        else:
            params.update(message_type="private", user_id=user_id)
        return self._message_id(self.call("send_msg", params))

    def delete_msg(self, message_id: int) -> Future:
        return self.call("delete_msg", {"message_id": message_id})

    def get_msg(self, message_id: int) -> Future:
        return self.call("get_msg", {"message_id": message_id})

    def get_login_info(self) -> Future:
        return self.call("get_login_info")

    #
    # Subscriptions
    #
    def on(self, category: CategoryLike, handler: Optional[EventHandler] = None) -> Any:
        """Subscribe ``handler``; without a handler, acts as a decorator."""
        if handler is not None:
            return self.dispatcher.subscribe(category, handler)

        def decorator(fn: EventHandler) -> EventHandler:
            self.dispatcher.subscribe(category, fn)
            return fn

        return decorator

    def once(self, category: CategoryLike, handler: EventHandler) -> Subscription:
        return self.dispatcher.once(category, handler)

    def off(self, category: CategoryLike, handler: EventHandler) -> bool:
        return self.dispatcher.unsubscribe(category, handler)

    #
    # Internal helpers
    #
    @staticmethod
    def _message_id(call: Future) -> Future:
        result: Future = Future()

        def relay(done: Future) -> None:
            if done.cancelled():
                result.cancel()
                return
            error = done.exception()
            if error is not None:
                try:
                    result.set_exception(error)
                except InvalidStateError:
                    pass
                return
            data = done.result()
            try:
                result.set_result(data.get("message_id") if isinstance(data, dict) else None)
            except InvalidStateError:
                pass

        call.add_done_callback(relay)
        return result

    def _on_frame(self, frame: Dict[str, Any]) -> None:
        if not self.rpc.handle_frame(frame):
            self.dispatcher.publish(frame)

    def _on_lifecycle(self, name: str, info: Dict[str, Any]) -> None:
        category = LIFECYCLE_CATEGORIES[name]
        if category is EventCategory.SOCKET_CLOSE:
            error = info.get("error")
            self.rpc.fail_all(str(error) if error else None)
        event = LifecycleEvent(
            category=category,
            raw=dict(info),
            error=info.get("error"),
            attempt=info.get("attempt"),
            delay=info.get("delay"),
            frame=info.get("frame"),
        )
        if category is EventCategory.SOCKET_OVERFLOW and isinstance(event.frame, dict):
            echo = event.frame.get("echo")
            if echo is not None:
                self.rpc.reject(str(echo), NotConnected("frame evicted from the outbound buffer"))
        self.dispatcher.dispatch(category, event)

    def _on_pre_send(self, pending: PendingCall, frame: Dict[str, Any]) -> None:
        self.dispatcher.dispatch(
            EventCategory.API_PRE_SEND,
            APIEvent(category=EventCategory.API_PRE_SEND, raw=frame, method=pending.method, echo=pending.echo, params=pending.params),
        )

    def _on_response(self, pending: PendingCall, frame: Dict[str, Any]) -> None:
        self.dispatcher.dispatch(
            EventCategory.API_RESPONSE,
            APIEvent(
                category=EventCategory.API_RESPONSE,
                raw=frame,
                method=pending.method,
                echo=pending.echo,
                params=pending.params,
                response=frame,
            ),
        )
