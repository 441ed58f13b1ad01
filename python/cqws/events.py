"""Event categories, typed event records and the subscriber dispatcher."""

from __future__ import annotations

import enum
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from .codec import TagCodec, from_array
from .tags import Segment


logger = logging.getLogger(__name__)


class EventCategory(str, enum.Enum):
    """Closed set of categories; a dotted value is a subtype of its prefix."""

    SOCKET = "socket"
    SOCKET_CONNECTING = "socket.connecting"
    SOCKET_OPEN = "socket.open"
    SOCKET_CLOSE = "socket.close"
    SOCKET_ERROR = "socket.error"
    SOCKET_RECONNECTING = "socket.reconnecting"
    SOCKET_RECONNECT_FAILED = "socket.reconnect_failed"
    SOCKET_OVERFLOW = "socket.overflow"

    API = "api"
    API_PRE_SEND = "api.preSend"
    API_RESPONSE = "api.response"

    MESSAGE = "message"
    MESSAGE_PRIVATE = "message.private"
    MESSAGE_PRIVATE_FRIEND = "message.private.friend"
    MESSAGE_PRIVATE_GROUP = "message.private.group"
    MESSAGE_PRIVATE_OTHER = "message.private.other"
    MESSAGE_GROUP = "message.group"
    MESSAGE_GROUP_NORMAL = "message.group.normal"
    MESSAGE_GROUP_ANONYMOUS = "message.group.anonymous"
    MESSAGE_GROUP_NOTICE = "message.group.notice"

    NOTICE = "notice"
    NOTICE_GROUP_UPLOAD = "notice.group_upload"
    NOTICE_GROUP_ADMIN = "notice.group_admin"
    NOTICE_GROUP_DECREASE = "notice.group_decrease"
    NOTICE_GROUP_INCREASE = "notice.group_increase"
    NOTICE_GROUP_BAN = "notice.group_ban"
    NOTICE_FRIEND_ADD = "notice.friend_add"
    NOTICE_GROUP_RECALL = "notice.group_recall"
    NOTICE_FRIEND_RECALL = "notice.friend_recall"
    NOTICE_GROUP_CARD = "notice.group_card"
    NOTICE_OFFLINE_FILE = "notice.offline_file"
    NOTICE_CLIENT_STATUS = "notice.client_status"
    NOTICE_ESSENCE = "notice.essence"
    NOTICE_NOTIFY = "notice.notify"
    NOTICE_NOTIFY_POKE = "notice.notify.poke"
    NOTICE_NOTIFY_LUCKY_KING = "notice.notify.lucky_king"
    NOTICE_NOTIFY_HONOR = "notice.notify.honor"

    REQUEST = "request"
    REQUEST_FRIEND = "request.friend"
    REQUEST_GROUP = "request.group"

    META_EVENT = "meta_event"
    META_EVENT_LIFECYCLE = "meta_event.lifecycle"
    META_EVENT_HEARTBEAT = "meta_event.heartbeat"

    UNRECOGNIZED = "unrecognized"

    @property
    def parent(self) -> Optional["EventCategory"]:
        head, sep, _ = self.value.rpartition(".")
        return EventCategory(head) if sep else None

    def lineage(self) -> List["EventCategory"]:
        """This category followed by each supertype, nearest first."""
        chain: List[EventCategory] = []
        current: Optional[EventCategory] = self
        while current is not None:
            chain.append(current)
            current = current.parent
        return chain


PROTOCOL_ROOTS = (
    EventCategory.MESSAGE,
    EventCategory.NOTICE,
    EventCategory.REQUEST,
    EventCategory.META_EVENT,
)

# (post_type, <post_type>_type, sub_type) prefixes -> category
_LOOKUP: Dict[Tuple[str, ...], EventCategory] = {
    tuple(category.value.split(".")): category
    for category in EventCategory
    if category.value.split(".")[0] in {root.value for root in PROTOCOL_ROOTS}
}

LIFECYCLE_CATEGORIES: Dict[str, EventCategory] = {
    "connecting": EventCategory.SOCKET_CONNECTING,
    "open": EventCategory.SOCKET_OPEN,
    "close": EventCategory.SOCKET_CLOSE,
    "error": EventCategory.SOCKET_ERROR,
    "reconnecting": EventCategory.SOCKET_RECONNECTING,
    "reconnect_failed": EventCategory.SOCKET_RECONNECT_FAILED,
    "overflow": EventCategory.SOCKET_OVERFLOW,
}


def classify(frame: Dict[str, Any]) -> EventCategory:
    """Map an inbound, non-response frame onto its event category."""
    post_type = frame.get("post_type")
    if not isinstance(post_type, str):
        return EventCategory.UNRECOGNIZED
    detail = frame.get(f"{post_type}_type")
    sub_type = frame.get("sub_type")
    if detail in (None, ""):
        key: Tuple[str, ...] = (post_type,)
    elif sub_type in (None, ""):
        key = (post_type, str(detail))
    else:
        key = (post_type, str(detail), str(sub_type))
    for size in range(len(key), 0, -1):
        category = _LOOKUP.get(key[:size])
        if category is not None:
            return category
    return EventCategory.UNRECOGNIZED


#
# Typed event records
#
def _to_int(value: Any) -> Optional[int]:
    try:
        if value is None or isinstance(value, bool):
            return None
        return int(value)
    except (TypeError, ValueError):
        return None


@dataclass
class BaseEvent:
    category: EventCategory
    raw: Dict[str, Any] = field(default_factory=dict)
    time: Optional[int] = None
    self_id: Optional[int] = None

    @property
    def post_type(self) -> Optional[str]:
        return self.raw.get("post_type")


@dataclass
class Sender:
    user_id: Optional[int] = None
    nickname: str = ""
    card: str = ""
    sex: str = "unknown"
    age: Optional[int] = None
    area: str = ""
    level: str = ""
    role: str = ""
    title: str = ""

    @classmethod
    def from_dict(cls, data: Any) -> "Sender":
        if not isinstance(data, dict):
            data = {}
        return cls(
            user_id=_to_int(data.get("user_id")),
            nickname=str(data.get("nickname") or ""),
            card=str(data.get("card") or ""),
            sex=str(data.get("sex") or "unknown"),
            age=_to_int(data.get("age")),
            area=str(data.get("area") or ""),
            level=str(data.get("level") or ""),
            role=str(data.get("role") or ""),
            title=str(data.get("title") or ""),
        )


@dataclass
class MessageEvent(BaseEvent):
    message_type: str = ""
    sub_type: str = ""
    message_id: Optional[int] = None
    user_id: Optional[int] = None
    group_id: Optional[int] = None
    message: str = ""
    raw_message: str = ""
    segments: List[Segment] = field(default_factory=list)
    sender: Sender = field(default_factory=Sender)
    font: Optional[int] = None
    anonymous: Optional[Dict[str, Any]] = None


@dataclass
class NoticeEvent(BaseEvent):
    notice_type: str = ""
    sub_type: str = ""
    user_id: Optional[int] = None
    group_id: Optional[int] = None
    operator_id: Optional[int] = None
    target_id: Optional[int] = None
    message_id: Optional[int] = None
    duration: Optional[int] = None
    file: Optional[Dict[str, Any]] = None


@dataclass
class RequestEvent(BaseEvent):
    request_type: str = ""
    sub_type: str = ""
    flag: str = ""
    comment: str = ""
    user_id: Optional[int] = None
    group_id: Optional[int] = None


@dataclass
class MetaEvent(BaseEvent):
    meta_event_type: str = ""
    sub_type: str = ""
    status: Optional[Dict[str, Any]] = None
    interval: Optional[int] = None


@dataclass
class LifecycleEvent(BaseEvent):
    error: Optional[BaseException] = None
    attempt: Optional[int] = None
    delay: Optional[float] = None
    frame: Optional[Dict[str, Any]] = None


@dataclass
class APIEvent(BaseEvent):
    method: str = ""
    echo: str = ""
    params: Dict[str, Any] = field(default_factory=dict)
    response: Optional[Dict[str, Any]] = None


def _message_payload(frame: Dict[str, Any], codec: TagCodec) -> Tuple[str, List[Segment]]:
    payload = frame.get("message")
    if isinstance(payload, list):
        segments = from_array(payload)
        text = frame.get("raw_message")
        return (text if isinstance(text, str) else codec.serialize(segments)), segments
    text = payload if isinstance(payload, str) else str(frame.get("raw_message") or "")
    return text, codec.parse(text)


def parse_event(frame: Dict[str, Any], codec: Optional[TagCodec] = None) -> BaseEvent:
    """Convert a raw event frame into its typed record."""

    codec = codec or TagCodec()
    category = classify(frame)
    common = {
        "category": category,
        "raw": frame,
        "time": _to_int(frame.get("time")),
        "self_id": _to_int(frame.get("self_id")),
    }
    post_type = frame.get("post_type")

    if category is EventCategory.UNRECOGNIZED:
        return BaseEvent(**common)
    if post_type == "message":
        text, segments = _message_payload(frame, codec)
        return MessageEvent(
            **common,
            message_type=str(frame.get("message_type") or ""),
            sub_type=str(frame.get("sub_type") or ""),
            message_id=_to_int(frame.get("message_id")),
            user_id=_to_int(frame.get("user_id")),
            group_id=_to_int(frame.get("group_id")),
            message=text,
            raw_message=str(frame.get("raw_message") or text),
            segments=segments,
            sender=Sender.from_dict(frame.get("sender")),
            font=_to_int(frame.get("font")),
            anonymous=frame.get("anonymous") if isinstance(frame.get("anonymous"), dict) else None,
        )
    if post_type == "notice":
        return NoticeEvent(
            **common,
            notice_type=str(frame.get("notice_type") or ""),
            sub_type=str(frame.get("sub_type") or ""),
            user_id=_to_int(frame.get("user_id")),
            group_id=_to_int(frame.get("group_id")),
            operator_id=_to_int(frame.get("operator_id")),
            target_id=_to_int(frame.get("target_id")),
            message_id=_to_int(frame.get("message_id")),
            duration=_to_int(frame.get("duration")),
            file=frame.get("file") if isinstance(frame.get("file"), dict) else None,
        )
    if post_type == "request":
        return RequestEvent(
            **common,
            request_type=str(frame.get("request_type") or ""),
            sub_type=str(frame.get("sub_type") or ""),
            flag=str(frame.get("flag") or ""),
            comment=str(frame.get("comment") or ""),
            user_id=_to_int(frame.get("user_id")),
            group_id=_to_int(frame.get("group_id")),
        )
    return MetaEvent(
        **common,
        meta_event_type=str(frame.get("meta_event_type") or ""),
        sub_type=str(frame.get("sub_type") or ""),
        status=frame.get("status") if isinstance(frame.get("status"), dict) else None,
        interval=_to_int(frame.get("interval")),
    )


#
# Dispatcher
#
EventHandler = Callable[[Any], None]
ErrorHandler = Callable[[BaseException, "Subscription", Any], None]
CategoryLike = Union[EventCategory, str]


@dataclass(eq=False)
class Subscription:
    category: EventCategory
    handler: EventHandler
    once: bool = False
    active: bool = field(default=True, init=False)


def as_category(category: CategoryLike) -> EventCategory:
    if isinstance(category, EventCategory):
        return category
    try:
        return EventCategory(category)
    except ValueError:
        raise ValueError(f"unknown event category {category!r}") from None


class EventDispatcher:
    """Fan events out to subscribers, then to supertype subscribers."""

    def __init__(
        self,
        *,
        codec: Optional[TagCodec] = None,
        error_handler: Optional[ErrorHandler] = None,
    ) -> None:
        self.codec = codec or TagCodec()
        self.error_handler = error_handler
        self._subs: Dict[EventCategory, List[Subscription]] = {}
        self._lock = threading.Lock()

    def subscribe(self, category: CategoryLike, handler: EventHandler, *, once: bool = False) -> Subscription:
        sub = Subscription(as_category(category), handler, once)
        with self._lock:
            self._subs.setdefault(sub.category, []).append(sub)
        return sub

    def once(self, category: CategoryLike, handler: EventHandler) -> Subscription:
        return self.subscribe(category, handler, once=True)

    def unsubscribe(self, category: CategoryLike, handler: EventHandler) -> bool:
        """Remove every subscription of ``handler`` on ``category``."""
        key = as_category(category)
        with self._lock:
            subs = self._subs.get(key, [])
            kept = [sub for sub in subs if sub.handler != handler]
            removed = [sub for sub in subs if sub.handler == handler]
            for sub in removed:
                sub.active = False
            if kept:
                self._subs[key] = kept
            else:
                self._subs.pop(key, None)
        return bool(removed)

    def clear(self, category: Optional[CategoryLike] = None) -> None:
        with self._lock:
            keys = list(self._subs) if category is None else [as_category(category)]
            for key in keys:
                for sub in self._subs.pop(key, []):
                    sub.active = False

    def subscribers(self, category: CategoryLike) -> List[EventHandler]:
        with self._lock:
            return [sub.handler for sub in self._subs.get(as_category(category), [])]

    def publish(self, frame: Dict[str, Any]) -> BaseEvent:
        """Parse an inbound event frame and dispatch it."""
        event = parse_event(frame, self.codec)
        if event.category is EventCategory.UNRECOGNIZED:
            logger.debug("unrecognized frame: %.120r", frame)
        self.dispatch(event.category, event)
        return event

    def dispatch(self, category: CategoryLike, event: Any) -> int:
        """Invoke subscribers of ``category`` then of each supertype, in
        registration order. Returns the number of handlers invoked."""
        invoked = 0
        for level in as_category(category).lineage():
            with self._lock:
                subs = list(self._subs.get(level, []))
            for sub in subs:
                if not self._claim(sub):
                    continue
                invoked += 1
                try:
                    sub.handler(event)
                except Exception as exc:
                    logger.exception("subscriber for %s failed", sub.category.value)
                    self._report(exc, sub, event)
        return invoked

    def _claim(self, sub: Subscription) -> bool:
        if not sub.once:
            return sub.active
        with self._lock:
            if not sub.active:
                return False
            sub.active = False
            subs = self._subs.get(sub.category, [])
            if sub in subs:
                subs.remove(sub)
            if not subs:
                self._subs.pop(sub.category, None)
        return True

    def _report(self, exc: BaseException, sub: Subscription, event: Any) -> None:
        if self.error_handler is None:
            return
        try:
            self.error_handler(exc, sub, event)
        except Exception:
            logger.exception("subscriber error handler failed")
