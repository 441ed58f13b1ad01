"""
cqws - OneBot (go-cqhttp) websocket client core.

One websocket carries both API calls and pushed events. The package provides
the pieces a typed API facade is built on:

    tags.py       → immutable Tag model and validating builders
    codec.py      → tag notation parser/serializer, escaping, array form
    transport.py  → connection lifecycle, reconnect backoff, outbound buffer
    rpc.py        → echo correlation, timeouts, disconnect sweep
    events.py     → event categories, typed events, subscriber dispatch
    client.py     → wiring of the above plus message-sending helpers
"""

from .errors import (  # noqa: F401
    APIError,
    ConnectionLost,
    CQWSError,
    NotConnected,
    Timeout,
    TransportError,
    ValidationError,
)
from .tags import PlainText, Segment, Tag  # noqa: F401
from .codec import TagCodec, escape, from_array, parse, serialize, to_array, unescape  # noqa: F401
from .transport import ConnectionManager, ConnectionState, ReconnectPolicy, TransportConfig  # noqa: F401
from .rpc import DeadlineScheduler, PendingCall, RequestCorrelator  # noqa: F401
from .events import (  # noqa: F401
    APIEvent,
    BaseEvent,
    EventCategory,
    EventDispatcher,
    LifecycleEvent,
    MessageEvent,
    MetaEvent,
    NoticeEvent,
    RequestEvent,
    Sender,
    Subscription,
    classify,
    parse_event,
)
from .client import ClientConfig, CQWebSocket  # noqa: F401
from . import tags  # noqa: F401

__all__ = [
    "APIError",
    "ConnectionLost",
    "CQWSError",
    "NotConnected",
    "Timeout",
    "TransportError",
    "ValidationError",
    "PlainText",
    "Segment",
    "Tag",
    "TagCodec",
    "escape",
    "unescape",
    "parse",
    "serialize",
    "to_array",
    "from_array",
    "ConnectionManager",
    "ConnectionState",
    "ReconnectPolicy",
    "TransportConfig",
    "DeadlineScheduler",
    "PendingCall",
    "RequestCorrelator",
    "EventCategory",
    "EventDispatcher",
    "Subscription",
    "BaseEvent",
    "MessageEvent",
    "NoticeEvent",
    "RequestEvent",
    "MetaEvent",
    "LifecycleEvent",
    "APIEvent",
    "Sender",
    "classify",
    "parse_event",
    "ClientConfig",
    "CQWebSocket",
    "tags",
]

__version__ = "0.1.0"
