import pytest

from cqws import EventCategory, EventDispatcher, MessageEvent, NoticeEvent, PlainText, Tag, classify, parse_event
from cqws.events import MetaEvent, RequestEvent


def _group_message(**overrides):
    frame = {
        "post_type": "message",
        "message_type": "group",
        "sub_type": "normal",
        "time": 1700000000,
        "self_id": 10000,
        "message_id": 42,
        "group_id": 123,
        "user_id": 456,
        "message": "hi [CQ:at,qq=10000]",
        "raw_message": "hi [CQ:at,qq=10000]",
        "font": 0,
        "sender": {"user_id": 456, "nickname": "alice", "role": "admin"},
    }
    frame.update(overrides)
    return frame


@pytest.mark.parametrize(
    "frame, expected",
    [
        ({"post_type": "message", "message_type": "private", "sub_type": "friend"}, EventCategory.MESSAGE_PRIVATE_FRIEND),
        ({"post_type": "message", "message_type": "group", "sub_type": "anonymous"}, EventCategory.MESSAGE_GROUP_ANONYMOUS),
        ({"post_type": "message", "message_type": "group", "sub_type": "brand_new"}, EventCategory.MESSAGE_GROUP),
        ({"post_type": "message", "message_type": "guild"}, EventCategory.MESSAGE),
        ({"post_type": "notice", "notice_type": "group_increase", "sub_type": "approve"}, EventCategory.NOTICE_GROUP_INCREASE),
        ({"post_type": "notice", "notice_type": "notify", "sub_type": "poke"}, EventCategory.NOTICE_NOTIFY_POKE),
        ({"post_type": "request", "request_type": "friend"}, EventCategory.REQUEST_FRIEND),
        ({"post_type": "meta_event", "meta_event_type": "heartbeat"}, EventCategory.META_EVENT_HEARTBEAT),
        ({"post_type": "mystery"}, EventCategory.UNRECOGNIZED),
        ({"status": "ok", "retcode": 0, "echo": "nobody"}, EventCategory.UNRECOGNIZED),
    ],
)
def test_classify(frame, expected):
    assert classify(frame) is expected


def test_category_lineage_walks_to_root():
    assert EventCategory.MESSAGE_GROUP_NORMAL.lineage() == [
        EventCategory.MESSAGE_GROUP_NORMAL,
        EventCategory.MESSAGE_GROUP,
        EventCategory.MESSAGE,
    ]
    assert EventCategory.SOCKET_OPEN.parent is EventCategory.SOCKET
    assert EventCategory.UNRECOGNIZED.parent is None


def test_parse_group_message_event():
    event = parse_event(_group_message())
    assert isinstance(event, MessageEvent)
    assert event.category is EventCategory.MESSAGE_GROUP_NORMAL
    assert event.group_id == 123 and event.user_id == 456 and event.message_id == 42
    assert event.sender.nickname == "alice" and event.sender.role == "admin"
    assert event.segments == [PlainText("hi "), Tag("at", {"qq": "10000"})]
    assert event.post_type == "message"


def test_parse_array_message_event():
    frame = _group_message(
        message=[
            {"type": "text", "data": {"text": "hi "}},
            {"type": "face", "data": {"id": "14"}},
        ],
        raw_message="hi [CQ:face,id=14]",
    )
    event = parse_event(frame)
    assert event.segments == [PlainText("hi "), Tag("face", {"id": "14"})]
    assert event.message == "hi [CQ:face,id=14]"


def test_parse_other_event_records():
    notice = parse_event({"post_type": "notice", "notice_type": "group_ban", "sub_type": "ban", "duration": "60", "group_id": 1})
    assert isinstance(notice, NoticeEvent)
    assert notice.duration == 60 and notice.group_id == 1

    request = parse_event({"post_type": "request", "request_type": "group", "sub_type": "add", "flag": "f1", "comment": "pls"})
    assert isinstance(request, RequestEvent)
    assert request.category is EventCategory.REQUEST_GROUP
    assert request.flag == "f1"

    meta = parse_event({"post_type": "meta_event", "meta_event_type": "heartbeat", "interval": 5000, "status": {"online": True}})
    assert isinstance(meta, MetaEvent)
    assert meta.interval == 5000 and meta.status == {"online": True}

    unknown = parse_event({"post_type": "mystery", "x": 1})
    assert unknown.category is EventCategory.UNRECOGNIZED
    assert unknown.raw == {"post_type": "mystery", "x": 1}


def test_dispatch_runs_specific_then_supertype_in_registration_order():
    dispatcher = EventDispatcher()
    calls = []
    dispatcher.subscribe("message", lambda e: calls.append("message"))
    dispatcher.subscribe(EventCategory.MESSAGE_GROUP_NORMAL, lambda e: calls.append("normal-1"))
    dispatcher.subscribe("message.group", lambda e: calls.append("group"))
    dispatcher.subscribe("message.group.normal", lambda e: calls.append("normal-2"))
    dispatcher.subscribe("message.private", lambda e: calls.append("private"))

    event = dispatcher.publish(_group_message())
    assert event.category is EventCategory.MESSAGE_GROUP_NORMAL
    assert calls == ["normal-1", "normal-2", "group", "message"]


def test_once_handler_fires_exactly_once():
    dispatcher = EventDispatcher()
    calls = []
    dispatcher.once("socket.open", calls.append)
    assert dispatcher.dispatch("socket.open", "first") == 1
    assert dispatcher.dispatch("socket.open", "second") == 0
    assert calls == ["first"]
    assert dispatcher.subscribers("socket.open") == []


def test_unsubscribe_stops_delivery():
    dispatcher = EventDispatcher()
    calls = []
    dispatcher.subscribe("notice", calls.append)
    assert dispatcher.unsubscribe("notice", calls.append) is True
    assert dispatcher.unsubscribe("notice", calls.append) is False
    dispatcher.dispatch("notice.group_ban", "event")
    assert calls == []


def test_unsubscribe_during_dispatch_skips_later_handler():
    dispatcher = EventDispatcher()
    calls = []

    def second(event):
        calls.append("second")

    def first(event):
        calls.append("first")
        dispatcher.unsubscribe("request", second)

    dispatcher.subscribe("request", first)
    dispatcher.subscribe("request", second)
    dispatcher.dispatch("request", None)
    assert calls == ["first"]


def test_subscribe_during_dispatch_applies_to_next_event():
    dispatcher = EventDispatcher()
    calls = []

    def late(event):
        calls.append(("late", event))

    def first(event):
        calls.append(("first", event))
        if event == 1:
            dispatcher.subscribe("meta_event", late)

    dispatcher.subscribe("meta_event", first)
    dispatcher.dispatch("meta_event", 1)
    dispatcher.dispatch("meta_event", 2)
    assert calls == [("first", 1), ("first", 2), ("late", 2)]


def test_failing_handler_does_not_stop_others():
    errors = []
    dispatcher = EventDispatcher(error_handler=lambda exc, sub, event: errors.append((exc, sub.category, event)))
    calls = []

    def broken(event):
        raise RuntimeError("boom")

    dispatcher.subscribe("message.group", broken)
    dispatcher.subscribe("message.group", calls.append)
    dispatcher.subscribe("message", calls.append)

    assert dispatcher.dispatch("message.group", "evt") == 3
    assert calls == ["evt", "evt"]
    assert len(errors) == 1
    exc, category, event = errors[0]
    assert isinstance(exc, RuntimeError) and category is EventCategory.MESSAGE_GROUP and event == "evt"


def test_unknown_category_is_rejected():
    dispatcher = EventDispatcher()
    with pytest.raises(ValueError):
        dispatcher.subscribe("message.bogus", lambda e: None)


def test_non_mapping_sender_does_not_lose_the_event():
    event = parse_event(_group_message(sender="alice"))
    assert isinstance(event, MessageEvent)
    assert event.sender.user_id is None and event.sender.nickname == ""
    assert event.group_id == 123


def test_publish_delivers_unrecognized_frames():
    dispatcher = EventDispatcher()
    seen = []
    dispatcher.subscribe(EventCategory.UNRECOGNIZED, seen.append)
    event = dispatcher.publish({"status": "ok", "retcode": 0, "echo": "stale"})
    assert event.category is EventCategory.UNRECOGNIZED
    assert seen == [event]
