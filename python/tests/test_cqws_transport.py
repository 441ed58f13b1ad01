import threading

import pytest

from cqws import ConnectionManager, ConnectionState, NotConnected, ReconnectPolicy, TransportConfig, TransportError
from ws_stubs import FakeConnector, wait_for


def _manager(connector, **config):
    config.setdefault("url", "ws://bot.local:6700")
    config.setdefault("reconnect", ReconnectPolicy(enabled=False))
    manager = ConnectionManager(TransportConfig(**config), connector)
    lifecycle = []
    frames = []
    manager.register_lifecycle(lambda name, info: lifecycle.append((name, info)))
    manager.set_frame_handler(frames.append)
    return manager, lifecycle, frames


def _names(lifecycle):
    return [name for name, _ in lifecycle]


def test_connect_delivers_frames_and_close_is_idempotent(connector):
    manager, lifecycle, frames = _manager(connector)
    manager.connect()
    assert manager.state is ConnectionState.OPEN
    assert _names(lifecycle) == ["connecting", "open"]

    connector.last.push({"post_type": "meta_event", "meta_event_type": "heartbeat"})
    connector.last.push({"echo": "1", "status": "ok", "retcode": 0})
    assert wait_for(lambda: len(frames) == 2)
    assert frames[0]["post_type"] == "meta_event"
    assert frames[1]["echo"] == "1"

    manager.close()
    manager.close()
    assert manager.state is ConnectionState.CLOSED
    assert _names(lifecycle) == ["connecting", "open", "close"]
    assert connector.last.closed


def test_connect_passes_timeout_and_bearer_token(connector):
    manager, _, _ = _manager(connector, access_token="secret", connect_timeout=2.0)
    manager.connect()
    assert connector.calls == [
        {
            "url": "ws://bot.local:6700",
            "open_timeout": 2.0,
            "additional_headers": {"Authorization": "Bearer secret"},
        }
    ]
    manager.close()


def test_send_writes_json_when_open(connector):
    manager, _, _ = _manager(connector)
    manager.connect()
    manager.send({"action": "get_status", "params": {}, "echo": "1"})
    assert connector.last.wait_sent(1) == [{"action": "get_status", "params": {}, "echo": "1"}]
    manager.close()


def test_send_while_closed_fails_fast(connector):
    manager, _, _ = _manager(connector)
    with pytest.raises(NotConnected):
        manager.send({"action": "x"})
    assert manager.buffered == 0


def test_buffer_flushes_in_order_and_evicts_oldest(connector):
    manager, lifecycle, _ = _manager(connector, buffer_size=2)
    for n in range(3):
        manager.send({"action": "a", "echo": str(n)})
    assert manager.buffered == 2
    overflow = [info for name, info in lifecycle if name == "overflow"]
    assert overflow == [{"frame": {"action": "a", "echo": "0"}}]

    manager.connect()
    assert manager.buffered == 0
    assert [frame["echo"] for frame in connector.last.wait_sent(2)] == ["1", "2"]
    manager.close()


def test_undecodable_frames_are_skipped(connector):
    manager, _, frames = _manager(connector)
    manager.connect()
    connector.last.push("not json")
    connector.last.push("[1, 2]")
    connector.last.push({"post_type": "notice"})
    assert wait_for(lambda: len(frames) == 1)
    assert frames == [{"post_type": "notice"}]
    assert manager.state is ConnectionState.OPEN
    manager.close()


def test_failing_frame_handler_keeps_reader_alive(connector):
    manager, _, _ = _manager(connector)
    seen = []

    def handler(frame):
        seen.append(frame)
        if frame.get("boom"):
            raise RuntimeError("handler failed")

    manager.set_frame_handler(handler)
    manager.connect()
    connector.last.push({"boom": True})
    connector.last.push({"ok": True})
    assert wait_for(lambda: len(seen) == 2)
    manager.close()


def test_drop_emits_error_and_close_then_reconnects(connector):
    manager, lifecycle, _ = _manager(connector, reconnect=ReconnectPolicy(delay=0.01))
    manager.connect()
    first = connector.last
    first.drop()
    assert wait_for(lambda: _names(lifecycle).count("open") == 2)
    assert manager.state is ConnectionState.OPEN
    assert _names(lifecycle) == ["connecting", "open", "error", "close", "reconnecting", "connecting", "open"]
    reconnecting = dict(lifecycle)["reconnecting"]
    assert reconnecting == {"attempt": 1, "delay": 0.01}
    assert first.closed
    manager.close()


def test_reconnect_gives_up_after_max_attempts():
    connector = FakeConnector(failures=10)
    manager, lifecycle, _ = _manager(connector, reconnect=ReconnectPolicy(delay=0.01, max_attempts=2))
    with pytest.raises(TransportError):
        manager.connect()
    assert manager.state is ConnectionState.CLOSED
    assert wait_for(lambda: "reconnect_failed" in _names(lifecycle))
    assert len(connector.calls) == 3
    assert dict(lifecycle)["reconnect_failed"] == {"attempts": 2}
    assert [info["attempt"] for name, info in lifecycle if name == "reconnecting"] == [1, 2]


def test_close_cancels_pending_reconnect(connector):
    manager, lifecycle, _ = _manager(connector, reconnect=ReconnectPolicy(delay=0.2))
    manager.connect()
    connector.last.drop()
    assert wait_for(lambda: "reconnecting" in _names(lifecycle))
    manager.close()
    threading.Event().wait(0.3)
    assert len(connector.connections) == 1
    assert manager.state is ConnectionState.CLOSED


def test_reconnect_policy_delays():
    fixed = ReconnectPolicy(delay=0.5)
    assert [fixed.delay_for(n) for n in (1, 2, 5)] == [0.5, 0.5, 0.5]
    backoff = ReconnectPolicy(delay=1.0, strategy="exponential", multiplier=2.0, max_delay=5.0)
    assert [backoff.delay_for(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 5.0]
    assert ReconnectPolicy(max_attempts=3).exhausted(4)
    assert not ReconnectPolicy().exhausted(1000)
    with pytest.raises(ValueError):
        ReconnectPolicy(strategy="random")


def test_discarded_frames_are_never_flushed(connector):
    manager, _, _ = _manager(connector, buffer_size=4)
    manager.send({"action": "a", "echo": "1"})
    manager.send({"action": "b", "echo": "2"})
    manager.send({"action": "c"})
    assert manager.discard("1") is True
    assert manager.discard("1") is False
    assert manager.buffered == 2

    manager.connect()
    assert [frame["action"] for frame in connector.last.wait_sent(2)] == ["b", "c"]
    manager.close()
