"""Tests for the host-facing event emitter."""

from locus_sync.engine.events import DEADLETTER, EventEmitter, HttpEvent, SyncEvent
from locus_sync.sync.network import ConnectivityChangeEvent


class TestEventEmitter:
    """Tests for subscription and fan-out."""

    def test_http_subscribers_receive_events(self):
        received = []
        emitter = EventEmitter()
        emitter.on_http(received.append)

        emitter.emit_http(HttpEvent(status=503, ok=False, response_text="busy"))

        assert received == [HttpEvent(503, False, "busy")]
        assert received[0].to_dict() == {"status": 503, "ok": False, "responseText": "busy"}

    def test_each_channel_is_separate(self):
        http, sync, connectivity = [], [], []
        emitter = EventEmitter()
        emitter.on_http(http.append)
        emitter.on_sync(sync.append)
        emitter.on_connectivity_change(connectivity.append)

        emitter.emit_sync(SyncEvent(type=DEADLETTER, data={"attempts": 4}))
        emitter.emit_connectivity(ConnectivityChangeEvent(connected=True, metered=False))

        assert http == []
        assert sync[0].to_dict() == {"type": "deadletter", "data": {"attempts": 4}}
        assert connectivity[0].connected is True

    def test_unsubscribe(self):
        received = []
        emitter = EventEmitter()
        unsubscribe = emitter.on_http(received.append)
        unsubscribe()

        emitter.emit_http(HttpEvent(200, True))
        assert received == []

    def test_failing_subscriber_is_skipped(self):
        received = []
        emitter = EventEmitter()

        def broken(event):
            raise RuntimeError("host handler crashed")

        emitter.on_http(broken)
        emitter.on_http(received.append)
        emitter.emit_http(HttpEvent(200, True))

        assert len(received) == 1

    def test_log_buffer_is_bounded(self):
        emitter = EventEmitter(log_capacity=3)
        lines = []
        emitter.on_log(lines.append)

        for i in range(5):
            emitter.emit_log("info", f"line {i}")

        assert [entry.message for entry in emitter.recent_logs()] == ["line 2", "line 3", "line 4"]
        assert [entry.message for entry in emitter.recent_logs(1)] == ["line 4"]
        assert len(lines) == 5
        assert lines[0].to_dict()["level"] == "info"

    def test_clear(self):
        received = []
        emitter = EventEmitter()
        emitter.on_http(received.append)
        emitter.emit_log("info", "hello")

        emitter.clear()
        emitter.emit_http(HttpEvent(200, True))

        assert received == []
        assert emitter.recent_logs() == []
