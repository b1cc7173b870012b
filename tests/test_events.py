"""
Tests for shepherd/events.py - non-blocking broadcast to listeners.
"""

import json
import threading

from shepherd.events import EventBroadcaster, format_sse, make_event


def decode(message: str) -> dict:
    data_line = [line for line in message.splitlines() if line.startswith("data: ")][0]
    return json.loads(data_line[len("data: "):])


class TestFraming:

    def test_sse_frame(self):
        frame = format_sse(make_event("log", message="hello"))
        assert frame.startswith("event: log\n")
        assert frame.endswith("\n\n")
        assert decode(frame) == {"type": "log", "message": "hello"}

    def test_make_event_extras(self):
        event = make_event("status", data={"a": 1}, identity={"pcName": "WS-A"})
        assert event == {"type": "status", "data": {"a": 1}, "identity": {"pcName": "WS-A"}}


class TestBroadcaster:

    def test_every_listener_gets_a_copy(self):
        events = EventBroadcaster()
        _, q1 = events.subscribe()
        _, q2 = events.subscribe()
        assert events.log("Starting program: notepad") == 2
        assert decode(q1.get_nowait())["message"] == "Starting program: notepad"
        assert decode(q2.get_nowait())["message"] == "Starting program: notepad"

    def test_error_event(self):
        events = EventBroadcaster()
        _, q = events.subscribe()
        events.error("Access is denied")
        assert decode(q.get_nowait()) == {"type": "error", "message": "Access is denied"}

    def test_slow_listener_dropped_without_blocking_others(self):
        events = EventBroadcaster(queue_size=2)
        slow_id, slow = events.subscribe()
        _, fast = events.subscribe()

        for i in range(3):
            events.log(f"m{i}")
            fast.get_nowait()   # fast listener keeps up

        assert events.client_count == 1
        assert slow.qsize() == 2

    def test_publish_never_blocks(self):
        events = EventBroadcaster(queue_size=1)
        events.subscribe()
        done = threading.Event()

        def flood():
            for i in range(50):
                events.log(f"m{i}")
            done.set()

        threading.Thread(target=flood, daemon=True).start()
        assert done.wait(2.0)

    def test_unsubscribe(self):
        events = EventBroadcaster()
        client_id, _ = events.subscribe()
        events.unsubscribe(client_id)
        events.unsubscribe(client_id)   # second call is a no-op
        assert events.client_count == 0
        assert events.log("nobody listening") == 0
