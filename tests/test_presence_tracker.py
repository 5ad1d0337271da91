from __future__ import annotations

from calcrm.client.backend import CoordinationUnavailable
from calcrm.client.presence_tracker import PresenceTracker


class _RecordingBackend:
    def __init__(self):
        self.sent = []
        self.viewer_calls = 0
        self.failing = False

    def update_presence(self, current_page, entity_type=None, entity_id=None, status="online"):
        if self.failing:
            raise CoordinationUnavailable("store unreachable")
        self.sent.append((current_page, entity_type, entity_id, status))
        return True

    def list_viewers(self, entity_type, entity_id):
        self.viewer_calls += 1
        return []


def _tracker(backend, clock, **kwargs):
    kwargs.setdefault("heartbeat_seconds", 30)
    kwargs.setdefault("idle_seconds", 45)
    return PresenceTracker(
        backend,
        current_page="/jobs/123",
        entity_type="job",
        entity_id="123",
        clock=clock,
        **kwargs,
    )


def test_first_tick_sends_immediately_then_follows_cadence(clock):
    backend = _RecordingBackend()
    tracker = _tracker(backend, clock)

    assert tracker.run_due() is True
    assert backend.sent == [("/jobs/123", "job", "123", "online")]

    clock.advance(seconds=10)
    assert tracker.run_due() is False
    clock.advance(seconds=20)
    assert tracker.run_due() is True
    assert len(backend.sent) == 2


def test_idle_and_activity_are_reported_promptly(clock):
    backend = _RecordingBackend()
    tracker = _tracker(backend, clock)
    tracker.run_due()
    clock.advance(seconds=30)
    tracker.run_due()

    clock.advance(seconds=15)
    assert tracker.status() == "idle"
    assert tracker.run_due() is True
    assert backend.sent[-1][3] == "idle"

    clock.advance(seconds=5)
    tracker.record_activity()
    assert tracker.run_due() is True
    assert backend.sent[-1][3] == "online"


def test_editing_overrides_idle(clock):
    backend = _RecordingBackend()
    tracker = _tracker(backend, clock)
    clock.advance(minutes=5)
    tracker.set_editing(True)
    assert tracker.status() == "editing"
    tracker.run_due()
    assert backend.sent[-1][3] == "editing"


def test_hidden_view_sends_nothing(clock):
    backend = _RecordingBackend()
    tracker = _tracker(backend, clock)
    tracker.run_due()

    tracker.set_visible(False)
    clock.advance(minutes=10)
    assert tracker.heartbeat_due() is False
    assert tracker.next_due_at() is None
    assert tracker.run_due() is False

    tracker.set_visible(True)
    assert tracker.run_due() is True
    assert len(backend.sent) == 2


def test_navigation_forces_a_send(clock):
    backend = _RecordingBackend()
    tracker = _tracker(backend, clock)
    tracker.run_due()

    clock.advance(seconds=1)
    tracker.navigate("/jobs")
    assert tracker.run_due() is True
    assert backend.sent[-1] == ("/jobs", None, None, "online")
    assert tracker.viewers() == []
    assert backend.viewer_calls == 0


def test_half_reference_is_sent_as_no_entity(clock):
    backend = _RecordingBackend()
    tracker = PresenceTracker(backend, current_page="/quotes", entity_type="quote", clock=clock)
    tracker.run_due()
    assert backend.sent == [("/quotes", None, None, "online")]


def test_failures_are_counted_and_retried_on_cadence(clock):
    backend = _RecordingBackend()
    tracker = _tracker(backend, clock)
    backend.failing = True

    assert tracker.run_due() is False
    assert tracker.consecutive_failures == 1

    clock.advance(seconds=1)
    assert tracker.heartbeat_due() is False

    backend.failing = False
    clock.advance(seconds=29)
    assert tracker.run_due() is True
    assert tracker.consecutive_failures == 0


def test_next_due_at_tracks_heartbeat_and_idle(clock):
    backend = _RecordingBackend()
    tracker = _tracker(backend, clock, heartbeat_seconds=60, idle_seconds=45)
    start = clock.now
    assert tracker.next_due_at() == start

    tracker.run_due()
    assert tracker.next_due_at() == start.replace(second=45)

    tracker.set_editing(True)
    tracker.run_due()
    assert tracker.next_due_at() == start.replace(minute=1)


def test_repeated_heartbeat_failures_signal_degraded_once(clock):
    backend = _RecordingBackend()
    tracker = _tracker(backend, clock, degraded_after=3)
    events = []
    tracker.on_degraded(lambda t, failures: events.append(failures))
    backend.failing = True

    for _ in range(5):
        tracker.run_due()
        clock.advance(seconds=30)

    assert tracker.consecutive_failures == 5
    assert tracker.degraded is True
    assert events == [3]

    backend.failing = False
    tracker.record_activity()
    assert tracker.run_due() is True
    assert tracker.degraded is False
