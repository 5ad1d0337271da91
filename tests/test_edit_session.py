from __future__ import annotations

import pytest

from calcrm.client.backend import CoordinationUnavailable, LocalCoordinationBackend, SessionExpired
from calcrm.client.edit_session import EditSession, EditState, InvalidEditState
from calcrm.client.presence_tracker import PresenceTracker
from calcrm.crud.entities import create_entity


class _FlakyBackend:
    """Wraps a backend; while `failing` is set, acquire raises CoordinationUnavailable."""

    def __init__(self, inner):
        self.inner = inner
        self.failing = False

    def acquire(self, entity_type, entity_id, duration_minutes=None):
        if self.failing:
            raise CoordinationUnavailable("store unreachable")
        return self.inner.acquire(entity_type, entity_id, duration_minutes)

    def __getattr__(self, name):
        return getattr(self.inner, name)


@pytest.fixture
def company_id(db_session, alice):
    company = create_entity(
        db_session,
        "company",
        {"company_code": "CAL-1", "name": "Calibration Ltd"},
        principal=alice,
    )
    return company.id


@pytest.fixture
def alice_backend(session_factory, alice, clock):
    return LocalCoordinationBackend(session_factory, alice, clock=clock)


@pytest.fixture
def bob_backend(session_factory, bob, clock):
    return LocalCoordinationBackend(session_factory, bob, clock=clock)


def _record(events, name):
    def _callback(session, *args):
        events.append((name, args))

    return _callback


def test_begin_edit_and_save_releases_lock(alice_backend, bob_backend, company_id, clock):
    session = EditSession(alice_backend, "company", company_id, version=1, clock=clock)
    result = session.begin_edit()
    assert result.success is True
    assert result.created is True
    assert session.state == EditState.EDITING
    assert bob_backend.check("company", company_id).locked is True

    session.set_field("billing_city", "Bristol")
    saved = session.save()

    assert saved.saved is True
    assert saved.entity.version == 2
    assert saved.entity.data["billing_city"] == "Bristol"
    assert session.version == 2
    assert session.draft == {}
    assert session.state == EditState.VIEWING
    assert bob_backend.check("company", company_id).locked is False


def test_begin_edit_is_denied_while_someone_else_edits(alice_backend, bob_backend, company_id, clock):
    bob_backend.acquire("company", company_id)
    events = []
    session = EditSession(alice_backend, "company", company_id, version=1, clock=clock)
    session.on("denied", _record(events, "denied"))

    result = session.begin_edit()

    assert result.success is False
    assert result.locked_by_name == "Bob Baker"
    assert session.state == EditState.VIEWING
    assert session.last_denial is result
    assert events == [("denied", (result,))]
    with pytest.raises(InvalidEditState):
        session.set_field("name", "nope")


def test_lock_lost_when_extension_is_denied(alice_backend, bob_backend, company_id, clock):
    events = []
    session = EditSession(alice_backend, "company", company_id, version=1, clock=clock)
    session.on("lock_lost", _record(events, "lock_lost"))
    session.begin_edit()
    session.set_field("notes", "half-typed")

    # Alice's tab was asleep long enough for the lock to lapse.
    clock.advance(minutes=16)
    took = bob_backend.acquire("company", company_id)
    assert took.took_over is True

    session.run_due()

    assert session.state == EditState.VIEWING
    assert session.draft == {}
    assert [name for name, _ in events] == ["lock_lost"]
    lost = events[0][1][0]
    assert lost.locked_by == "user-b"


def test_extension_keeps_lock_alive(alice_backend, bob_backend, company_id, clock):
    session = EditSession(alice_backend, "company", company_id, version=1, clock=clock)
    first = session.begin_edit()

    for _ in range(20):
        clock.advance(seconds=60)
        session.run_due()

    assert session.state == EditState.EDITING
    assert session.lock_expires_at > first.expires_at
    denied = bob_backend.acquire("company", company_id)
    assert denied.success is False


def test_conflicting_save_stays_in_editing(alice_backend, bob_backend, company_id, clock):
    events = []
    session = EditSession(alice_backend, "company", company_id, version=1, clock=clock)
    session.on("conflict", _record(events, "conflict"))
    session.begin_edit()
    session.set_field("name", "Alice's name")

    # Bob writes through the version guard without a lock.
    bobs = bob_backend.versioned_update("company", company_id, {"name": "Bob's name"}, 1)
    assert bobs.version == 2

    result = session.save()
    assert result.saved is False
    assert result.conflict.expected == 1
    assert result.conflict.actual == 2
    assert session.state == EditState.EDITING
    assert session.draft == {"name": "Alice's name"}
    assert [name for name, _ in events] == ["conflict"]

    session.observe(bobs)
    retried = session.save()
    assert retried.saved is True
    assert retried.entity.version == 3
    assert retried.entity.data["name"] == "Alice's name"


def test_degraded_fires_once_after_repeated_failures(alice_backend, company_id, clock):
    backend = _FlakyBackend(alice_backend)
    events = []
    session = EditSession(backend, "company", company_id, version=1, degraded_after=3, clock=clock)
    session.on("degraded", _record(events, "degraded"))
    session.begin_edit()

    backend.failing = True
    for _ in range(4):
        clock.advance(seconds=60)
        session.run_due()

    assert session.state == EditState.EDITING
    assert session.consecutive_failures == 4
    assert session.degraded is True
    assert events == [("degraded", (3,))]

    backend.failing = False
    clock.advance(seconds=60)
    session.run_due()
    assert session.consecutive_failures == 0
    assert session.degraded is False


def test_cancel_and_close_release_the_lock(alice_backend, bob_backend, company_id, clock):
    session = EditSession(alice_backend, "company", company_id, version=1, clock=clock)
    session.begin_edit()
    session.set_field("notes", "draft")
    session.cancel()
    assert session.state == EditState.VIEWING
    assert session.draft == {}
    assert bob_backend.check("company", company_id).locked is False

    with EditSession(alice_backend, "company", company_id, version=1, clock=clock) as scoped:
        scoped.begin_edit()
        assert bob_backend.check("company", company_id).locked is True
    assert scoped.closed is True
    assert bob_backend.check("company", company_id).locked is False
    with pytest.raises(InvalidEditState):
        scoped.begin_edit()


def test_state_changes_drive_presence_status(alice_backend, company_id, clock):
    tracker = PresenceTracker(
        alice_backend,
        current_page=f"/companies/{company_id}",
        entity_type="company",
        entity_id=company_id,
        clock=clock,
    )
    transitions = []
    session = EditSession(alice_backend, "company", company_id, version=1, presence=tracker, clock=clock)
    session.on("state_change", lambda s, old, new: transitions.append((old, new)))

    session.begin_edit()
    assert tracker.status() == "editing"
    session.cancel()
    assert tracker.status() == "online"
    assert transitions == [
        (EditState.VIEWING, EditState.EDITING),
        (EditState.EDITING, EditState.VIEWING),
    ]


def test_save_requires_observed_version(alice_backend, company_id, clock):
    session = EditSession(alice_backend, "company", company_id, clock=clock)
    session.begin_edit()
    with pytest.raises(InvalidEditState):
        session.save()


def test_unknown_listener_event_is_rejected(alice_backend, company_id):
    session = EditSession(alice_backend, "company", company_id)
    with pytest.raises(ValueError):
        session.on("saved", lambda *_: None)


def test_signed_out_caller_surfaces_session_expired(session_factory, company_id, clock):
    backend = LocalCoordinationBackend(session_factory, None, clock=clock)
    session = EditSession(backend, "company", company_id, version=1, clock=clock)
    with pytest.raises(SessionExpired):
        session.begin_edit()
    assert session.state == EditState.VIEWING


class _PresenceDownBackend:
    """Lock calls reach the store; presence heartbeats never do."""

    def __init__(self, inner):
        self.inner = inner

    def update_presence(self, current_page, entity_type=None, entity_id=None, status="online"):
        raise CoordinationUnavailable("presence store unreachable")

    def __getattr__(self, name):
        return getattr(self.inner, name)


def test_failing_heartbeats_surface_degraded_on_the_session(alice_backend, company_id, clock):
    backend = _PresenceDownBackend(alice_backend)
    tracker = PresenceTracker(
        backend,
        current_page=f"/companies/{company_id}",
        entity_type="company",
        entity_id=company_id,
        heartbeat_seconds=30,
        clock=clock,
    )
    events = []
    session = EditSession(backend, "company", company_id, version=1, presence=tracker, clock=clock)
    session.on("degraded", _record(events, "degraded"))

    for _ in range(10):
        session.run_due()
        clock.advance(seconds=30)

    assert tracker.consecutive_failures == 10
    assert session.degraded is True
    assert events == [("degraded", (3,))]
