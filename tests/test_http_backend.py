from __future__ import annotations

import pytest
import requests

from calcrm.client.backend import (
    CoordinationUnavailable,
    HttpCoordinationBackend,
    RequestRejected,
    SessionExpired,
)
from calcrm.services.record_lock_service import RecordLockFailure
from calcrm.services.version_guard import EntityNotFound, VersionConflict


class _FakeResponse:
    def __init__(self, status_code: int, payload=None, text: str = ""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class _FakeSession:
    def __init__(self, response=None, error: Exception | None = None):
        self.headers: dict[str, str] = {}
        self.response = response
        self.error = error
        self.calls = []

    def request(self, method, url, timeout=None, **kwargs):
        self.calls.append((method, url, kwargs))
        if self.error is not None:
            raise self.error
        return self.response


def _backend(response=None, error=None, **kwargs):
    session = _FakeSession(response=response, error=error)
    return HttpCoordinationBackend("http://crm.local/", session=session, **kwargs), session


def test_acquire_posts_to_api_and_parses_denial():
    backend, session = _backend(
        _FakeResponse(
            200,
            {
                "success": False,
                "error": "Record is being edited",
                "locked_by": "user-b",
                "locked_by_name": "Bob Baker",
                "expires_at": "2026-01-05T09:15:00",
            },
        ),
        token="abc",
    )
    result = backend.acquire("job", "123", 15)

    assert result.success is False
    assert result.locked_by_name == "Bob Baker"
    method, url, kwargs = session.calls[0]
    assert (method, url) == ("POST", "http://crm.local/api/v1/locks/acquire")
    assert kwargs["json"] == {"entity_type": "job", "entity_id": "123", "duration_minutes": 15}
    assert session.headers["Authorization"] == "Bearer abc"


def test_presence_without_entity_omits_reference():
    backend, session = _backend(_FakeResponse(200, {"ok": True}))
    assert backend.update_presence("/jobs", "job", None, "idle") is True
    assert session.calls[0][2]["json"] == {"current_page": "/jobs", "status": "idle"}


def test_network_error_is_unavailable():
    backend, _ = _backend(error=requests.ConnectionError("refused"))
    with pytest.raises(CoordinationUnavailable):
        backend.check("job", "1")


def test_server_error_is_unavailable():
    backend, _ = _backend(_FakeResponse(503, text="maintenance"))
    with pytest.raises(CoordinationUnavailable):
        backend.release("job", "1")


def test_unauthorized_is_session_expired():
    backend, _ = _backend(_FakeResponse(401, {"detail": {"code": "UNAUTHENTICATED"}}))
    with pytest.raises(SessionExpired):
        backend.list_viewers("job", "1")


def test_other_client_errors_are_rejected_with_detail():
    backend, _ = _backend(_FakeResponse(400, {"detail": {"code": "LOCK_INVALID_REQUEST"}}))
    with pytest.raises(RequestRejected) as exc_info:
        backend.acquire("job", "1", 10_000)
    assert exc_info.value.status_code == 400
    assert exc_info.value.detail == {"code": "LOCK_INVALID_REQUEST"}


def test_patch_conflict_maps_to_version_conflict():
    backend, _ = _backend(
        _FakeResponse(
            409,
            {"detail": {"code": "VERSION_CONFLICT", "expected_version": 3, "current_version": 4}},
        )
    )
    with pytest.raises(VersionConflict) as exc_info:
        backend.versioned_update("company", "c-1", {"name": "Y"}, 3)
    assert (exc_info.value.expected, exc_info.value.actual) == (3, 4)


def test_patch_lock_failure_and_not_found():
    backend, session = _backend(
        _FakeResponse(409, {"detail": {"code": "LOCK_NOT_OWNER", "message": "Locked", "locked_by": "user-b"}})
    )
    with pytest.raises(RecordLockFailure) as exc_info:
        backend.versioned_update("company", "c-1", {}, 1)
    assert exc_info.value.code == "LOCK_NOT_OWNER"
    assert exc_info.value.locked_by == "user-b"

    session.response = _FakeResponse(404, {"detail": "not found"})
    with pytest.raises(EntityNotFound):
        backend.versioned_update("company", "c-1", {}, 1)


def test_patch_success_parses_entity():
    backend, session = _backend(
        _FakeResponse(
            200,
            {
                "entity_type": "company",
                "id": "c-1",
                "version": 5,
                "updated_at": None,
                "data": {"name": "Acme"},
            },
        )
    )
    entity = backend.versioned_update("company", "c-1", {"name": "Acme"}, 4)
    assert entity.version == 5
    assert session.calls[0][0] == "PATCH"
    assert session.calls[0][2]["json"] == {"expected_version": 4, "changes": {"name": "Acme"}}


@pytest.mark.parametrize("status_code", [408, 429])
def test_throttling_statuses_are_transient(status_code):
    backend, _ = _backend(_FakeResponse(status_code, {"detail": "slow down"}))
    with pytest.raises(CoordinationUnavailable):
        backend.acquire("job", "1")
