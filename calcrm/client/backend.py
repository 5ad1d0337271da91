"""
Transport seam between the client coordination layer and the server.

Every backend returns the same response schemas the HTTP API serves, and
splits failures into three families:

- expected outcomes (denied, not locked) are plain return values;
- `VersionConflict` / `RecordLockFailure` are recoverable write rejections;
- `CoordinationUnavailable` is an infrastructure failure to retry later,
  while `SessionExpired` means the caller must sign in again.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Protocol

import requests
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from calcrm.core.clock import Clock
from calcrm.crud.entities import to_entity_out
from calcrm.schemas.entities import EntityOut
from calcrm.schemas.presence import ViewerView
from calcrm.schemas.record_lock import LockAcquireResponse, LockCheckResponse
from calcrm.services.identity_service import Principal, Unauthenticated
from calcrm.services.presence_service import PresenceService, PresenceUpdate, to_viewer_view
from calcrm.services.record_lock_service import RecordLockFailure, RecordLockService
from calcrm.services.version_guard import EntityNotFound, VersionConflict, versioned_update

logger = logging.getLogger(__name__)


class CoordinationUnavailable(Exception):
    """The lock/presence store could not be reached or failed mid-call."""


class SessionExpired(Exception):
    """No resolvable caller identity; the user must sign in again."""

    def __init__(self, message: str = "Please sign in again.") -> None:
        super().__init__(message)
        self.message = message


class RequestRejected(Exception):
    """The server refused a request for a reason other than the above."""

    def __init__(self, status_code: int, detail: Any) -> None:
        super().__init__(f"HTTP {status_code}: {detail}")
        self.status_code = status_code
        self.detail = detail


class CoordinationBackend(Protocol):
    def acquire(
        self, entity_type: str, entity_id: str, duration_minutes: int | None = None
    ) -> LockAcquireResponse: ...

    def release(self, entity_type: str, entity_id: str) -> bool: ...

    def check(self, entity_type: str, entity_id: str) -> LockCheckResponse: ...

    def update_presence(
        self,
        current_page: str,
        entity_type: str | None = None,
        entity_id: str | None = None,
        status: str = "online",
    ) -> bool: ...

    def list_viewers(self, entity_type: str, entity_id: str) -> list[ViewerView]: ...

    def versioned_update(
        self,
        entity_type: str,
        entity_id: str,
        changes: dict[str, Any],
        expected_version: int,
    ) -> EntityOut: ...


class HttpCoordinationBackend:
    """Talks to the `/api/v1` coordination routes over HTTP."""

    # Proxies and gateways answer these while the service itself is fine.
    RETRYABLE_STATUSES = frozenset({408, 429})

    def __init__(
        self,
        base_url: str,
        *,
        token: str | None = None,
        headers: dict[str, str] | None = None,
        timeout: float = 10.0,
        session: requests.Session | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update(headers or {})
        if token:
            self.session.headers["Authorization"] = f"Bearer {token}"

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        url = f"{self.base_url}/api/v1{path}"
        try:
            resp = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as exc:
            raise CoordinationUnavailable(f"{method} {path} failed: {exc}") from exc

        if resp.status_code == 401:
            raise SessionExpired()
        if resp.status_code >= 500 or resp.status_code in self.RETRYABLE_STATUSES:
            raise CoordinationUnavailable(f"{method} {path} returned {resp.status_code}")
        return resp

    @staticmethod
    def _detail(resp: requests.Response) -> Any:
        try:
            return resp.json().get("detail")
        except ValueError:
            return resp.text

    def _ok(self, resp: requests.Response) -> Any:
        if resp.status_code >= 400:
            raise RequestRejected(resp.status_code, self._detail(resp))
        return resp.json()

    def acquire(self, entity_type, entity_id, duration_minutes=None):
        body: dict[str, Any] = {"entity_type": entity_type, "entity_id": entity_id}
        if duration_minutes is not None:
            body["duration_minutes"] = duration_minutes
        resp = self._request("POST", "/locks/acquire", json=body)
        return LockAcquireResponse.model_validate(self._ok(resp))

    def release(self, entity_type, entity_id):
        resp = self._request(
            "POST",
            "/locks/release",
            json={"entity_type": entity_type, "entity_id": entity_id},
        )
        return bool(self._ok(resp).get("released"))

    def check(self, entity_type, entity_id):
        resp = self._request("GET", f"/locks/{entity_type}/{entity_id}")
        return LockCheckResponse.model_validate(self._ok(resp))

    def update_presence(self, current_page, entity_type=None, entity_id=None, status="online"):
        body: dict[str, Any] = {"current_page": current_page, "status": status}
        if entity_type is not None and entity_id is not None:
            body["entity_type"] = entity_type
            body["entity_id"] = entity_id
        resp = self._request("POST", "/presence", json=body)
        return bool(self._ok(resp).get("ok"))

    def list_viewers(self, entity_type, entity_id):
        resp = self._request("GET", f"/presence/{entity_type}/{entity_id}/viewers")
        return [ViewerView.model_validate(item) for item in self._ok(resp)]

    def versioned_update(self, entity_type, entity_id, changes, expected_version):
        resp = self._request(
            "PATCH",
            f"/entities/{entity_type}/{entity_id}",
            json={"expected_version": expected_version, "changes": changes},
        )
        if resp.status_code == 409:
            detail = self._detail(resp) or {}
            code = detail.get("code") if isinstance(detail, dict) else None
            if code == VersionConflict.code:
                raise VersionConflict(
                    entity_type,
                    entity_id,
                    int(detail.get("expected_version", expected_version)),
                    int(detail.get("current_version", 0)),
                )
            if code in {"LOCK_REQUIRED", "LOCK_NOT_OWNER"}:
                raise RecordLockFailure(
                    code=code,
                    message=str(detail.get("message") or code),
                    status_code=409,
                    locked_by=detail.get("locked_by"),
                    locked_by_name=detail.get("locked_by_name"),
                )
        if resp.status_code == 404:
            raise EntityNotFound(entity_type, entity_id)
        return EntityOut.model_validate(self._ok(resp))


class LocalCoordinationBackend:
    """
    Runs the services in-process against a session factory, acting as a
    fixed principal. Used by scripts and tests.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        principal: Principal | None,
        *,
        clock: Clock | None = None,
    ):
        self.session_factory = session_factory
        self.principal = principal
        self.clock = clock

    @contextmanager
    def _session(self) -> Iterator[Session]:
        db = self.session_factory()
        try:
            yield db
            db.commit()
        except Unauthenticated as exc:
            db.rollback()
            raise SessionExpired(exc.message) from exc
        except SQLAlchemyError as exc:
            db.rollback()
            raise CoordinationUnavailable(str(exc)) from exc
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def acquire(self, entity_type, entity_id, duration_minutes=None):
        with self._session() as db:
            result = RecordLockService(db, clock=self.clock).acquire(
                entity_type=entity_type,
                entity_id=entity_id,
                principal=self.principal,
                duration_minutes=duration_minutes,
            )
            return result.to_response()

    def release(self, entity_type, entity_id):
        with self._session() as db:
            return RecordLockService(db, clock=self.clock).release(
                entity_type=entity_type,
                entity_id=entity_id,
                principal=self.principal,
            )

    def check(self, entity_type, entity_id):
        with self._session() as db:
            return RecordLockService(db, clock=self.clock).check(
                entity_type=entity_type,
                entity_id=entity_id,
                principal=self.principal,
            ).to_response()

    def update_presence(self, current_page, entity_type=None, entity_id=None, status="online"):
        with self._session() as db:
            PresenceService(db, clock=self.clock).update(
                principal=self.principal,
                update=PresenceUpdate(
                    current_page=current_page,
                    entity_type=entity_type,
                    entity_id=entity_id,
                    status=status,
                ),
            )
            return True

    def list_viewers(self, entity_type, entity_id):
        with self._session() as db:
            rows = PresenceService(db, clock=self.clock).list_viewers(
                entity_type=entity_type,
                entity_id=entity_id,
                principal=self.principal,
            )
            return [to_viewer_view(row) for row in rows]

    def versioned_update(self, entity_type, entity_id, changes, expected_version):
        if self.principal is None:
            raise SessionExpired()
        with self._session() as db:
            try:
                obj = versioned_update(
                    db,
                    entity_type=entity_type,
                    entity_id=entity_id,
                    changes=changes,
                    expected_version=expected_version,
                    principal=self.principal,
                    lock_service=RecordLockService(db, clock=self.clock),
                )
            except ValidationError as exc:
                raise RequestRejected(422, exc.errors()) from exc
            return to_entity_out(entity_type, obj)
