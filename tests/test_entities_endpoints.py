from __future__ import annotations

from calcrm.core.config import settings

ALICE = {"X-User-Id": "user-a"}
BOB = {"X-User-Id": "user-b"}


def _create_company(client, code="ACME"):
    r = client.post("/api/v1/entities/company", headers=ALICE, json={"company_code": code, "name": "Acme"})
    assert r.status_code == 201, r.text
    return r.json()


def test_create_and_read_entity(client, profiles):
    created = _create_company(client)
    assert created["entity_type"] == "company"
    assert created["version"] == 1
    assert created["data"]["company_code"] == "ACME"
    assert created["data"]["created_by"] == "alice@example.com"

    fetched = client.get(f"/api/v1/entities/company/{created['id']}", headers=BOB)
    assert fetched.status_code == 200
    assert fetched.json()["id"] == created["id"]


def test_patch_with_current_version_bumps_version(client, profiles):
    company = _create_company(client)
    r = client.patch(
        f"/api/v1/entities/company/{company['id']}",
        headers=ALICE,
        json={"expected_version": 1, "changes": {"billing_city": "York"}},
    )
    assert r.status_code == 200, r.text
    assert r.json()["version"] == 2
    assert r.json()["data"]["billing_city"] == "York"
    assert r.json()["data"]["last_changed_by"] == "alice@example.com"


def test_stale_patch_is_rejected_with_conflict(client, profiles):
    company = _create_company(client)
    url = f"/api/v1/entities/company/{company['id']}"
    first = client.patch(url, headers=ALICE, json={"expected_version": 1, "changes": {"name": "X"}})
    assert first.status_code == 200

    stale = client.patch(url, headers=BOB, json={"expected_version": 1, "changes": {"name": "Y"}})
    assert stale.status_code == 409
    detail = stale.json()["detail"]
    assert detail["code"] == "VERSION_CONFLICT"
    assert detail["expected_version"] == 1
    assert detail["current_version"] == 2
    assert "refresh" in detail["message"]

    current = client.get(url, headers=BOB).json()
    assert current["version"] == 2
    assert current["data"]["name"] == "X"


def test_patch_missing_entity_is_404(client, profiles):
    r = client.patch(
        "/api/v1/entities/job/nope",
        headers=ALICE,
        json={"expected_version": 1, "changes": {"status": "scheduled"}},
    )
    assert r.status_code == 404


def test_patch_rejects_version_in_changes(client, profiles):
    company = _create_company(client)
    r = client.patch(
        f"/api/v1/entities/company/{company['id']}",
        headers=ALICE,
        json={"expected_version": 1, "changes": {"version": 7}},
    )
    assert r.status_code == 422


def test_patch_requires_lock_when_enforced(client, profiles, monkeypatch):
    monkeypatch.setattr(settings, "RECORD_LOCK_ENFORCE_WRITES", True)
    company = _create_company(client)
    url = f"/api/v1/entities/company/{company['id']}"

    no_lock = client.patch(url, headers=ALICE, json={"expected_version": 1, "changes": {"notes": "a"}})
    assert no_lock.status_code == 409
    assert no_lock.json()["detail"]["code"] == "LOCK_REQUIRED"

    client.post("/api/v1/locks/acquire", headers=ALICE, json={"entity_type": "company", "entity_id": company["id"]})
    not_owner = client.patch(url, headers=BOB, json={"expected_version": 1, "changes": {"notes": "b"}})
    assert not_owner.status_code == 409
    assert not_owner.json()["detail"]["code"] == "LOCK_NOT_OWNER"

    ok = client.patch(url, headers=ALICE, json={"expected_version": 1, "changes": {"notes": "a"}})
    assert ok.status_code == 200
    assert ok.json()["version"] == 2


def test_child_entities_reference_parents(client, profiles):
    company = _create_company(client)
    branch = client.post(
        "/api/v1/entities/branch",
        headers=ALICE,
        json={"company_id": company["id"], "name": "Head office"},
    )
    assert branch.status_code == 201
    orphan = client.post(
        "/api/v1/entities/branch",
        headers=ALICE,
        json={"company_id": "missing", "name": "Nowhere"},
    )
    assert orphan.status_code == 400


def test_unknown_entity_route_is_404(client, profiles):
    assert client.get("/api/v1/entities/invoice/1", headers=ALICE).status_code == 404
