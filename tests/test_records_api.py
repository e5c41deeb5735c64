from __future__ import annotations

import json
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter
from app.platform.security.policies import InMemoryPolicyBackend, set_policy_backend
from app.records.models import User


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()
    reset_rate_limiter()
    set_policy_backend(InMemoryPolicyBackend(default_allow=True))
    audit.audit_entries.clear()
    events.published_events.clear()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()
    set_policy_backend(InMemoryPolicyBackend(default_allow=True))
    audit.audit_entries.clear()
    events.published_events.clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def users(db_session: Session) -> dict[str, str]:
    admin = User(user_name="admin", name="Admin", type="admin")
    sally = User(user_name="sally", name="Sally", type="regular")
    db_session.add_all([admin, sally])
    db_session.commit()
    return {"admin": admin.id, "sally": sally.id}


def _auth(user_id: str, permissions: list[str] | None = None, roles: list[str] | None = None) -> dict[str, str]:
    token = jwt.encode(
        {"sub": user_id, "roles": roles or [], "permissions": permissions or []},
        get_settings().jwt_secret,
        algorithm="HS256",
    )
    return {"Authorization": f"Bearer {token}"}


def _create(client: TestClient, headers: dict[str, str], entity_type: str, data: dict) -> dict:
    response = client.post(f"/api/v1/{entity_type}", json=data, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()


def test_record_crud_flow(client: TestClient, users: dict[str, str]) -> None:
    admin = _auth(users["admin"])

    created = _create(client, admin, "Account", {"name": "Acme", "website": "acme.test"})
    assert created["website"] == "https://acme.test"
    assert created["is_followed"] is True
    account_id = created["id"]

    read = client.get(f"/api/v1/Account/{account_id}", headers=admin)
    assert read.status_code == 200
    assert read.json()["name"] == "Acme"

    updated = client.patch(f"/api/v1/Account/{account_id}", json={"name": "Acme Corp"}, headers=admin)
    assert updated.status_code == 200
    assert updated.json()["name"] == "Acme Corp"

    listed = client.get("/api/v1/Account", params={"select": "name"}, headers=admin)
    assert listed.status_code == 200
    assert listed.json() == {"total": 1, "list": [{"id": account_id, "name": "Acme Corp"}]}

    deleted = client.delete(f"/api/v1/Account/{account_id}", headers=admin)
    assert deleted.json() == {"status": "deleted"}
    assert client.get("/api/v1/Account", headers=admin).json()["total"] == 0

    restored = client.post("/api/v1/Account/action/restoreDeleted", json={"id": account_id}, headers=admin)
    assert restored.json() == {"status": "restored"}
    assert client.get("/api/v1/Account", headers=admin).json()["total"] == 1

    event_types = [item["event_type"] for item in events.published_events]
    assert event_types == [
        "record.Account.created",
        "record.Account.updated",
        "record.Account.deleted",
        "record.Account.restored",
    ]


def test_validation_failure_uses_error_envelope(client: TestClient, users: dict[str, str]) -> None:
    response = client.post(
        "/api/v1/Opportunity",
        json={"name": "No date"},
        headers={**_auth(users["admin"]), "X-Correlation-Id": "corr-validation-1"},
    )

    assert response.status_code == 400
    body = response.json()
    assert body["code"] == "record_create_failed"
    assert body["details"] == {"field": "close_date", "type": "required"}
    assert body["correlation_id"] == "corr-validation-1"


def test_duplicate_returns_conflict_details(client: TestClient, users: dict[str, str]) -> None:
    admin = _auth(users["admin"])
    original = _create(client, admin, "Account", {"name": "Acme"})

    conflict = client.post("/api/v1/Account", json={"name": "acme"}, headers=admin)
    assert conflict.status_code == 409
    details = conflict.json()["details"]
    assert details["reason"] == "duplicate"
    assert details["data"] == [{"id": original["id"], "name": "Acme", "email_address": None}]

    forced = client.post("/api/v1/Account", json={"name": "acme", "_skip_duplicate_check": True}, headers=admin)
    assert forced.status_code == 201


def test_unknown_and_internal_entity_types(client: TestClient, users: dict[str, str]) -> None:
    admin = _auth(users["admin"])

    unknown = client.get("/api/v1/Spaceship", headers=admin)
    assert unknown.status_code == 404
    assert unknown.json()["code"] == "record_list_failed"

    assert client.get("/api/v1/Attachment", headers=admin).status_code == 404


def test_authentication_is_required(client: TestClient, users: dict[str, str]) -> None:
    assert client.get("/api/v1/Account").status_code == 401
    assert client.get("/api/v1/Account", headers={"Authorization": "Bearer not-a-token"}).status_code == 401
    assert client.get("/api/v1/Account", headers=_auth("no-such-user")).status_code == 401


def test_list_filters(client: TestClient, users: dict[str, str]) -> None:
    admin = _auth(users["admin"])
    _create(client, admin, "Account", {"name": "Acme", "type": "Customer"})
    _create(client, admin, "Account", {"name": "Globex", "type": "Partner"})
    _create(client, admin, "Account", {"name": "Initech", "type": "Customer"})

    customers = client.get(
        "/api/v1/Account",
        params={"primaryFilter": "customers", "orderBy": "name", "order": "asc"},
        headers=admin,
    ).json()
    assert [item["name"] for item in customers["list"]] == ["Acme", "Initech"]

    where = json.dumps([{"type": "startsWith", "attribute": "name", "value": "Glo"}])
    filtered = client.get("/api/v1/Account", params={"where": where}, headers=admin).json()
    assert [item["name"] for item in filtered["list"]] == ["Globex"]

    paged = client.get("/api/v1/Account", params={"maxSize": "1", "orderBy": "name", "asc": "true"}, headers=admin).json()
    assert paged["total"] == 3
    assert [item["name"] for item in paged["list"]] == ["Acme"]

    bad = client.get("/api/v1/Account", params={"where": "{not json"}, headers=admin)
    assert bad.status_code == 400
    assert bad.json()["code"] == "record_list_failed"


def test_token_permissions_restrict_access(client: TestClient, users: dict[str, str]) -> None:
    admin = _auth(users["admin"])
    mine = _create(client, admin, "Account", {"name": "Mine", "assigned_user_id": users["sally"]})
    theirs = _create(client, admin, "Account", {"name": "Theirs"})

    sally = _auth(users["sally"], permissions=["Account.read:own"])

    listed = client.get("/api/v1/Account", headers=sally).json()
    assert listed["total"] == 1
    assert listed["list"][0]["id"] == mine["id"]

    forbidden = client.get(f"/api/v1/Account/{theirs['id']}", headers=sally)
    assert forbidden.status_code == 403
    assert forbidden.json()["code"] == "record_read_failed"

    restore = client.post("/api/v1/Account/action/restoreDeleted", json={"id": mine["id"]}, headers=sally)
    assert restore.status_code == 403


def test_masked_field_in_response(client: TestClient, users: dict[str, str]) -> None:
    contact = _create(
        client,
        _auth(users["admin"]),
        "Contact",
        {"first_name": "Jane", "last_name": "Doe", "email_address": "jane@example.com"},
    )

    sally = _auth(users["sally"], permissions=["Contact.field.mask:email_address"])
    body = client.get(f"/api/v1/Contact/{contact['id']}", headers=sally).json()

    assert body["email_address"] == "***"
    assert body["name"] == "Jane Doe"


def test_link_list_and_unlink(client: TestClient, users: dict[str, str]) -> None:
    admin = _auth(users["admin"])
    account = _create(client, admin, "Account", {"name": "Acme"})
    contact = _create(client, admin, "Contact", {"first_name": "Jane", "last_name": "Doe"})
    base = f"/api/v1/Account/{account['id']}/contacts"

    linked = client.post(base, json={"id": contact["id"]}, headers=admin)
    assert linked.json() == {"result": True}
    assert client.get(base, headers=admin).json()["total"] == 1

    unlinked = client.delete(base, params={"id": contact["id"]}, headers=admin)
    assert unlinked.json() == {"result": True}
    assert client.get(base, headers=admin).json()["total"] == 0

    missing_id = client.post(base, json={}, headers=admin)
    assert missing_id.status_code == 400
    assert missing_id.json()["code"] == "record_link_failed"

    unknown_link = client.post(f"/api/v1/Account/{account['id']}/nope", json={"id": contact["id"]}, headers=admin)
    assert unknown_link.status_code == 500
    assert unknown_link.json()["code"] == "record_link_failed"


def test_mass_relate_and_linked_select(client: TestClient, users: dict[str, str]) -> None:
    admin = _auth(users["admin"])
    jane = _create(client, admin, "Contact", {"first_name": "Jane", "last_name": "Doe"})
    _create(client, admin, "Contact", {"first_name": "John", "last_name": "Doe"})
    opportunity = _create(client, admin, "Opportunity", {"name": "Deal", "close_date": "2026-12-31"})

    related = client.post(
        f"/api/v1/Opportunity/{opportunity['id']}/contacts",
        json={"massRelate": True, "where": [{"type": "equals", "attribute": "last_name", "value": "Doe"}]},
        headers=admin,
    )
    assert related.json() == {"result": True}
    assert client.get(f"/api/v1/Opportunity/{opportunity['id']}/contacts", headers=admin).json()["total"] == 2

    linked = client.get(f"/api/v1/Contact/{jane['id']}/opportunities", params={"select": "name"}, headers=admin).json()
    assert linked["total"] == -2
    assert linked["list"] == [{"id": opportunity["id"], "name": "Deal", "stage": "Prospecting"}]


def test_subscription_endpoints(client: TestClient, users: dict[str, str]) -> None:
    account = _create(client, _auth(users["admin"]), "Account", {"name": "Acme"})
    sally = _auth(users["sally"])
    url = f"/api/v1/Account/{account['id']}/subscription"

    assert client.put(url, headers=sally).json() == {"status": "followed"}
    assert client.get(f"/api/v1/Account/{account['id']}", headers=sally).json()["is_followed"] is True

    assert client.delete(url, headers=sally).json() == {"status": "unfollowed"}
    assert client.get(f"/api/v1/Account/{account['id']}", headers=sally).json()["is_followed"] is False


def test_export_and_download(client: TestClient, users: dict[str, str]) -> None:
    admin = _auth(users["admin"])
    _create(client, admin, "Account", {"name": "Acme"})

    exported = client.post("/api/v1/Account/action/export", json={"fieldList": ["name"]}, headers=admin)
    assert exported.status_code == 200
    attachment_id = exported.json()["id"]

    download = client.get(f"/api/v1/Attachment/{attachment_id}/download", headers=admin)
    assert download.status_code == 200
    assert download.headers["content-type"].startswith("text/csv")
    lines = download.text.splitlines()
    assert lines[0] == "id,name"
    assert lines[1].endswith(",Acme")

    other = client.get(f"/api/v1/Attachment/{attachment_id}/download", headers=_auth(users["sally"]))
    assert other.status_code == 403
    assert other.json()["code"] == "record_download_failed"

    denied = client.post(
        "/api/v1/Account/action/export",
        json={},
        headers=_auth(users["sally"], permissions=["permission.export:no"]),
    )
    assert denied.status_code == 403
    assert denied.json()["code"] == "record_export_failed"


def test_duplicate_actions(client: TestClient, users: dict[str, str]) -> None:
    admin = _auth(users["admin"])
    account = _create(client, admin, "Account", {"name": "Acme", "email_address": "info@acme.test"})

    attributes = client.get(
        "/api/v1/Account/action/getDuplicateAttributes",
        params={"id": account["id"]},
        headers=admin,
    ).json()
    assert attributes["name"] == "Acme"
    assert attributes["_duplicating_entity_id"] == account["id"]
    assert "id" not in attributes

    duplicates = client.post(
        "/api/v1/Account/action/checkForDuplicates",
        json={"attributes": {"name": "ACME"}},
        headers=admin,
    ).json()
    assert duplicates["total"] == 1
    assert duplicates["list"][0]["id"] == account["id"]


def test_events_and_audit_carry_correlation_id(client: TestClient, users: dict[str, str]) -> None:
    response = client.post(
        "/api/v1/Account",
        json={"name": "Acme"},
        headers={**_auth(users["admin"]), "X-Correlation-Id": "corr-event-1"},
    )
    assert response.status_code == 201
    assert events.published_events[-1]["correlation_id"] == "corr-event-1"

    sally = _auth(users["sally"], permissions=["Account.edit:own"])
    denied = client.patch(
        f"/api/v1/Account/{response.json()['id']}",
        json={"name": "Renamed"},
        headers={**sally, "X-Correlation-Id": "corr-audit-1"},
    )
    assert denied.status_code == 403
    entries = audit.entries_for("acl.denied")
    assert entries
    assert entries[-1]["correlation_id"] == "corr-audit-1"


def test_health_and_me(client: TestClient, users: dict[str, str]) -> None:
    assert client.get("/health").json()["status"] == "ok"

    me = client.get("/me", headers=_auth(users["sally"], roles=["Sales"])).json()
    assert me["id"] == users["sally"]
    assert me["is_admin"] is False
    assert me["roles"] == ["Sales"]
