from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import get_settings
from app.core.database import Base, get_db
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter
from app.platform.security.policies import DbPolicyBackend, InMemoryPolicyBackend, set_policy_backend
from app.records.models import Team, User, UserTeam


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
def setup_env(monkeypatch: pytest.MonkeyPatch, db_session: Session) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()
    set_policy_backend(DbPolicyBackend(session_factory=sessionmaker(bind=db_session.bind), default_allow=True))
    reset_rate_limiter()
    yield
    set_policy_backend(InMemoryPolicyBackend(default_allow=True))
    get_settings.cache_clear()
    reset_rate_limiter()


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


def _auth(user_id: str) -> dict[str, str]:
    token = jwt.encode({"sub": user_id, "roles": [], "permissions": []}, get_settings().jwt_secret, algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}


def test_admin_endpoints_require_admin(client: TestClient, users: dict[str, str]) -> None:
    response = client.get("/api/v1/admin/roles", headers=_auth(users["sally"]))

    assert response.status_code == 403
    body = response.json()
    assert body["code"] == "forbidden"
    assert body["message"] == "Only administrators can manage roles."


def test_role_and_permission_crud(client: TestClient, users: dict[str, str]) -> None:
    admin = _auth(users["admin"])

    role = client.post("/api/v1/admin/roles", json={"name": "Reps", "description": "Field sales"}, headers=admin)
    assert role.status_code == 201
    role_id = role.json()["id"]

    duplicate = client.post("/api/v1/admin/roles", json={"name": "Reps"}, headers=admin)
    assert duplicate.status_code == 409

    renamed = client.patch(f"/api/v1/admin/roles/{role_id}", json={"name": "Sales reps"}, headers=admin)
    assert renamed.status_code == 200
    assert renamed.json()["name"] == "Sales reps"

    permission = client.post(
        "/api/v1/admin/permissions",
        json={"resource": "Account", "action": "READ", "level": "Own"},
        headers=admin,
    )
    assert permission.status_code == 201
    assert permission.json()["action"] == "read"
    assert permission.json()["level"] == "own"
    permission_id = permission.json()["id"]

    attached = client.post(
        f"/api/v1/admin/roles/{role_id}/permissions",
        json={"permission_id": permission_id},
        headers=admin,
    )
    assert attached.status_code == 201
    assert attached.json()["role_name"] == "Sales reps"

    listed = client.get(f"/api/v1/admin/roles/{role_id}/permissions", headers=admin).json()
    assert [item["permission_id"] for item in listed] == [permission_id]

    detached = client.delete(f"/api/v1/admin/roles/{role_id}/permissions/{permission_id}", headers=admin)
    assert detached.status_code == 200
    assert client.get(f"/api/v1/admin/roles/{role_id}/permissions", headers=admin).json() == []

    assert client.delete(f"/api/v1/admin/permissions/{permission_id}", headers=admin).status_code == 200
    assert client.get("/api/v1/admin/permissions", headers=admin).json() == []


def test_invalid_level_is_rejected(client: TestClient, users: dict[str, str]) -> None:
    response = client.post(
        "/api/v1/admin/permissions",
        json={"resource": "Account", "action": "read", "level": "galaxy"},
        headers=_auth(users["admin"]),
    )

    assert response.status_code == 422
    body = response.json()
    assert body["code"] == "invalid_access_level"
    assert body["details"]["value"] == "galaxy"
    assert "team" in body["details"]["allowed"]


def test_system_role_is_protected(client: TestClient, users: dict[str, str]) -> None:
    admin = _auth(users["admin"])
    role_id = client.post("/api/v1/admin/roles", json={"name": "Locked", "is_system": True}, headers=admin).json()["id"]

    assert client.patch(f"/api/v1/admin/roles/{role_id}", json={"name": "Other"}, headers=admin).status_code == 400
    assert client.delete(f"/api/v1/admin/roles/{role_id}", headers=admin).status_code == 400


def test_assigned_role_restricts_record_access(client: TestClient, users: dict[str, str]) -> None:
    admin = _auth(users["admin"])
    sally = _auth(users["sally"])

    mine = client.post("/api/v1/Account", json={"name": "Mine", "assigned_user_id": users["sally"]}, headers=admin)
    theirs = client.post("/api/v1/Account", json={"name": "Theirs"}, headers=admin)
    assert mine.status_code == 201 and theirs.status_code == 201

    role_id = client.post("/api/v1/admin/roles", json={"name": "Own accounts"}, headers=admin).json()["id"]
    permission_id = client.post(
        "/api/v1/admin/permissions",
        json={"resource": "Account", "action": "read", "level": "own"},
        headers=admin,
    ).json()["id"]
    client.post(f"/api/v1/admin/roles/{role_id}/permissions", json={"permission_id": permission_id}, headers=admin)

    assigned = client.post(f"/api/v1/admin/users/{users['sally']}/roles", json={"role_id": role_id}, headers=admin)
    assert assigned.status_code == 201
    assert assigned.json()["role_name"] == "Own accounts"

    listed = client.get("/api/v1/Account", headers=sally).json()
    assert [item["id"] for item in listed["list"]] == [mine.json()["id"]]
    assert client.get(f"/api/v1/Account/{theirs.json()['id']}", headers=sally).status_code == 403

    assignments = client.get("/api/v1/admin/user-role-assignments", headers=admin).json()
    assert [(item["user_id"], item["role_name"]) for item in assignments] == [(users["sally"], "Own accounts")]

    removed = client.delete(f"/api/v1/admin/users/{users['sally']}/roles/{role_id}", headers=admin)
    assert removed.status_code == 200
    assert client.get("/api/v1/Account", headers=sally).json()["total"] == 2


def test_assign_role_to_unknown_user(client: TestClient, users: dict[str, str]) -> None:
    admin = _auth(users["admin"])
    role_id = client.post("/api/v1/admin/roles", json={"name": "Reps"}, headers=admin).json()["id"]

    response = client.post("/api/v1/admin/users/nobody/roles", json={"role_id": role_id}, headers=admin)

    assert response.status_code == 404


@pytest.mark.parametrize(
    ("rule", "message"),
    [
        ({"resource": "Invoice", "action": "read"}, "Unknown resource 'Invoice'."),
        ({"resource": "Account", "action": "archive"}, "Unknown action 'archive'."),
        ({"resource": "Account", "action": "field.mask", "field": "shoe_size"}, "Unknown field 'shoe_size' for Account."),
        ({"resource": "Account", "action": "field.read", "field": "name", "level": "all"}, "Field rules do not take a level."),
        ({"resource": "Account", "action": "read", "field": "name"}, "Record rules do not take a field."),
        ({"resource": "permission", "action": "teleport", "level": "yes"}, "Unknown permission 'teleport'."),
    ],
)
def test_rules_are_checked_against_entity_definitions(
    client: TestClient,
    users: dict[str, str],
    rule: dict[str, str],
    message: str,
) -> None:
    response = client.post("/api/v1/admin/permissions", json=rule, headers=_auth(users["admin"]))

    assert response.status_code == 400
    assert response.json()["code"] == "bad_request"
    assert response.json()["message"] == message


def test_rule_resource_is_normalized_and_field_defaults_to_wildcard(client: TestClient, users: dict[str, str]) -> None:
    admin = _auth(users["admin"])

    record_rule = client.post("/api/v1/admin/permissions", json={"resource": "account", "action": "edit", "level": "team"}, headers=admin)
    field_rule = client.post("/api/v1/admin/permissions", json={"resource": "Contact", "action": "Field.Mask"}, headers=admin)

    assert record_rule.status_code == 201
    assert record_rule.json()["resource"] == "Account"
    assert field_rule.status_code == 201
    assert field_rule.json()["action"] == "field.mask"
    assert field_rule.json()["field"] == "*"
    assert field_rule.json()["level"] is None

    updated = client.patch(
        f"/api/v1/admin/permissions/{record_rule.json()['id']}",
        json={"level": "own", "description": "Own edits only"},
        headers=admin,
    )
    assert updated.status_code == 200
    assert updated.json()["level"] == "own"
    assert updated.json()["action"] == "edit"
    assert updated.json()["description"] == "Own edits only"


def test_role_detail_lists_rules_and_holders(client: TestClient, users: dict[str, str], db_session: Session) -> None:
    admin = _auth(users["admin"])
    team = Team(name="West")
    db_session.add(team)
    db_session.commit()

    role_id = client.post("/api/v1/admin/roles", json={"name": "Exporters"}, headers=admin).json()["id"]
    permission_id = client.post(
        "/api/v1/admin/permissions",
        json={"resource": "permission", "action": "export", "level": "no"},
        headers=admin,
    ).json()["id"]
    client.post(f"/api/v1/admin/roles/{role_id}/permissions", json={"permission_id": permission_id}, headers=admin)
    client.post(f"/api/v1/admin/users/{users['sally']}/roles", json={"role_id": role_id}, headers=admin)
    client.post(f"/api/v1/admin/teams/{team.id}/roles", json={"role_id": role_id}, headers=admin)

    detail = client.get(f"/api/v1/admin/roles/{role_id}", headers=admin)

    assert detail.status_code == 200
    body = detail.json()
    assert body["name"] == "Exporters"
    assert [(rule["resource"], rule["action"], rule["level"]) for rule in body["rules"]] == [("permission", "export", "no")]
    assert body["user_ids"] == [users["sally"]]
    assert body["team_ids"] == [team.id]

    missing = client.get("/api/v1/admin/roles/00000000-0000-0000-0000-000000000000", headers=admin)
    assert missing.status_code == 404
    assert missing.json()["message"] == "Role not found."


def test_team_role_applies_to_team_members(client: TestClient, users: dict[str, str], db_session: Session) -> None:
    admin = _auth(users["admin"])
    sally = _auth(users["sally"])
    team = Team(name="East")
    db_session.add(team)
    db_session.flush()
    db_session.add(UserTeam(user_id=users["sally"], team_id=team.id))
    db_session.commit()

    mine = client.post("/api/v1/Account", json={"name": "Mine", "assigned_user_id": users["sally"]}, headers=admin)
    client.post("/api/v1/Account", json={"name": "Theirs"}, headers=admin)

    role_id = client.post("/api/v1/admin/roles", json={"name": "East reps"}, headers=admin).json()["id"]
    permission_id = client.post(
        "/api/v1/admin/permissions",
        json={"resource": "Account", "action": "read", "level": "own"},
        headers=admin,
    ).json()["id"]
    client.post(f"/api/v1/admin/roles/{role_id}/permissions", json={"permission_id": permission_id}, headers=admin)

    assigned = client.post(f"/api/v1/admin/teams/{team.id}/roles", json={"role_id": role_id}, headers=admin)
    assert assigned.status_code == 201
    assert assigned.json()["team_name"] == "East"
    assert assigned.json()["role_name"] == "East reps"

    listed = client.get("/api/v1/Account", headers=sally).json()
    assert [item["id"] for item in listed["list"]] == [mine.json()["id"]]

    team_roles = client.get(f"/api/v1/admin/teams/{team.id}/roles", headers=admin).json()
    assert [item["role_name"] for item in team_roles] == ["East reps"]

    assert client.delete(f"/api/v1/admin/teams/{team.id}/roles/{role_id}", headers=admin).status_code == 200
    assert client.get("/api/v1/Account", headers=sally).json()["total"] == 2
    assert client.delete(f"/api/v1/admin/teams/{team.id}/roles/{role_id}", headers=admin).status_code == 404


def test_assign_role_to_unknown_team(client: TestClient, users: dict[str, str]) -> None:
    admin = _auth(users["admin"])
    role_id = client.post("/api/v1/admin/roles", json={"name": "Reps"}, headers=admin).json()["id"]

    response = client.post("/api/v1/admin/teams/nowhere/roles", json={"role_id": role_id}, headers=admin)

    assert response.status_code == 404
    assert response.json()["message"] == "Team not found."
