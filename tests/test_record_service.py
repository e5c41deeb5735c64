from __future__ import annotations

from collections.abc import Generator

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.core.auth import build_auth_context
from app.core.config import Settings
from app.core.database import Base
from app.core.events import InternalEvent, event_bus
from app.crm.metadata import build_metadata
from app.crm.models import Account, Contact, ContactOpportunity
from app.crm.services import SERVICE_CLASSES, AccountService
from app.platform.security.acl import Acl
from app.platform.security.policies import InMemoryPolicyBackend, set_policy_backend
from app.records.collection import TOTAL_HAS_MORE, TOTAL_HAS_NO_MORE
from app.records.container import RecordServiceContainer
from app.records.entity_manager import EntityManager
from app.records.errors import BadRequest, ConflictSilent, Error, Forbidden, ForbiddenSilent, NotFound, NotFoundSilent
from app.records.models import ActionHistoryRecord, Attachment, EntityTeam, Follow, Team, User, UserTeam
from app.records.select import SearchParams


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
def setup_env() -> Generator[None, None, None]:
    set_policy_backend(InMemoryPolicyBackend(default_allow=True))
    audit.audit_entries.clear()
    events.published_events.clear()
    yield
    set_policy_backend(InMemoryPolicyBackend(default_allow=True))
    audit.audit_entries.clear()
    events.published_events.clear()


def _user(
    session: Session,
    user_name: str,
    *,
    user_type: str = "regular",
    teams: tuple[Team, ...] = (),
    default_team: Team | None = None,
) -> User:
    user = User(
        user_name=user_name,
        name=user_name.title(),
        type=user_type,
        default_team_id=default_team.id if default_team is not None else None,
    )
    session.add(user)
    session.flush()
    for team in teams:
        session.add(UserTeam(user_id=user.id, team_id=team.id))
    session.commit()
    return user


def _team(session: Session, name: str) -> Team:
    team = Team(name=name)
    session.add(team)
    session.commit()
    return team


def _container(
    session: Session,
    user: User,
    permissions: list[str] | None = None,
    *,
    settings: Settings | None = None,
    service_classes: dict | None = None,
) -> RecordServiceContainer:
    entity_manager = EntityManager(session, build_metadata())
    entity_manager.set_user(user)
    ctx = build_auth_context(session, user, permissions=permissions or [])
    return RecordServiceContainer(
        entity_manager,
        Acl(ctx, entity_manager),
        settings=settings,
        service_classes=service_classes,
    )


@pytest.fixture()
def admin(db_session: Session) -> User:
    return _user(db_session, "admin", user_type="admin")


def test_create_filters_system_attributes_and_follows_creator(db_session: Session, admin: User) -> None:
    service = _container(db_session, admin).get("Account")

    entity = service.create({"id": "forced-id", "created_by_id": "someone", "name": "Acme", "website": "acme.test"})

    assert entity.id != "forced-id"
    assert entity.get("created_by_id") == admin.id
    assert entity.get("website") == "https://acme.test"
    assert entity.get("is_followed") is True
    assert entity.get("followers_ids") == [admin.id]

    history = db_session.scalars(
        select(ActionHistoryRecord.action).where(ActionHistoryRecord.target_id == entity.id)
    ).all()
    assert history == ["create"]
    assert events.published_events[-1]["event_type"] == "record.Account.created"
    assert events.published_events[-1]["entity_id"] == entity.id


def test_create_validation_failure(db_session: Session, admin: User) -> None:
    service = _container(db_session, admin).get("Opportunity")

    with pytest.raises(BadRequest) as exc_info:
        service.create({"name": "No date"})

    assert exc_info.value.body == {"field": "close_date", "type": "required"}
    assert events.published_events == []


def test_opportunity_defaults_and_stage_probability(db_session: Session, admin: User) -> None:
    service = _container(db_session, admin).get("Opportunity")

    entity = service.create({"name": "Deal", "close_date": "2026-12-31", "amount": 100})
    assert entity.get("stage") == "Prospecting"
    assert entity.get("probability") == 10
    assert entity.get("amount_currency") == "USD"

    updated = service.update(str(entity.id), {"stage": "Closed Won"})
    assert updated.get("probability") == 100
    assert events.published_events[-1]["event_type"] == "record.Opportunity.updated"
    assert events.published_events[-1]["payload"]["changed_attributes"] == ["stage"]


def test_contact_name_is_composed(db_session: Session, admin: User) -> None:
    service = _container(db_session, admin).get("Contact")

    entity = service.create(
        {"first_name": "Jane", "last_name": "Doe", "name": "Ignored", "email_address": " Jane@Example.COM "}
    )
    assert entity.get("name") == "Jane Doe"
    assert entity.get("email_address") == "jane@example.com"

    updated = service.update(str(entity.id), {"last_name": "Smith"})
    assert updated.get("name") == "Jane Smith"


def test_duplicate_account_is_rejected(db_session: Session, admin: User) -> None:
    service = _container(db_session, admin).get("Account")
    original = service.create({"name": "Acme", "email_address": "info@acme.test"})

    with pytest.raises(ConflictSilent) as exc_info:
        service.create({"name": "ACME"})

    assert exc_info.value.status_code == 409
    assert exc_info.value.body["reason"] == "duplicate"
    assert exc_info.value.body["data"] == [{"id": original.id, "name": "Acme", "email_address": "info@acme.test"}]

    forced = service.create({"name": "ACME", "_skip_duplicate_check": True})
    assert forced.id != original.id


def test_check_for_duplicates_does_not_persist(db_session: Session, admin: User) -> None:
    service = _container(db_session, admin).get("Account")
    original = service.create({"name": "Acme", "email_address": "info@acme.test"})

    duplicates = service.check_for_duplicates({"name": "Other", "email_address": "INFO@ACME.TEST"})

    assert [item["id"] for item in duplicates] == [original.id]
    assert len(db_session.scalars(select(Account.id)).all()) == 1


def test_read_respects_own_level(db_session: Session, admin: User) -> None:
    user = _user(db_session, "sally")
    other = _user(db_session, "other")
    admin_service = _container(db_session, admin).get("Account")
    mine = admin_service.create({"name": "Mine", "assigned_user_id": user.id})
    theirs = admin_service.create({"name": "Theirs", "assigned_user_id": other.id})

    service = _container(db_session, user, ["Account.*:own"]).get("Account")

    assert service.read(str(mine.id)).get("name") == "Mine"
    with pytest.raises(ForbiddenSilent):
        service.read(str(theirs.id))
    with pytest.raises(NotFoundSilent):
        service.read("missing")

    history = db_session.scalars(
        select(ActionHistoryRecord.action).where(
            ActionHistoryRecord.target_id == mine.id,
            ActionHistoryRecord.user_id == user.id,
        )
    ).all()
    assert history == ["read"]


def test_update_requires_edit_access(db_session: Session, admin: User) -> None:
    user = _user(db_session, "sally")
    theirs = _container(db_session, admin).get("Account").create({"name": "Theirs"})

    service = _container(db_session, user, ["Account.edit:own"]).get("Account")

    with pytest.raises(ForbiddenSilent):
        service.update(str(theirs.id), {"name": "Renamed"})
    with pytest.raises(NotFound):
        service.update("missing", {"name": "Renamed"})


def test_find_applies_access_control_and_paging(db_session: Session, admin: User) -> None:
    user = _user(db_session, "sally")
    admin_service = _container(db_session, admin).get("Account")
    admin_service.create({"name": "One", "assigned_user_id": user.id})
    admin_service.create({"name": "Two", "assigned_user_id": user.id})
    admin_service.create({"name": "Three"})

    service = _container(db_session, user, ["Account.read:own"]).get("Account")

    collection = service.find(SearchParams())
    assert collection.total == 2
    assert sorted(entity.get("name") for entity in collection) == ["One", "Two"]

    page = service.find(SearchParams(max_size=1, order_by="name", order="asc"))
    assert page.total == 2
    assert [entity.get("name") for entity in page] == ["One"]

    output = page.to_api_output(["name"])
    assert set(output["list"][0]) == {"id", "name"}


def test_find_clamps_max_size(db_session: Session, admin: User) -> None:
    service = _container(db_session, admin, settings=Settings(record_list_max_size_limit=2)).get("Account")
    for name in ("One", "Two", "Three"):
        service.create({"name": name})

    collection = service.find(SearchParams(max_size=50))

    assert len(collection) == 2
    assert collection.total == 3


def test_find_without_count_query(db_session: Session, admin: User) -> None:
    class NoCountAccountService(AccountService):
        list_count_query_disabled = True

    service = _container(
        db_session,
        admin,
        service_classes={**SERVICE_CLASSES, "Account": NoCountAccountService},
    ).get("Account")
    for name in ("One", "Two", "Three"):
        service.create({"name": name})

    more = service.find(SearchParams(max_size=2))
    assert len(more) == 2
    assert more.total == TOTAL_HAS_MORE

    no_more = service.find(SearchParams(max_size=5))
    assert len(no_more) == 3
    assert no_more.total == TOTAL_HAS_NO_MORE


def test_find_truncates_long_text(db_session: Session, admin: User) -> None:
    service = _container(db_session, admin).get("Account")
    entity = service.create({"name": "Verbose", "description": "x" * 6000})

    listed = service.find(SearchParams()).entities[0]
    assert len(listed.get("description")) == 5000

    assert len(service.read(str(entity.id)).get("description")) == 6000
    assert len(db_session.get(Account, entity.id).description) == 6000


def test_masked_and_denied_fields(db_session: Session, admin: User) -> None:
    user = _user(db_session, "sally")
    contact = _container(db_session, admin).get("Contact").create(
        {"last_name": "Doe", "email_address": "doe@example.com", "phone_number": "555-0100"}
    )

    service = _container(
        db_session,
        user,
        ["Contact.field.mask:email_address", "!Contact.field.read:phone_number"],
    ).get("Contact")

    values = service.read(str(contact.id)).get_value_map()
    assert values["email_address"] == "***"
    assert "phone_number" not in values
    assert values["last_name"] == "Doe"

    listed = service.find(SearchParams()).entities[0].get_value_map()
    assert listed["email_address"] == "***"

    db_session.expire_all()
    assert db_session.get(Contact, contact.id).email_address == "doe@example.com"


def test_field_rules_cover_every_attribute_of_a_link_field(db_session: Session, admin: User) -> None:
    user = _user(db_session, "sally")
    admin_container = _container(db_session, admin)
    acme = admin_container.get("Account").create({"name": "Acme"})
    contact = admin_container.get("Contact").create({"last_name": "Doe", "account_id": acme.id, "email_address": "doe@example.com"})

    service = _container(
        db_session,
        user,
        ["!Contact.field.read:account", "Contact.field.mask:email_address"],
    ).get("Contact")
    values = service.read(str(contact.id)).get_value_map()

    assert "account_id" not in values
    assert "account_name" not in values
    assert values["email_address"] == "***"

    entry = audit.entries_for("fls.read")[-1]
    assert entry["entity_id"] == contact.id
    assert entry["after"]["resource"] == "Contact"
    assert entry["after"]["masked_fields"] == ["email_address"]
    assert "account_id" in entry["after"]["denied_fields"]


def test_edit_forbidden_fields_get_defaults(db_session: Session, admin: User) -> None:
    team = _team(db_session, "East")
    user = _user(db_session, "sally", teams=(team,), default_team=team)
    other = _user(db_session, "other")

    service = _container(
        db_session,
        user,
        ["!Account.field.edit:assigned_user", "!Account.field.edit:teams"],
    ).get("Account")

    entity = service.create({"name": "Mine", "assigned_user_id": other.id, "teams_ids": []})

    assert entity.get("assigned_user_id") == user.id
    assert entity.get("teams_ids") == [team.id]
    rows = db_session.scalars(select(EntityTeam.team_id).where(EntityTeam.entity_id == entity.id)).all()
    assert rows == [team.id]


def test_assignment_permission(db_session: Session, admin: User) -> None:
    team = _team(db_session, "East")
    user = _user(db_session, "sally", teams=(team,))
    teammate = _user(db_session, "mate", teams=(team,))
    stranger = _user(db_session, "stranger")

    team_service = _container(db_session, user, ["permission.assignment:team"]).get("Account")
    with pytest.raises(Forbidden):
        team_service.create({"name": "Stranger's", "assigned_user_id": stranger.id})
    assert team_service.create({"name": "Mate's", "assigned_user_id": teammate.id}).get("assigned_user_id") == teammate.id

    no_service = _container(db_session, user, ["permission.assignment:no"]).get("Account")
    with pytest.raises(Forbidden):
        no_service.create({"name": "Nobody's"})
    assert no_service.create({"name": "Sally's", "assigned_user_id": user.id}).get("assigned_user_id") == user.id


def test_delete_and_restore(db_session: Session, admin: User) -> None:
    user = _user(db_session, "sally")
    admin_service = _container(db_session, admin).get("Account")
    entity = admin_service.create({"name": "Doomed"})
    entity_id = str(entity.id)

    service = _container(db_session, user).get("Account")
    service.delete(entity_id)
    assert events.published_events[-1]["event_type"] == "record.Account.deleted"

    with pytest.raises(NotFoundSilent):
        service.read(entity_id)
    assert admin_service.read(entity_id).is_deleted()

    with pytest.raises(Forbidden):
        service.restore_deleted(entity_id)

    admin_service.restore_deleted(entity_id)
    assert events.published_events[-1]["event_type"] == "record.Account.restored"
    assert service.read(entity_id).get("name") == "Doomed"

    with pytest.raises(Forbidden):
        admin_service.restore_deleted(entity_id)


def test_user_and_team_rules(db_session: Session, admin: User) -> None:
    user = _user(db_session, "sally")
    container = _container(db_session, user)

    with pytest.raises(Forbidden):
        container.get("User").create({"user_name": "new"})
    with pytest.raises(Forbidden):
        container.get("Team").create({"name": "New team"})
    with pytest.raises(Forbidden):
        container.get("User").delete(user.id)

    created = _container(db_session, admin).get("User").create({"user_name": "new", "type": "regular"})
    assert created.get("user_name") == "new"


def test_regular_user_cannot_join_teams_through_own_record(db_session: Session, admin: User) -> None:
    own = _team(db_session, "Own")
    secret = _team(db_session, "Secret")
    eve = _user(db_session, "eve", teams=(own,), default_team=own)

    service = _container(db_session, eve, ["User.*:own"]).get("User")
    updated = service.update(eve.id, {"name": "Eve Adams", "teams_ids": [own.id, secret.id], "teams_names": {}})

    assert updated.get("name") == "Eve Adams"
    team_ids = db_session.scalars(select(UserTeam.team_id).where(UserTeam.user_id == eve.id)).all()
    assert list(team_ids) == [own.id]

    _container(db_session, admin).get("User").update(eve.id, {"teams_ids": [own.id, secret.id]})
    team_ids = db_session.scalars(select(UserTeam.team_id).where(UserTeam.user_id == eve.id)).all()
    assert set(team_ids) == {own.id, secret.id}


def test_order_by_read_forbidden_field_name(db_session: Session, admin: User) -> None:
    user = _user(db_session, "sally")
    _container(db_session, admin).get("Account").create({"name": "Acme", "assigned_user_id": user.id})

    service = _container(
        db_session,
        user,
        ["Account.*:all", "!Account.field.read:assigned_user"],
    ).get("Account")

    with pytest.raises(Forbidden):
        service.find(SearchParams(order_by="assigned_user"))
    with pytest.raises(Forbidden):
        service.find(SearchParams(order_by="assigned_user_id"))

    assert service.find(SearchParams(order_by="name")).total == 1


def test_link_has_many_and_find_linked(db_session: Session, admin: User) -> None:
    container = _container(db_session, admin)
    account = container.get("Account").create({"name": "Acme"})
    contact = container.get("Contact").create({"first_name": "Jane", "last_name": "Doe"})

    service = container.get("Account")
    service.link(str(account.id), "contacts", str(contact.id))
    assert db_session.get(Contact, contact.id).account_id == account.id
    assert events.published_events[-1]["event_type"] == "record.Account.related"

    linked = service.find_linked(str(account.id), "contacts", SearchParams())
    assert linked.total == 1
    assert linked.entities[0].get("name") == "Jane Doe"

    service.unlink(str(account.id), "contacts", str(contact.id))
    assert db_session.get(Contact, contact.id).account_id is None
    assert service.find_linked(str(account.id), "contacts", SearchParams()).total == 0


def test_many_to_many_link_without_count(db_session: Session, admin: User) -> None:
    container = _container(db_session, admin)
    contact = container.get("Contact").create({"first_name": "Jane", "last_name": "Doe"})
    opportunity = container.get("Opportunity").create({"name": "Deal", "close_date": "2026-12-31"})

    contact_service = container.get("Contact")
    contact_service.link(str(contact.id), "opportunities", str(opportunity.id))

    params = SearchParams(select=["name"])
    linked = contact_service.find_linked(str(contact.id), "opportunities", params)
    assert linked.total == TOTAL_HAS_NO_MORE
    assert [entity.get("name") for entity in linked] == ["Deal"]
    assert contact_service.prepare_link_search_params(params, "opportunities").select == ["name", "stage"]

    reverse = container.get("Opportunity").find_linked(str(opportunity.id), "contacts", SearchParams())
    assert reverse.total == 1

    container.get("Opportunity").unlink(str(opportunity.id), "contacts", str(contact.id))
    assert db_session.scalars(select(ContactOpportunity.id)).all() == []


def test_unknown_link_is_an_error(db_session: Session, admin: User) -> None:
    service = _container(db_session, admin).get("Account")
    account = service.create({"name": "Acme"})

    with pytest.raises(Error):
        service.link(str(account.id), "nope", "x")
    with pytest.raises(Error):
        service.find_linked(str(account.id), "nope", SearchParams())


def test_mass_link(db_session: Session, admin: User) -> None:
    user = _user(db_session, "sally")
    container = _container(db_session, admin)
    contacts = container.get("Contact")
    contacts.create({"first_name": "Jane", "last_name": "Doe", "assigned_user_id": user.id})
    contacts.create({"first_name": "John", "last_name": "Doe"})
    contacts.create({"first_name": "Rick", "last_name": "Roe"})
    first = container.get("Opportunity").create({"name": "First", "close_date": "2026-12-31"})
    second = container.get("Opportunity").create({"name": "Second", "close_date": "2026-12-31"})
    where = [{"type": "equals", "attribute": "last_name", "value": "Doe"}]

    assert container.get("Opportunity").mass_link(str(first.id), "contacts", where) is True
    assert container.get("Opportunity").find_linked(str(first.id), "contacts", SearchParams()).total == 2

    user_service = _container(db_session, user, ["Contact.edit:own"]).get("Opportunity")
    assert user_service.mass_link(str(second.id), "contacts", where) is True
    linked = container.get("Opportunity").find_linked(str(second.id), "contacts", SearchParams())
    assert [entity.get("first_name") for entity in linked] == ["Jane"]


def test_follow_unfollow_and_followers_link(db_session: Session, admin: User) -> None:
    user = _user(db_session, "sally")
    account = _container(db_session, admin).get("Account").create({"name": "Acme"})
    account_id = str(account.id)

    service = _container(db_session, user).get("Account")
    service.follow(account_id)
    assert service.read(account_id).get("is_followed") is True

    followers = service.find_linked(account_id, "followers", SearchParams())
    assert followers.total == 2

    service.unfollow(account_id)
    assert service.read(account_id).get("is_followed") is False

    admin_service = _container(db_session, admin).get("Account")
    admin_service.link(account_id, "followers", user.id)
    assert db_session.scalar(select(Follow.id).where(Follow.entity_id == account_id, Follow.user_id == user.id))

    admin_service.unlink(account_id, "followers", user.id)
    assert db_session.scalar(select(Follow.id).where(Follow.entity_id == account_id, Follow.user_id == user.id)) is None


def test_export_to_csv_attachment(db_session: Session, admin: User) -> None:
    user = _user(db_session, "sally")
    accounts = _container(db_session, admin).get("Account")
    acme = accounts.create({"name": "Acme", "email_address": "info@acme.test"})
    accounts.create({"name": "Globex"})

    attachment_id = accounts.export({"field_list": ["name", "email_address"]})
    attachment = db_session.get(Attachment, attachment_id)
    lines = attachment.contents.decode("utf-8").splitlines()
    assert lines[0] == "id,name,email_address"
    assert len(lines) == 3
    assert attachment.created_by_id == admin.id

    masked_service = _container(db_session, user, ["Account.field.mask:email_address"]).get("Account")
    masked = db_session.get(Attachment, masked_service.export({"ids": [acme.id], "field_list": ["name", "email_address"]}))
    assert masked.contents.decode("utf-8").splitlines()[1] == f"{acme.id},Acme,***"

    with pytest.raises(ForbiddenSilent):
        _container(db_session, user, ["permission.export:no"]).get("Account").export({})


def test_get_duplicate_attributes_and_duplicating_links(db_session: Session, admin: User) -> None:
    container = _container(db_session, admin)
    contact = container.get("Contact").create({"first_name": "Jane", "last_name": "Doe"})
    service = container.get("Opportunity")
    original = service.create({"name": "Deal", "close_date": "2026-12-31", "contacts_ids": [contact.id]})

    attributes = service.get_duplicate_attributes(str(original.id))
    assert "id" not in attributes
    assert attributes["_duplicating_entity_id"] == original.id
    assert attributes["contacts_ids"] == [contact.id]

    copy = service.create({**attributes, "name": "Deal copy"})
    assert copy.id != original.id
    assert service.find_linked(str(copy.id), "contacts", SearchParams()).total == 1

    account = container.get("Account").create({"name": "Acme"})
    account_attributes = container.get("Account").get_duplicate_attributes(str(account.id))
    assert "logo_id" not in account_attributes


def test_container_resolves_entity_types(db_session: Session, admin: User) -> None:
    container = _container(db_session, admin)

    assert container.get("account") is container.get("Account")
    assert isinstance(container.get("Account"), AccountService)
    with pytest.raises(NotFound):
        container.get("Spaceship")


def test_record_events_reach_bus_subscribers(db_session: Session, admin: User) -> None:
    received: list[InternalEvent] = []
    event_bus.subscribe("record.Account.*", received.append)
    try:
        entity = _container(db_session, admin).get("Account").create({"name": "Acme"})
    finally:
        event_bus.unsubscribe("record.Account.*", received.append)

    assert [event.name for event in received] == ["record.Account.created"]
    assert received[0].payload["entity_id"] == entity.id
    assert received[0].payload["actor_user_id"] == admin.id
