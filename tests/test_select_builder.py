from __future__ import annotations

from collections.abc import Generator
from datetime import date

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.database import Base
from app.crm.metadata import build_metadata
from app.crm.models import Account, Contact, ContactOpportunity, Opportunity
from app.platform.security.acl import Acl
from app.platform.security.context import AuthContext
from app.platform.security.policies import InMemoryPolicyBackend, set_policy_backend
from app.records.entity_manager import EntityManager
from app.records.errors import BadRequest, Forbidden
from app.records.select import SearchParams, SelectBuilder


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
def policy_backend() -> Generator[None, None, None]:
    set_policy_backend(InMemoryPolicyBackend(default_allow=True))
    yield
    set_policy_backend(InMemoryPolicyBackend(default_allow=True))


@pytest.fixture()
def entity_manager(db_session: Session) -> EntityManager:
    acme = Account(name="Acme", type="Customer", email_address="info@acme.test")
    globex = Account(name="Globex", type="Partner")
    initech = Account(name="Initech", type="Customer", deleted_at=None)
    db_session.add_all([acme, globex, initech])
    db_session.flush()

    jane = Contact(first_name="Jane", last_name="Doe", name="Jane Doe", account_id=acme.id)
    john = Contact(first_name="John", last_name="Roe", name="John Roe", account_id=globex.id)
    db_session.add_all([jane, john])
    db_session.flush()

    deal = Opportunity(name="Big deal", stage="Proposal", close_date=date(2026, 12, 1), account_id=acme.id)
    won = Opportunity(name="Won deal", stage="Closed Won", close_date=date(2026, 1, 1), account_id=globex.id)
    db_session.add_all([deal, won])
    db_session.flush()
    db_session.add(ContactOpportunity(contact_id=jane.id, opportunity_id=deal.id))
    db_session.commit()
    return EntityManager(db_session, build_metadata())


def _names(entity_manager: EntityManager, entity_type: str, params: SearchParams, ctx: AuthContext | None = None) -> list[str]:
    acl = Acl(ctx or AuthContext(user_id="admin", user_type="admin"), entity_manager)
    query = (
        SelectBuilder(entity_manager, acl)
        .from_(entity_type)
        .with_strict_access_control()
        .with_search_params(params)
        .build()
    )
    return [str(entity.get("name")) for entity in entity_manager.find_entities(entity_type, query)]


def test_from_raw_parses_request_parameters() -> None:
    params = SearchParams.from_raw(
        {
            "offset": "5",
            "maxSize": "10",
            "orderBy": "name",
            "asc": "true",
            "select": "name, type",
            "where": '[{"type": "equals", "attribute": "type", "value": "Customer"}]',
            "textFilter": "ac",
            "primaryFilter": "customers",
        }
    )

    assert params.offset == 5
    assert params.max_size == 10
    assert params.order == "asc"
    assert params.select == ["name", "type"]
    assert params.where is not None and params.where[0].attribute == "type"
    assert params.text_filter == "ac"
    assert params.primary_filter == "customers"


def test_from_raw_rejects_bad_input() -> None:
    with pytest.raises(BadRequest):
        SearchParams.from_raw({"where": "{not json"})
    with pytest.raises(BadRequest):
        SearchParams.from_raw({"where": [{"type": "matches", "attribute": "name"}]})
    with pytest.raises(BadRequest):
        SearchParams.from_raw({"maxSize": "-1"})


def test_search_params_are_immutable() -> None:
    params = SearchParams(max_size=10)
    changed = params.with_max_size(20).with_select(["name"])

    assert params.max_size == 10
    assert params.select is None
    assert changed.max_size == 20


def test_default_order_and_paging(entity_manager: EntityManager) -> None:
    ordered = _names(entity_manager, "Account", SearchParams(order_by="name", order="desc"))
    assert ordered == ["Initech", "Globex", "Acme"]

    page = _names(entity_manager, "Account", SearchParams(order_by="name", order="asc", offset=1, max_size=1))
    assert page == ["Globex"]


def test_where_types(entity_manager: EntityManager) -> None:
    def names(*items: dict) -> list[str]:
        params = SearchParams.from_raw({"where": list(items), "orderBy": "name", "order": "asc"})
        return _names(entity_manager, "Account", params)

    assert names({"type": "equals", "attribute": "type", "value": "Customer"}) == ["Acme", "Initech"]
    assert names({"type": "in", "attribute": "name", "value": ["Acme", "Globex"]}) == ["Acme", "Globex"]
    assert names({"type": "notIn", "attribute": "name", "value": ["Acme"]}) == ["Globex", "Initech"]
    assert names({"type": "isNotNull", "attribute": "email_address"}) == ["Acme"]
    assert names({"type": "startsWith", "attribute": "name", "value": "gl"}) == ["Globex"]
    assert names({"type": "contains", "attribute": "name", "value": "TEC"}) == ["Initech"]
    assert names(
        {
            "type": "or",
            "value": [
                {"type": "equals", "attribute": "name", "value": "Acme"},
                {"type": "equals", "attribute": "type", "value": "Partner"},
            ],
        }
    ) == ["Acme", "Globex"]
    assert names({"type": "linkedWith", "attribute": "contacts", "value": []}) == []


def test_linked_with_and_foreign_attribute(entity_manager: EntityManager) -> None:
    jane_id = entity_manager.session.scalar(select(Contact.id).where(Contact.first_name == "Jane"))

    params = SearchParams.from_raw({"where": [{"type": "linkedWith", "attribute": "contacts", "value": [jane_id]}]})
    assert _names(entity_manager, "Opportunity", params) == ["Big deal"]

    params = SearchParams.from_raw({"where": [{"type": "equals", "attribute": "account.name", "value": "Globex"}]})
    assert _names(entity_manager, "Contact", params) == ["John Roe"]


def test_primary_and_text_filters(entity_manager: EntityManager) -> None:
    assert _names(entity_manager, "Opportunity", SearchParams(primary_filter="won")) == ["Won deal"]
    assert _names(entity_manager, "Opportunity", SearchParams(primary_filter="open")) == ["Big deal"]
    assert _names(entity_manager, "Account", SearchParams(text_filter="glo")) == ["Globex"]
    assert _names(entity_manager, "Account", SearchParams(text_filter="*tech")) == ["Initech"]

    with pytest.raises(BadRequest):
        _names(entity_manager, "Account", SearchParams(primary_filter="nope"))


def test_unknown_attribute_is_rejected(entity_manager: EntityManager) -> None:
    params = SearchParams.from_raw({"where": [{"type": "equals", "attribute": "shoe_size", "value": 3}]})

    with pytest.raises(BadRequest):
        _names(entity_manager, "Account", params)


def test_forbidden_attribute_in_where(entity_manager: EntityManager) -> None:
    ctx = AuthContext(user_id="u1", permissions=["!Account.field.read:email_address"])
    params = SearchParams.from_raw({"where": [{"type": "isNotNull", "attribute": "email_address"}]})

    with pytest.raises(Forbidden):
        _names(entity_manager, "Account", params, ctx)


@pytest.mark.parametrize("order_by", ["assigned_user", "assigned_user_id"])
def test_forbidden_field_in_order_by(entity_manager: EntityManager, order_by: str) -> None:
    ctx = AuthContext(user_id="u1", permissions=["Account.*:all", "!Account.field.read:assigned_user"])

    with pytest.raises(Forbidden):
        _names(entity_manager, "Account", SearchParams(order_by=order_by), ctx)

    assert _names(entity_manager, "Account", SearchParams(order_by="name"), ctx)
