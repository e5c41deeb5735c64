from __future__ import annotations

import json
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from sqlalchemy import and_, false, not_, or_, select
from sqlalchemy.sql import ColumnElement, Select

from app.platform.security.acl import Acl
from app.platform.security.policies import RecordAction
from app.records.entity_manager import EntityManager
from app.records.errors import BadRequest, Forbidden


WhereType = Literal[
    "equals",
    "notEquals",
    "in",
    "notIn",
    "isNull",
    "isNotNull",
    "isTrue",
    "isFalse",
    "contains",
    "startsWith",
    "endsWith",
    "like",
    "greaterThan",
    "lessThan",
    "greaterThanOrEquals",
    "lessThanOrEquals",
    "linkedWith",
    "and",
    "or",
]

_LOGICAL_TYPES = {"and", "or"}


class WhereItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: WhereType
    attribute: str | None = None
    value: Any = None

    def children(self) -> list[WhereItem]:
        if self.type not in _LOGICAL_TYPES:
            return []
        return [item if isinstance(item, WhereItem) else WhereItem.model_validate(item) for item in self.value or []]

    def attribute_list(self) -> list[str]:
        if self.type in _LOGICAL_TYPES:
            return [attribute for child in self.children() for attribute in child.attribute_list()]
        return [self.attribute] if self.attribute else []


class SearchParams(BaseModel):
    """Immutable list/search parameters."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    offset: int | None = Field(default=None, ge=0)
    max_size: int | None = Field(default=None, ge=0, alias="maxSize")
    order_by: str | None = Field(default=None, alias="orderBy")
    order: Literal["asc", "desc"] | None = None
    select: list[str] | None = None
    where: list[WhereItem] | None = None
    text_filter: str | None = Field(default=None, alias="textFilter")
    primary_filter: str | None = Field(default=None, alias="primaryFilter")
    max_text_attribute_length: int | None = Field(default=None, alias="maxTextAttributeLength")

    @classmethod
    def from_raw(cls, raw: dict[str, Any]) -> SearchParams:
        """Build from request parameters (camelCase, strings as the UI sends them)."""

        data: dict[str, Any] = {}
        for key in ("offset", "maxSize", "orderBy", "textFilter", "primaryFilter", "maxTextAttributeLength"):
            if raw.get(key) not in (None, ""):
                data[key] = raw[key]

        order = raw.get("order")
        if isinstance(order, str) and order:
            data["order"] = order.lower()
        elif isinstance(raw.get("asc"), (bool, str)):
            data["order"] = "asc" if str(raw["asc"]).lower() in {"true", "1"} else "desc"

        select_raw = raw.get("select")
        if isinstance(select_raw, str) and select_raw:
            data["select"] = [item.strip() for item in select_raw.split(",") if item.strip()]
        elif isinstance(select_raw, list):
            data["select"] = select_raw

        where_raw = raw.get("where")
        if isinstance(where_raw, str) and where_raw:
            try:
                where_raw = json.loads(where_raw)
            except json.JSONDecodeError:
                raise BadRequest("Bad where parameter") from None
        if where_raw:
            data["where"] = where_raw

        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            raise BadRequest("Bad search parameters", body=exc.errors(include_url=False)) from None

    def with_select(self, select_list: list[str] | None) -> SearchParams:
        return self.model_copy(update={"select": select_list})

    def with_offset(self, offset: int | None) -> SearchParams:
        return self.model_copy(update={"offset": offset})

    def with_max_size(self, max_size: int | None) -> SearchParams:
        return self.model_copy(update={"max_size": max_size})

    def with_max_text_attribute_length(self, value: int | None) -> SearchParams:
        return self.model_copy(update={"max_text_attribute_length": value})


class SelectBuilder:
    """Builds a SELECT over one entity type from search parameters."""

    def __init__(self, entity_manager: EntityManager, acl: Acl) -> None:
        self.entity_manager = entity_manager
        self.metadata = entity_manager.metadata
        self.acl = acl
        self._entity_type: str | None = None
        self._search_params = SearchParams()
        self._strict_access_control = False
        self._where_permission_check = False
        self._complex_expressions_forbidden = False
        self._base_query: Select[Any] | None = None

    def from_(self, entity_type: str) -> SelectBuilder:
        self._entity_type = entity_type
        return self

    def with_search_params(self, search_params: SearchParams) -> SelectBuilder:
        self._search_params = search_params
        return self

    def with_strict_access_control(self) -> SelectBuilder:
        self._strict_access_control = True
        return self

    def with_where_permission_check(self) -> SelectBuilder:
        self._where_permission_check = True
        return self

    def with_complex_expressions_forbidden(self) -> SelectBuilder:
        self._complex_expressions_forbidden = True
        return self

    def with_base_query(self, query: Select[Any]) -> SelectBuilder:
        self._base_query = query
        return self

    def build(self) -> Select[Any]:
        if self._entity_type is None:
            raise ValueError("No entity type specified")
        entity_type = self._entity_type
        model = self.metadata.get_model(entity_type)
        params = self._search_params

        query = self._base_query if self._base_query is not None else self.entity_manager.query(entity_type)

        if self._strict_access_control:
            query = self.acl.apply_scope_query(query, entity_type, RecordAction.READ)

        where_items = list(params.where or [])
        if params.primary_filter:
            where_items.extend(self._primary_filter_items(entity_type, params.primary_filter))

        if self._strict_access_control or self._where_permission_check:
            self._check_where_permission(entity_type, params.where or [])

        for item in where_items:
            query = query.where(self._where_clause(entity_type, model, item))

        if params.text_filter:
            query = query.where(self._text_filter_clause(entity_type, model, params.text_filter))

        query = self._apply_order(entity_type, model, query, params)

        if params.offset:
            query = query.offset(params.offset)
        if params.max_size is not None:
            query = query.limit(params.max_size)
        return query

    def _check_where_permission(self, entity_type: str, items: list[WhereItem]) -> None:
        forbidden = set(self.acl.get_scope_forbidden_attribute_list(entity_type, "read"))
        forbidden.update(self.acl.get_scope_forbidden_link_list(entity_type, "read"))
        for item in items:
            for attribute in item.attribute_list():
                if attribute.split(".", 1)[0] in forbidden or attribute in forbidden:
                    raise Forbidden(f"Forbidden attribute '{attribute}' in where")

    def _primary_filter_items(self, entity_type: str, name: str) -> list[WhereItem]:
        definition = self.metadata.get(["entity_defs", entity_type, "collection", "primary_filters", name])
        if definition is None:
            raise BadRequest(f"Primary filter '{name}' does not exist")
        return [WhereItem.model_validate(item) for item in definition]

    def _column_attribute(self, entity_type: str, attribute: str) -> str:
        if self.metadata.get(["entity_defs", entity_type, "fields", attribute, "type"]) in {"link", "file", "image"}:
            return f"{attribute}_id"
        return attribute

    def _column(self, entity_type: str, model: Any, attribute: str) -> Any:
        attribute = self._column_attribute(entity_type, attribute)
        column = getattr(model, attribute, None)
        if column is None or attribute not in model.__table__.columns:
            raise BadRequest(f"Unknown attribute '{attribute}'")
        return column

    def _where_clause(self, entity_type: str, model: Any, item: WhereItem) -> ColumnElement[bool]:
        if item.type == "and":
            return and_(*[self._where_clause(entity_type, model, child) for child in item.children()])
        if item.type == "or":
            children = item.children()
            if not children:
                return false()
            return or_(*[self._where_clause(entity_type, model, child) for child in children])

        if not item.attribute:
            raise BadRequest(f"Where item '{item.type}' requires an attribute")

        if item.type == "linkedWith":
            if self.metadata.get_link_def(entity_type, item.attribute) is None:
                raise BadRequest(f"Unknown link '{item.attribute}'")
            ids = item.value if isinstance(item.value, list) else [item.value]
            return self.entity_manager.linked_with_clause(entity_type, item.attribute, [str(value) for value in ids])

        if "." in item.attribute:
            return self._foreign_clause(entity_type, model, item)

        column = self._column(entity_type, model, item.attribute)
        return self._compare(column, item)

    def _foreign_clause(self, entity_type: str, model: Any, item: WhereItem) -> ColumnElement[bool]:
        if self._complex_expressions_forbidden:
            raise Forbidden("Complex expressions are forbidden")
        link, _, foreign_attribute = item.attribute.partition(".")  # type: ignore[union-attr]
        link_def = self.metadata.get_link_def(entity_type, link)
        if link_def is None or link_def.get("type") != "belongsTo":
            raise BadRequest(f"Unknown link '{link}'")
        foreign_type = link_def["entity"]
        if self._strict_access_control and not self.acl.check_scope(foreign_type, RecordAction.READ):
            raise Forbidden(f"No read access to '{foreign_type}'")
        foreign_model = self.metadata.get_model(foreign_type)
        foreign_column = self._column(foreign_type, foreign_model, foreign_attribute)
        sub = select(foreign_model.id).where(self._compare(foreign_column, item))
        return getattr(model, f"{link}_id").in_(sub)

    @staticmethod
    def _compare(column: Any, item: WhereItem) -> ColumnElement[bool]:
        value = item.value
        kind = item.type
        if kind == "equals":
            return column == value
        if kind == "notEquals":
            return column != value
        if kind in {"in", "notIn"}:
            values = value if isinstance(value, list) else [value]
            if not values:
                return false() if kind == "in" else not_(false())
            return column.in_(values) if kind == "in" else column.not_in(values)
        if kind == "isNull":
            return column.is_(None)
        if kind == "isNotNull":
            return column.is_not(None)
        if kind == "isTrue":
            return column.is_(True)
        if kind == "isFalse":
            return or_(column.is_(False), column.is_(None))
        if kind == "contains":
            return column.icontains(str(value), autoescape=True)
        if kind == "startsWith":
            return column.istartswith(str(value), autoescape=True)
        if kind == "endsWith":
            return column.iendswith(str(value), autoescape=True)
        if kind == "like":
            return column.ilike(str(value))
        if kind == "greaterThan":
            return column > value
        if kind == "lessThan":
            return column < value
        if kind == "greaterThanOrEquals":
            return column >= value
        if kind == "lessThanOrEquals":
            return column <= value
        raise BadRequest(f"Unsupported where type '{kind}'")

    def _text_filter_clause(self, entity_type: str, model: Any, text: str) -> ColumnElement[bool]:
        fields = self.metadata.get(["entity_defs", entity_type, "collection", "text_filter_fields"]) or ["name"]
        forbidden = set(self.acl.get_scope_forbidden_attribute_list(entity_type, "read"))
        pattern = text.replace("*", "%")
        if "%" not in pattern:
            pattern = f"{pattern}%"
        clauses = [
            getattr(model, field).ilike(pattern)
            for field in fields
            if field not in forbidden and hasattr(model, field)
        ]
        if not clauses:
            return false()
        return or_(*clauses)

    def _apply_order(self, entity_type: str, model: Any, query: Select[Any], params: SearchParams) -> Select[Any]:
        collection = self.metadata.get(["entity_defs", entity_type, "collection"]) or {}
        order_by = params.order_by or collection.get("order_by")
        order = params.order or collection.get("order") or "asc"

        if params.order_by and (self._strict_access_control or self._where_permission_check):
            forbidden = set(self.acl.get_scope_forbidden_attribute_list(entity_type, "read"))
            forbidden.update(self.acl.get_scope_forbidden_field_list(entity_type, "read"))
            forbidden.update(self.acl.get_scope_forbidden_link_list(entity_type, "read"))
            if {params.order_by, self._column_attribute(entity_type, params.order_by)} & forbidden:
                raise Forbidden(f"Forbidden order by '{params.order_by}'")

        if order_by:
            column = self._column(entity_type, model, order_by)
            query = query.order_by(column.desc() if order == "desc" else column.asc())
        return query.order_by(model.id.asc())
