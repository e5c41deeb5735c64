from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy import Boolean, Date, DateTime, Integer, Numeric, inspect

from app.core.database import Base
from app.records.metadata import Metadata


class RecordEntity:
    """Attribute view over a persisted model instance.

    Column attributes are read from and written to the wrapped instance. Derived
    attributes (``account_name``, ``teams_ids``, ``is_followed`` ...) live in a
    side map and are never persisted directly; pending ``*_ids`` values of
    link-multiple fields are synced to relations by the entity manager on save.
    """

    def __init__(self, entity_type: str, instance: Base, metadata: Metadata, *, is_new: bool = False) -> None:
        self.entity_type = entity_type
        self.instance = instance
        self.metadata = metadata
        self._is_new = is_new
        self._columns = {column.key: column for column in inspect(type(instance)).columns}
        self._values: dict[str, Any] = {}
        self._cleared: set[str] = set()
        self._output: dict[str, Any] = {}
        self._fetched: dict[str, Any] = {} if is_new else self._column_values()

    def __repr__(self) -> str:
        return f"<RecordEntity {self.entity_type} {self.id}>"

    @property
    def id(self) -> str | None:
        value = getattr(self.instance, "id", None)
        return str(value) if value is not None else None

    def is_new(self) -> bool:
        return self._is_new

    def set_as_not_new(self) -> None:
        self._is_new = False

    def is_deleted(self) -> bool:
        return getattr(self.instance, "deleted_at", None) is not None

    def has_attribute(self, attribute: str) -> bool:
        if attribute in self._columns:
            return True
        return attribute in self._attribute_names()

    def is_column(self, attribute: str) -> bool:
        return attribute in self._columns

    def has(self, attribute: str) -> bool:
        """Whether a value has been set or fetched for the attribute."""

        if attribute in self._cleared:
            return False
        return attribute in self._columns or attribute in self._values

    def get(self, attribute: str, default: Any = None) -> Any:
        if attribute in self._cleared:
            return default
        if attribute in self._output:
            return self._output[attribute]
        if attribute in self._columns:
            return getattr(self.instance, attribute)
        return self._values.get(attribute, default)

    def set(self, data: dict[str, Any] | str, value: Any = None) -> None:
        values = data if isinstance(data, dict) else {data: value}
        for attribute, item in values.items():
            self._cleared.discard(attribute)
            self._output.pop(attribute, None)
            if attribute in self._columns:
                setattr(self.instance, attribute, self._coerce(attribute, item))
            else:
                self._values[attribute] = item

    def clear(self, attribute: str) -> None:
        self._values.pop(attribute, None)
        self._output.pop(attribute, None)
        self._cleared.add(attribute)

    def set_output_value(self, attribute: str, value: Any) -> None:
        """Override the value returned for ``attribute`` without touching the stored one."""

        self._cleared.discard(attribute)
        self._output[attribute] = value

    def get_fetched(self, attribute: str) -> Any:
        return self._fetched.get(attribute)

    def has_fetched(self, attribute: str) -> bool:
        return attribute in self._fetched

    def set_fetched(self, attribute: str, value: Any) -> None:
        self._fetched[attribute] = value

    def update_fetched_values(self) -> None:
        self._fetched = {**self._column_values(), **self._values}

    def is_attribute_changed(self, attribute: str) -> bool:
        if self._is_new:
            return self.has(attribute) and self.get(attribute) is not None
        if attribute not in self._columns and attribute not in self._values:
            return False
        return self._normalize(self.get(attribute)) != self._normalize(self._fetched.get(attribute))

    def get_value_map(self) -> dict[str, Any]:
        result = {key: value for key, value in self._column_values().items() if key not in self._cleared}
        result.update({key: value for key, value in self._values.items() if key not in self._cleared})
        result.update({key: value for key, value in self._output.items() if key not in self._cleared})
        return result

    def get_attribute_list(self) -> list[str]:
        return list(self.get_value_map())

    def get_relation_param(self, link: str, param: str) -> Any:
        link_def = self.metadata.get_link_def(self.entity_type, link) or {}
        return link_def.get(param)

    def get_relation_type(self, link: str) -> str | None:
        return self.get_relation_param(link, "type")

    def has_link_multiple_field(self, field: str) -> bool:
        field_type = self.metadata.get(["entity_defs", self.entity_type, "fields", field, "type"])
        return field_type == "linkMultiple" and self.get_relation_type(field) == "hasMany"

    def get_link_multiple_id_list(self, field: str) -> list[str]:
        return list(self.get(f"{field}_ids") or [])

    def add_link_multiple_id(self, field: str, id_: str) -> None:
        ids = self.get_link_multiple_id_list(field)
        if id_ in ids:
            return
        ids.append(id_)
        self.set(f"{field}_ids", ids)

    def _attribute_names(self) -> set[str]:
        fields = self.metadata.get(["entity_defs", self.entity_type, "fields"], {}) or {}
        names: set[str] = set()
        for field, params in fields.items():
            field_type = params.get("type")
            if field_type in {"link", "file", "image"}:
                names.update({f"{field}_id", f"{field}_name"})
            elif field_type == "linkMultiple":
                names.update({f"{field}_ids", f"{field}_names"})
            elif field_type == "currency":
                names.update({field, f"{field}_currency"})
            else:
                names.add(field)
        return names

    def _column_values(self) -> dict[str, Any]:
        return {key: getattr(self.instance, key) for key in self._columns}

    def _coerce(self, attribute: str, value: Any) -> Any:
        if value is None:
            return None
        column_type = self._columns[attribute].type
        if value == "" and isinstance(column_type, (Date, DateTime, Numeric, Integer)):
            return None
        try:
            if isinstance(column_type, DateTime) and isinstance(value, str):
                return datetime.fromisoformat(value)
            if isinstance(column_type, Date) and isinstance(value, str):
                return date.fromisoformat(value)
            if isinstance(column_type, Numeric) and not isinstance(value, (bool, Decimal)):
                return Decimal(str(value))
            if isinstance(column_type, Integer) and isinstance(value, str):
                return int(value)
            if isinstance(column_type, Boolean) and isinstance(value, str):
                return value.strip().lower() in {"1", "true", "yes", "on"}
        except (ValueError, TypeError, InvalidOperation):
            return value
        return value

    @staticmethod
    def _normalize(value: Any) -> Any:
        if isinstance(value, list):
            return sorted(str(item) for item in value)
        if isinstance(value, (date, datetime)):
            return value.isoformat()
        if isinstance(value, Decimal):
            return str(value.normalize())
        return value
