from __future__ import annotations

from collections.abc import Sequence
from functools import lru_cache
from typing import Any

from app.core.database import Base


_MISSING = object()


class Metadata:
    """Entity definitions, scopes and integration definitions.

    Paths are dotted strings (``entity_defs.Account.fields.name``) or sequences
    of keys.
    """

    def __init__(
        self,
        *,
        entity_defs: dict[str, dict[str, Any]],
        scopes: dict[str, dict[str, Any]],
        models: dict[str, type[Base]],
        integrations: dict[str, dict[str, Any]] | None = None,
    ) -> None:
        self._data: dict[str, Any] = {
            "entity_defs": entity_defs,
            "scopes": scopes,
            "integrations": integrations or {},
        }
        self._models = models
        self._lower_names = {name.lower(): name for name in entity_defs}

    def get(self, path: str | Sequence[str], default: Any = None) -> Any:
        keys = path.split(".") if isinstance(path, str) else list(path)
        node: Any = self._data
        for key in keys:
            if not isinstance(node, dict):
                return default
            node = node.get(key, _MISSING)
            if node is _MISSING:
                return default
        return node

    def get_entity_path(self, name: str) -> str | None:
        if name in self._data["entity_defs"]:
            return name
        return self._lower_names.get(name.lower())

    def get_repository_path(self, name: str) -> str | None:
        return self.get_entity_path(name)

    def get_model(self, entity_type: str) -> type[Base]:
        try:
            return self._models[entity_type]
        except KeyError:
            raise KeyError(f"No model registered for entity type '{entity_type}'") from None

    def get_link_defs(self, entity_type: str) -> dict[str, dict[str, Any]]:
        return self.get(["entity_defs", entity_type, "links"], {}) or {}

    def get_link_def(self, entity_type: str, link: str) -> dict[str, Any] | None:
        return self.get_link_defs(entity_type).get(link)


class FieldUtil:
    """Field to attribute mapping driven by entity definitions."""

    def __init__(self, metadata: Metadata) -> None:
        self.metadata = metadata

    def get_entity_type_field_list(self, entity_type: str) -> list[str]:
        return list(self.metadata.get(["entity_defs", entity_type, "fields"], {}) or {})

    def get_entity_type_field_param(self, entity_type: str, field: str, param: str) -> Any:
        return self.metadata.get(["entity_defs", entity_type, "fields", field, param])

    def get_field_by_type_list(self, entity_type: str, field_type: str) -> list[str]:
        return [
            field
            for field in self.get_entity_type_field_list(entity_type)
            if self.get_entity_type_field_param(entity_type, field, "type") == field_type
        ]

    def get_attribute_list(self, entity_type: str, field: str) -> list[str]:
        field_type = self.get_entity_type_field_param(entity_type, field, "type")
        if field_type is None:
            return []
        if field_type in {"link", "file", "image"}:
            return [f"{field}_id", f"{field}_name"]
        if field_type == "linkMultiple":
            return [f"{field}_ids", f"{field}_names"]
        if field_type == "currency":
            return [field, f"{field}_currency"]
        return [field]

    def get_attribute_field(self, entity_type: str, attribute: str) -> str | None:
        for field in self.get_entity_type_field_list(entity_type):
            if attribute in self.get_attribute_list(entity_type, field):
                return field
        return None


@lru_cache
def get_metadata() -> Metadata:
    from app.crm.metadata import build_metadata

    return build_metadata()


RECORD_API_PREFIX = "/api/v1/"


def entity_type_from_path(path: str) -> str | None:
    """``/api/v1/account/123`` -> ``Account``; ``None`` outside the record API.

    Unknown segments (``admin``, ``ExternalAccount``) are returned as they are.
    """

    if not path.startswith(RECORD_API_PREFIX):
        return None
    segment = path[len(RECORD_API_PREFIX):].split("/", 1)[0]
    if not segment:
        return None
    return get_metadata().get_entity_path(segment) or segment
