from __future__ import annotations

import csv
import io
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from app.platform.security.acl import Acl
from app.records.entity import RecordEntity
from app.records.entity_manager import EntityManager
from app.records.errors import BadRequest
from app.records.loaders import ListLoader
from app.records.metadata import FieldUtil
from app.records.models import Attachment, new_id
from app.records.select import SearchParams, SelectBuilder, WhereItem


logger = logging.getLogger("app.records.export")

SUPPORTED_FORMATS = {"csv": "text/csv"}


@dataclass
class ExportParams:
    entity_type: str
    ids: list[str] | None = None
    search_params: SearchParams | None = None
    attribute_list: list[str] | None = None
    field_list: list[str] | None = None
    format: str = "csv"
    file_name: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)


class Export:
    """Writes records visible to the acting user to a file stored as an attachment."""

    def __init__(
        self,
        entity_manager: EntityManager,
        acl: Acl,
        *,
        prepare_entity: Callable[[RecordEntity], None] | None = None,
    ) -> None:
        self.entity_manager = entity_manager
        self.metadata = entity_manager.metadata
        self.acl = acl
        self.field_util = FieldUtil(entity_manager.metadata)
        self.list_loader = ListLoader(entity_manager)
        self._prepare_entity = prepare_entity

    def run(self, params: ExportParams) -> str:
        if params.format not in SUPPORTED_FORMATS:
            raise BadRequest(f"Export format '{params.format}' is not supported")

        entity_type = params.entity_type
        attribute_list = self._attribute_list(params)

        search_params = params.search_params or SearchParams()
        if params.ids is not None:
            search_params = SearchParams(where=[WhereItem(type="in", attribute="id", value=list(params.ids))])
        search_params = search_params.with_offset(None).with_max_size(None)

        query = (
            SelectBuilder(self.entity_manager, self.acl)
            .from_(entity_type)
            .with_search_params(search_params)
            .with_strict_access_control()
            .build()
        )

        rows: list[dict[str, Any]] = []
        for entity in self.entity_manager.find_entities(entity_type, query):
            self.list_loader.process(entity, attribute_list)
            if self._prepare_entity is not None:
                self._prepare_entity(entity)
            rows.append({attribute: self._format_value(entity.get(attribute)) for attribute in attribute_list})

        contents = self._write_csv(rows, attribute_list)
        stamp = datetime.now().strftime("%Y-%m-%d_%H%M%S")
        attachment = Attachment(
            id=new_id(),
            name=params.file_name or f"Export_{entity_type}_{stamp}.csv",
            type=SUPPORTED_FORMATS[params.format],
            size=len(contents),
            contents=contents,
            role="Export File",
            related_type=entity_type,
            created_by_id=self.acl.user_id,
        )
        self.entity_manager.session.add(attachment)
        self.entity_manager.session.flush()

        logger.info(
            "records_exported",
            extra={"entity_type": entity_type, "entity_id": attachment.id, "count": len(rows)},
        )
        return attachment.id

    def _attribute_list(self, params: ExportParams) -> list[str]:
        entity_type = params.entity_type
        forbidden = set(self.acl.get_scope_forbidden_attribute_list(entity_type, "read"))

        if params.attribute_list:
            attributes = list(params.attribute_list)
        else:
            fields = params.field_list or [
                name
                for name, defs in (self.metadata.get(["entity_defs", entity_type, "fields"], {}) or {}).items()
                if not defs.get("export_disabled")
            ]
            attributes = []
            for field_name in fields:
                if self.field_util.get_entity_type_field_param(entity_type, field_name, "type") is None:
                    raise BadRequest(f"Unknown field '{field_name}'")
                attributes.extend(self.field_util.get_attribute_list(entity_type, field_name))

        result = ["id"]
        for attribute in attributes:
            if attribute in forbidden or attribute in result:
                continue
            result.append(attribute)
        return result

    @staticmethod
    def _format_value(value: Any) -> Any:
        if value is None:
            return ""
        if isinstance(value, (list, dict)):
            return json.dumps(value, default=str)
        if isinstance(value, (date, datetime)):
            return value.isoformat()
        if isinstance(value, Decimal):
            return str(value)
        if isinstance(value, bool):
            return "1" if value else "0"
        return value

    @staticmethod
    def _write_csv(rows: list[dict[str, Any]], fieldnames: list[str]) -> bytes:
        output = io.StringIO()
        writer = csv.DictWriter(output, fieldnames=fieldnames)
        writer.writeheader()
        for row in rows:
            writer.writerow(row)
        return output.getvalue().encode("utf-8")
