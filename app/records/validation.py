from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from pydantic import AnyHttpUrl, EmailStr, TypeAdapter, ValidationError

from app.records.entity import RecordEntity
from app.records.errors import BadRequest
from app.records.metadata import FieldUtil, Metadata


_EMAIL_ADAPTER = TypeAdapter(EmailStr)
_URL_ADAPTER = TypeAdapter(AnyHttpUrl)
_CURRENCY_CODE_RE = re.compile(r"^[A-Z]{3}$")

_STRING_TYPES = {"varchar", "text", "email", "url", "phone", "enum"}


@dataclass(frozen=True)
class FieldValidationParams:
    skip_field_list: list[str] = field(default_factory=list)
    type_skip_field_lists: dict[str, list[str]] = field(default_factory=dict)

    def with_skip_field_list(self, fields: list[str]) -> FieldValidationParams:
        return replace(self, skip_field_list=list(fields))

    def with_type_skip_field_list(self, validation_type: str, fields: list[str]) -> FieldValidationParams:
        lists = dict(self.type_skip_field_lists)
        lists[validation_type] = list(fields)
        return replace(self, type_skip_field_lists=lists)

    def is_skipped(self, field_name: str, validation_type: str) -> bool:
        if field_name in self.skip_field_list:
            return True
        return field_name in self.type_skip_field_lists.get(validation_type, [])


class FieldValidationManager:
    """Validates entity values against field definitions.

    ``required`` is checked for new entities and for fields present in the
    input; every other check only runs for fields present in the input.
    """

    def __init__(self, metadata: Metadata) -> None:
        self.metadata = metadata
        self.field_util = FieldUtil(metadata)
        self._checks: dict[str, Callable[[RecordEntity, str, dict[str, Any]], bool]] = {
            "valid": self._check_valid,
            "maxLength": self._check_max_length,
            "min": self._check_min,
            "max": self._check_max,
        }

    def process(self, entity: RecordEntity, data: dict[str, Any], params: FieldValidationParams | None = None) -> None:
        params = params or FieldValidationParams()
        fields = self.metadata.get(["entity_defs", entity.entity_type, "fields"], {}) or {}

        for field_name, field_defs in fields.items():
            if field_defs.get("read_only"):
                continue
            attributes = self.field_util.get_attribute_list(entity.entity_type, field_name)
            in_input = any(attribute in data for attribute in attributes)

            if field_defs.get("required") and (entity.is_new() or in_input):
                if not params.is_skipped(field_name, "required") and self._is_empty(entity, field_name, field_defs):
                    self._fail(field_name, "required")

            if not in_input:
                continue

            for validation_type, check in self._checks.items():
                if params.is_skipped(field_name, validation_type):
                    continue
                if not check(entity, field_name, field_defs):
                    self._fail(field_name, validation_type)

    def check_field(self, entity: RecordEntity, field_name: str, validation_type: str) -> bool:
        field_defs = self.metadata.get(["entity_defs", entity.entity_type, "fields", field_name], {}) or {}
        if validation_type == "required":
            return not self._is_empty(entity, field_name, field_defs)
        return self._checks[validation_type](entity, field_name, field_defs)

    @staticmethod
    def _fail(field_name: str, validation_type: str) -> None:
        raise BadRequest(
            f"Field validation failure: {field_name} ({validation_type})",
            body={"field": field_name, "type": validation_type},
        )

    @staticmethod
    def _is_empty(entity: RecordEntity, field_name: str, field_defs: dict[str, Any]) -> bool:
        field_type = field_defs.get("type")
        if field_type in {"link", "file", "image"}:
            value = entity.get(f"{field_name}_id")
        elif field_type == "linkMultiple":
            return not entity.get_link_multiple_id_list(field_name)
        else:
            value = entity.get(field_name)
        return value is None or value == "" or value == []

    def _check_max_length(self, entity: RecordEntity, field_name: str, field_defs: dict[str, Any]) -> bool:
        max_length = field_defs.get("max_length")
        value = entity.get(field_name)
        if max_length is None or not isinstance(value, str):
            return True
        return len(value) <= int(max_length)

    def _check_valid(self, entity: RecordEntity, field_name: str, field_defs: dict[str, Any]) -> bool:
        field_type = field_defs.get("type")
        value = entity.get(field_name)

        if field_type == "currency":
            currency = entity.get(f"{field_name}_currency")
            if currency is not None and not _CURRENCY_CODE_RE.match(str(currency)):
                return False

        if value is None or value == "":
            return True

        if field_type in _STRING_TYPES and not isinstance(value, str):
            return False
        if field_type == "email":
            try:
                _EMAIL_ADAPTER.validate_python(value)
            except ValidationError:
                return False
            return True
        if field_type == "url":
            try:
                _URL_ADAPTER.validate_python(value)
            except ValidationError:
                return False
            return True
        if field_type == "enum":
            options = field_defs.get("options")
            return options is None or value in options
        if field_type == "int":
            return self._to_number(value, integer=True) is not None
        if field_type in {"float", "currency"}:
            return self._to_number(value) is not None
        if field_type == "bool":
            return isinstance(value, bool)
        if field_type == "date":
            return isinstance(value, date) or self._parses(date.fromisoformat, value)
        if field_type == "datetime":
            return isinstance(value, datetime) or self._parses(datetime.fromisoformat, value)
        return True

    def _check_min(self, entity: RecordEntity, field_name: str, field_defs: dict[str, Any]) -> bool:
        minimum = field_defs.get("min")
        number = self._to_number(entity.get(field_name))
        if minimum is None or number is None:
            return True
        return number >= Decimal(str(minimum))

    def _check_max(self, entity: RecordEntity, field_name: str, field_defs: dict[str, Any]) -> bool:
        maximum = field_defs.get("max")
        number = self._to_number(entity.get(field_name))
        if maximum is None or number is None:
            return True
        return number <= Decimal(str(maximum))

    @staticmethod
    def _to_number(value: Any, *, integer: bool = False) -> Decimal | None:
        if value is None or isinstance(value, bool):
            return None
        if integer and isinstance(value, float) and not value.is_integer():
            return None
        try:
            number = Decimal(str(value))
        except (InvalidOperation, ValueError):
            return None
        if not number.is_finite():
            return None
        if integer and number != number.to_integral_value():
            return None
        return number

    @staticmethod
    def _parses(parser: Callable[[str], Any], value: Any) -> bool:
        if not isinstance(value, str):
            return False
        try:
            parser(value)
        except ValueError:
            return False
        return True
