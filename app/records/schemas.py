from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class LinkRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str | None = None
    ids: list[str] = Field(default_factory=list)
    mass_relate: bool = Field(default=False, alias="massRelate")
    where: list[dict[str, Any]] | None = None
    select_data: dict[str, Any] | None = Field(default=None, alias="selectData")

    def foreign_ids(self) -> list[str]:
        result = list(self.ids)
        if self.id and self.id not in result:
            result.append(self.id)
        return result


class RestoreDeletedRequest(BaseModel):
    id: str


class ExportRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    ids: list[str] | None = None
    where: list[dict[str, Any]] | None = None
    search_params: dict[str, Any] | None = Field(default=None, alias="searchParams")
    attribute_list: list[str] | None = Field(default=None, alias="attributeList")
    field_list: list[str] | None = Field(default=None, alias="fieldList")
    format: str = "csv"
    file_name: str | None = Field(default=None, alias="fileName")


class ExportResponse(BaseModel):
    id: str


class CheckForDuplicatesRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str | None = None
    attributes: dict[str, Any] = Field(default_factory=dict)
