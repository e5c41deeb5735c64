from __future__ import annotations

from app.records.entity import RecordEntity
from app.records.entity_manager import EntityManager
from app.records.stream import StreamService


class ReadLoader:
    """Loads the derived attributes of a single record for reading."""

    def __init__(self, entity_manager: EntityManager, stream: StreamService) -> None:
        self.entity_manager = entity_manager
        self.metadata = entity_manager.metadata
        self.stream = stream

    def process(self, entity: RecordEntity) -> None:
        fields = self.metadata.get(["entity_defs", entity.entity_type, "fields"], {}) or {}
        for field, params in fields.items():
            field_type = params.get("type")
            if field_type in {"link", "file", "image"}:
                self.entity_manager.load_link_name(entity, field)
            elif field_type == "linkMultiple" and entity.has_link_multiple_field(field):
                self.entity_manager.load_link_multiple(entity, field)

        if self.stream.is_stream_enabled(entity.entity_type):
            entity.set("is_followed", self.stream.check_is_followed(entity))
            followers = self.stream.get_entity_followers(entity, 0, 6)
            entity.set({"followers_ids": followers["ids"], "followers_names": followers["names"]})


class ListLoader:
    """Loads derived attributes of records in a list.

    Link-multiple values are loaded only for selected fields; with no selection
    every link-multiple field is loaded.
    """

    def __init__(self, entity_manager: EntityManager) -> None:
        self.entity_manager = entity_manager
        self.metadata = entity_manager.metadata

    def process(self, entity: RecordEntity, select: list[str] | None = None) -> None:
        fields = self.metadata.get(["entity_defs", entity.entity_type, "fields"], {}) or {}
        for field, params in fields.items():
            field_type = params.get("type")
            if field_type in {"link", "file", "image"}:
                if select is None or f"{field}_name" in select:
                    self.entity_manager.load_link_name(entity, field)
            elif field_type == "linkMultiple" and entity.has_link_multiple_field(field):
                if select is None or f"{field}_ids" in select or f"{field}_names" in select:
                    self.entity_manager.load_link_multiple(entity, field)
