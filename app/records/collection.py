from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any

from app.records.entity import RecordEntity


TOTAL_HAS_MORE = -1
TOTAL_HAS_NO_MORE = -2


@dataclass
class RecordCollection:
    """A page of records with a total.

    ``total`` is the full count, or ``TOTAL_HAS_MORE`` / ``TOTAL_HAS_NO_MORE``
    when counting is disabled for the list.
    """

    entities: list[RecordEntity] = field(default_factory=list)
    total: int = 0

    def __iter__(self) -> Iterator[RecordEntity]:
        return iter(self.entities)

    def __len__(self) -> int:
        return len(self.entities)

    def get_value_map_list(self, select: list[str] | None = None) -> list[dict[str, Any]]:
        items = [entity.get_value_map() for entity in self.entities]
        if select is None:
            return items
        keep = {"id", *select}
        return [{key: value for key, value in item.items() if key in keep} for item in items]

    def to_api_output(self, select: list[str] | None = None) -> dict[str, Any]:
        return {"total": self.total, "list": self.get_value_map_list(select)}
