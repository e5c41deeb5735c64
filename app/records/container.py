from __future__ import annotations

from functools import lru_cache

from fastapi import Depends
from sqlalchemy.orm import Session

from app.core.auth import get_auth_context, get_current_user
from app.core.config import Settings, get_settings
from app.core.database import get_db
from app.platform.security.acl import Acl
from app.platform.security.context import AuthContext
from app.records.entity_manager import EntityManager
from app.records.errors import NotFound
from app.records.metadata import get_metadata
from app.records.models import User
from app.records.service import RecordService
from app.records.stream import StreamService


@lru_cache
def _default_service_classes() -> dict[str, type[RecordService]]:
    from app.crm.services import SERVICE_CLASSES

    return dict(SERVICE_CLASSES)


class RecordServiceContainer:
    """Record services of one request, one instance per entity type."""

    def __init__(
        self,
        entity_manager: EntityManager,
        acl: Acl,
        *,
        service_classes: dict[str, type[RecordService]] | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.entity_manager = entity_manager
        self.acl = acl
        self.settings = settings or get_settings()
        self.stream = StreamService(entity_manager, acl)
        self._service_classes = service_classes if service_classes is not None else _default_service_classes()
        self._services: dict[str, RecordService] = {}

    def has(self, entity_type: str) -> bool:
        normalized = self.entity_manager.normalize_entity_name(entity_type)
        if normalized is None:
            return False
        return bool(self.entity_manager.metadata.get(["scopes", normalized, "entity"], False))

    def get(self, entity_type: str) -> RecordService:
        if not self.has(entity_type):
            raise NotFound(f"Entity type '{entity_type}' does not exist.")
        normalized = str(self.entity_manager.normalize_entity_name(entity_type))

        service = self._services.get(normalized)
        if service is None:
            service_class = self._service_classes.get(normalized, RecordService)
            service = service_class(self.entity_manager, self.acl, container=self, settings=self.settings)
            service.set_entity_type(normalized)
            self._services[normalized] = service
        return service


def get_record_service_container(
    user: User = Depends(get_current_user),
    ctx: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
) -> RecordServiceContainer:
    entity_manager = EntityManager(db, get_metadata())
    entity_manager.set_user(user)
    return RecordServiceContainer(entity_manager, Acl(ctx, entity_manager))
