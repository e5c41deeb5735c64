from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import and_, delete, exists, func, insert, select, update
from sqlalchemy.orm import Session
from sqlalchemy.sql import ColumnElement, Select

from app.records.entity import RecordEntity
from app.records.metadata import Metadata
from app.records.models import Attachment, User, UserTeam, new_id, utcnow


logger = logging.getLogger("app.records.orm")


class UserRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def check_belongs_to_any_of_teams(self, user_id: str, team_ids: list[str]) -> bool:
        if not team_ids:
            return False
        return bool(
            self.session.scalar(
                select(
                    exists().where(and_(UserTeam.user_id == user_id, UserTeam.team_id.in_(team_ids)))
                )
            )
        )


class AttachmentRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get_copied_attachment(self, attachment: Attachment, role: str | None = None) -> Attachment:
        """Create a new attachment row sharing the contents of ``attachment``.

        The copy is unbound from any parent; ``source_id`` points at the row that
        holds the original contents.
        """

        copy = Attachment(
            id=new_id(),
            name=attachment.name,
            type=attachment.type,
            size=attachment.size,
            contents=attachment.contents,
            field=attachment.field,
            role=role or attachment.role,
            related_type=attachment.related_type,
            source_id=attachment.source_id or attachment.id,
        )
        self.session.add(copy)
        self.session.flush()
        return copy


class EntityManager:
    """Entity access over a SQLAlchemy session, driven by entity metadata."""

    def __init__(self, session: Session, metadata: Metadata) -> None:
        self.session = session
        self.metadata = metadata
        self._user: User | None = None
        self.users = UserRepository(session)
        self.attachments = AttachmentRepository(session)

    def set_user(self, user: User | None) -> None:
        self._user = user

    def get_user(self) -> User | None:
        return self._user

    def normalize_entity_name(self, name: str) -> str | None:
        return self.metadata.get_entity_path(name)

    def normalize_repository_name(self, name: str) -> str | None:
        return self.metadata.get_repository_path(name)

    def get_model(self, entity_type: str) -> Any:
        return self.metadata.get_model(entity_type)

    def wrap(self, entity_type: str, instance: Any, *, is_new: bool = False) -> RecordEntity:
        return RecordEntity(entity_type, instance, self.metadata, is_new=is_new)

    def query(self, entity_type: str, *, with_deleted: bool = False) -> Select[Any]:
        model = self.get_model(entity_type)
        stmt = select(model)
        if not with_deleted and hasattr(model, "deleted_at"):
            stmt = stmt.where(model.deleted_at.is_(None))
        return stmt

    def get_entity(self, entity_type: str, id_: str | None = None, *, with_deleted: bool = False) -> RecordEntity | None:
        if id_ is None:
            return self.get_new_entity(entity_type)
        model = self.get_model(entity_type)
        instance = self.session.scalar(self.query(entity_type, with_deleted=with_deleted).where(model.id == id_))
        if instance is None:
            return None
        return self.wrap(entity_type, instance)

    def get_new_entity(self, entity_type: str) -> RecordEntity:
        model = self.get_model(entity_type)
        return self.wrap(entity_type, model(id=new_id()), is_new=True)

    def find_entities(self, entity_type: str, stmt: Select[Any]) -> list[RecordEntity]:
        return [self.wrap(entity_type, instance) for instance in self.session.scalars(stmt).unique().all()]

    def count(self, stmt: Select[Any]) -> int:
        count_stmt = select(func.count()).select_from(stmt.order_by(None).limit(None).offset(None).subquery())
        return int(self.session.scalar(count_stmt) or 0)

    def save_entity(self, entity: RecordEntity, **options: Any) -> None:
        now = utcnow()
        user_id = self._user.id if self._user is not None else None
        instance = entity.instance

        if entity.is_new():
            if hasattr(instance, "created_at") and not options.get("import"):
                instance.created_at = now
            if hasattr(instance, "created_by_id") and user_id and not instance.created_by_id:
                instance.created_by_id = user_id
            self.session.add(instance)

        if not options.get("silent") and not options.get("is_token_renewal"):
            if hasattr(instance, "modified_at"):
                instance.modified_at = now
            if hasattr(instance, "modified_by_id") and user_id and not options.get("skip_modified_by"):
                instance.modified_by_id = user_id

        self.session.flush()
        self._sync_link_multiple(entity)
        entity.set_as_not_new()
        entity.update_fetched_values()

    def remove_entity(self, entity: RecordEntity) -> None:
        instance = entity.instance
        if not hasattr(instance, "deleted_at"):
            self.session.delete(instance)
            self.session.flush()
            return
        instance.deleted_at = utcnow()
        if hasattr(instance, "modified_by_id") and self._user is not None:
            instance.modified_by_id = self._user.id
        self.session.flush()

    def restore_deleted(self, entity_type: str, id_: str) -> None:
        model = self.get_model(entity_type)
        self.session.execute(update(model).where(model.id == id_).values(deleted_at=None))
        self.session.flush()

    def commit(self) -> None:
        self.session.commit()

    def rollback(self) -> None:
        self.session.rollback()

    # Relations

    def related_clause(self, entity: RecordEntity, link: str) -> ColumnElement[bool]:
        """WHERE clause over the foreign model selecting records related through ``link``."""

        link_def = self._require_link_def(entity.entity_type, link)
        foreign_model = self.get_model(link_def["entity"])
        link_type = link_def["type"]

        if link_type == "belongsTo":
            return foreign_model.id == entity.get(f"{link}_id")

        relation_name = link_def.get("relation_name")
        if relation_name:
            mid_model, near, far = self._mid(link_def)
            sub = select(getattr(mid_model, far)).where(getattr(mid_model, near) == entity.id)
            for key, value in (link_def.get("conditions") or {}).items():
                sub = sub.where(getattr(mid_model, key) == value)
            return foreign_model.id.in_(sub)

        foreign_key = f"{link_def['foreign']}_id"
        return getattr(foreign_model, foreign_key) == entity.id

    def linked_with_clause(self, entity_type: str, link: str, foreign_ids: list[str]) -> ColumnElement[bool]:
        """WHERE clause over ``entity_type`` selecting records related to any of ``foreign_ids``."""

        link_def = self._require_link_def(entity_type, link)
        model = self.get_model(entity_type)

        if link_def["type"] == "belongsTo":
            return getattr(model, f"{link}_id").in_(foreign_ids)

        relation_name = link_def.get("relation_name")
        if relation_name:
            mid_model, near, far = self._mid(link_def)
            sub = select(getattr(mid_model, near)).where(getattr(mid_model, far).in_(foreign_ids))
            for key, value in (link_def.get("conditions") or {}).items():
                sub = sub.where(getattr(mid_model, key) == value)
            return model.id.in_(sub)

        foreign_model = self.get_model(link_def["entity"])
        foreign_key = getattr(foreign_model, f"{link_def['foreign']}_id")
        return model.id.in_(select(foreign_key).where(foreign_model.id.in_(foreign_ids)))

    def related_query(self, entity: RecordEntity, link: str) -> Select[Any]:
        foreign_type = self._require_link_def(entity.entity_type, link)["entity"]
        return self.query(foreign_type).where(self.related_clause(entity, link))

    def find_related(self, entity: RecordEntity, link: str) -> list[RecordEntity]:
        foreign_type = self._require_link_def(entity.entity_type, link)["entity"]
        return self.find_entities(foreign_type, self.related_query(entity, link))

    def count_related(self, entity: RecordEntity, link: str) -> int:
        return self.count(self.related_query(entity, link))

    def is_related(self, entity: RecordEntity, link: str, foreign_id: str) -> bool:
        link_def = self._require_link_def(entity.entity_type, link)
        foreign_model = self.get_model(link_def["entity"])
        stmt = self.related_query(entity, link).where(foreign_model.id == foreign_id)
        return self.session.scalar(stmt.with_only_columns(foreign_model.id).limit(1)) is not None

    def relate(self, entity: RecordEntity, link: str, foreign: RecordEntity, columns: dict[str, Any] | None = None) -> bool:
        link_def = self._require_link_def(entity.entity_type, link)
        link_type = link_def["type"]

        if link_type == "belongsTo":
            entity.set(f"{link}_id", foreign.id)
            self.session.flush()
            return True

        relation_name = link_def.get("relation_name")
        if relation_name:
            mid_model, near, far = self._mid(link_def)
            conditions = dict(link_def.get("conditions") or {})
            if self._mid_row_exists(mid_model, near, far, entity.id, foreign.id, conditions):
                return True
            self.session.execute(
                insert(mid_model).values({near: entity.id, far: foreign.id, **conditions, **(columns or {})})
            )
            self.session.flush()
            return True

        foreign.set(f"{link_def['foreign']}_id", entity.id)
        self.session.flush()
        return True

    def unrelate(self, entity: RecordEntity, link: str, foreign: RecordEntity) -> bool:
        link_def = self._require_link_def(entity.entity_type, link)
        link_type = link_def["type"]

        if link_type == "belongsTo":
            if entity.get(f"{link}_id") == foreign.id:
                entity.set(f"{link}_id", None)
                self.session.flush()
            return True

        relation_name = link_def.get("relation_name")
        if relation_name:
            mid_model, near, far = self._mid(link_def)
            stmt = delete(mid_model).where(getattr(mid_model, near) == entity.id, getattr(mid_model, far) == foreign.id)
            for key, value in (link_def.get("conditions") or {}).items():
                stmt = stmt.where(getattr(mid_model, key) == value)
            self.session.execute(stmt)
            self.session.flush()
            return True

        foreign_key = f"{link_def['foreign']}_id"
        if foreign.get(foreign_key) == entity.id:
            foreign.set(foreign_key, None)
            self.session.flush()
        return True

    def mass_relate(self, entity: RecordEntity, link: str, foreign_query: Select[Any]) -> None:
        """Relate every record selected by ``foreign_query`` in a single statement."""

        link_def = self._require_link_def(entity.entity_type, link)
        foreign_model = self.get_model(link_def["entity"])
        id_query = foreign_query.with_only_columns(foreign_model.id).order_by(None)

        relation_name = link_def.get("relation_name")
        if relation_name:
            mid_model, near, far = self._mid(link_def)
            conditions = dict(link_def.get("conditions") or {})
            already = select(getattr(mid_model, far)).where(getattr(mid_model, near) == entity.id)
            for key, value in conditions.items():
                already = already.where(getattr(mid_model, key) == value)
            new_ids = self.session.scalars(id_query.where(foreign_model.id.not_in(already))).all()
            for foreign_id in new_ids:
                self.session.execute(insert(mid_model).values({near: entity.id, far: foreign_id, **conditions}))
            self.session.flush()
            return

        if link_def["type"] == "hasMany":
            foreign_key = f"{link_def['foreign']}_id"
            self.session.execute(
                update(foreign_model)
                .where(foreign_model.id.in_(id_query.scalar_subquery()))
                .values({foreign_key: entity.id})
                .execution_options(synchronize_session=False)
            )
            self.session.flush()
            return

        raise ValueError(f"Link '{link}' of {entity.entity_type} does not support mass relate")

    # Loading

    def load_link_multiple(self, entity: RecordEntity, field: str) -> None:
        link_def = self._require_link_def(entity.entity_type, field)
        foreign_model = self.get_model(link_def["entity"])
        name_column = self._name_column(foreign_model)
        rows = self.session.execute(
            self.related_query(entity, field).with_only_columns(foreign_model.id, name_column).order_by(name_column)
        ).all()
        ids = [str(row[0]) for row in rows]
        names = {str(row[0]): row[1] for row in rows}
        entity.set({f"{field}_ids": ids, f"{field}_names": names})
        entity.set_fetched(f"{field}_ids", list(ids))

    def load_link_name(self, entity: RecordEntity, field: str) -> None:
        link_def = self.metadata.get_link_def(entity.entity_type, field)
        foreign_id = entity.get(f"{field}_id")
        if link_def is None or foreign_id is None:
            entity.set(f"{field}_name", None)
            return
        foreign_model = self.get_model(link_def["entity"])
        name = self.session.scalar(select(self._name_column(foreign_model)).where(foreign_model.id == foreign_id))
        entity.set(f"{field}_name", name)

    def _sync_link_multiple(self, entity: RecordEntity) -> None:
        fields = self.metadata.get(["entity_defs", entity.entity_type, "fields"], {}) or {}
        for field, params in fields.items():
            if params.get("type") != "linkMultiple" or not entity.has(f"{field}_ids"):
                continue
            if not entity.is_attribute_changed(f"{field}_ids") and entity.has_fetched(f"{field}_ids"):
                continue
            desired = set(entity.get_link_multiple_id_list(field))
            link_def = self._require_link_def(entity.entity_type, field)
            foreign_type = link_def["entity"]
            foreign_model = self.get_model(foreign_type)
            current = set(
                str(item)
                for item in self.session.scalars(
                    self.related_query(entity, field).with_only_columns(foreign_model.id)
                ).all()
            )
            for foreign_id in desired - current:
                foreign = self.get_entity(foreign_type, foreign_id)
                if foreign is None:
                    logger.warning(
                        "link_multiple_target_missing",
                        extra={"entity_type": entity.entity_type, "entity_id": entity.id, "error": foreign_id},
                    )
                    continue
                self.relate(entity, field, foreign)
            for foreign_id in current - desired:
                foreign = self.get_entity(foreign_type, foreign_id, with_deleted=True)
                if foreign is not None:
                    self.unrelate(entity, field, foreign)
            entity.set_fetched(f"{field}_ids", sorted(desired))

    def _require_link_def(self, entity_type: str, link: str) -> dict[str, Any]:
        link_def = self.metadata.get_link_def(entity_type, link)
        if link_def is None:
            raise KeyError(f"Link '{link}' does not exist in {entity_type}")
        return link_def

    def _mid(self, link_def: dict[str, Any]) -> tuple[Any, str, str]:
        mid_model = self.get_model(link_def["relation_name"])
        near, far = link_def["mid_keys"]
        return mid_model, near, far

    def _mid_row_exists(
        self,
        mid_model: Any,
        near: str,
        far: str,
        near_id: str | None,
        far_id: str | None,
        conditions: dict[str, Any],
    ) -> bool:
        clauses = [getattr(mid_model, near) == near_id, getattr(mid_model, far) == far_id]
        clauses.extend(getattr(mid_model, key) == value for key, value in conditions.items())
        return bool(self.session.scalar(select(exists().where(and_(*clauses)))))

    @staticmethod
    def _name_column(model: Any) -> Any:
        if hasattr(model, "name"):
            return model.name
        return model.id
