from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import delete, exists, select

from app.core.auth import build_auth_context
from app.platform.security.acl import Acl
from app.platform.security.policies import RecordAction
from app.records.collection import RecordCollection
from app.records.entity import RecordEntity
from app.records.entity_manager import EntityManager
from app.records.models import Follow, User
from app.records.select import SearchParams, SelectBuilder


logger = logging.getLogger("app.records.stream")


class StreamService:
    """Followers of records in stream-enabled scopes."""

    def __init__(self, entity_manager: EntityManager, acl: Acl) -> None:
        self.entity_manager = entity_manager
        self.session = entity_manager.session
        self.metadata = entity_manager.metadata
        self.acl = acl

    def is_stream_enabled(self, entity_type: str) -> bool:
        return bool(self.metadata.get(["scopes", entity_type, "stream"], False))

    def follow_entity(self, entity: RecordEntity, user_id: str) -> bool:
        if not self.is_stream_enabled(entity.entity_type) or entity.id is None:
            return False

        user = self.session.get(User, user_id)
        if user is None or not user.is_active or user.deleted_at is not None:
            return False
        if not self._acl_for(user).check(entity, RecordAction.STREAM):
            return False

        if self.check_is_followed(entity, user_id):
            return True
        self.session.add(Follow(entity_type=entity.entity_type, entity_id=entity.id, user_id=user_id))
        self.session.flush()
        logger.info(
            "record_followed",
            extra={"entity_type": entity.entity_type, "entity_id": entity.id, "user_id": user_id},
        )
        return True

    def unfollow_entity(self, entity: RecordEntity, user_id: str) -> bool:
        if not self.is_stream_enabled(entity.entity_type):
            return False
        self.session.execute(
            delete(Follow).where(
                Follow.entity_type == entity.entity_type,
                Follow.entity_id == entity.id,
                Follow.user_id == user_id,
            )
        )
        self.session.flush()
        return True

    def check_is_followed(self, entity: RecordEntity, user_id: str | None = None) -> bool:
        user_id = user_id or self.acl.user_id
        return bool(
            self.session.scalar(
                select(
                    exists().where(
                        Follow.entity_type == entity.entity_type,
                        Follow.entity_id == entity.id,
                        Follow.user_id == user_id,
                    )
                )
            )
        )

    def get_entity_followers(self, entity: RecordEntity, offset: int = 0, limit: int | None = None) -> dict[str, Any]:
        query = (
            select(User.id, User.name, User.user_name)
            .join(Follow, Follow.user_id == User.id)
            .where(
                Follow.entity_type == entity.entity_type,
                Follow.entity_id == entity.id,
                User.deleted_at.is_(None),
            )
            .order_by(Follow.created_at.desc(), User.id)
            .offset(offset)
        )
        if limit is not None:
            query = query.limit(limit)
        rows = self.session.execute(query).all()
        return {
            "ids": [str(row.id) for row in rows],
            "names": {str(row.id): row.name or row.user_name for row in rows},
        }

    def find_entity_followers(self, entity: RecordEntity, params: SearchParams) -> RecordCollection:
        follower_ids = select(Follow.user_id).where(
            Follow.entity_type == entity.entity_type,
            Follow.entity_id == entity.id,
        )
        base_query = self.entity_manager.query("User").where(User.id.in_(follower_ids))
        query = (
            SelectBuilder(self.entity_manager, self.acl)
            .from_("User")
            .with_base_query(base_query)
            .with_search_params(params)
            .with_strict_access_control()
            .build()
        )
        entities = self.entity_manager.find_entities("User", query)
        total = self.entity_manager.count(query)
        return RecordCollection(entities=entities, total=total)

    def follow_on_create(self, entity: RecordEntity) -> None:
        """Subscribe the creator and the assigned user to a new record."""

        if not self.is_stream_enabled(entity.entity_type):
            return
        user_ids = [self.acl.user_id]
        assigned_user_id = entity.get("assigned_user_id") if entity.is_column("assigned_user_id") else None
        if assigned_user_id and assigned_user_id not in user_ids:
            user_ids.append(assigned_user_id)
        for user_id in user_ids:
            self.follow_entity(entity, user_id)

    def _acl_for(self, user: User) -> Acl:
        if user.id == self.acl.user_id:
            return self.acl
        return Acl(build_auth_context(self.session, user), self.entity_manager)
