from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

from opentelemetry import trace
from sqlalchemy import select
from sqlalchemy.sql import ColumnElement

from app import events
from app.core.config import Settings, get_settings
from app.metrics import observe_record_duplicate, observe_record_operation
from app.platform.security.acl import Acl
from app.platform.security.fls import apply_fls_to_entity
from app.platform.security.policies import AccessLevel, RecordAction
from app.records.collection import TOTAL_HAS_MORE, TOTAL_HAS_NO_MORE, RecordCollection
from app.records.entity import RecordEntity
from app.records.entity_manager import EntityManager
from app.records.errors import (
    BadRequest,
    ConflictSilent,
    Error,
    Forbidden,
    ForbiddenSilent,
    NotFound,
    NotFoundSilent,
    RecordError,
)
from app.records.export import Export, ExportParams
from app.records.loaders import ListLoader, ReadLoader
from app.records.metadata import FieldUtil
from app.records.models import ActionHistoryRecord, Attachment
from app.records.select import SearchParams, SelectBuilder
from app.records.stream import StreamService
from app.records.validation import FieldValidationManager, FieldValidationParams

if TYPE_CHECKING:
    from app.records.container import RecordServiceContainer


logger = logging.getLogger("app.records")
tracer = trace.get_tracer("app.records")

MAX_SELECT_TEXT_ATTRIBUTE_LENGTH = 5000
FIND_DUPLICATES_LIMIT = 10

# Attributes managed by the system; never accepted from input.
SYSTEM_INPUT_ATTRIBUTE_LIST = (
    "deleted",
    "deleted_at",
    "id",
    "modified_by_id",
    "modified_by_name",
    "modified_at",
    "created_by_id",
    "created_by_name",
    "created_at",
)

DUPLICATE_CHECK_SKIP_FLAGS = ("_skip_duplicate_check", "skip_duplicate_check", "force_duplicate")


class RecordService:
    """CRUD, relations and followers of one entity type for the acting user.

    Every public operation checks access through the ACL first and filters
    input and output attributes; subclasses tune the behaviour through the
    class attributes below and the ``before_*`` / ``after_*`` hooks.

    Relation-specific behaviour is looked up by name: ``find_linked_<link>``,
    ``link_<link>``, ``unlink_<link>`` and ``mass_link_<link>`` methods replace
    the generic handling for that link. Input attributes are passed through
    ``filter_input_attribute_<attribute>`` when such a method exists.
    """

    entity_type: str = ""

    get_entity_before_update = False

    not_filtering_attribute_list: tuple[str, ...] = ()
    forbidden_attribute_list: tuple[str, ...] = ()
    internal_attribute_list: tuple[str, ...] = ()
    only_admin_attribute_list: tuple[str, ...] = ()
    read_only_attribute_list: tuple[str, ...] = ()
    non_admin_read_only_attribute_list: tuple[str, ...] = ()

    forbidden_link_list: tuple[str, ...] = ()
    internal_link_list: tuple[str, ...] = ()
    read_only_link_list: tuple[str, ...] = ()
    non_admin_read_only_link_list: tuple[str, ...] = ()
    only_admin_link_list: tuple[str, ...] = ()

    link_params: dict[str, dict[str, Any]] = {}
    link_mandatory_select_attribute_list: dict[str, tuple[str, ...]] = {}
    no_edit_access_required_link_list: tuple[str, ...] = ()
    no_edit_access_required_for_link = False

    check_for_duplicates_in_update = False
    action_history_disabled = False
    duplicating_link_list: tuple[str, ...] = ()

    list_count_query_disabled = False
    linked_count_query_disabled_list: tuple[str, ...] = ()

    max_select_text_attribute_length: int | None = None
    max_select_text_attribute_length_disabled = False

    select_attribute_list: tuple[str, ...] | None = None
    mandatory_select_attribute_list: tuple[str, ...] = ()
    force_select_all_attributes = False

    validate_skip_field_list: tuple[str, ...] = ()
    validate_required_skip_field_list: tuple[str, ...] = ()

    find_duplicates_select_attribute_list: tuple[str, ...] = ("id", "name")
    duplicate_ignore_field_list: tuple[str, ...] = ()
    duplicate_ignore_attribute_list: tuple[str, ...] = ()

    def __init__(
        self,
        entity_manager: EntityManager,
        acl: Acl,
        *,
        container: RecordServiceContainer | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.entity_manager = entity_manager
        self.metadata = entity_manager.metadata
        self.acl = acl
        self.ctx = acl.ctx
        self.container = container
        self.settings = settings or get_settings()
        self.field_util = FieldUtil(self.metadata)
        self.field_validation_manager = FieldValidationManager(self.metadata)
        self.list_loader = ListLoader(entity_manager)
        self._stream: StreamService | None = None

    def set_entity_type(self, entity_type: str) -> None:
        if self.entity_type and self.entity_type != entity_type:
            raise RuntimeError(f"Entity type is already set to '{self.entity_type}'")
        self.entity_type = entity_type

    @property
    def stream(self) -> StreamService:
        if self._stream is None:
            if self.container is not None:
                self._stream = self.container.stream
            else:
                self._stream = StreamService(self.entity_manager, self.acl)
        return self._stream

    def _service_for(self, entity_type: str) -> RecordService:
        if self.container is not None:
            return self.container.get(entity_type)
        service = RecordService(self.entity_manager, self.acl, settings=self.settings)
        service.set_entity_type(entity_type)
        return service

    @contextmanager
    def _observed(self, operation: str, entity_id: str | None = None) -> Iterator[None]:
        started = time.perf_counter()
        outcome = "error"
        with tracer.start_as_current_span(f"records.{operation}") as span:
            span.set_attribute("entity_type", self.entity_type)
            if entity_id:
                span.set_attribute("entity_id", entity_id)
            try:
                yield
                outcome = "success"
            except RecordError as exc:
                outcome = "rejected"
                log = logger.debug if exc.silent else logger.warning
                log(
                    "record_operation_rejected",
                    extra={
                        "entity_type": self.entity_type,
                        "entity_id": entity_id,
                        "operation": operation,
                        "status_code": exc.status_code,
                        "user_id": self.ctx.user_id,
                        "error": exc.message,
                    },
                )
                raise
            finally:
                observe_record_operation(self.entity_type, operation, outcome, time.perf_counter() - started)

    # History

    def process_action_history_record(self, action: str, entity: RecordEntity) -> None:
        if self.action_history_disabled or self.settings.action_history_disabled:
            return

        history_record = ActionHistoryRecord(
            action=action,
            user_id=self.ctx.user_id,
            auth_token_id=self.ctx.auth_token_id,
            ip_address=self.ctx.ip_address,
            target_type=entity.entity_type,
            target_id=entity.id,
        )
        self.entity_manager.session.add(history_record)
        self.entity_manager.session.flush()

    # Read

    def read(self, id_: str) -> RecordEntity:
        with self._observed("read", id_):
            if not self.acl.check(self.entity_type, RecordAction.READ):
                raise ForbiddenSilent()
            if not id_:
                raise Error("No ID passed.")

            entity = self.get_entity(id_)
            if entity is None:
                raise NotFoundSilent(f"Record {id_} does not exist.")

            self.process_action_history_record("read", entity)
            self.entity_manager.commit()
            return entity

    def get_entity(self, id_: str | None = None) -> RecordEntity | None:
        """Fetch a record with read access checked; a new record when ``id_`` is None."""

        if id_ is None:
            return self.entity_manager.get_new_entity(self.entity_type)

        entity = self.entity_manager.get_entity(self.entity_type, id_)
        if entity is None and self.ctx.is_admin:
            entity = self.get_entity_even_deleted(id_)
        if entity is None:
            return None

        self.load_additional_fields(entity)

        if not self.acl.check(entity, RecordAction.READ):
            raise ForbiddenSilent("No 'read' access.")

        self.prepare_entity_for_output(entity)
        return entity

    def get_entity_even_deleted(self, id_: str) -> RecordEntity | None:
        return self.entity_manager.get_entity(self.entity_type, id_, with_deleted=True)

    def load_additional_fields(self, entity: RecordEntity) -> None:
        ReadLoader(self.entity_manager, self.stream).process(entity)

    # Validation and assignment

    def process_validation(self, entity: RecordEntity, data: dict[str, Any]) -> None:
        params = (
            FieldValidationParams()
            .with_skip_field_list(list(self.validate_skip_field_list))
            .with_type_skip_field_list("required", list(self.validate_required_skip_field_list))
        )
        self.field_validation_manager.process(entity, data, params)

    def process_assignment_check(self, entity: RecordEntity) -> None:
        if not self.check_assignment(entity):
            raise Forbidden("Assignment failure: assigned user or team not allowed.")

    def check_assignment(self, entity: RecordEntity) -> bool:
        if not self.is_permitted_assigned_user(entity):
            return False
        return self.is_permitted_teams(entity)

    def is_permitted_assigned_user(self, entity: RecordEntity) -> bool:
        if not entity.has_attribute("assigned_user_id"):
            return True

        assigned_user_id = entity.get("assigned_user_id")

        if self.ctx.is_portal and not entity.is_attribute_changed("assigned_user_id") and not assigned_user_id:
            return True

        permission = self.acl.get("assignment")
        if permission not in {AccessLevel.TEAM, AccessLevel.NO}:
            return True

        if not entity.is_new() and not entity.is_attribute_changed("assigned_user_id"):
            return True

        if not assigned_user_id:
            return not (permission == AccessLevel.NO and not self.ctx.is_api)

        if permission == AccessLevel.NO:
            return assigned_user_id == self.ctx.user_id

        return self.entity_manager.users.check_belongs_to_any_of_teams(assigned_user_id, list(self.ctx.team_ids))

    def is_permitted_teams(self, entity: RecordEntity) -> bool:
        permission = self.acl.get("assignment")
        if permission not in {AccessLevel.TEAM, AccessLevel.NO}:
            return True

        if not entity.has_link_multiple_field("teams"):
            return True

        if not entity.is_new() and not entity.has("teams_ids"):
            self.entity_manager.load_link_multiple(entity, "teams")

        team_ids = entity.get_link_multiple_id_list("teams")

        if not team_ids:
            if permission == AccessLevel.TEAM and entity.has_attribute("assigned_user_id"):
                return bool(entity.get("assigned_user_id"))
            return True

        if entity.is_new():
            new_ids = team_ids
        else:
            existing_ids = {team.id for team in self.entity_manager.find_related(entity, "teams")}
            new_ids = [team_id for team_id in team_ids if team_id not in existing_ids]

        user_team_ids = set(self.ctx.team_ids)
        return all(team_id in user_team_ids for team_id in new_ids)

    # Input

    def filter_input_attribute(self, attribute: str, value: Any) -> Any:
        if attribute in self.not_filtering_attribute_list:
            return value
        handler = getattr(self, f"filter_input_attribute_{attribute}", None)
        if callable(handler):
            return handler(value)
        return value

    def filter_input(self, data: dict[str, Any]) -> dict[str, Any]:
        data = dict(data)
        for attribute in (*self.read_only_attribute_list, *self.forbidden_attribute_list):
            data.pop(attribute, None)
        for attribute in self._read_only_field_attribute_list():
            data.pop(attribute, None)
        for attribute in self._link_attribute_list((*self.read_only_link_list, *self.forbidden_link_list)):
            data.pop(attribute, None)

        data = {attribute: self.filter_input_attribute(attribute, value) for attribute, value in data.items()}

        if not self.ctx.is_admin:
            for attribute in self.only_admin_attribute_list:
                data.pop(attribute, None)

        for attribute in self.acl.get_scope_forbidden_attribute_list(self.entity_type, "edit"):
            data.pop(attribute, None)
        forbidden_links = self.acl.get_scope_forbidden_link_list(self.entity_type, "edit")
        for attribute in self._link_attribute_list(forbidden_links):
            data.pop(attribute, None)

        if not self.ctx.is_admin:
            for attribute in self.non_admin_read_only_attribute_list:
                data.pop(attribute, None)
            admin_links = (*self.non_admin_read_only_link_list, *self.only_admin_link_list)
            for attribute in self._link_attribute_list(admin_links):
                data.pop(attribute, None)
        return data

    def filter_create_input(self, data: dict[str, Any]) -> dict[str, Any]:
        return self.filter_input({key: value for key, value in data.items() if key not in SYSTEM_INPUT_ATTRIBUTE_LIST})

    def filter_update_input(self, data: dict[str, Any]) -> dict[str, Any]:
        return self.filter_input({key: value for key, value in data.items() if key not in SYSTEM_INPUT_ATTRIBUTE_LIST})

    def _read_only_field_attribute_list(self) -> list[str]:
        attributes: list[str] = []
        for field in self.field_util.get_entity_type_field_list(self.entity_type):
            if self.field_util.get_entity_type_field_param(self.entity_type, field, "read_only"):
                attributes.extend(self.field_util.get_attribute_list(self.entity_type, field))
        return attributes

    def _link_attribute_list(self, links: Iterable[str]) -> list[str]:
        # A link is edited through the attributes of its field of the same name.
        attributes: list[str] = []
        for link in links:
            attributes.extend(self.field_util.get_attribute_list(self.entity_type, link))
        return attributes

    @staticmethod
    def _set_input(entity: RecordEntity, data: dict[str, Any]) -> None:
        entity.set({attribute: value for attribute, value in data.items() if entity.has_attribute(attribute)})

    # Defaults and duplicates

    def populate_defaults(self, entity: RecordEntity, data: dict[str, Any]) -> None:
        if not self.ctx.is_portal:
            forbidden_field_list: list[str] | None = None

            if entity.has_attribute("assigned_user_id"):
                forbidden_field_list = self.acl.get_scope_forbidden_field_list(self.entity_type, "edit")
                if "assigned_user" in forbidden_field_list:
                    entity.set({"assigned_user_id": self.ctx.user_id, "assigned_user_name": self._user_display_name()})

            if entity.has_link_multiple_field("teams"):
                if forbidden_field_list is None:
                    forbidden_field_list = self.acl.get_scope_forbidden_field_list(self.entity_type, "edit")
                default_team_id = self.ctx.default_team_id
                if "teams" in forbidden_field_list and default_team_id:
                    entity.add_link_multiple_id("teams", default_team_id)
                    teams_names = dict(entity.get("teams_names") or {})
                    teams_names[default_team_id] = self.ctx.default_team_name
                    entity.set("teams_names", teams_names)

        for field in self.field_util.get_field_by_type_list(self.entity_type, "currency"):
            if entity.get(field) and not entity.get(f"{field}_currency"):
                entity.set(f"{field}_currency", self.settings.default_currency)

    def _populate_field_defaults(self, entity: RecordEntity) -> None:
        fields = self.metadata.get(["entity_defs", self.entity_type, "fields"], {}) or {}
        for field, params in fields.items():
            if "default" in params and entity.is_column(field) and entity.get(field) is None:
                entity.set(field, params["default"])

    def _user_display_name(self) -> str | None:
        user = self.entity_manager.get_user()
        if user is not None and user.name:
            return user.name
        return self.ctx.user_name

    def process_duplicate_check(self, entity: RecordEntity, data: dict[str, Any]) -> None:
        if any(data.get(flag) for flag in DUPLICATE_CHECK_SKIP_FLAGS):
            return

        duplicates = self.find_duplicates(entity, data)
        if not duplicates:
            return

        observe_record_duplicate(self.entity_type)
        for duplicate in duplicates:
            self.prepare_entity_for_output(duplicate)
        raise ConflictSilent.create_with_body(
            "duplicate",
            [
                {attribute: duplicate.get(attribute) for attribute in self.find_duplicates_select_attribute_list}
                for duplicate in duplicates
            ],
        )

    def get_duplicate_where_clause(self, entity: RecordEntity, data: dict[str, Any]) -> ColumnElement[bool] | None:
        return None

    def check_is_duplicate(self, entity: RecordEntity) -> bool:
        where = self.get_duplicate_where_clause(entity, {})
        if where is None:
            return False

        model = self.entity_manager.get_model(self.entity_type)
        query = self.entity_manager.query(self.entity_type).where(where)
        if entity.id:
            query = query.where(model.id != entity.id)
        return bool(self.entity_manager.session.scalar(select(query.with_only_columns(model.id).exists())))

    def find_duplicates(self, entity: RecordEntity, data: dict[str, Any] | None = None) -> list[RecordEntity] | None:
        where = self.get_duplicate_where_clause(entity, data or {})
        if where is None:
            return None

        model = self.entity_manager.get_model(self.entity_type)
        query = (
            SelectBuilder(self.entity_manager, self.acl)
            .from_(self.entity_type)
            .with_strict_access_control()
            .build()
            .where(where)
        )
        if entity.id:
            query = query.where(model.id != entity.id)

        duplicates = self.entity_manager.find_entities(self.entity_type, query.limit(FIND_DUPLICATES_LIMIT))
        return duplicates or None

    def check_for_duplicates(self, data: dict[str, Any], id_: str | None = None) -> list[dict[str, Any]]:
        """Duplicates of a record that is about to be created (or updated when ``id_`` is given)."""

        with self._observed("check_for_duplicates", id_):
            if not self.acl.check(self.entity_type, RecordAction.READ):
                raise ForbiddenSilent()

            if id_:
                entity = self.entity_manager.get_entity(self.entity_type, id_)
                if entity is None:
                    raise NotFound()
                if not self.acl.check(entity, RecordAction.READ):
                    raise ForbiddenSilent()
                data = self.filter_update_input(data)
            else:
                entity = self.entity_manager.get_new_entity(self.entity_type)
                data = self.filter_create_input(data)
            self._set_input(entity, data)

            duplicates = self.find_duplicates(entity, data) or []
            result = []
            for duplicate in duplicates:
                self.prepare_entity_for_output(duplicate)
                result.append(
                    {attribute: duplicate.get(attribute) for attribute in self.find_duplicates_select_attribute_list}
                )
            self.entity_manager.rollback()
            return result

    # Create / update / delete

    def create(self, data: dict[str, Any]) -> RecordEntity:
        with self._observed("create"):
            if not self.acl.check(self.entity_type, RecordAction.CREATE):
                raise ForbiddenSilent()

            entity = self.entity_manager.get_new_entity(self.entity_type)
            self._populate_field_defaults(entity)

            data = self.filter_create_input(data)
            self._set_input(entity, data)
            self.populate_defaults(entity, data)

            if not self.acl.check(entity, RecordAction.CREATE):
                raise ForbiddenSilent("No create access.")

            self.process_validation(entity, data)
            self.process_assignment_check(entity)
            self.process_duplicate_check(entity, data)
            self.before_create_entity(entity, data)

            self.entity_manager.save_entity(entity)

            self.after_create_entity(entity, data)
            self.after_create_process_duplicating(entity, data)
            self.stream.follow_on_create(entity)
            self.load_additional_fields(entity)
            self.prepare_entity_for_output(entity)
            self.process_action_history_record("create", entity)

            self.entity_manager.commit()
            events.publish_record_event(self.entity_type, "created", str(entity.id), actor_user_id=self.ctx.user_id)
            logger.info(
                "record_created",
                extra={"entity_type": self.entity_type, "entity_id": entity.id, "user_id": self.ctx.user_id},
            )
            return entity

    def update(self, id_: str, data: dict[str, Any]) -> RecordEntity:
        with self._observed("update", id_):
            if not self.acl.check(self.entity_type, RecordAction.EDIT):
                raise ForbiddenSilent()
            if not id_:
                raise BadRequest("ID is empty.")

            data = self.filter_update_input(data)

            if self.get_entity_before_update:
                entity = self.get_entity(id_)
            else:
                entity = self.entity_manager.get_entity(self.entity_type, id_)
            if entity is None:
                raise NotFound(f"Record {id_} not found.")

            if not self.acl.check(entity, RecordAction.EDIT):
                raise ForbiddenSilent("No edit access.")

            self._set_input(entity, data)

            self.process_validation(entity, data)
            self.process_assignment_check(entity)
            self.before_update_entity(entity, data)

            if self.check_for_duplicates_in_update:
                self.process_duplicate_check(entity, data)

            changed = [attribute for attribute in data if entity.is_attribute_changed(attribute)]
            self.entity_manager.save_entity(entity)

            self.after_update_entity(entity, data)
            self.prepare_entity_for_output(entity)
            self.process_action_history_record("update", entity)

            self.entity_manager.commit()
            events.publish_record_event(
                self.entity_type,
                "updated",
                id_,
                actor_user_id=self.ctx.user_id,
                payload={"changed_attributes": changed},
            )
            return entity

    def delete(self, id_: str) -> None:
        with self._observed("delete", id_):
            if not self.acl.check(self.entity_type, RecordAction.DELETE):
                raise ForbiddenSilent()
            if not id_:
                raise BadRequest("ID is empty.")

            entity = self.entity_manager.get_entity(self.entity_type, id_)
            if entity is None:
                raise NotFound(f"Record {id_} not found.")

            if not self.acl.check(entity, RecordAction.DELETE):
                raise ForbiddenSilent("No delete access.")

            self.before_delete_entity(entity)
            self.entity_manager.remove_entity(entity)
            self.after_delete_entity(entity)
            self.process_action_history_record("delete", entity)

            self.entity_manager.commit()
            events.publish_record_event(self.entity_type, "deleted", id_, actor_user_id=self.ctx.user_id)

    def restore_deleted(self, id_: str) -> None:
        with self._observed("restore_deleted", id_):
            if not self.ctx.is_admin:
                raise Forbidden()

            entity = self.get_entity_even_deleted(id_)
            if entity is None:
                raise NotFound()
            if not entity.is_deleted():
                raise Forbidden()

            self.entity_manager.restore_deleted(self.entity_type, id_)
            self.entity_manager.commit()
            events.publish_record_event(self.entity_type, "restored", id_, actor_user_id=self.ctx.user_id)

    # Lists

    def find(self, search_params: SearchParams) -> RecordCollection:
        with self._observed("find"):
            if not self.acl.check(self.entity_type, RecordAction.READ):
                raise ForbiddenSilent()

            disable_count = self.list_count_query_disabled or bool(
                self.metadata.get(["entity_defs", self.entity_type, "collection", "count_disabled"])
            )

            prepared = self.prepare_search_params(search_params)
            max_size = prepared.max_size
            query_params = prepared.with_max_size(max_size + 1) if disable_count and max_size else prepared

            query = (
                SelectBuilder(self.entity_manager, self.acl)
                .from_(self.entity_type)
                .with_strict_access_control()
                .with_search_params(query_params)
                .build()
            )
            entities = self.entity_manager.find_entities(self.entity_type, query)
            entities, total = self._page_total(query, entities, disable_count, max_size)

            for entity in entities:
                self.list_loader.process(entity, prepared.select)
                self.prepare_entity_for_output(entity)
                self._truncate_text_attributes(entity, prepared.max_text_attribute_length)

            return RecordCollection(entities=entities, total=total)

    def _page_total(
        self,
        query: Any,
        entities: list[RecordEntity],
        disable_count: bool,
        max_size: int | None,
    ) -> tuple[list[RecordEntity], int]:
        if not disable_count:
            return entities, self.entity_manager.count(query)
        if max_size and len(entities) > max_size:
            return entities[:max_size], TOTAL_HAS_MORE
        return entities, TOTAL_HAS_NO_MORE

    def _truncate_text_attributes(self, entity: RecordEntity, length: int | None) -> None:
        if length is None:
            return
        for field in self.field_util.get_field_by_type_list(entity.entity_type, "text"):
            value = entity.get(field)
            if isinstance(value, str) and len(value) > length:
                entity.set_output_value(field, value[:length])

    def get_max_select_text_attribute_length(self) -> int | None:
        if self.max_select_text_attribute_length_disabled:
            return None
        if self.max_select_text_attribute_length:
            return self.max_select_text_attribute_length
        configured = self.settings.max_select_text_attribute_length_for_list
        return configured if configured is not None else MAX_SELECT_TEXT_ATTRIBUTE_LENGTH

    def prepare_search_params(self, search_params: SearchParams) -> SearchParams:
        search_params = self.prepare_search_params_select(search_params)

        limit = self.settings.record_list_max_size_limit
        if search_params.max_size is None or search_params.max_size > limit:
            search_params = search_params.with_max_size(limit)

        return search_params.with_max_text_attribute_length(self.get_max_select_text_attribute_length())

    def prepare_search_params_select(self, search_params: SearchParams) -> SearchParams:
        if self.force_select_all_attributes:
            return search_params.with_select(None)
        if self.select_attribute_list:
            return search_params.with_select(list(self.select_attribute_list))
        if self.mandatory_select_attribute_list and search_params.select is not None:
            return search_params.with_select(
                list(dict.fromkeys([*search_params.select, *self.mandatory_select_attribute_list]))
            )
        return search_params

    def prepare_link_search_params(self, search_params: SearchParams, link: str) -> SearchParams:
        if search_params.select is None:
            return search_params
        mandatory = self.link_mandatory_select_attribute_list.get(link)
        if mandatory is None:
            return search_params
        return search_params.with_select(list(dict.fromkeys([*search_params.select, *mandatory])))

    # Links

    def _link_handler(self, prefix: str, link: str) -> Callable[..., Any] | None:
        handler = getattr(self, f"{prefix}_{link}", None)
        return handler if callable(handler) else None

    def find_linked(self, id_: str, link: str, search_params: SearchParams) -> RecordCollection:
        with self._observed("find_linked", id_):
            if not self.acl.check(self.entity_type, RecordAction.READ):
                raise ForbiddenSilent("No access.")

            entity = self.entity_manager.get_entity(self.entity_type, id_)
            if entity is None:
                raise NotFound()
            if not self.acl.check(entity, RecordAction.READ):
                raise ForbiddenSilent()
            if not link:
                raise Error("Empty link.")

            self.process_forbidden_link_read_check(link)

            handler = self._link_handler("find_linked", link)
            if handler is not None:
                return handler(id_, search_params)

            foreign_entity_type = entity.get_relation_param(link, "entity")
            if not foreign_entity_type:
                raise Error(f"Entity '{self.entity_type}' has no relation '{link}'.")

            skip_acl = bool(self.link_params.get(link, {}).get("skip_acl", False))
            if not skip_acl and not self.acl.check(foreign_entity_type, RecordAction.READ):
                raise Forbidden()

            foreign_service = self._service_for(foreign_entity_type)
            disable_count = link in self.linked_count_query_disabled_list

            prepared = self.prepare_link_search_params(foreign_service.prepare_search_params(search_params), link)
            max_size = prepared.max_size
            query_params = prepared.with_max_size(max_size + 1) if disable_count and max_size else prepared

            builder = (
                SelectBuilder(self.entity_manager, self.acl)
                .from_(foreign_entity_type)
                .with_base_query(self.entity_manager.related_query(entity, link))
                .with_search_params(query_params)
            )
            if not skip_acl:
                builder.with_strict_access_control()
            else:
                builder.with_complex_expressions_forbidden()
                builder.with_where_permission_check()
            query = builder.build()

            items = self.entity_manager.find_entities(foreign_entity_type, query)
            items, total = self._page_total(query, items, disable_count, max_size)

            for item in items:
                self.list_loader.process(item, prepared.select)
                foreign_service.prepare_entity_for_output(item)
                self._truncate_text_attributes(item, prepared.max_text_attribute_length)

            return RecordCollection(entities=items, total=total)

    def _get_for_link_edit(self, id_: str, link: str) -> RecordEntity:
        self.process_forbidden_link_edit_check(link)

        entity = self.entity_manager.get_entity(self.entity_type, id_)
        if entity is None:
            raise NotFound()

        action = RecordAction.READ if self.no_edit_access_required_for_link else RecordAction.EDIT
        if not self.acl.check(entity, action):
            raise Forbidden()
        return entity

    def _get_foreign_for_link_edit(self, entity: RecordEntity, link: str, foreign_id: str) -> RecordEntity:
        foreign_entity_type = entity.get_relation_param(link, "entity")
        if not foreign_entity_type:
            raise Error(f"Entity '{self.entity_type}' has no relation '{link}'.")

        foreign = self.entity_manager.get_entity(foreign_entity_type, foreign_id)
        if foreign is None:
            raise NotFound()

        if not self.acl.check(foreign, self._link_access_action(link)):
            raise Forbidden()
        return foreign

    def _link_access_action(self, link: str) -> RecordAction:
        if link in self.no_edit_access_required_link_list:
            return RecordAction.READ
        return RecordAction.EDIT

    def link(self, id_: str, link: str, foreign_id: str) -> None:
        with self._observed("link", id_):
            if not self.acl.check(self.entity_type):
                raise Forbidden()
            if not id_ or not link or not foreign_id:
                raise BadRequest()

            entity = self._get_for_link_edit(id_, link)

            handler = self._link_handler("link", link)
            if link not in {"entity", "entity_mass"} and handler is not None:
                handler(id_, foreign_id)
                return

            foreign = self._get_foreign_for_link_edit(entity, link, foreign_id)
            self.entity_manager.relate(entity, link, foreign)
            self.entity_manager.commit()
            events.publish_record_event(
                self.entity_type,
                "related",
                id_,
                actor_user_id=self.ctx.user_id,
                payload={"link": link, "foreign_id": foreign_id},
            )

    def unlink(self, id_: str, link: str, foreign_id: str) -> None:
        with self._observed("unlink", id_):
            if not self.acl.check(self.entity_type):
                raise Forbidden()
            if not id_ or not link or not foreign_id:
                raise BadRequest()

            entity = self._get_for_link_edit(id_, link)

            handler = self._link_handler("unlink", link)
            if link != "entity" and handler is not None:
                handler(id_, foreign_id)
                return

            foreign = self._get_foreign_for_link_edit(entity, link, foreign_id)
            self.entity_manager.unrelate(entity, link, foreign)
            self.entity_manager.commit()
            events.publish_record_event(
                self.entity_type,
                "unrelated",
                id_,
                actor_user_id=self.ctx.user_id,
                payload={"link": link, "foreign_id": foreign_id},
            )

    def mass_link(
        self,
        id_: str,
        link: str,
        where: list[dict[str, Any]] | None,
        select_data: dict[str, Any] | None = None,
    ) -> bool:
        with self._observed("mass_link", id_):
            if not self.acl.check(self.entity_type, RecordAction.EDIT):
                raise Forbidden()
            if not id_ or not link:
                raise BadRequest()

            self.process_forbidden_link_edit_check(link)

            entity = self.entity_manager.get_entity(self.entity_type, id_)
            if entity is None:
                raise NotFound()
            if not self.acl.check(entity, RecordAction.EDIT):
                raise Forbidden()

            handler = self._link_handler("mass_link", link)
            if handler is not None:
                return bool(handler(id_, where, select_data))

            foreign_entity_type = entity.get_relation_param(link, "entity")
            if not foreign_entity_type:
                raise Error(f"Entity '{self.entity_type}' has no relation '{link}'.")

            action = self._link_access_action(link)
            if not self.acl.check(foreign_entity_type, action):
                raise Forbidden()

            raw: dict[str, Any] = dict(select_data or {})
            raw["where"] = where if isinstance(where, list) else []
            query = (
                SelectBuilder(self.entity_manager, self.acl)
                .from_(foreign_entity_type)
                .with_strict_access_control()
                .with_search_params(SearchParams.from_raw(raw))
                .build()
            )

            if self.acl.get_level(foreign_entity_type, action) == AccessLevel.ALL:
                self.entity_manager.mass_relate(entity, link, query)
                self.entity_manager.commit()
                return True

            count_related = 0
            for foreign in self.entity_manager.find_entities(foreign_entity_type, query):
                if not self.acl.check(foreign, action):
                    continue
                self.entity_manager.relate(entity, link, foreign)
                count_related += 1

            self.entity_manager.commit()
            logger.info(
                "records_mass_related",
                extra={"entity_type": self.entity_type, "entity_id": id_, "count": count_related},
            )
            return count_related > 0

    def process_forbidden_link_read_check(self, link: str) -> None:
        if link in self.acl.get_scope_forbidden_link_list(self.entity_type, "read"):
            raise Forbidden()
        if link in self.forbidden_link_list or link in self.internal_link_list:
            raise Forbidden()
        if not self.ctx.is_admin and link in self.only_admin_link_list:
            raise Forbidden()

    def process_forbidden_link_edit_check(self, link: str) -> None:
        if link in self.acl.get_scope_forbidden_link_list(self.entity_type, "edit"):
            raise Forbidden()
        if link in self.forbidden_link_list or link in self.read_only_link_list:
            raise Forbidden()
        if not self.ctx.is_admin and (link in self.non_admin_read_only_link_list or link in self.only_admin_link_list):
            raise Forbidden()

    # Followers

    def find_linked_followers(self, id_: str, search_params: SearchParams) -> RecordCollection:
        entity = self.entity_manager.get_entity(self.entity_type, id_)
        if entity is None:
            raise NotFound()
        if not self.acl.check(entity, RecordAction.READ):
            raise Forbidden()
        return self.stream.find_entity_followers(entity, self._service_for("User").prepare_search_params(search_params))

    def _check_follower_management(self, id_: str, user_id: str) -> RecordEntity:
        if not self.acl.check(self.entity_type, RecordAction.EDIT):
            raise Forbidden()
        if not self.stream.is_stream_enabled(self.entity_type):
            raise NotFound()

        entity = self.entity_manager.get_entity(self.entity_type, id_)
        if entity is None:
            raise NotFound()

        user = self.entity_manager.get_entity("User", user_id)
        if user is None:
            raise NotFound()

        if not self.acl.check(entity, RecordAction.EDIT):
            raise ForbiddenSilent("No 'edit' access.")
        if not self.acl.check(entity, RecordAction.STREAM):
            raise ForbiddenSilent("No 'stream' access.")

        is_portal = user.get("type") == "portal"
        if not is_portal and not self.acl.check(user, RecordAction.READ):
            raise ForbiddenSilent("No 'read' access to user.")
        if is_portal and self.acl.get("portal") != AccessLevel.YES:
            raise ForbiddenSilent("No 'portal' permission.")
        if (
            not is_portal
            and self.ctx.user_id != user.id
            and not self.acl.check_user_permission(user_id, "follower_management")
        ):
            raise Forbidden()
        return entity

    def link_followers(self, id_: str, foreign_id: str) -> None:
        entity = self._check_follower_management(id_, foreign_id)
        if not self.stream.follow_entity(entity, foreign_id):
            raise Forbidden("Could not add a user to followers. The user needs to have 'stream' access.")
        self.entity_manager.commit()

    def unlink_followers(self, id_: str, foreign_id: str) -> None:
        entity = self._check_follower_management(id_, foreign_id)
        self.stream.unfollow_entity(entity, foreign_id)
        self.entity_manager.commit()

    def follow(self, id_: str, user_id: str | None = None) -> None:
        with self._observed("follow", id_):
            if not self.acl.check(self.entity_type, RecordAction.STREAM):
                raise Forbidden()

            entity = self.entity_manager.get_entity(self.entity_type, id_)
            if entity is None:
                raise NotFoundSilent()
            if not self.acl.check(entity, RecordAction.STREAM):
                raise Forbidden()

            self.stream.follow_entity(entity, user_id or self.ctx.user_id)
            self.entity_manager.commit()

    def unfollow(self, id_: str, user_id: str | None = None) -> None:
        with self._observed("unfollow", id_):
            entity = self.entity_manager.get_entity(self.entity_type, id_)
            if entity is None:
                raise NotFoundSilent()

            self.stream.unfollow_entity(entity, user_id or self.ctx.user_id)
            self.entity_manager.commit()

    # Export

    def export(self, params: dict[str, Any]) -> str:
        """Export records to a file; returns the attachment id."""

        with self._observed("export"):
            if self.acl.get_permission_level("export") != AccessLevel.YES:
                raise ForbiddenSilent("No 'export' permission.")
            if not self.acl.check(self.entity_type, RecordAction.READ):
                raise ForbiddenSilent("No 'read' access.")

            search_raw = dict(params.get("search_params") or {})
            if params.get("where") is not None:
                search_raw["where"] = params["where"]

            export_params = ExportParams(
                entity_type=self.entity_type,
                ids=params.get("ids"),
                search_params=SearchParams.from_raw(search_raw) if search_raw else None,
                attribute_list=params.get("attribute_list"),
                field_list=params.get("field_list"),
                format=params.get("format") or "csv",
                file_name=params.get("file_name"),
            )
            attachment_id = Export(
                self.entity_manager,
                self.acl,
                prepare_entity=self.prepare_entity_for_output,
            ).run(export_params)
            self.entity_manager.commit()
            return attachment_id

    # Output

    def prepare_entity_for_output(self, entity: RecordEntity) -> None:
        """Clear attributes the acting user may not see and mask masked fields."""

        for attribute in (*self.internal_attribute_list, *self.forbidden_attribute_list):
            entity.clear(attribute)

        if not self.ctx.is_admin:
            for attribute in self.only_admin_attribute_list:
                entity.clear(attribute)

        for attribute in self.acl.get_scope_forbidden_attribute_list(entity.entity_type, "read"):
            entity.clear(attribute)

        if self.ctx.is_admin:
            return

        apply_fls_to_entity(entity, self.ctx, self.field_util)

    # Duplicating

    def get_duplicate_attributes(self, id_: str) -> dict[str, Any]:
        with self._observed("get_duplicate_attributes", id_):
            if not id_:
                raise BadRequest("No ID.")
            if not self.acl.check(self.entity_type, RecordAction.CREATE):
                raise Forbidden("No 'create' access.")
            if not self.acl.check(self.entity_type, RecordAction.READ):
                raise Forbidden("No 'read' access.")

            entity = self.get_entity(id_)
            if entity is None:
                raise NotFound("Record not found.")

            attributes = entity.get_value_map()
            attributes.pop("id", None)

            fields = self.metadata.get(["entity_defs", self.entity_type, "fields"], {}) or {}
            for field, params in fields.items():
                if params.get("duplicate_ignore") or field in self.duplicate_ignore_field_list:
                    for attribute in self.field_util.get_attribute_list(self.entity_type, field):
                        attributes.pop(attribute, None)
                    continue

                field_type = params.get("type")
                if field_type in {"file", "image"}:
                    attachment_id = entity.get(f"{field}_id")
                    attachment = self.entity_manager.session.get(Attachment, attachment_id) if attachment_id else None
                    if attachment is not None:
                        copy = self.entity_manager.attachments.get_copied_attachment(attachment)
                        attributes[f"{field}_id"] = copy.id
                elif field_type == "linkMultiple":
                    foreign_link = entity.get_relation_param(field, "foreign")
                    foreign_entity_type = entity.get_relation_param(field, "entity")
                    if foreign_entity_type and foreign_link:
                        foreign_type = self.metadata.get(["entity_defs", foreign_entity_type, "links", foreign_link, "type"])
                        if foreign_type != "hasMany":
                            for suffix in ("ids", "names", "columns"):
                                attributes.pop(f"{field}_{suffix}", None)

            for attribute in self.duplicate_ignore_attribute_list:
                attributes.pop(attribute, None)

            attributes["_duplicating_entity_id"] = id_
            self.entity_manager.commit()
            return attributes

    def after_create_process_duplicating(self, entity: RecordEntity, data: dict[str, Any]) -> None:
        duplicating_entity_id = data.get("_duplicating_entity_id")
        if not duplicating_entity_id:
            return

        duplicating_entity = self.entity_manager.get_entity(entity.entity_type, duplicating_entity_id)
        if duplicating_entity is None:
            return
        if not self.acl.check(duplicating_entity, RecordAction.READ):
            return

        self.duplicate_links(entity, duplicating_entity)

    def duplicate_links(self, entity: RecordEntity, duplicating_entity: RecordEntity) -> None:
        for link in self.duplicating_link_list:
            for linked in self.entity_manager.find_related(duplicating_entity, link):
                self.entity_manager.relate(entity, link, linked)

    # Hooks

    def before_create_entity(self, entity: RecordEntity, data: dict[str, Any]) -> None:
        pass

    def after_create_entity(self, entity: RecordEntity, data: dict[str, Any]) -> None:
        pass

    def before_update_entity(self, entity: RecordEntity, data: dict[str, Any]) -> None:
        pass

    def after_update_entity(self, entity: RecordEntity, data: dict[str, Any]) -> None:
        pass

    def before_delete_entity(self, entity: RecordEntity) -> None:
        pass

    def after_delete_entity(self, entity: RecordEntity) -> None:
        pass
