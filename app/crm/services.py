from __future__ import annotations

from typing import Any

from sqlalchemy import and_, func, or_
from sqlalchemy.sql import ColumnElement

from app.crm.models import Account, Contact, Opportunity
from app.records.entity import RecordEntity
from app.records.errors import Forbidden
from app.records.models import User
from app.records.service import RecordService


# Probability applied when an opportunity enters a stage without an explicit one.
STAGE_PROBABILITY = {
    "Prospecting": 10,
    "Qualification": 20,
    "Proposal": 50,
    "Negotiation": 80,
    "Closed Won": 100,
    "Closed Lost": 0,
}


def _lower(value: Any) -> str:
    return str(value).strip().lower()


class AccountService(RecordService):
    no_edit_access_required_link_list = ("contacts",)
    duplicate_ignore_field_list = ("logo",)
    find_duplicates_select_attribute_list = ("id", "name", "email_address")

    def get_duplicate_where_clause(self, entity: RecordEntity, data: dict[str, Any]) -> ColumnElement[bool] | None:
        clauses: list[ColumnElement[bool]] = []
        if entity.get("name"):
            clauses.append(func.lower(Account.name) == _lower(entity.get("name")))
        if entity.get("email_address"):
            clauses.append(func.lower(Account.email_address) == _lower(entity.get("email_address")))
        if not clauses:
            return None
        return or_(*clauses)

    def filter_input_attribute_website(self, value: Any) -> Any:
        if isinstance(value, str) and value and "://" not in value:
            return f"https://{value.strip()}"
        return value


class ContactService(RecordService):
    link_mandatory_select_attribute_list = {"opportunities": ("stage",)}
    linked_count_query_disabled_list = ("opportunities",)
    find_duplicates_select_attribute_list = ("id", "name", "email_address")

    def filter_input_attribute_email_address(self, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower() or None
        return value

    def get_duplicate_where_clause(self, entity: RecordEntity, data: dict[str, Any]) -> ColumnElement[bool] | None:
        clauses: list[ColumnElement[bool]] = []
        if entity.get("first_name") and entity.get("last_name"):
            clauses.append(
                and_(
                    func.lower(Contact.first_name) == _lower(entity.get("first_name")),
                    func.lower(Contact.last_name) == _lower(entity.get("last_name")),
                )
            )
        if entity.get("email_address"):
            clauses.append(func.lower(Contact.email_address) == _lower(entity.get("email_address")))
        if not clauses:
            return None
        return or_(*clauses)

    def before_create_entity(self, entity: RecordEntity, data: dict[str, Any]) -> None:
        self._compose_name(entity)

    def before_update_entity(self, entity: RecordEntity, data: dict[str, Any]) -> None:
        if "first_name" in data or "last_name" in data:
            self._compose_name(entity)

    @staticmethod
    def _compose_name(entity: RecordEntity) -> None:
        parts = [entity.get("first_name"), entity.get("last_name")]
        entity.set("name", " ".join(part.strip() for part in parts if part and part.strip()) or None)


class OpportunityService(RecordService):
    duplicating_link_list = ("contacts",)
    mandatory_select_attribute_list = ("amount_currency",)

    def get_duplicate_where_clause(self, entity: RecordEntity, data: dict[str, Any]) -> ColumnElement[bool] | None:
        if not entity.get("name"):
            return None
        clause = func.lower(Opportunity.name) == _lower(entity.get("name"))
        if entity.get("account_id"):
            return and_(clause, Opportunity.account_id == entity.get("account_id"))
        return clause

    def before_create_entity(self, entity: RecordEntity, data: dict[str, Any]) -> None:
        if entity.get("probability") is None:
            entity.set("probability", STAGE_PROBABILITY.get(entity.get("stage")))

    def before_update_entity(self, entity: RecordEntity, data: dict[str, Any]) -> None:
        if "stage" in data and "probability" not in data and entity.is_attribute_changed("stage"):
            entity.set("probability", STAGE_PROBABILITY.get(entity.get("stage")))


class UserService(RecordService):
    only_admin_attribute_list = ("type",)
    non_admin_read_only_attribute_list = ("user_name", "type", "is_active", "default_team_id")
    non_admin_read_only_link_list = ("teams",)
    check_for_duplicates_in_update = True
    find_duplicates_select_attribute_list = ("id", "user_name")
    duplicate_ignore_field_list = ("user_name",)

    def get_duplicate_where_clause(self, entity: RecordEntity, data: dict[str, Any]) -> ColumnElement[bool] | None:
        if not entity.get("user_name"):
            return None
        return func.lower(User.user_name) == _lower(entity.get("user_name"))

    def create(self, data: dict[str, Any]) -> RecordEntity:
        if not self.ctx.is_admin:
            raise Forbidden("Only administrators can create users.")
        return super().create(data)

    def before_delete_entity(self, entity: RecordEntity) -> None:
        if entity.id == self.ctx.user_id:
            raise Forbidden("Users cannot delete themselves.")
        if not self.ctx.is_admin:
            raise Forbidden("Only administrators can delete users.")


class TeamService(RecordService):
    only_admin_link_list = ("users",)

    def create(self, data: dict[str, Any]) -> RecordEntity:
        if not self.ctx.is_admin:
            raise Forbidden("Only administrators can create teams.")
        return super().create(data)


SERVICE_CLASSES: dict[str, type[RecordService]] = {
    "Account": AccountService,
    "Contact": ContactService,
    "Opportunity": OpportunityService,
    "User": UserService,
    "Team": TeamService,
}
