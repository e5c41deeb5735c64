from __future__ import annotations

import importlib
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from sqlalchemy import select, update

from app.core.config import Settings, get_settings
from app.integrations.models import ExternalAccount, Integration, external_account_id
from app.integrations.oauth2 import OAuth2Client
from app.records.entity_manager import EntityManager
from app.records.errors import Error
from app.records.metadata import Metadata

logger = logging.getLogger("app.integrations")

AUTH_METHOD_OAUTH2 = "oauth2"

ClientFactory = Callable[[str], Any]


def import_client_class(class_name: str) -> type:
    module_name, _, attribute = class_name.rpartition(".")
    if not module_name:
        raise Error(f"Invalid client class name '{class_name}'.")
    return getattr(importlib.import_module(module_name), attribute)


def default_client_factory(class_name: str) -> Any:
    return import_client_class(class_name)()


@dataclass
class ClientRecord:
    client: Any
    user_id: str
    integration: str
    integration_entity: Integration
    external_account: ExternalAccount
    external_account_id: str


class ClientManager:
    """Creates API clients of external accounts and persists their tokens.

    Clients are tracked by identity so that a client refreshing its token can
    store it back on the account it was created for.
    """

    def __init__(
        self,
        entity_manager: EntityManager,
        metadata: Metadata,
        settings: Settings | None = None,
        client_factory: ClientFactory | None = None,
        *,
        oauth2_client_factory: Callable[[], OAuth2Client] | None = None,
    ) -> None:
        self.entity_manager = entity_manager
        self.session = entity_manager.session
        self.metadata = metadata
        self.settings = settings or get_settings()
        self.client_factory = client_factory or default_client_factory
        self.oauth2_client_factory = oauth2_client_factory or (
            lambda: OAuth2Client(timeout=self.settings.external_account_http_timeout_seconds)
        )
        self._client_map: dict[int, ClientRecord] = {}

    def get_redirect_uri(self, integration: str) -> str:
        site_url = self.settings.site_url
        redirect_uri_path = self.metadata.get(["integrations", integration, "params", "redirect_uri_path"])
        if redirect_uri_path:
            return site_url.rstrip("/") + "/" + redirect_uri_path
        return site_url + "?entryPoint=oauthCallback"

    def create(self, integration: str, user_id: str) -> Any:
        auth_method = self.metadata.get(["integrations", integration, "auth_method"])
        if auth_method == AUTH_METHOD_OAUTH2:
            return self.create_oauth2(integration, user_id)

        integration_entity, external_account = self._load(integration, user_id)
        if not integration_entity.enabled or not external_account.enabled:
            return None

        client = self.client_factory(self.get_client_class_name(integration))
        client.setup(user_id, integration_entity, external_account)
        self._add_to_client_map(client, integration_entity, external_account, user_id)
        return client

    def create_oauth2(self, integration: str, user_id: str) -> Any:
        integration_entity, external_account = self._load(integration, user_id)
        if not integration_entity.enabled or not external_account.enabled:
            return None

        client_class = import_client_class(self.get_client_class_name(integration))
        params = dict(self.metadata.get(["integrations", integration, "params"], {}))
        params.update(
            {
                "client_id": integration_entity.client_id,
                "client_secret": integration_entity.client_secret,
                "redirect_uri": self.get_redirect_uri(integration),
                "access_token": external_account.access_token,
                "refresh_token": external_account.refresh_token,
                "token_type": external_account.token_type,
                "expires_at": external_account.expires_at,
            }
        )
        client = client_class(
            self.oauth2_client_factory(),
            params,
            self,
            integration=integration,
            settings=self.settings,
        )
        self._add_to_client_map(client, integration_entity, external_account, user_id)
        return client

    def get_client_class_name(self, integration: str) -> str:
        class_name = self.metadata.get(["integrations", integration, "client_class_name"])
        if not class_name:
            raise Error(f"No client class for integration '{integration}'.")
        return class_name

    def _load(self, integration: str, user_id: str) -> tuple[Integration, ExternalAccount]:
        integration_entity = self.session.get(Integration, integration)
        if integration_entity is None:
            raise Error(f"Integration '{integration}' not found.")
        external_account = self.session.get(ExternalAccount, external_account_id(integration, user_id))
        if external_account is None:
            raise Error(f"External account '{integration}' not found for user '{user_id}'.")
        return integration_entity, external_account

    def _add_to_client_map(
        self,
        client: Any,
        integration_entity: Integration,
        external_account: ExternalAccount,
        user_id: str,
    ) -> None:
        self._client_map[id(client)] = ClientRecord(
            client=client,
            user_id=user_id,
            integration=integration_entity.id,
            integration_entity=integration_entity,
            external_account=external_account,
            external_account_id=external_account.id,
        )

    def _get_record(self, client: Any) -> ClientRecord:
        record = self._client_map.get(id(client))
        if record is None or record.client is not client:
            raise Error("Client not found in the client map.")
        return record

    def store_access_token(self, client: Any, data: dict[str, Any]) -> None:
        record = self._client_map.get(id(client))
        if record is None or record.client is not client:
            return
        account = record.external_account
        account_id = record.external_account_id

        enabled = self.session.scalar(select(ExternalAccount.enabled).where(ExternalAccount.id == account_id))
        if enabled is not None and not enabled:
            raise Error("External account got disabled.")

        account.access_token = data["access_token"]
        account.token_type = data.get("token_type")
        account.expires_at = data.get("expires_at")
        if data.get("refresh_token"):
            account.refresh_token = data["refresh_token"]

        if enabled is None:
            return
        self.session.commit()
        logger.info(
            "external_account_token_stored",
            extra={"external_account_id": account_id, "is_token_renewal": True},
        )

    def _select_is_locked(self, client: Any) -> tuple[str, bool]:
        account_id = self._get_record(client).external_account_id
        is_locked = self.session.scalar(select(ExternalAccount.is_locked).where(ExternalAccount.id == account_id))
        if is_locked is None:
            raise Error(f"External account '{account_id}' not found in the database.")
        return account_id, bool(is_locked)

    def is_client_locked(self, client: Any) -> bool:
        return self._select_is_locked(client)[1]

    def lock_client(self, client: Any) -> bool:
        """Mark the account as locked; False when another holder locked it first."""

        account_id, _ = self._select_is_locked(client)
        result = self.session.execute(
            update(ExternalAccount)
            .where(ExternalAccount.id == account_id, ExternalAccount.is_locked.is_(False))
            .values(is_locked=True)
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        return result.rowcount == 1

    def unlock_client(self, client: Any) -> None:
        account_id, _ = self._select_is_locked(client)
        self.session.execute(
            update(ExternalAccount)
            .where(ExternalAccount.id == account_id)
            .values(is_locked=False)
            .execution_options(synchronize_session=False)
        )
        self.session.commit()

    def re_fetch_client(self, client: Any) -> None:
        record = self._get_record(client)
        account = record.external_account
        account_id = record.external_account_id
        if self.session.scalar(select(ExternalAccount.id).where(ExternalAccount.id == account_id)) is None:
            raise Error(f"External account '{account_id}' not found in the database.")
        self.session.refresh(account)
        client.set_params(account.get_value_map())
