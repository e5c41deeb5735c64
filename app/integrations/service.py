from __future__ import annotations

import logging
from typing import Any

from app.integrations.client_manager import AUTH_METHOD_OAUTH2, ClientManager, import_client_class
from app.integrations.models import ExternalAccount, Integration, external_account_id
from app.integrations.oauth2 import OAuth2Client
from app.platform.security.context import AuthContext
from app.records.errors import BadRequest, Error, Forbidden, NotFound

logger = logging.getLogger("app.integrations")


class ExternalAccountService:
    def __init__(self, client_manager: ClientManager, ctx: AuthContext) -> None:
        self.client_manager = client_manager
        self.session = client_manager.session
        self.metadata = client_manager.metadata
        self.ctx = ctx

    def _check_user(self, user_id: str | None) -> str:
        user_id = user_id or self.ctx.user_id
        if user_id != self.ctx.user_id and not self.ctx.is_admin:
            raise Forbidden("No access to the external account of another user.")
        return user_id

    def _get_integration(self, integration: str, *, oauth2: bool = False) -> Integration:
        if not self.metadata.get(["integrations", integration]):
            raise NotFound(f"Integration '{integration}' does not exist.")
        if oauth2 and self.metadata.get(["integrations", integration, "auth_method"]) != AUTH_METHOD_OAUTH2:
            raise BadRequest(f"Integration '{integration}' does not use OAuth2.")
        entity = self.session.get(Integration, integration)
        if entity is None or not entity.enabled:
            raise Forbidden(f"Integration '{integration}' is disabled.")
        return entity

    def read(self, integration: str, user_id: str | None = None) -> dict[str, Any]:
        user_id = self._check_user(user_id)
        self._get_integration(integration)
        account = self.session.get(ExternalAccount, external_account_id(integration, user_id))
        if account is None:
            raise NotFound("External account not found.")
        return {
            "id": account.id,
            "enabled": account.enabled,
            "token_type": account.token_type,
            "expires_at": account.expires_at,
            "is_connected": bool(account.access_token),
        }

    def get_authorization_url(self, integration: str, user_id: str | None = None) -> str:
        user_id = self._check_user(user_id)
        entity = self._get_integration(integration, oauth2=True)
        params = self.metadata.get(["integrations", integration, "params"], {})
        client_class = import_client_class(self.client_manager.get_client_class_name(integration))

        oauth2_client: OAuth2Client = self.client_manager.oauth2_client_factory()
        return oauth2_client.get_authentication_url(
            params.get("endpoint", ""),
            entity.client_id or "",
            self.client_manager.get_redirect_uri(integration),
            scope=params.get("scope"),
            state=user_id,
            extra_params=getattr(client_class, "authorization_extra_params", None),
        )

    def authorization_code(self, integration: str, code: str, user_id: str | None = None) -> bool:
        user_id = self._check_user(user_id)
        self._get_integration(integration, oauth2=True)

        account_id = external_account_id(integration, user_id)
        account = self.session.get(ExternalAccount, account_id)
        if account is None:
            account = ExternalAccount(id=account_id, data={})
            self.session.add(account)
        account.enabled = True
        self.session.commit()

        client = self.client_manager.create(integration, user_id)
        if client is None:
            raise Error("Could not create the client.")
        data = client.get_access_token_from_authorization_code(code)
        self.client_manager.store_access_token(client, data)

        logger.info("external_account_connected", extra={"integration": integration, "external_account_id": account_id})
        return True

    def ping(self, integration: str, user_id: str | None = None) -> bool:
        user_id = self._check_user(user_id)
        self._get_integration(integration)
        client = self.client_manager.create(integration, user_id)
        if client is None:
            return False
        return bool(client.ping())
