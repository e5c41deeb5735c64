from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any

import httpx

from app.core.config import Settings, get_settings
from app.integrations.models import ExternalAccount, Integration
from app.integrations.oauth2 import (
    GRANT_TYPE_AUTHORIZATION_CODE,
    GRANT_TYPE_REFRESH_TOKEN,
    OAuth2Client,
    OAuth2Response,
)
from app.metrics import observe_token_refresh
from app.records.errors import Error

if TYPE_CHECKING:
    from app.integrations.client_manager import ClientManager

logger = logging.getLogger("app.integrations")

# Tokens that expire within this window are refreshed before a request.
EXPIRY_MARGIN = timedelta(seconds=30)

OAUTH2_PARAM_LIST = (
    "endpoint",
    "token_endpoint",
    "api_url",
    "scope",
    "client_id",
    "client_secret",
    "redirect_uri",
    "access_token",
    "refresh_token",
    "token_type",
    "expires_at",
)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class ApiKeyClient:
    """Client for integrations authenticated with a static API key."""

    def __init__(self, *, http_client: httpx.Client | None = None) -> None:
        self._http = http_client or httpx.Client(timeout=get_settings().external_account_http_timeout_seconds)
        self.user_id: str | None = None
        self.integration: str | None = None
        self.api_url: str | None = None
        self.api_key: str | None = None

    def setup(self, user_id: str, integration: Integration, external_account: ExternalAccount) -> None:
        self.user_id = user_id
        self.integration = integration.id
        integration_data = integration.data or {}
        account_data = external_account.data or {}
        self.api_url = account_data.get("api_url") or integration_data.get("api_url")
        self.api_key = account_data.get("api_key") or integration_data.get("api_key")

    def request(self, path: str, *, method: str = "GET", params: dict[str, Any] | None = None, json: Any = None) -> Any:
        if not self.api_url or not self.api_key:
            raise Error(f"Integration '{self.integration}' is not configured.")
        response = self._http.request(
            method,
            f"{self.api_url.rstrip('/')}/{path.lstrip('/')}",
            params=params,
            json=json,
            auth=("apikey", self.api_key),
        )
        if response.status_code >= 400:
            raise Error(f"Integration '{self.integration}' request failed with {response.status_code}.")
        return response.json() if response.content else None

    def ping(self) -> bool:
        try:
            self.request("/ping")
        except (Error, httpx.HTTPError):
            return False
        return True


class OAuth2ApiClient:
    """API client holding OAuth2 tokens of one external account.

    Token refresh is serialized through the client manager lock; a client that
    finds the account locked waits for the other holder and re-fetches the
    tokens it stored.
    """

    authorization_extra_params: dict[str, str] = {}

    def __init__(
        self,
        client: OAuth2Client,
        params: dict[str, Any],
        manager: ClientManager | None = None,
        *,
        integration: str | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.client = client
        self.manager = manager
        self.integration = integration
        self.settings = settings or get_settings()
        self.params: dict[str, Any] = {name: None for name in OAUTH2_PARAM_LIST}
        self.set_params(params)

    def set_params(self, params: dict[str, Any]) -> None:
        for name, value in params.items():
            if name in self.params:
                self.params[name] = value
        self.params["expires_at"] = _as_utc(self.params["expires_at"])

    def get_param(self, name: str) -> Any:
        return self.params.get(name)

    @property
    def access_token(self) -> str | None:
        return self.params["access_token"]

    def get_authorization_url(self, state: str | None = None) -> str:
        return self.client.get_authentication_url(
            self.params["endpoint"],
            self.params["client_id"],
            self.params["redirect_uri"],
            scope=self.params["scope"],
            state=state,
            extra_params=self.authorization_extra_params,
        )

    def get_access_token_from_authorization_code(self, code: str) -> dict[str, Any]:
        response = self.client.get_access_token(
            self.params["token_endpoint"],
            GRANT_TYPE_AUTHORIZATION_CODE,
            {"code": code, "redirect_uri": self.params["redirect_uri"]},
            client_id=self.params["client_id"],
            client_secret=self.params["client_secret"],
        )
        if not response.ok or not response.result.get("access_token"):
            logger.warning(
                "oauth2_authorization_code_failed",
                extra={"integration": self.integration, "status_code": response.code},
            )
            raise Error("Could not obtain an access token.")

        data = self._token_data(response)
        self._apply_token_data(data)
        return data

    def is_expired(self) -> bool:
        expires_at = self.params["expires_at"]
        if expires_at is None:
            return False
        return expires_at <= datetime.now(timezone.utc) + EXPIRY_MARGIN

    def refresh_token(self) -> None:
        if not self.params["refresh_token"]:
            raise Error("No refresh token.")

        manager = self.manager
        if manager is not None:
            if manager.is_client_locked(self):
                self._wait_for_unlock(manager)
                return
            if not manager.lock_client(self):
                self._wait_for_unlock(manager)
                return

        try:
            response = self.client.get_access_token(
                self.params["token_endpoint"],
                GRANT_TYPE_REFRESH_TOKEN,
                {"refresh_token": self.params["refresh_token"]},
                client_id=self.params["client_id"],
                client_secret=self.params["client_secret"],
            )
            if not response.ok or not response.result.get("access_token"):
                observe_token_refresh(self.integration or "unknown", "failed")
                logger.warning(
                    "oauth2_token_refresh_failed",
                    extra={"integration": self.integration, "status_code": response.code},
                )
                raise Error("Could not refresh the access token.")

            data = self._token_data(response)
            self._apply_token_data(data)
            if manager is not None:
                manager.store_access_token(self, data)
            observe_token_refresh(self.integration or "unknown", "success")
        finally:
            if manager is not None:
                manager.unlock_client(self)

    def _wait_for_unlock(self, manager: ClientManager) -> None:
        for _ in range(self.settings.external_account_lock_wait_attempts):
            time.sleep(self.settings.external_account_lock_wait_seconds)
            if not manager.is_client_locked(self):
                manager.re_fetch_client(self)
                observe_token_refresh(self.integration or "unknown", "refetched")
                return
        raise Error("External account is locked.")

    def request(
        self,
        url: str,
        *,
        method: str = "GET",
        params: dict[str, Any] | None = None,
        json: Any = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        if not self.access_token:
            raise Error("No access token.")
        if self.is_expired():
            self.refresh_token()

        response = self._send(url, method=method, params=params, json=json, headers=headers)
        if response.status_code == 401 and self.params["refresh_token"]:
            self.refresh_token()
            response = self._send(url, method=method, params=params, json=json, headers=headers)

        if response.status_code >= 400:
            logger.warning(
                "oauth2_request_failed",
                extra={"integration": self.integration, "status_code": response.status_code},
            )
            raise Error(f"Request failed with {response.status_code}.")
        return response.json() if response.content else None

    def _send(self, url: str, **kwargs: Any) -> httpx.Response:
        if not url.startswith(("http://", "https://")) and self.params["api_url"]:
            url = f"{self.params['api_url'].rstrip('/')}/{url.lstrip('/')}"
        return self.client.request(
            url,
            access_token=str(self.access_token),
            token_type=self.params["token_type"],
            **kwargs,
        )

    def ping(self) -> bool:
        return bool(self.access_token) and not self.is_expired()

    def _apply_token_data(self, data: dict[str, Any]) -> None:
        self.set_params({name: value for name, value in data.items() if name != "refresh_token" or value})

    @staticmethod
    def _token_data(response: OAuth2Response) -> dict[str, Any]:
        result = response.result
        expires_at = None
        if result.get("expires_in") is not None:
            expires_at = datetime.now(timezone.utc) + timedelta(seconds=int(result["expires_in"]))
        return {
            "access_token": result["access_token"],
            "refresh_token": result.get("refresh_token"),
            "token_type": result.get("token_type") or "Bearer",
            "expires_at": expires_at,
        }


class GoogleClient(OAuth2ApiClient):
    authorization_extra_params = {"access_type": "offline", "prompt": "consent"}

    def ping(self) -> bool:
        if not self.access_token:
            return False
        try:
            self.request("/oauth2/v3/userinfo")
        except (Error, httpx.HTTPError):
            return False
        return True
