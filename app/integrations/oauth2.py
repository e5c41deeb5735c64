from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import httpx
from opentelemetry import trace

logger = logging.getLogger("app.integrations")
tracer = trace.get_tracer("app.integrations")

GRANT_TYPE_AUTHORIZATION_CODE = "authorization_code"
GRANT_TYPE_REFRESH_TOKEN = "refresh_token"

TOKEN_TYPE_BEARER = "Bearer"


@dataclass
class OAuth2Response:
    code: int
    result: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.code < 300


class OAuth2Client:
    """Thin OAuth2 wrapper over ``httpx``."""

    def __init__(self, *, http_client: httpx.Client | None = None, timeout: float = 10.0) -> None:
        self._http = http_client or httpx.Client(timeout=timeout)

    def get_authentication_url(
        self,
        endpoint: str,
        client_id: str,
        redirect_uri: str,
        *,
        scope: str | None = None,
        state: str | None = None,
        extra_params: dict[str, str] | None = None,
    ) -> str:
        params: dict[str, str] = {
            "response_type": "code",
            "client_id": client_id,
            "redirect_uri": redirect_uri,
        }
        if scope:
            params["scope"] = scope
        if state:
            params["state"] = state
        params.update(extra_params or {})
        return str(httpx.URL(endpoint).copy_merge_params(params))

    def get_access_token(
        self,
        token_endpoint: str,
        grant_type: str,
        params: dict[str, str],
        *,
        client_id: str | None,
        client_secret: str | None,
    ) -> OAuth2Response:
        data = {"grant_type": grant_type, **params}
        if client_id:
            data["client_id"] = client_id
        if client_secret:
            data["client_secret"] = client_secret

        with tracer.start_as_current_span("oauth2.token") as span:
            span.set_attribute("oauth2.grant_type", grant_type)
            response = self._http.post(token_endpoint, data=data, headers={"Accept": "application/json"})
            span.set_attribute("http.status_code", response.status_code)

        return OAuth2Response(code=response.status_code, result=_json_or_empty(response))

    def request(
        self,
        url: str,
        *,
        access_token: str,
        token_type: str | None = None,
        method: str = "GET",
        params: dict[str, Any] | None = None,
        json: Any = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        request_headers = {"Authorization": f"{token_type or TOKEN_TYPE_BEARER} {access_token}"}
        request_headers.update(headers or {})

        with tracer.start_as_current_span("oauth2.request") as span:
            span.set_attribute("http.method", method)
            response = self._http.request(method, url, params=params, json=json, headers=request_headers)
            span.set_attribute("http.status_code", response.status_code)
        return response

    def close(self) -> None:
        self._http.close()


def _json_or_empty(response: httpx.Response) -> dict[str, Any]:
    try:
        payload = response.json()
    except ValueError:
        logger.warning("oauth2_non_json_response", extra={"status_code": response.status_code})
        return {}
    return payload if isinstance(payload, dict) else {}
