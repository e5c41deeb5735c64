from __future__ import annotations

from contextvars import ContextVar, Token

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)
client_ip_var: ContextVar[str | None] = ContextVar("client_ip", default=None)


def set_correlation_id(value: str | None) -> Token[str | None]:
    return correlation_id_var.set(value)


def reset_correlation_id(token: Token[str | None]) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


def set_client_ip(value: str | None) -> Token[str | None]:
    return client_ip_var.set(value)


def reset_client_ip(token: Token[str | None]) -> None:
    client_ip_var.reset(token)


def get_client_ip() -> str | None:
    return client_ip_var.get()


def get_log_context() -> dict[str, str | None]:
    return {"correlation_id": get_correlation_id()}
