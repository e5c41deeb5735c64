from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest


# HTTP

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)

record_mutations_rate_limited_total = Counter(
    "record_mutations_rate_limited_total",
    "Mutating record requests rejected by the per-user rate limit",
    ["entity_type"],
)

# Record service

record_operations_total = Counter(
    "record_operations_total",
    "Total record service operations by outcome",
    ["entity_type", "operation", "outcome"],
)

record_operation_duration_seconds = Histogram(
    "record_operation_duration_seconds",
    "Record service operation duration in seconds",
    ["entity_type", "operation"],
)

record_duplicates_detected_total = Counter(
    "record_duplicates_detected_total",
    "Total create/update attempts rejected as duplicates",
    ["entity_type"],
)

record_event_handler_failures_total = Counter(
    "record_event_handler_failures_total",
    "Event handlers that raised while processing an event",
    ["event_name"],
)

# ACL and field level security

acl_denied_total = Counter(
    "acl_denied_total",
    "Total ACL denials by scope and action",
    ["scope", "action"],
)

fls_fields_total = Counter(
    "fls_fields_total",
    "Attributes hidden or masked by field level security",
    ["resource", "operation", "decision"],
)

authz_policy_lookups_total = Counter(
    "authz_policy_lookups_total",
    "Role rule lookups by cache result",
    ["cache"],
)

authz_db_queries_count_total = Counter(
    "authz_db_queries_count_total",
    "Authorization DB query count",
)

# External accounts

external_account_token_refresh_total = Counter(
    "external_account_token_refresh_total",
    "External account access token refreshes by status",
    ["integration", "status"],
)


_UUID_RE = re.compile(r"[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}")


def http_path_label(path: str) -> str:
    """Low cardinality label: record ids become ``{id}``, the entity type stays."""

    return _UUID_RE.sub("{id}", path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_rate_limited(entity_type: str) -> None:
    record_mutations_rate_limited_total.labels(entity_type=entity_type).inc()


def observe_record_operation(entity_type: str, operation: str, outcome: str, duration: float) -> None:
    record_operations_total.labels(entity_type=entity_type, operation=operation, outcome=outcome).inc()
    record_operation_duration_seconds.labels(entity_type=entity_type, operation=operation).observe(duration)


def observe_record_duplicate(entity_type: str) -> None:
    record_duplicates_detected_total.labels(entity_type=entity_type).inc()


def observe_event_handler_failure(event_name: str) -> None:
    record_event_handler_failures_total.labels(event_name=event_name).inc()


def observe_acl_denied(scope: str, action: str) -> None:
    acl_denied_total.labels(scope=scope, action=action).inc()


def observe_fls_field_counts(resource: str, operation: str, masked_count: int, denied_count: int) -> None:
    if masked_count > 0:
        fls_fields_total.labels(resource=resource, operation=operation, decision="mask").inc(masked_count)
    if denied_count > 0:
        fls_fields_total.labels(resource=resource, operation=operation, decision="deny").inc(denied_count)


def observe_authz_policy_cache_hit() -> None:
    authz_policy_lookups_total.labels(cache="hit").inc()


def observe_authz_policy_cache_miss() -> None:
    authz_policy_lookups_total.labels(cache="miss").inc()


def observe_authz_db_queries_count(count: int = 1) -> None:
    if count > 0:
        authz_db_queries_count_total.inc(count)


def observe_token_refresh(integration: str, status: str) -> None:
    external_account_token_refresh_total.labels(integration=integration, status=status).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
