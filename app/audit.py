"""Security audit trail.

Denied ACL checks and field level security decisions end up here; record
changes are tracked by the action history instead. Entries are kept in memory
for the running process and mirrored to the ``app.audit`` logger so that the
log sink holds the durable copy.
"""

from __future__ import annotations

import logging
import uuid
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any

from app.context import get_client_ip, get_correlation_id

logger = logging.getLogger("app.audit")

MAX_AUDIT_ENTRIES = 10_000


@dataclass(frozen=True)
class AuditEntry:
    actor_user_id: str
    entity_type: str
    entity_id: str
    action: str
    before: dict[str, Any] | None
    after: dict[str, Any] | None
    correlation_id: str | None
    ip_address: str | None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    occurred_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


audit_entries: deque[dict[str, Any]] = deque(maxlen=MAX_AUDIT_ENTRIES)


def record(
    *,
    actor_user_id: str,
    entity_type: str,
    entity_id: str,
    action: str,
    before: dict[str, Any] | None,
    after: dict[str, Any] | None,
    correlation_id: str | None = None,
) -> AuditEntry:
    entry = AuditEntry(
        actor_user_id=actor_user_id,
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        before=before,
        after=after,
        correlation_id=correlation_id or get_correlation_id(),
        ip_address=get_client_ip(),
    )
    audit_entries.append(asdict(entry))
    logger.info(
        "audit",
        extra={"action": action, "entity_type": entity_type, "entity_id": entity_id, "user_id": actor_user_id},
    )
    return entry


def entries_for(action_prefix: str) -> list[dict[str, Any]]:
    return [entry for entry in audit_entries if entry["action"].startswith(action_prefix)]
