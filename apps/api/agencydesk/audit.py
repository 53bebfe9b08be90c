from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from agencydesk.context import get_correlation_id

audit_entries: list[dict[str, Any]] = []


def changed_fields(before: dict[str, Any] | None, after: dict[str, Any] | None) -> list[str]:
    before = before or {}
    after = after or {}
    # bookkeeping columns move on every write
    ignored = {"updated_at", "row_version", "available_transitions"}
    return sorted(key for key in before.keys() | after.keys() if key not in ignored and before.get(key) != after.get(key))


def record(
    entity_type: str,
    entity_id: str | int,
    action: str,
    before: dict[str, Any] | None,
    after: dict[str, Any] | None,
    actor_user_id: str | None = None,
    correlation_id: str | None = None,
) -> dict[str, Any]:
    entry = {
        "id": str(uuid.uuid4()),
        "actor_user_id": actor_user_id,
        "entity_type": entity_type,
        "entity_id": str(entity_id),
        "action": action,
        "before": before,
        "after": after,
        "changed": changed_fields(before, after),
        "correlation_id": correlation_id or get_correlation_id(),
        "occurred_at": datetime.now(timezone.utc).isoformat(),
    }
    audit_entries.append(entry)
    return entry


def entries_for(entity_type: str, entity_id: str | int) -> list[dict[str, Any]]:
    key = str(entity_id)
    return [entry for entry in audit_entries if entry["entity_type"] == entity_type and entry["entity_id"] == key]
