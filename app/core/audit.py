"""Audit log for operator actions on the ledger."""

from typing import Any

from app.core.logging import get_logger
from app.storage.base import LedgerStorage

log = get_logger(__name__)


async def log_event(
    storage: LedgerStorage,
    user_id: str | None,
    event_type: str,
    entity_type: str,
    entity_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    actor_id: str | None = None,
) -> None:
    """Append to the audit trail and mirror the event to the structured log."""
    metadata = metadata or {}
    await storage.record_event(user_id, actor_id, event_type, entity_type, entity_id, metadata)
    log.info(
        "audit_event",
        event_type=event_type,
        user_id=user_id,
        actor_id=actor_id,
        entity_type=entity_type,
        entity_id=entity_id,
    )
