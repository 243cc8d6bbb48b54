from datetime import datetime
from typing import Any

from beanie import Document
from pydantic import Field


class AuditLog(Document):
    """Who did what to a user's coins: refunds, bulk refunds, reconciliations, sign-ups."""

    user_id: str | None = None
    actor_id: str | None = None  # admin that triggered it; None for the user's own actions
    event_type: str
    entity_type: str
    entity_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "audit_logs"
        indexes = [
            [("user_id", 1), ("created_at", -1)],
            [("actor_id", 1), ("created_at", -1)],
            [("event_type", 1), ("created_at", -1)],
        ]
