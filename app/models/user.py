from datetime import datetime

from beanie import Document, Indexed
from pydantic import Field

from app.models.ledger import UserAccount


class User(Document):
    email: Indexed(str, unique=True)
    name: str = ""
    role: str = "user"  # "user" | "admin"
    session_version: int = 0
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "users"

    def to_account(self) -> UserAccount:
        return UserAccount(
            id=str(self.id),
            email=self.email,
            name=self.name,
            role=self.role,
            session_version=self.session_version,
        )
