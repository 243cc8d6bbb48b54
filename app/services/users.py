from app.core.audit import log_event
from app.core.exceptions import BadRequestError
from app.core.logging import get_logger
from app.models.ledger import UserAccount
from app.storage.base import LedgerStorage

log = get_logger(__name__)

ROLES = ("user", "admin")


async def create_user(storage: LedgerStorage, email: str, name: str = "", role: str = "user") -> UserAccount:
    """Create an account; its balance starts at zero."""
    email = (email or "").strip().lower()
    if not email:
        raise BadRequestError("Email required")
    if role not in ROLES:
        raise BadRequestError(f"Invalid role: {role}")
    user = await storage.create_user(email=email, name=name, role=role)
    log.info("user_created", user_id=user.id, email=user.email, role=user.role)
    await log_event(storage, user.id, "user_created", "user", user.id, {"email": user.email})
    return user


def session_payload_for_user(user: UserAccount) -> dict:
    return {"user_id": user.id, "session_version": user.session_version}
