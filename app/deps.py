"""Shared FastAPI dependencies."""

from fastapi import Depends, Request

from app.core.exceptions import ForbiddenError, UnauthorizedError
from app.core.logging import bind_operator
from app.core.security import load_session_cookie
from app.models.ledger import UserAccount
from app.storage.base import LedgerStorage, get_storage

SESSION_COOKIE_NAME = "coin_ledger_session"


async def get_current_user(request: Request, storage: LedgerStorage = Depends(get_storage)) -> UserAccount:
    """Dependency: load session from cookie and return the account."""
    cookie = request.cookies.get(SESSION_COOKIE_NAME)
    if not cookie:
        raise UnauthorizedError("Not authenticated")
    payload = load_session_cookie(cookie)
    if not payload:
        raise UnauthorizedError("Invalid or expired session")
    user_id = payload.get("user_id")
    if not user_id:
        raise UnauthorizedError("Invalid session")
    user = await storage.get_user(user_id)
    if not user:
        raise UnauthorizedError("User not found")
    if payload.get("session_version") != user.session_version:
        raise UnauthorizedError("Session invalidated")
    return user


async def require_admin(user: UserAccount = Depends(get_current_user)) -> UserAccount:
    """Dependency: require current user to have role admin."""
    if user.role != "admin":
        raise ForbiddenError("Admin only")
    bind_operator(user.id)
    return user
