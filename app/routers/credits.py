from fastapi import APIRouter, Depends, Query

from app.deps import get_current_user
from app.models.ledger import UserAccount
from app.services import credits as credits_service
from app.storage.base import LedgerStorage, get_storage

router = APIRouter()


@router.get("/balance")
async def credits_balance(
    user: UserAccount = Depends(get_current_user),
    storage: LedgerStorage = Depends(get_storage),
):
    """Return current coin balance."""
    balance = await credits_service.get_balance(storage, user.id)
    return {"balance": balance}


@router.get("/ledger")
async def credits_ledger(
    user: UserAccount = Depends(get_current_user),
    storage: LedgerStorage = Depends(get_storage),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    """Return ledger entries for current user (newest first)."""
    entries = await credits_service.list_entries(storage, user.id, limit=limit, offset=offset)
    out = [
        {
            "id": e.id,
            "amount": e.amount,
            "balance_after": e.balance_after,
            "transaction_type": e.transaction_type.value,
            "description": e.description,
            "created_at": e.created_at.isoformat(),
        }
        for e in entries
    ]
    return {"entries": out, "limit": limit, "offset": offset}
