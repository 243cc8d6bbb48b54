from datetime import datetime

from fastapi import APIRouter, Depends, Header, Query
from fastapi.responses import ORJSONResponse
from pydantic import BaseModel, Field

from app.core.audit import log_event
from app.core.exceptions import BadRequestError, LedgerError
from app.core.security import clean_idempotency_key
from app.deps import require_admin
from app.models.ledger import UserAccount
from app.services import bulk_refunds as bulk_refund_service
from app.services import credits as credits_service
from app.services import refunds as refund_service
from app.services import transaction_audit
from app.storage.base import LedgerStorage, get_storage

router = APIRouter()


class RefundRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)
    transaction_ids: list[str] | None = None
    amount: int | None = None


class BulkRefundRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)
    start_time: datetime | None = None
    end_time: datetime | None = None


def _refund_failure(exc: LedgerError) -> ORJSONResponse:
    body = refund_service.RefundResult(success=False, error=exc.message, code=exc.code)
    return ORJSONResponse(status_code=exc.status_code, content=body.model_dump())


def _check_range(start_time: datetime | None, end_time: datetime | None) -> None:
    start_time, end_time = transaction_audit.as_naive_utc(start_time), transaction_audit.as_naive_utc(end_time)
    if start_time and end_time and start_time > end_time:
        raise BadRequestError("start_time must not be after end_time")


@router.get("/users/{user_id}/balance")
async def admin_user_balance(
    user_id: str,
    admin: UserAccount = Depends(require_admin),
    storage: LedgerStorage = Depends(get_storage),
):
    """Admin: cached coin balance of a user."""
    balance = await credits_service.get_balance(storage, user_id)
    return {"user_id": user_id, "balance": balance}


@router.get("/users/{user_id}/audit")
async def admin_audit_transactions(
    user_id: str,
    admin: UserAccount = Depends(require_admin),
    storage: LedgerStorage = Depends(get_storage),
    start_time: datetime | None = Query(None),
    end_time: datetime | None = Query(None),
    only_flagged: bool = Query(False),
):
    """Admin: spend transactions of a user annotated as duplicate/suspicious."""
    _check_range(start_time, end_time)
    annotated = await transaction_audit.audit(storage, user_id, start_time, end_time)
    summary = transaction_audit.summarize(annotated)
    if only_flagged:
        annotated = [a for a in annotated if a.suspicious or a.duplicate]
    out = [
        {
            "id": a.id,
            "amount": a.amount,
            "description": a.description,
            "created_at": a.created_at.isoformat(),
            "balance_after": a.balance_after,
            "suspicious": a.suspicious,
            "duplicate": a.duplicate,
            "related_ids": a.related_transaction_ids,
            "refunded": a.refunded,
        }
        for a in annotated
    ]
    return {"transactions": out, "summary": summary}


@router.post("/users/{user_id}/refund")
async def admin_refund(
    user_id: str,
    body: RefundRequest,
    admin: UserAccount = Depends(require_admin),
    storage: LedgerStorage = Depends(get_storage),
    idempotency_key: str | None = Header(None, alias="Idempotency-Key"),
):
    """Admin: refund selected spend transactions or a fixed amount."""
    try:
        result = await refund_service.refund(
            storage,
            user_id,
            reason=body.reason,
            authorized_by=admin.id,
            transaction_ids=body.transaction_ids,
            amount=body.amount,
            idempotency_key=clean_idempotency_key(idempotency_key),
        )
    except LedgerError as e:
        return _refund_failure(e)
    return result.model_dump()


@router.post("/users/{user_id}/refund/bulk")
async def admin_bulk_refund(
    user_id: str,
    body: BulkRefundRequest | None = None,
    admin: UserAccount = Depends(require_admin),
    storage: LedgerStorage = Depends(get_storage),
):
    """Admin: refund every duplicate charge except the kept one per group."""
    body = body or BulkRefundRequest()
    _check_range(body.start_time, body.end_time)
    try:
        result = await bulk_refund_service.bulk_refund_duplicates(
            storage,
            user_id,
            authorized_by=admin.id,
            reason=body.reason,
            start_time=body.start_time,
            end_time=body.end_time,
        )
    except LedgerError as e:
        return _refund_failure(e)
    return result.model_dump()


@router.post("/users/{user_id}/reconcile")
async def admin_reconcile(
    user_id: str,
    admin: UserAccount = Depends(require_admin),
    storage: LedgerStorage = Depends(get_storage),
    repair: bool = Query(True),
):
    """Admin: replay the ledger and repair a lagging cached balance."""
    report = await credits_service.reconcile(storage, user_id, repair=repair)
    if report.repaired:
        await log_event(
            storage,
            user_id,
            "balance_reconciled",
            "credit_balance",
            user_id,
            report.model_dump(),
            actor_id=admin.id,
        )
    return report.model_dump()
