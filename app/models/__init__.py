from app.models.user import User
from app.models.credit_balance import CreditBalance
from app.models.credit_ledger import CreditLedgerEntry
from app.models.audit_log import AuditLog

__all__ = [
    "User",
    "CreditBalance",
    "CreditLedgerEntry",
    "AuditLog",
]
