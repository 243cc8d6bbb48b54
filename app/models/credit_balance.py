from beanie import Document, PydanticObjectId
from pymongo import ASCENDING, IndexModel


class CreditBalance(Document):
    """Cached balance per user; rolled forward after each ledger insert, never authoritative."""
    user_id: PydanticObjectId
    balance: int = 0
    sequence: int = 0  # sequence of the last ledger entry folded in

    class Settings:
        name = "credit_balances"
        indexes = [IndexModel([("user_id", ASCENDING)], unique=True)]
