from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional


class TransactionStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class CreateTransactionRequest:
    sender_account_id: str
    receiver_account_id: str
    amount: Decimal
    currency: str
    idempotency_key: Optional[str] = None

    def same_payload(self, tx: "Transaction") -> bool:
        """Whether a stored transaction was created from an equivalent request."""
        return (
            self.sender_account_id == tx.sender_account_id
            and self.receiver_account_id == tx.receiver_account_id
            and self.amount == tx.amount  # Decimal: 100 == 100.00
            and self.currency == tx.currency
        )


@dataclass(frozen=True)
class Transaction:
    id: str
    sender_account_id: str
    receiver_account_id: str
    amount: Decimal
    currency: str
    status: TransactionStatus
    created_at: datetime
    updated_at: datetime
    idempotency_key: Optional[str] = None
