from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional
from core.entities.transaction import Transaction, TransactionStatus


class TransactionRepository(ABC):
    @abstractmethod
    def insert(self, tx: Transaction) -> bool:
        """Persist a new transaction.

        Returns False without writing anything when another transaction already
        holds ``tx.idempotency_key``; the uniqueness check happens in storage.
        """

    @abstractmethod
    def get_by_id(self, tx_id: str) -> Optional[Transaction]:...

    @abstractmethod
    def get_by_idempotency_key(self, key: str) -> Optional[Transaction]:...

    @abstractmethod
    def compare_and_set_status(self, tx_id: str, expected: TransactionStatus,
                               target: TransactionStatus, updated_at: datetime) -> bool:
        """Set ``target`` only if the stored status is still ``expected``."""
