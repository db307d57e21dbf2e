from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional
from core.entities.transaction import Transaction


@dataclass
class SettlementReceipt:
    success: bool
    reference: str
    message: Optional[str] = None

class SettlementProvider(ABC):
    @abstractmethod
    def settle(self, tx: Transaction) -> SettlementReceipt:...
