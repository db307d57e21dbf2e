from uuid import uuid4
from core.entities.transaction import Transaction
from core.services.settlement_provider import SettlementProvider, SettlementReceipt


class StubSettlementProvider(SettlementProvider):
    """Stub provider with a fixed outcome for every transfer."""
    def __init__(self, approve: bool = True):
        self.approve = approve

    def settle(self, tx: Transaction) -> SettlementReceipt:
        if not self.approve:
            return SettlementReceipt(
                success=False,
                reference=f"stub-{uuid4()}",
                message="Stub settlement declined",
            )
        return SettlementReceipt(
            success=True,
            reference=f"stub-{uuid4()}",
            message="Stub settlement approved",
        )
