import sqlite3
from datetime import datetime
from decimal import Decimal
from typing import Optional, Union

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel, Field, StrictInt, StrictStr

from config.settings import settings
from core.entities.transaction import CreateTransactionRequest, Transaction, TransactionStatus
from core.errors import (
    ConflictError,
    InvalidTransitionError,
    LedgerError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from core.services.settlement_provider import SettlementProvider
from core.use_cases.transaction_use_cases import (
    create_transaction,
    get_transaction,
    settle_transaction,
    transition_transaction,
)
from infrastructure.db.sqlite import SQLiteTransactionRepository, connect
from infrastructure.payments.stub_provider import StubSettlementProvider


router = APIRouter(prefix="/api/v1/transactionService", tags=["transactions"])

ERROR_STATUS = {
    ValidationError: 400,
    NotFoundError: 404,
    ConflictError: 409,
    InvalidTransitionError: 422,
    StorageError: 503,
}


def get_db():
    conn = connect(settings.DB_PATH, settings.DB_TIMEOUT_SECONDS)
    try:
        yield conn
    finally:
        conn.close()

def get_transaction_repo(conn: sqlite3.Connection = Depends(get_db)) -> SQLiteTransactionRepository:
    return SQLiteTransactionRepository(conn)

# settlement outcome is a stub for now, switched by SETTLEMENT_APPROVE
def get_settlement_provider() -> SettlementProvider:
    return StubSettlementProvider(approve=settings.SETTLEMENT_APPROVE)

def to_http_error(exc: LedgerError) -> HTTPException:
    code = ERROR_STATUS.get(type(exc), 500)
    return HTTPException(status_code=code, detail=str(exc), headers={"X-Error-Kind": type(exc).__name__})


class CreateTransactionBody(BaseModel):
    sender_account_id: str
    receiver_account_id: str
    # JSON floats are refused here; validate_amount parses the decimal
    amount: Union[StrictStr, StrictInt]
    currency: str

class TransitionBody(BaseModel):
    # parsed case-insensitively by parse_status
    target_status: str
    expected_current_status: str

class TransactionResponse(BaseModel):
    id: str
    sender_account_id: str
    receiver_account_id: str
    amount: Decimal = Field(..., description="Decimal string, at most 6 fractional digits")
    currency: str
    status: TransactionStatus
    idempotency_key: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_entity(cls, tx: Transaction) -> "TransactionResponse":
        return cls(
            id=tx.id,
            sender_account_id=tx.sender_account_id,
            receiver_account_id=tx.receiver_account_id,
            amount=tx.amount,
            currency=tx.currency,
            status=tx.status,
            idempotency_key=tx.idempotency_key,
            created_at=tx.created_at,
            updated_at=tx.updated_at,
        )


@router.post("/transactions", response_model=TransactionResponse, status_code=201)
def create(
    payload: CreateTransactionBody,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    repo: SQLiteTransactionRepository = Depends(get_transaction_repo),
):
    request = CreateTransactionRequest(
        sender_account_id=payload.sender_account_id,
        receiver_account_id=payload.receiver_account_id,
        amount=payload.amount,
        currency=payload.currency,
        idempotency_key=idempotency_key,
    )
    try:
        tx = create_transaction(repo, request)
    except LedgerError as e:
        raise to_http_error(e)
    return TransactionResponse.from_entity(tx)

@router.get("/transactions/{tx_id}", response_model=TransactionResponse)
@router.get("/{tx_id}", response_model=TransactionResponse, include_in_schema=False)
def get_one(tx_id: str, repo: SQLiteTransactionRepository = Depends(get_transaction_repo)):
    try:
        tx = get_transaction(repo, tx_id)
    except LedgerError as e:
        raise to_http_error(e)
    return TransactionResponse.from_entity(tx)

@router.post("/transactions/{tx_id}/transition", response_model=TransactionResponse)
def transition(
    tx_id: str,
    payload: TransitionBody,
    repo: SQLiteTransactionRepository = Depends(get_transaction_repo),
):
    try:
        tx = transition_transaction(repo, tx_id, payload.target_status, payload.expected_current_status)
    except LedgerError as e:
        raise to_http_error(e)
    return TransactionResponse.from_entity(tx)

@router.post("/transactions/{tx_id}/settle", response_model=TransactionResponse)
def settle(
    tx_id: str,
    repo: SQLiteTransactionRepository = Depends(get_transaction_repo),
    provider: SettlementProvider = Depends(get_settlement_provider),
):
    try:
        tx = settle_transaction(repo, provider, tx_id)
    except LedgerError as e:
        raise to_http_error(e)
    return TransactionResponse.from_entity(tx)
