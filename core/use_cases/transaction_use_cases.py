"""Ledger use cases: create, look up and transition transfer records.

Atomicity is delegated to the repository: idempotent creation relies on the
storage-level uniqueness of ``idempotency_key`` and transitions rely on a
compare-and-swap on ``status``. No use case retries on its own.
"""
import dataclasses
import re
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, FrozenSet, Iterable, Optional, Union
from uuid import uuid4

from config.logging import get_logger
from config.settings import settings
from core.entities.transaction import CreateTransactionRequest, Transaction, TransactionStatus
from core.errors import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from core.repositories.transaction_repository import TransactionRepository
from core.services.settlement_provider import SettlementProvider

logger = get_logger(__name__)

AMOUNT_SCALE = 6
AMOUNT_PRECISION = 18
MAX_IDEMPOTENCY_KEY_LENGTH = 255
CURRENCY_RE = re.compile(r"^[A-Z]{3}$")

ALLOWED_TRANSITIONS: Dict[TransactionStatus, FrozenSet[TransactionStatus]] = {
    TransactionStatus.PENDING: frozenset({TransactionStatus.COMPLETED, TransactionStatus.FAILED}),
    TransactionStatus.COMPLETED: frozenset(),
    TransactionStatus.FAILED: frozenset(),
}

StatusLike = Union[TransactionStatus, str]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _require_text(value: Any, field: str) -> str:
    if value is None:
        raise ValidationError(f"{field} is required")
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string")
    value = value.strip()
    if not value:
        raise ValidationError(f"{field} must not be blank")
    return value


def validate_amount(value: Any) -> Decimal:
    if value is None:
        raise ValidationError("amount is required")
    # floats cannot represent most currency amounts exactly
    if isinstance(value, (bool, float)):
        raise ValidationError("amount must be a decimal value, not a float")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except InvalidOperation:
        raise ValidationError(f"amount is not a valid decimal: {value!r}")
    if not amount.is_finite():
        raise ValidationError("amount must be finite")
    if amount <= 0:
        raise ValidationError("amount must be positive")
    if amount.adjusted() >= AMOUNT_PRECISION - AMOUNT_SCALE:
        raise ValidationError(f"amount exceeds {AMOUNT_PRECISION - AMOUNT_SCALE} integer digits")
    if amount.as_tuple().exponent < -AMOUNT_SCALE:
        quantized = amount.quantize(Decimal(1).scaleb(-AMOUNT_SCALE))
        if quantized != amount:
            raise ValidationError(f"amount allows at most {AMOUNT_SCALE} fractional digits")
        amount = quantized
    elif amount.as_tuple().exponent > 0:
        amount = amount.quantize(Decimal(1))  # 1E+2 -> 100
    return amount


def validate_currency(value: Any, supported: Optional[Iterable[str]] = None) -> str:
    currency = _require_text(value, "currency").upper()
    if not CURRENCY_RE.match(currency):
        raise ValidationError("currency must be a 3-letter code")
    supported = settings.SUPPORTED_CURRENCIES if supported is None else supported
    if currency not in supported:
        raise ValidationError(f"currency {currency} is not supported")
    return currency


def parse_status(value: StatusLike, field: str = "status") -> TransactionStatus:
    if isinstance(value, TransactionStatus):
        return value
    raw = _require_text(value, field).upper()
    try:
        return TransactionStatus(raw)
    except ValueError:
        raise ValidationError(f"{field} must be one of PENDING, COMPLETED, FAILED")


def validate_create_request(request: CreateTransactionRequest,
                            supported_currencies: Optional[Iterable[str]] = None) -> CreateTransactionRequest:
    """Return a normalized copy of ``request`` or raise ValidationError."""
    sender = _require_text(request.sender_account_id, "sender_account_id")
    receiver = _require_text(request.receiver_account_id, "receiver_account_id")
    if sender == receiver:
        raise ValidationError("sender and receiver accounts must differ")

    key = request.idempotency_key
    if key is not None:
        key = _require_text(key, "idempotency_key")
        if len(key) > MAX_IDEMPOTENCY_KEY_LENGTH:
            raise ValidationError(f"idempotency_key exceeds {MAX_IDEMPOTENCY_KEY_LENGTH} characters")

    return CreateTransactionRequest(
        sender_account_id=sender,
        receiver_account_id=receiver,
        amount=validate_amount(request.amount),
        currency=validate_currency(request.currency, supported_currencies),
        idempotency_key=key,
    )


def _replay(existing: Transaction, request: CreateTransactionRequest) -> Transaction:
    if not request.same_payload(existing):
        logger.warning("Idempotency key reused with a different payload",
                       extra={"transaction_id": existing.id})
        raise ConflictError("idempotency key already used for a different transaction")
    logger.info("Idempotent replay of transaction %s", existing.id,
                extra={"transaction_id": existing.id})
    return existing


def create_transaction(repo: TransactionRepository, request: CreateTransactionRequest,
                       supported_currencies: Optional[Iterable[str]] = None) -> Transaction:
    try:
        request = validate_create_request(request, supported_currencies)
    except ValidationError as e:
        logger.warning("Rejected transaction request: %s", e)
        raise

    key = request.idempotency_key
    if key is not None:
        existing = repo.get_by_idempotency_key(key)
        if existing is not None:
            return _replay(existing, request)

    now = _utcnow()
    tx = Transaction(
        id=str(uuid4()),
        sender_account_id=request.sender_account_id,
        receiver_account_id=request.receiver_account_id,
        amount=request.amount,
        currency=request.currency,
        status=TransactionStatus.PENDING,
        created_at=now,
        updated_at=now,
        idempotency_key=key,
    )
    if repo.insert(tx):
        logger.info("Created transaction %s: %s %s from %s to %s", tx.id, tx.amount, tx.currency,
                    tx.sender_account_id, tx.receiver_account_id, extra={"transaction_id": tx.id})
        return tx

    # a concurrent create with the same key got there first
    existing = repo.get_by_idempotency_key(key) if key is not None else None
    if existing is None:
        raise StorageError("insert was skipped but no transaction holds the idempotency key")
    return _replay(existing, request)


def get_transaction(repo: TransactionRepository, tx_id: str) -> Transaction:
    tx_id = _require_text(tx_id, "id")
    tx = repo.get_by_id(tx_id)
    if tx is None:
        raise NotFoundError(f"Transaction {tx_id} not found")
    return tx


def transition_transaction(repo: TransactionRepository, tx_id: str, target_status: StatusLike,
                           expected_status: StatusLike) -> Transaction:
    """Move a transaction to ``target_status`` if it is still in ``expected_status``.

    A stale ``expected_status`` is a ConflictError even when the target would be
    reachable; an unreachable target from the current status is an
    InvalidTransitionError. Losing the compare-and-swap is a ConflictError.
    """
    target = parse_status(target_status, "target_status")
    expected = parse_status(expected_status, "expected_current_status")
    current = get_transaction(repo, tx_id)

    if current.status != expected:
        logger.warning("Stale status for %s: expected %s, stored %s", current.id, expected.value,
                       current.status.value, extra={"transaction_id": current.id})
        raise ConflictError(
            f"Transaction {current.id} is {current.status.value}, not {expected.value}"
        )
    if target not in ALLOWED_TRANSITIONS[current.status]:
        raise InvalidTransitionError(
            f"Cannot move transaction {current.id} from {current.status.value} to {target.value}"
        )

    updated_at = _utcnow()
    if updated_at <= current.updated_at:
        updated_at = current.updated_at + timedelta(microseconds=1)

    if not repo.compare_and_set_status(current.id, expected, target, updated_at):
        logger.warning("Lost status race on %s", current.id, extra={"transaction_id": current.id})
        raise ConflictError(f"Transaction {current.id} was modified concurrently")

    logger.info("Transaction %s moved %s -> %s", current.id, expected.value, target.value,
                extra={"transaction_id": current.id})
    return dataclasses.replace(current, status=target, updated_at=updated_at)


def settle_transaction(repo: TransactionRepository, provider: SettlementProvider, tx_id: str) -> Transaction:
    tx = get_transaction(repo, tx_id)
    if tx.status != TransactionStatus.PENDING:
        raise ConflictError(f"Transaction {tx.id} is already {tx.status.value}")

    receipt = provider.settle(tx)
    target = TransactionStatus.COMPLETED if receipt.success else TransactionStatus.FAILED
    logger.info("Settlement %s for %s: %s", receipt.reference, tx.id, receipt.message,
                extra={"transaction_id": tx.id})
    return transition_transaction(repo, tx.id, target, TransactionStatus.PENDING)
