import sqlite3
from datetime import datetime
from decimal import Decimal
from typing import Optional
from pathlib import Path

from config.logging import get_logger
from core.entities.transaction import Transaction, TransactionStatus
from core.errors import StorageError
from core.repositories.transaction_repository import TransactionRepository

logger = get_logger(__name__)


def connect(db_path: str, timeout: float) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path, timeout=timeout, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: str, timeout: float = 5.0) -> None:
    if db_path != ":memory:" and not db_path.startswith("file:"):
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    conn = connect(db_path, timeout)
    try:
        init_schema(conn)
    finally:
        conn.close()


def init_schema(conn: sqlite3.Connection) -> None:
    cur = conn.cursor()
    cur.execute("""
    CREATE TABLE IF NOT EXISTS transactions (
        id TEXT PRIMARY KEY,
        sender_account_id TEXT NOT NULL,
        receiver_account_id TEXT NOT NULL,
        amount TEXT NOT NULL,
        currency TEXT NOT NULL,
        status TEXT NOT NULL,
        idempotency_key TEXT UNIQUE,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        CHECK (sender_account_id <> receiver_account_id),
        CHECK (CAST(amount AS REAL) > 0),
        CHECK (length(currency) = 3),
        CHECK (status IN ('PENDING', 'COMPLETED', 'FAILED')),
        CHECK (created_at <= updated_at)
    );
    """)
    conn.commit()


class SQLiteTransactionRepository(TransactionRepository):
    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        self.conn.row_factory = sqlite3.Row

    def _row_to_tx(self, row: sqlite3.Row) -> Transaction:
        return Transaction(
            id=row["id"],
            sender_account_id=row["sender_account_id"],
            receiver_account_id=row["receiver_account_id"],
            amount=Decimal(row["amount"]),
            currency=row["currency"],
            status=TransactionStatus(row["status"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
            idempotency_key=row["idempotency_key"],
        )

    def _fail(self, action: str, exc: sqlite3.Error) -> StorageError:
        if self.conn.in_transaction:
            self.conn.rollback()
        logger.error("Storage failure while %s: %s", action, exc)
        return StorageError(f"Storage failure while {action}")

    def insert(self, tx: Transaction) -> bool:
        try:
            cur = self.conn.cursor()
            # the UNIQUE constraint arbitrates concurrent creates with one key
            cur.execute(
                "INSERT INTO transactions (id, sender_account_id, receiver_account_id, amount, currency, "
                "status, idempotency_key, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(idempotency_key) DO NOTHING",
                (
                    tx.id,
                    tx.sender_account_id,
                    tx.receiver_account_id,
                    str(tx.amount),
                    tx.currency,
                    tx.status.value,
                    tx.idempotency_key,
                    tx.created_at.isoformat(timespec="microseconds"),
                    tx.updated_at.isoformat(timespec="microseconds"),
                ),
            )
            inserted = cur.rowcount == 1
            self.conn.commit()
        except sqlite3.Error as e:
            raise self._fail("inserting transaction", e) from e
        return inserted

    def get_by_id(self, tx_id: str) -> Optional[Transaction]:
        try:
            cur = self.conn.cursor()
            cur.execute("SELECT * FROM transactions WHERE id = ?", (tx_id,))
            row = cur.fetchone()
        except sqlite3.Error as e:
            raise self._fail("reading transaction", e) from e
        return self._row_to_tx(row) if row else None

    def get_by_idempotency_key(self, key: str) -> Optional[Transaction]:
        try:
            cur = self.conn.cursor()
            cur.execute("SELECT * FROM transactions WHERE idempotency_key = ?", (key,))
            row = cur.fetchone()
        except sqlite3.Error as e:
            raise self._fail("reading transaction by idempotency key", e) from e
        return self._row_to_tx(row) if row else None

    def compare_and_set_status(self, tx_id: str, expected: TransactionStatus,
                               target: TransactionStatus, updated_at: datetime) -> bool:
        try:
            cur = self.conn.cursor()
            cur.execute(
                "UPDATE transactions SET status = ?, updated_at = ? WHERE id = ? AND status = ?",
                (target.value, updated_at.isoformat(timespec="microseconds"), tx_id, expected.value),
            )
            swapped = cur.rowcount == 1
            self.conn.commit()
        except sqlite3.Error as e:
            raise self._fail("updating transaction status", e) from e
        return swapped
