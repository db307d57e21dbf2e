"""Pytest configuration and fixtures."""

from decimal import Decimal

import pytest

from core.entities.transaction import CreateTransactionRequest
from infrastructure.db.sqlite import SQLiteTransactionRepository, connect, init_db


@pytest.fixture
def db_path(tmp_path) -> str:
    """File-backed database so several connections can share it."""
    path = str(tmp_path / "ledger.db")
    init_db(path)
    return path


@pytest.fixture
def repo(db_path):
    conn = connect(db_path, timeout=10)
    yield SQLiteTransactionRepository(conn)
    conn.close()


@pytest.fixture
def valid_request() -> CreateTransactionRequest:
    return CreateTransactionRequest(
        sender_account_id="acct-A",
        receiver_account_id="acct-B",
        amount=Decimal("100.00"),
        currency="USD",
    )
