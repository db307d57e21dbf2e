"""Tests for the ledger use cases over the SQLite repository."""

import dataclasses
import threading
from decimal import Decimal

import pytest

from core.entities.transaction import CreateTransactionRequest, TransactionStatus
from core.errors import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from core.use_cases.transaction_use_cases import (
    create_transaction,
    get_transaction,
    settle_transaction,
    transition_transaction,
    validate_amount,
    validate_currency,
)
from infrastructure.db.sqlite import SQLiteTransactionRepository, connect
from infrastructure.payments.stub_provider import StubSettlementProvider


def _count_rows(repo: SQLiteTransactionRepository) -> int:
    return repo.conn.execute("SELECT COUNT(*) FROM transactions").fetchone()[0]


class TestValidation:
    @pytest.mark.parametrize("value", ["0", "-1", "0.000000", Decimal("-0.01")])
    def test_non_positive_amount_rejected(self, value) -> None:
        with pytest.raises(ValidationError):
            validate_amount(value)

    @pytest.mark.parametrize("value", [None, "abc", "NaN", "Infinity", 1.5, True])
    def test_malformed_amount_rejected(self, value) -> None:
        with pytest.raises(ValidationError):
            validate_amount(value)

    def test_too_many_fractional_digits_rejected(self) -> None:
        with pytest.raises(ValidationError):
            validate_amount("0.0000001")

    def test_trailing_zeros_beyond_scale_are_accepted(self) -> None:
        assert validate_amount("1.50000000") == Decimal("1.500000")

    def test_too_many_integer_digits_rejected(self) -> None:
        with pytest.raises(ValidationError):
            validate_amount("1000000000000")

    def test_accepts_int_and_string(self) -> None:
        assert validate_amount(5) == Decimal("5")
        assert validate_amount(" 12.34 ") == Decimal("12.34")
        assert validate_amount("1E+2") == Decimal("100")

    def test_currency_is_normalized(self) -> None:
        assert validate_currency(" usd ") == "USD"

    @pytest.mark.parametrize("value", [None, "", "US", "USDX", "U1D", 840])
    def test_malformed_currency_rejected(self, value) -> None:
        with pytest.raises(ValidationError):
            validate_currency(value)

    def test_unsupported_currency_rejected(self) -> None:
        with pytest.raises(ValidationError):
            validate_currency("XYZ")
        assert validate_currency("XYZ", supported={"XYZ"}) == "XYZ"


class TestCreateTransaction:
    def test_new_transaction_is_pending(self, repo, valid_request) -> None:
        tx = create_transaction(repo, valid_request)
        assert tx.status == TransactionStatus.PENDING
        assert tx.created_at == tx.updated_at
        assert tx.amount == Decimal("100.00")
        assert tx.currency == "USD"
        assert tx.id

    def test_record_is_persisted(self, repo, valid_request) -> None:
        tx = create_transaction(repo, valid_request)
        assert repo.get_by_id(tx.id) == tx

    def test_ids_are_unique(self, repo, valid_request) -> None:
        ids = {create_transaction(repo, valid_request).id for _ in range(5)}
        assert len(ids) == 5
        assert _count_rows(repo) == 5

    def test_zero_amount_rejected(self, repo, valid_request) -> None:
        with pytest.raises(ValidationError):
            create_transaction(repo, dataclasses.replace(valid_request, amount=Decimal("0")))
        assert _count_rows(repo) == 0

    def test_self_transfer_rejected(self, repo, valid_request) -> None:
        request = dataclasses.replace(valid_request, receiver_account_id="acct-A")
        with pytest.raises(ValidationError):
            create_transaction(repo, request)

    @pytest.mark.parametrize("field", ["sender_account_id", "receiver_account_id", "currency", "amount"])
    def test_missing_field_rejected(self, repo, valid_request, field) -> None:
        with pytest.raises(ValidationError):
            create_transaction(repo, dataclasses.replace(valid_request, **{field: None}))

    def test_blank_idempotency_key_rejected(self, repo, valid_request) -> None:
        with pytest.raises(ValidationError):
            create_transaction(repo, dataclasses.replace(valid_request, idempotency_key="  "))

    def test_idempotent_replay_returns_same_record(self, repo, valid_request) -> None:
        request = dataclasses.replace(valid_request, idempotency_key="key-1")
        first = create_transaction(repo, request)
        second = create_transaction(repo, request)
        assert second == first
        assert _count_rows(repo) == 1

    def test_replay_compares_amount_numerically(self, repo, valid_request) -> None:
        request = dataclasses.replace(valid_request, idempotency_key="key-1")
        first = create_transaction(repo, request)
        second = create_transaction(repo, dataclasses.replace(request, amount=Decimal("100")))
        assert second.id == first.id

    def test_replay_after_transition_returns_current_state(self, repo, valid_request) -> None:
        request = dataclasses.replace(valid_request, idempotency_key="key-1")
        first = create_transaction(repo, request)
        transition_transaction(repo, first.id, "COMPLETED", "PENDING")
        replay = create_transaction(repo, request)
        assert replay.id == first.id
        assert replay.status == TransactionStatus.COMPLETED

    def test_same_key_different_payload_conflicts(self, repo, valid_request) -> None:
        request = dataclasses.replace(valid_request, idempotency_key="key-1")
        create_transaction(repo, request)
        with pytest.raises(ConflictError):
            create_transaction(repo, dataclasses.replace(request, amount=Decimal("99.99")))
        assert _count_rows(repo) == 1

    def test_concurrent_creates_with_one_key_yield_one_record(self, db_path, repo, valid_request) -> None:
        request = dataclasses.replace(valid_request, idempotency_key="retry-storm")
        workers = 8
        barrier = threading.Barrier(workers)
        ids, errors = [], []

        def worker() -> None:
            conn = connect(db_path, timeout=10)
            try:
                barrier.wait()
                ids.append(create_transaction(SQLiteTransactionRepository(conn), request).id)
            except Exception as e:
                errors.append(e)
            finally:
                conn.close()

        threads = [threading.Thread(target=worker) for _ in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len(set(ids)) == 1
        assert _count_rows(repo) == 1


class TestGetTransaction:
    def test_unknown_id_raises_not_found(self, repo) -> None:
        with pytest.raises(NotFoundError):
            get_transaction(repo, "does-not-exist")

    def test_blank_id_rejected(self, repo) -> None:
        with pytest.raises(ValidationError):
            get_transaction(repo, " ")

    def test_returns_stored_record(self, repo, valid_request) -> None:
        tx = create_transaction(repo, valid_request)
        assert get_transaction(repo, tx.id) == tx


class TestTransitionTransaction:
    def test_transfer_lifecycle(self, repo, valid_request) -> None:
        tx = create_transaction(repo, valid_request)
        assert tx.status == TransactionStatus.PENDING

        done = transition_transaction(repo, tx.id, TransactionStatus.COMPLETED, TransactionStatus.PENDING)
        assert done.status == TransactionStatus.COMPLETED
        assert done.updated_at > done.created_at
        assert done.created_at == tx.created_at
        assert get_transaction(repo, tx.id) == done

        with pytest.raises(InvalidTransitionError):
            transition_transaction(repo, tx.id, TransactionStatus.FAILED, TransactionStatus.COMPLETED)

    def test_pending_to_failed(self, repo, valid_request) -> None:
        tx = create_transaction(repo, valid_request)
        failed = transition_transaction(repo, tx.id, "failed", "pending")
        assert failed.status == TransactionStatus.FAILED

    @pytest.mark.parametrize("terminal", [TransactionStatus.COMPLETED, TransactionStatus.FAILED])
    @pytest.mark.parametrize("target", list(TransactionStatus))
    def test_terminal_states_allow_nothing(self, repo, valid_request, terminal, target) -> None:
        tx = create_transaction(repo, valid_request)
        transition_transaction(repo, tx.id, terminal, TransactionStatus.PENDING)
        with pytest.raises(InvalidTransitionError):
            transition_transaction(repo, tx.id, target, terminal)

    def test_pending_to_pending_is_invalid(self, repo, valid_request) -> None:
        tx = create_transaction(repo, valid_request)
        with pytest.raises(InvalidTransitionError):
            transition_transaction(repo, tx.id, TransactionStatus.PENDING, TransactionStatus.PENDING)

    def test_stale_expected_status_conflicts(self, repo, valid_request) -> None:
        tx = create_transaction(repo, valid_request)
        transition_transaction(repo, tx.id, TransactionStatus.COMPLETED, TransactionStatus.PENDING)
        with pytest.raises(ConflictError):
            transition_transaction(repo, tx.id, TransactionStatus.FAILED, TransactionStatus.PENDING)

    def test_unknown_id_raises_not_found(self, repo) -> None:
        with pytest.raises(NotFoundError):
            transition_transaction(repo, "missing", TransactionStatus.COMPLETED, TransactionStatus.PENDING)

    def test_unknown_status_rejected(self, repo, valid_request) -> None:
        tx = create_transaction(repo, valid_request)
        with pytest.raises(ValidationError):
            transition_transaction(repo, tx.id, "REFUNDED", "PENDING")

    def test_lost_compare_and_swap_conflicts(self, repo, valid_request, monkeypatch) -> None:
        tx = create_transaction(repo, valid_request)
        monkeypatch.setattr(repo, "compare_and_set_status", lambda *args: False)
        with pytest.raises(ConflictError):
            transition_transaction(repo, tx.id, TransactionStatus.COMPLETED, TransactionStatus.PENDING)

    def test_exactly_one_concurrent_transition_wins(self, db_path, repo, valid_request) -> None:
        tx = create_transaction(repo, valid_request)
        workers = 8
        barrier = threading.Barrier(workers)
        wins, conflicts, other = [], [], []

        def worker() -> None:
            conn = connect(db_path, timeout=10)
            try:
                barrier.wait()
                wins.append(transition_transaction(
                    SQLiteTransactionRepository(conn), tx.id,
                    TransactionStatus.COMPLETED, TransactionStatus.PENDING,
                ))
            except ConflictError as e:
                conflicts.append(e)
            except Exception as e:
                other.append(e)
            finally:
                conn.close()

        threads = [threading.Thread(target=worker) for _ in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert other == []
        assert len(wins) == 1
        assert len(conflicts) == workers - 1
        assert get_transaction(repo, tx.id).status == TransactionStatus.COMPLETED


class TestSettleTransaction:
    def test_approved_settlement_completes(self, repo, valid_request) -> None:
        tx = create_transaction(repo, valid_request)
        settled = settle_transaction(repo, StubSettlementProvider(approve=True), tx.id)
        assert settled.status == TransactionStatus.COMPLETED

    def test_declined_settlement_fails(self, repo, valid_request) -> None:
        tx = create_transaction(repo, valid_request)
        settled = settle_transaction(repo, StubSettlementProvider(approve=False), tx.id)
        assert settled.status == TransactionStatus.FAILED

    def test_settling_twice_conflicts(self, repo, valid_request) -> None:
        tx = create_transaction(repo, valid_request)
        provider = StubSettlementProvider()
        settle_transaction(repo, provider, tx.id)
        with pytest.raises(ConflictError):
            settle_transaction(repo, provider, tx.id)


class TestStorageFailures:
    def test_missing_schema_surfaces_storage_error(self, tmp_path, valid_request) -> None:
        conn = connect(str(tmp_path / "empty.db"), timeout=1)
        try:
            repo = SQLiteTransactionRepository(conn)
            with pytest.raises(StorageError):
                create_transaction(repo, dataclasses.replace(valid_request, idempotency_key="k"))
            with pytest.raises(StorageError):
                get_transaction(repo, "some-id")
        finally:
            conn.close()
