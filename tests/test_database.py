"""Transaction claim and index helpers against a mocked collection."""

from unittest.mock import MagicMock

import pytest
from pymongo.errors import DuplicateKeyError

import database


@pytest.fixture
def transactions(monkeypatch) -> MagicMock:
    db = MagicMock()
    monkeypatch.setattr(database, "db", db)
    return db.__getitem__.return_value


def test_open_without_key_inserts_pending_record(transactions):
    transactions.insert_one.return_value.inserted_id = "abc"
    ref = database.open_transaction({"type": "balance_topup", "userId": "u1", "amount": 10})
    assert ref == "abc"
    doc = transactions.insert_one.call_args.args[0]
    assert doc["status"] == "pending"
    assert doc["userId"] == "u1"
    assert "idempotencyKey" not in doc
    transactions.update_one.assert_not_called()


def test_open_with_key_claims_it_by_upsert(transactions):
    transactions.update_one.return_value.upserted_id = "def"
    ref = database.open_transaction({"type": "canteen", "userId": "u1", "idempotencyKey": "cart-1", "amount": 5})
    assert ref == "def"
    query, update = transactions.update_one.call_args.args
    assert query == {"userId": "u1", "idempotencyKey": "cart-1"}
    assert update["$setOnInsert"]["status"] == "pending"
    assert "userId" not in update["$setOnInsert"]
    assert transactions.update_one.call_args.kwargs["upsert"] is True


def test_open_with_taken_key_returns_none(transactions):
    transactions.update_one.return_value.upserted_id = None
    assert database.open_transaction({"userId": "u1", "idempotencyKey": "cart-1"}) is None


def test_open_losing_upsert_race_returns_none(transactions):
    transactions.update_one.side_effect = DuplicateKeyError("E11000 duplicate key error")
    assert database.open_transaction({"userId": "u1", "idempotencyKey": "cart-1"}) is None


def test_complete_marks_record_completed(transactions):
    database.complete_transaction("t1", {"balanceAfter": 40})
    query, update = transactions.update_one.call_args.args
    assert query == {"_id": "t1"}
    assert update["$set"]["status"] == "completed"
    assert update["$set"]["balanceAfter"] == 40


def test_discard_only_deletes_pending_records(transactions):
    database.discard_transaction("t1")
    transactions.delete_one.assert_called_once_with({"_id": "t1", "status": "pending"})


def test_ensure_indexes_makes_key_unique_per_user(transactions):
    database.ensure_indexes()
    keys = transactions.create_index.call_args.args[0]
    options = transactions.create_index.call_args.kwargs
    assert keys == [("userId", 1), ("idempotencyKey", 1)]
    assert options["unique"] is True
    assert options["partialFilterExpression"] == {"idempotencyKey": {"$type": "string"}}


def test_helpers_fail_loudly_without_database(monkeypatch):
    monkeypatch.setattr(database, "db", None)
    with pytest.raises(RuntimeError, match="Database not available"):
        database.open_transaction({"userId": "u1"})
    database.ensure_indexes()
