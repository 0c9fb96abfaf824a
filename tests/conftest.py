"""Shared fixtures for the payments API tests."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from schemas import Coupon, PricingConfig, UserRecord  # noqa: E402

NOW = "2026-10-19T12:00:00.000Z"


@pytest.fixture
def now() -> str:
    return NOW


@pytest.fixture
def config() -> PricingConfig:
    return PricingConfig()


@pytest.fixture
def make_user():
    def _make(**fields) -> UserRecord:
        data = {"_id": "u1", "name": "Asha", "balance": 0}
        data.update(fields)
        return UserRecord.model_validate(data)

    return _make


@pytest.fixture
def make_coupon():
    def _make(**fields) -> Coupon:
        data = {"_id": "c1", "code": "SAVE300", "type": "flat", "value": 300, "stackable": True}
        data.update(fields)
        return Coupon.model_validate(data)

    return _make


class FakeStore:
    """In-memory stand-in for the database helpers imported by main."""

    def __init__(self) -> None:
        self.users: dict[str, dict] = {}
        self.coupons: dict[str, dict] = {}
        self.settings: dict = {}
        self.transactions: list[dict] = []
        self.settings_error: Exception | None = None
        self._next_ref = 0

    def get_user(self, user_id):
        doc = self.users.get(user_id)
        return dict(doc) if doc else None

    def find_coupon_by_code(self, code):
        for doc in self.coupons.values():
            if doc["code"] == code:
                return dict(doc)
        return None

    def list_coupons(self):
        return [dict(doc) for doc in self.coupons.values()]

    def get_discount_settings(self):
        if self.settings_error is not None:
            raise self.settings_error
        return dict(self.settings)

    def redeem_coupon(self, coupon_id):
        doc = self.coupons[coupon_id]
        limit = doc.get("usageLimit")
        if limit and doc.get("usedCount", 0) >= limit:
            return False
        doc["usedCount"] = doc.get("usedCount", 0) + 1
        return True

    def release_coupon(self, coupon_id):
        self.coupons[coupon_id]["usedCount"] -= 1

    def debit_balance(self, user_id, amount):
        doc = self.users[user_id]
        if doc.get("balance", 0) < amount:
            return None
        doc["balance"] = doc.get("balance", 0) - amount
        return doc["balance"]

    def credit_balance(self, user_id, amount):
        doc = self.users.get(user_id)
        if doc is None:
            return None
        doc["balance"] = doc.get("balance", 0) + amount
        return doc["balance"]

    def find_transaction(self, user_id, key):
        for doc in self.transactions:
            if doc["userId"] == user_id and doc.get("idempotencyKey") == key:
                return doc
        return None

    def open_transaction(self, data):
        key = data.get("idempotencyKey")
        if key and self.find_transaction(data["userId"], key) is not None:
            return None
        self._next_ref += 1
        ref = f"t{self._next_ref}"
        self.transactions.append({**data, "_id": ref, "status": "pending"})
        return ref

    def complete_transaction(self, ref, updates):
        for doc in self.transactions:
            if doc["_id"] == ref:
                doc.update(updates, status="completed")

    def discard_transaction(self, ref):
        self.transactions = [
            doc for doc in self.transactions if not (doc["_id"] == ref and doc["status"] == "pending")
        ]


@pytest.fixture
def store(monkeypatch) -> FakeStore:
    import main

    fake = FakeStore()
    for name in (
        "get_user",
        "find_coupon_by_code",
        "list_coupons",
        "get_discount_settings",
        "redeem_coupon",
        "release_coupon",
        "debit_balance",
        "credit_balance",
        "find_transaction",
        "open_transaction",
        "complete_transaction",
        "discard_transaction",
    ):
        monkeypatch.setattr(main, name, getattr(fake, name))
    return fake


@pytest.fixture
def client(store):
    from fastapi.testclient import TestClient

    import main

    return TestClient(main.app)
