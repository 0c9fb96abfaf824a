"""
MongoDB access for the payments API

Collections:
    users        - balance, role, active service flags, loyalty counters
    coupons      - coupon registry, matched by exact code
    settings     - the "discounts" document overrides the default rate table
    transactions - charges and top-ups

Writes that must not race (coupon redemption, balance debit) are single
guarded update operations, so they are atomic per document. A charge is
opened as a pending transaction first; a unique (userId, idempotencyKey)
index makes that insert the claim on a repeat-safe key.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from bson import ObjectId
from pymongo import ASCENDING, MongoClient, ReturnDocument
from pymongo.errors import DuplicateKeyError

from config import settings

logger = logging.getLogger(__name__)

client = None
db = None

if settings.database_url and settings.database_name:
    client = MongoClient(settings.database_url)
    db = client[settings.database_name]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _collection(name: str):
    if db is None:
        raise RuntimeError("Database not available. Check DATABASE_URL and DATABASE_NAME environment variables.")
    return db[name]


def _id_filter(doc_id: str) -> Dict[str, Any]:
    # Coupons created through the shell get ObjectIds, imported ones keep their string ids.
    if ObjectId.is_valid(doc_id):
        return {"_id": {"$in": [doc_id, ObjectId(doc_id)]}}
    return {"_id": doc_id}


def get_documents(collection_name: str, filter_dict: Optional[Dict[str, Any]] = None, limit: Optional[int] = None) -> List[dict]:
    cursor = _collection(collection_name).find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def get_user(user_id: str) -> Optional[dict]:
    return _collection("users").find_one({"_id": user_id})


def find_coupon_by_code(code: str) -> Optional[dict]:
    # At most one coupon per code is expected; the first match wins otherwise.
    return _collection("coupons").find_one({"code": code})


def list_coupons() -> List[dict]:
    return get_documents("coupons")


def get_discount_settings() -> dict:
    doc = _collection("settings").find_one({"_id": "discounts"})
    return doc or {}


def seed_discount_settings(defaults: Dict[str, Any]) -> bool:
    if db is None:
        return False
    result = db["settings"].update_one({"_id": "discounts"}, {"$setOnInsert": defaults}, upsert=True)
    return result.upserted_id is not None


def redeem_coupon(coupon_id: str) -> bool:
    """
    Count one use of a coupon.

    The increment only happens while usedCount < usageLimit (or when the coupon
    has no limit), so concurrent redemptions cannot overshoot the limit.
    """
    guard = {
        "$or": [
            {"usageLimit": {"$in": [None, 0]}},
            {"$expr": {"$lt": [{"$ifNull": ["$usedCount", 0]}, "$usageLimit"]}},
        ]
    }
    result = _collection("coupons").update_one(
        {**_id_filter(coupon_id), **guard},
        {"$inc": {"usedCount": 1}, "$set": {"updatedAt": _now_iso()}},
    )
    if result.modified_count != 1:
        logger.warning("Coupon %s not redeemed: usage limit reached or coupon missing", coupon_id)
        return False
    return True


def release_coupon(coupon_id: str) -> None:
    _collection("coupons").update_one(
        {**_id_filter(coupon_id), "usedCount": {"$gt": 0}},
        {"$inc": {"usedCount": -1}, "$set": {"updatedAt": _now_iso()}},
    )


def debit_balance(user_id: str, amount) -> Optional[float]:
    """Subtract amount if the balance covers it. Returns the new balance, or None."""
    if amount <= 0:
        user = get_user(user_id)
        return None if user is None else user.get("balance") or 0
    doc = _collection("users").find_one_and_update(
        {"_id": user_id, "balance": {"$gte": amount}},
        {"$inc": {"balance": -amount}, "$set": {"updatedAt": _now_iso()}},
        return_document=ReturnDocument.AFTER,
    )
    return None if doc is None else doc["balance"]


def credit_balance(user_id: str, amount) -> Optional[float]:
    doc = _collection("users").find_one_and_update(
        {"_id": user_id},
        {"$inc": {"balance": amount}, "$set": {"updatedAt": _now_iso()}},
        return_document=ReturnDocument.AFTER,
    )
    return None if doc is None else doc["balance"]


def find_transaction(user_id: str, idempotency_key: str) -> Optional[dict]:
    return _collection("transactions").find_one({"userId": user_id, "idempotencyKey": idempotency_key})


def ensure_indexes() -> None:
    if db is None:
        return
    db["transactions"].create_index(
        [("userId", ASCENDING), ("idempotencyKey", ASCENDING)],
        name="user_idempotency_key",
        unique=True,
        partialFilterExpression={"idempotencyKey": {"$type": "string"}},
    )


def open_transaction(data: Dict[str, Any]) -> Optional[str]:
    """
    Insert a pending transaction before any money moves.

    With an idempotencyKey the insert is an upsert on (userId, idempotencyKey),
    so exactly one request claims the key. Returns the new transaction's id, or
    None when the key was already claimed.
    """
    now = _now_iso()
    doc = {**data, "status": "pending", "createdAt": now, "updatedAt": now}
    key = doc.pop("idempotencyKey", None)
    transactions = _collection("transactions")
    if not key:
        return str(transactions.insert_one(doc).inserted_id)

    user_id = doc.pop("userId")
    try:
        result = transactions.update_one(
            {"userId": user_id, "idempotencyKey": key},
            {"$setOnInsert": doc},
            upsert=True,
        )
    except DuplicateKeyError:
        # Lost a concurrent upsert race on the unique index.
        return None
    return None if result.upserted_id is None else str(result.upserted_id)


def complete_transaction(transaction_ref: str, updates: Dict[str, Any]) -> None:
    _collection("transactions").update_one(
        _id_filter(transaction_ref),
        {"$set": {**updates, "status": "completed", "updatedAt": _now_iso()}},
    )


def discard_transaction(transaction_ref: str) -> None:
    _collection("transactions").delete_one({**_id_filter(transaction_ref), "status": "pending"})
