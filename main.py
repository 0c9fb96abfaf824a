import logging
import secrets
import string
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from fastapi import Depends, FastAPI, Header, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError
from pymongo.errors import PyMongoError

from config import settings
from coupons import available_coupons
from database import (
    db,
    complete_transaction,
    credit_balance,
    debit_balance,
    discard_transaction,
    ensure_indexes,
    find_coupon_by_code,
    find_transaction,
    get_discount_settings,
    get_user,
    list_coupons,
    open_transaction,
    redeem_coupon,
    release_coupon,
    seed_discount_settings,
)
from errors import FailedPrecondition, InvalidArgument, NotFound, PermissionDenied, Unauthenticated, register_error_handlers
from logging_config import setup_logging
from money import format_amount
from pricing import DEFAULT_CONFIG, calculate_price
from schemas import (
    CANTEEN,
    HOSTEL,
    READING_ROOM,
    CheckoutReceipt,
    CheckoutRequest,
    Coupon,
    Discount,
    PaymentQuote,
    PriceRequest,
    PricingConfig,
    TopUpReceipt,
    TopUpRequest,
    UserRecord,
)

setup_logging()
logger = logging.getLogger(__name__)

app = FastAPI(title="Facility Payments API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_error_handlers(app)

TRANSACTION_PREFIXES = {READING_ROOM: "RDR", HOSTEL: "HST", CANTEEN: "CAN"}
TRANSACTION_TYPES = {READING_ROOM: "reading_room", HOSTEL: "hostel", CANTEEN: "canteen"}
PROXY_ROLES = {"admin", "canteen"}

# ------------------------
# Helpers
# ------------------------

def generate_transaction_id(prefix: str) -> str:
    date_str = datetime.now(timezone.utc).strftime("%Y%m%d")
    suffix = "".join(secrets.choice(string.ascii_uppercase + string.digits) for _ in range(6))
    return f"{prefix}-{date_str}-{suffix}"


def get_caller(authorization: Optional[str] = Header(None)) -> str:
    """Caller id from "Authorization: Bearer <id>". Token verification happens upstream."""
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise Unauthenticated("Must be authenticated.")
    return token.strip()


def require_role(caller: str, roles: set, message: str) -> UserRecord:
    doc = get_user(caller)
    caller_record = UserRecord.model_validate(doc) if doc else None
    if caller_record is None or caller_record.role not in roles:
        logger.warning("User %s denied: role %s not in %s", caller, caller_record.role if caller_record else None, sorted(roles))
        raise PermissionDenied(message)
    return caller_record


def load_pricing_config() -> PricingConfig:
    try:
        overrides = get_discount_settings()
    except (PyMongoError, RuntimeError):
        logger.exception("Error fetching discount settings, using defaults")
        return DEFAULT_CONFIG
    try:
        return DEFAULT_CONFIG.with_overrides(overrides)
    except ValidationError:
        logger.exception("Stored discount settings are invalid, using defaults")
        return DEFAULT_CONFIG


def load_price_inputs(payload: PriceRequest) -> Tuple[Optional[UserRecord], Optional[Coupon]]:
    user_doc = get_user(payload.user_id) if payload.user_id else None
    coupon_doc = find_coupon_by_code(payload.coupon_code) if payload.coupon_code else None
    user = UserRecord.model_validate(user_doc) if user_doc else None
    coupon = Coupon.model_validate(coupon_doc) if coupon_doc else None
    return user, coupon


def receipt_from_transaction(doc: dict) -> CheckoutReceipt:
    breakdown = doc.get("breakdown") or {}
    return CheckoutReceipt(
        transaction_id=doc["transactionId"],
        status=doc.get("status", "completed"),
        final_price=doc.get("amount", 0),
        new_balance=doc.get("balanceAfter"),
        discounts=[Discount.model_validate(d) for d in breakdown.get("discounts", [])],
    )


def rollback_charge(transaction_ref: str, user_id: str, *, balance_change=None, coupon_id: Optional[str] = None) -> None:
    """
    Undo the steps of a charge that did not complete.

    balance_change is the amount that was applied to the balance (negative for
    a debit) and is reversed; the coupon use is released and the pending
    transaction is deleted. Every step is attempted even if an earlier one fails.
    """
    if balance_change:
        try:
            credit_balance(user_id, -balance_change)
        except PyMongoError:
            logger.exception("Could not reverse balance change of %s for %s", balance_change, user_id)
    if coupon_id:
        try:
            release_coupon(coupon_id)
        except PyMongoError:
            logger.exception("Could not release coupon %s", coupon_id)
    try:
        discard_transaction(transaction_ref)
    except PyMongoError:
        logger.exception("Could not discard pending transaction %s", transaction_ref)
    logger.warning("Rolled back charge %s for %s", transaction_ref, user_id)


# ------------------------
# Seed the rate table if empty
# ------------------------
@app.on_event("startup")
def seed_defaults():
    if db is None:
        return
    ensure_indexes()
    if seed_discount_settings(DEFAULT_CONFIG.model_dump(by_alias=True)):
        logger.info("Seeded default discount settings")


# ------------------------
# Routes
# ------------------------
@app.get("/")
def root():
    return {"message": "Facility Payments API"}


@app.post("/calculate-payment", response_model=PaymentQuote, response_model_exclude_none=True)
def calculate_payment(payload: PriceRequest, caller: str = Depends(get_caller)):
    if not payload.user_id or not payload.service_type:
        logger.warning("calculate-payment missing fields: userId=%s serviceType=%s", payload.user_id, payload.service_type)
    user, coupon = load_price_inputs(payload)
    result = calculate_price(payload, user, coupon, config=load_pricing_config())
    logger.info(
        "Quote for %s %s: base=%s discount=%s final=%s",
        payload.user_id, payload.service_type, result.base_price, result.total_discount, result.final_price,
    )
    return PaymentQuote(**result.model_dump())


@app.get("/coupons/available", response_model=List[Coupon], response_model_exclude_none=True)
def list_available_coupons(
    service_type: Optional[str] = Query(None, alias="serviceType"),
    caller: str = Depends(get_caller),
):
    coupons = [Coupon.model_validate(doc) for doc in list_coupons()]
    return available_coupons(coupons, user_id=caller, service_type=service_type)


@app.post("/checkout", response_model=CheckoutReceipt, response_model_exclude_none=True)
def checkout(payload: CheckoutRequest, caller: str = Depends(get_caller)):
    user_id = payload.user_id or caller
    is_proxy = user_id != caller
    if is_proxy:
        require_role(caller, PROXY_ROLES, "Unauthorized to place proxy orders.")

    if payload.idempotency_key:
        existing = find_transaction(user_id, payload.idempotency_key)
        if existing is not None:
            logger.info("Checkout %s for %s already recorded", payload.idempotency_key, user_id)
            return receipt_from_transaction(existing)

    request = payload.model_copy(update={"user_id": user_id})
    user, coupon = load_price_inputs(request)
    result = calculate_price(request, user, coupon, config=load_pricing_config())

    if user.balance < result.final_price:
        shortfall = format_amount(result.final_price - user.balance)
        raise FailedPrecondition(
            "Client has insufficient balance." if is_proxy else f"Insufficient balance. You need रु {shortfall} more."
        )

    # The pending record goes in before money moves; with a key it is also the claim on that key.
    transaction_id = generate_transaction_id(TRANSACTION_PREFIXES[request.service_type])
    transaction_ref = open_transaction({
        "type": TRANSACTION_TYPES[request.service_type],
        "transactionId": transaction_id,
        "idempotencyKey": payload.idempotency_key,
        "amount": result.final_price,
        "originalAmount": result.base_price,
        "couponCode": request.coupon_code,
        "breakdown": {
            "basePrice": result.base_price,
            "discounts": [d.model_dump(by_alias=True, exclude_none=True) for d in result.discounts],
        },
        "details": result.base_price_label,
        "userId": user_id,
        "userName": user.name or "User",
        "processedBy": caller if is_proxy else None,
        "date": datetime.now(timezone.utc).isoformat(),
    })
    if transaction_ref is None:
        logger.info("Checkout %s for %s claimed by a concurrent request", payload.idempotency_key, user_id)
        existing = find_transaction(user_id, payload.idempotency_key)
        if existing is None:
            raise FailedPrecondition("Checkout with this idempotency key is already in progress.")
        return receipt_from_transaction(existing)

    applied = next((d for d in result.discounts if d.type == "coupon"), None)
    redeemed_coupon = None
    balance_change = None
    try:
        if applied is not None:
            if not redeem_coupon(applied.id):
                raise FailedPrecondition("Coupon usage limit reached")
            redeemed_coupon = applied.id

        new_balance = debit_balance(user_id, result.final_price)
        if new_balance is None:
            raise FailedPrecondition("Client has insufficient balance." if is_proxy else "Insufficient balance.")
        balance_change = -result.final_price

        complete_transaction(transaction_ref, {"balanceAfter": new_balance})
    except Exception:
        rollback_charge(transaction_ref, user_id, balance_change=balance_change, coupon_id=redeemed_coupon)
        raise

    logger.info("Charged %s %s for %s (%s)", user_id, result.final_price, request.service_type, transaction_id)
    return CheckoutReceipt(
        transaction_id=transaction_id,
        final_price=result.final_price,
        new_balance=new_balance,
        discounts=result.discounts,
    )


@app.post("/balance/top-up", response_model=TopUpReceipt)
def top_up_balance(payload: TopUpRequest, caller: str = Depends(get_caller)):
    require_role(caller, {"admin"}, "Only admins can top up balance.")
    if not payload.user_id or payload.amount is None or payload.amount <= 0:
        raise InvalidArgument("Invalid user ID or amount.")

    transaction_id = generate_transaction_id("BTU")
    transaction_ref = open_transaction({
        "type": "balance_topup",
        "transactionId": transaction_id,
        "amount": payload.amount,
        "details": "Admin Balance Top-up",
        "userId": payload.user_id,
        "adminId": caller,
        "date": datetime.now(timezone.utc).isoformat(),
    })

    balance_change = None
    try:
        new_balance = credit_balance(payload.user_id, payload.amount)
        if new_balance is None:
            raise NotFound("User not found.")
        balance_change = payload.amount
        complete_transaction(transaction_ref, {"balanceAfter": new_balance})
    except Exception:
        rollback_charge(transaction_ref, payload.user_id, balance_change=balance_change)
        raise

    logger.info("Admin %s topped up %s by %s", caller, payload.user_id, payload.amount)
    return TopUpReceipt(transaction_id=transaction_id, new_balance=new_balance)


@app.get("/health")
def health():
    response = {
        "backend": "running",
        "database": "not configured",
        "collections": [],
    }
    if db is None:
        return response
    try:
        response["collections"] = db.list_collection_names()[:10]
        response["database"] = "connected"
    except PyMongoError as e:
        logger.warning("Health check could not reach the database: %s", e)
        response["database"] = f"error: {str(e)[:50]}"
    return response


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.port)
