"""
Payment calculation for reading room, hostel and canteen charges.

A quote is built in stages: base price, automated discounts, coupon
validation, coupon amount, stacking policy, totals. Nothing is written
anywhere; the caller that actually charges the user owns the coupon usage
increment.
"""
import logging
from typing import List, Optional, Tuple

from coupons import coupon_discount_amount, coupon_invalid_reason, utc_now_iso
from errors import InvalidArgument, NotFound
from money import percent_of
from schemas import (
    CANTEEN,
    HOSTEL,
    READING_ROOM,
    Coupon,
    Discount,
    PriceRequest,
    PriceResult,
    PricingConfig,
    UserRecord,
)

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = PricingConfig()

AUTOMATED = "automated"
COUPON = "coupon"


def resolve_base_price(request: PriceRequest, config: PricingConfig) -> Tuple[float, str]:
    months = request.months
    if request.service_type == READING_ROOM:
        is_ac = request.room_type == "ac"
        unit = config.reading_room_ac_rate if is_ac else config.reading_room_non_ac_rate
        return unit * months, f"{'AC' if is_ac else 'Non-AC'} Reading Room ({months} months)"
    if request.service_type == HOSTEL:
        return config.hostel_rate * months, f"Hostel Room ({months} months)"
    if request.service_type == CANTEEN:
        # Cart total is supplied by the caller.
        if request.amount is None or isinstance(request.amount, bool) or request.amount < 0:
            raise InvalidArgument("Invalid amount for canteen order.")
        return request.amount, "Canteen Order Total"
    logger.warning("Invalid service type received: %s", request.service_type)
    raise InvalidArgument(f"Invalid service type for discount calculation: {request.service_type}")


def automated_discounts(request: PriceRequest, user: UserRecord, base_price, config: PricingConfig) -> List[Discount]:
    discounts = []
    months = request.months

    if months >= config.bulk_min_months:
        discounts.append(Discount(
            id="auto_bulk",
            name=f"Bulk Discount ({months}+ months)",
            amount=percent_of(base_price, config.bulk_percent),
            type=AUTOMATED,
        ))

    # Holding the other service earns the bundle discount; serviceType is singular so at most one applies.
    if request.service_type == HOSTEL and user.current_seat:
        discounts.append(Discount(
            id="auto_bundle", name="Bundle Discount (Active Reading Room)", amount=config.bundle_fixed, type=AUTOMATED,
        ))
    elif request.service_type == READING_ROOM and user.current_hostel_room:
        discounts.append(Discount(
            id="auto_bundle", name="Bundle Discount (Active Hostel)", amount=config.bundle_fixed, type=AUTOMATED,
        ))

    # TODO: loyalty discount amount and one-time usage tracking are not decided yet; no discount is emitted.
    if (user.meals_eaten or 0) > config.loyalty_threshold:
        logger.debug("User %s is past the loyalty threshold (%s meals)", user.id, user.meals_eaten)

    return discounts


def calculate_price(
    request: PriceRequest,
    user: Optional[UserRecord],
    coupon: Optional[Coupon],
    *,
    config: Optional[PricingConfig] = None,
    now: Optional[str] = None,
) -> PriceResult:
    """
    Price a reading room, hostel or canteen payment.

    Args:
        request: The payment preview request.
        user: The paying user's record, or None if userId did not resolve.
        coupon: The coupon found for request.coupon_code, or None.
        config: Rate table; defaults to the built-in rates.
        now: ISO-8601 UTC timestamp used for coupon expiry; defaults to the current time.

    Raises:
        InvalidArgument: missing fields, unsupported service, rejected coupon.
        NotFound: unknown user or coupon code.

    A rejected coupon fails the whole quote; automated discounts are not
    returned on their own.
    """
    config = config or DEFAULT_CONFIG

    if not request.user_id or not request.service_type:
        raise InvalidArgument("Missing required fields.")
    if user is None:
        raise NotFound("User not found.")

    base_price, label = resolve_base_price(request, config)
    discounts = automated_discounts(request, user, base_price, config)

    if request.coupon_code:
        if coupon is None:
            raise NotFound("Invalid coupon code")
        reason = coupon_invalid_reason(
            coupon,
            user_id=request.user_id,
            service_type=request.service_type,
            base_price=base_price,
            now=now or utc_now_iso(),
        )
        if reason:
            logger.info("Coupon %s rejected for user %s: %s", request.coupon_code, request.user_id, reason)
            raise InvalidArgument(reason)

        amount = coupon_discount_amount(coupon, base_price)
        if not coupon.stackable and discounts:
            discounts = []
        discounts.append(Discount(
            id=coupon.id or coupon.code,
            name=f"Coupon ({request.coupon_code})",
            amount=amount,
            type=COUPON,
            code=request.coupon_code,
        ))

    total_discount = sum(d.amount for d in discounts)
    return PriceResult(
        base_price=base_price,
        base_price_label=label,
        discounts=discounts,
        total_discount=total_discount,
        final_price=max(0, base_price - total_discount),
        currency=config.currency,
    )
