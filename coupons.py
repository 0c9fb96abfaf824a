"""Coupon validation and discount rules."""
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from money import format_amount, percent_of
from schemas import Coupon

PERCENTAGE = "percentage"
FLAT = "flat"
TARGET_SPECIFIC = "specific"


def utc_now_iso() -> str:
    """Current UTC time in the same ISO format stored in expiryDate (ms precision, Z suffix)."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def coupon_invalid_reason(
    coupon: Coupon,
    *,
    user_id: Optional[str],
    service_type: Optional[str],
    base_price=None,
    now: Optional[str] = None,
) -> Optional[str]:
    """
    Run every coupon check and return the reason of the last one that failed.

    Checks always run in this order: expiry, usage limit, service, minimum
    spend, single-user restriction, allowed-users list. None of them
    short-circuits, so a coupon failing several checks reports the last
    failure. A present applicableServices list restricts the coupon even when
    empty. ``base_price=None`` skips the minimum spend check and
    ``service_type=None`` skips the service check. Returns None for a usable
    coupon.
    """
    now = now or utc_now_iso()
    reason = None

    # ISO-8601 UTC strings of the same precision compare correctly as text.
    if coupon.expiry_date and coupon.expiry_date < now:
        reason = "Coupon expired"
    if coupon.usage_limit and (coupon.used_count or 0) >= coupon.usage_limit:
        reason = "Coupon usage limit reached"
    if (
        service_type is not None
        and coupon.applicable_services is not None
        and service_type not in coupon.applicable_services
    ):
        reason = "Coupon not applicable for this service"
    if base_price is not None and coupon.min_amount and base_price < coupon.min_amount:
        reason = f"Minimum spend of {format_amount(coupon.min_amount)} required"
    if coupon.shadow_user_id and coupon.shadow_user_id != user_id:
        reason = "Invalid coupon code"
    if coupon.allowed_users and user_id not in coupon.allowed_users:
        reason = "This coupon is not valid for your account"
    return reason


def coupon_discount_amount(coupon: Coupon, base_price):
    if coupon.type == PERCENTAGE:
        return percent_of(base_price, coupon.value)
    if coupon.type == FLAT:
        return coupon.value
    return 0


def _offered_to(coupon: Coupon, user_id: str, service_type: Optional[str]) -> bool:
    # The picker hides targeted coupons outright and treats an empty service list as "any service".
    if coupon.target_type == TARGET_SPECIFIC and user_id not in (coupon.allowed_users or []):
        return False
    if service_type is not None and coupon.applicable_services and service_type not in coupon.applicable_services:
        return False
    return True


def available_coupons(
    coupons: Iterable[Coupon],
    *,
    user_id: str,
    service_type: Optional[str] = None,
    now: Optional[str] = None,
) -> List[Coupon]:
    """Coupons the user can pick right now; minimum spend is checked once a price exists."""
    now = now or utc_now_iso()
    return [
        c for c in coupons
        if _offered_to(c, user_id, service_type)
        and coupon_invalid_reason(c, user_id=user_id, service_type=None, now=now) is None
    ]
