"""
Schemas for reading room, hostel and canteen payments

Documents are stored with camelCase keys (users, coupons, settings,
transactions), so every request/record model below reads and writes camelCase
while exposing snake_case attributes to Python code.
"""
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel
from typing import Any, List, Optional, Union

Amount = Union[int, float]

READING_ROOM = "readingRoom"
HOSTEL = "hostel"
CANTEEN = "canteen"
SERVICE_TYPES = (READING_ROOM, HOSTEL, CANTEEN)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class PricingConfig(BaseModel):
    """
    Rate table and automated discount rules.

    Aliases match the keys of the stored ``settings/discounts`` document so a
    stored document can be laid over the defaults with ``with_overrides``.
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    reading_room_ac_rate: Amount = Field(3750, alias="READING_ROOM_AC_RATE")
    reading_room_non_ac_rate: Amount = Field(3500, alias="READING_ROOM_NON_AC_RATE")
    hostel_rate: Amount = Field(14500, alias="HOSTEL_RATE")
    bulk_percent: Amount = Field(10, alias="BULK_PERCENT")
    bulk_min_months: int = Field(6, ge=1, alias="BULK_MIN_MONTHS")
    bundle_fixed: Amount = Field(500, alias="BUNDLE_FIXED")
    loyalty_threshold: int = Field(50, ge=0, alias="LOYALTY_THRESHOLD")
    currency: str = Field("NPR", alias="CURRENCY")

    @field_validator("reading_room_ac_rate", "reading_room_non_ac_rate", "hostel_rate", "bulk_percent", "bundle_fixed")
    @classmethod
    def _non_negative(cls, value):
        if value < 0:
            raise ValueError("must be >= 0")
        return value

    def with_overrides(self, overrides: Optional[dict]) -> "PricingConfig":
        if not overrides:
            return self
        merged = self.model_dump(by_alias=True)
        merged.update({k: v for k, v in overrides.items() if v is not None})
        return PricingConfig.model_validate(merged)


class PriceRequest(CamelModel):
    """
    Payment preview request.

    userId and serviceType are optional here so that a missing field is
    reported as an invalid argument by the calculator instead of a schema error.
    """
    user_id: Optional[str] = None
    service_type: Optional[str] = Field(None, description="readingRoom|hostel|canteen")
    coupon_code: Optional[str] = None
    months: int = Field(1, ge=1, description="Billing duration multiplier")
    room_type: Optional[str] = Field(None, description="ac|non-ac, reading room only")
    amount: Optional[Amount] = Field(None, description="Cart total, canteen only")


class CheckoutRequest(PriceRequest):
    idempotency_key: Optional[str] = Field(None, description="Repeat-safe key for the charge")


class TopUpRequest(CamelModel):
    user_id: Optional[str] = None
    amount: Optional[Amount] = None


class UserRecord(CamelModel):
    id: Optional[str] = Field(None, validation_alias=AliasChoices("_id", "id"))
    name: Optional[str] = None
    role: Optional[str] = None
    balance: Amount = 0
    current_seat: Optional[Any] = None
    current_hostel_room: Optional[Any] = None
    meals_eaten: Optional[int] = 0

    @field_validator("id", mode="before")
    @classmethod
    def _stringify_id(cls, value):
        return None if value is None else str(value)

    @field_validator("balance", mode="before")
    @classmethod
    def _missing_balance(cls, value):
        return 0 if value is None else value


class Coupon(CamelModel):
    """
    Coupon registry entry.

    type is "percentage" (value is a percent of the base price) or "flat"
    (value is an absolute amount). expiryDate is an ISO-8601 UTC string.
    shadowUserId restricts the coupon to a single user; a non-empty allowedUsers
    list restricts it to those users.
    """
    id: Optional[str] = Field(None, validation_alias=AliasChoices("_id", "id"))
    code: str
    type: str = "flat"
    value: Amount = 0
    expiry_date: Optional[str] = None
    usage_limit: Optional[Amount] = None
    used_count: Optional[Amount] = 0
    applicable_services: Optional[List[str]] = None
    min_amount: Optional[Amount] = None
    shadow_user_id: Optional[str] = None
    target_type: Optional[str] = Field(None, description="all|specific")
    allowed_users: Optional[List[str]] = None
    stackable: bool = False

    @field_validator("id", mode="before")
    @classmethod
    def _stringify_id(cls, value):
        return None if value is None else str(value)


class Discount(CamelModel):
    id: str
    name: str
    amount: Amount
    type: str = Field(..., description="automated|coupon")
    code: Optional[str] = None


class PriceResult(CamelModel):
    base_price: Amount
    base_price_label: str
    discounts: List[Discount] = Field(default_factory=list)
    total_discount: Amount = 0
    final_price: Amount
    currency: str = "NPR"


class PaymentQuote(PriceResult):
    success: bool = True


class CheckoutReceipt(CamelModel):
    success: bool = True
    transaction_id: str
    status: str = Field("completed", description="pending|completed")
    final_price: Amount
    new_balance: Optional[Amount] = None
    discounts: List[Discount] = Field(default_factory=list)


class TopUpReceipt(CamelModel):
    success: bool = True
    transaction_id: str
    new_balance: Amount
