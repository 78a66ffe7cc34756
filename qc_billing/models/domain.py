"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from qc_billing.models.api import OrderStatus


@dataclass(frozen=True)
class Package:
    """Static catalog entry - immutable reference data."""

    id: str
    price: Decimal
    credits: int
    label: str

    def __post_init__(self) -> None:
        """Validate package constraints."""
        if self.price <= 0:
            raise ValueError(f"Package price must be positive: {self.price}")
        if self.credits <= 0:
            raise ValueError(f"Package credits must be positive: {self.credits}")


@dataclass(frozen=True)
class AlipayConfig:
    """Gateway credentials as read from payment_config for one request."""

    app_id: str
    private_key: str
    public_key: str
    enabled: bool

    def missing_for_signing(self) -> list[str]:
        """Config keys an order needs but doesn't have."""
        missing = []
        if not self.app_id:
            missing.append("alipay_appid")
        if not self.private_key:
            missing.append("alipay_private_key")
        return missing


@dataclass(frozen=True)
class OrderData:
    """Immutable order snapshot."""

    order_id: str
    user_id: UUID
    package_id: str
    amount: Decimal
    credits: int
    status: OrderStatus
    trade_no: str | None
    paid_at: datetime | None
    created_at: datetime


@dataclass(frozen=True)
class PaymentForm:
    """Signed gateway request plus its auto-submitting HTML rendering."""

    order_id: str
    params: tuple[tuple[str, str], ...]
    form_html: str


@dataclass(frozen=True)
class NotificationOutcome:
    """Result of handling one gateway notification."""

    acknowledged: bool
    reason: str
    credits_granted: int = 0

    @property
    def response_token(self) -> str:
        """Plain-text token the gateway reads to decide whether to retry."""
        return "success" if self.acknowledged else "fail"


@dataclass(frozen=True)
class RedemptionResult:
    """Successful redemption."""

    user_id: UUID
    code: str
    credits_granted: int
    balance_after: int
    redeemed_month: str


@dataclass(frozen=True)
class RegistrationResult:
    """Newly registered user and the bonuses it triggered."""

    user_id: UUID
    nickname: str
    credits: int
    referral_code: str | None
    signup_bonus_granted: bool
    referrer_id: UUID | None


@dataclass(frozen=True)
class InlineImage:
    """Image bytes ready for the provider."""

    data: bytes
    mime_type: str
