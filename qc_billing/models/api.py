"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
"""

from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, Field, field_validator, model_validator


class OrderStatus(str, Enum):
    """Payment order status. pending -> paid is the only transition."""

    PENDING = "pending"
    PAID = "paid"


class CreditChannel(str, Enum):
    """Where a credit mutation came from."""

    PAYMENT = "payment"
    REDEMPTION = "redemption"
    REFERRAL = "referral"
    SIGNUP = "signup"
    ADMIN = "admin"


class AITask(str, Enum):
    """Outbound AI call kinds."""

    IMAGE = "image"
    ANALYZE = "analyze"
    VALIDATE = "validate"


class ContentCheck(str, Enum):
    """What a pre-flight validation looks for in the image."""

    FACE = "face"
    TONGUE = "tongue"


# ============================================================================
# Payment Models
# ============================================================================


class PackageItem(BaseModel):
    """One recharge package."""

    id: str
    price: float
    credits: int
    label: str


class RechargeInfoResponse(BaseModel):
    """GET /api/alipay response."""

    enabled: bool
    packages: list[PackageItem]


class CreateOrderRequest(BaseModel):
    """POST /api/alipay/orders request body."""

    user_id: UUID
    package_id: str = Field(..., min_length=1, max_length=50)


class CreateOrderResponse(BaseModel):
    """POST /api/alipay/orders response."""

    success: bool = True
    order_id: str
    form_html: str


# ============================================================================
# Redemption Models
# ============================================================================


class RedeemRequest(BaseModel):
    """POST /api/redeem request body."""

    code: str = Field(..., min_length=1, max_length=32)
    user_id: UUID
    device_id: str = Field(..., min_length=1, max_length=255)

    @field_validator("code")
    @classmethod
    def strip_code(cls, v: str) -> str:
        """Surrounding whitespace is dropped; letters must already be uppercase."""
        return v.strip()


class RedeemResponse(BaseModel):
    """POST /api/redeem response."""

    success: bool = True
    credits: int


# ============================================================================
# AI Invocation Models
# ============================================================================


class ImageInput(BaseModel):
    """Inline image - raw base64 or a data URL."""

    data: str = Field(..., min_length=1)
    mime_type: str = Field("image/jpeg", alias="mimeType")

    model_config = {"populate_by_name": True}


class AnalysisResult(BaseModel):
    """Structured analysis returned by the text model."""

    title: str = ""
    score: float | None = None
    content: str
    advice: list[str] = Field(default_factory=list)


class ContentCheckResult(BaseModel):
    """Raw detection flags returned by the validation model."""

    has_face: bool | None = Field(None, alias="hasFace")
    has_tongue: bool | None = Field(None, alias="hasTongue")

    model_config = {"populate_by_name": True}


class AIInvokeRequest(BaseModel):
    """POST /api/ai request body."""

    task: AITask
    prompt: str = Field(..., min_length=1)
    images: list[ImageInput] = Field(default_factory=list)
    user_id: UUID | None = None
    check: ContentCheck = ContentCheck.FACE

    @model_validator(mode="after")
    def require_user_for_billable_tasks(self) -> "AIInvokeRequest":
        """Image and analysis calls are paid for; validation is free."""
        if self.task is not AITask.VALIDATE and self.user_id is None:
            raise ValueError(f"user_id is required for task '{self.task.value}'")
        return self


class AIInvokeResponse(BaseModel):
    """
    POST /api/ai response.

    Exactly one of image / analysis / detected is set, depending on task.
    """

    task: AITask
    image: str | None = None
    analysis: AnalysisResult | None = None
    detected: bool | None = None
    credits_remaining: int | None = None
    attempts: int = 1


# ============================================================================
# User Models
# ============================================================================


class RegisterUserRequest(BaseModel):
    """POST /v1/users request body."""

    nickname: str = Field(..., min_length=1, max_length=100)
    device_id: str | None = Field(None, min_length=1, max_length=255)
    referrer_code: str | None = Field(None, max_length=16)


class UserResponse(BaseModel):
    """User summary."""

    user_id: UUID
    nickname: str
    credits: int
    referral_code: str | None = None
    signup_bonus_granted: bool = False
    referrer_rewarded: bool = False


class BalanceResponse(BaseModel):
    """GET /v1/users/{user_id}/credits response."""

    user_id: UUID
    credits: int


class ReferralCodeResponse(BaseModel):
    """GET /v1/users/{user_id}/referral-code response."""

    user_id: UUID
    referral_code: str


# ============================================================================
# Admin Models
# ============================================================================


class ConfigItem(BaseModel):
    """One payment_config entry, value masked when secret."""

    value: str
    is_enabled: bool


class ConfigListResponse(BaseModel):
    """GET /v1/admin/config response."""

    configs: dict[str, ConfigItem]


class UpdateConfigRequest(BaseModel):
    """PUT /v1/admin/config request body."""

    key: str = Field(..., min_length=1, max_length=100)
    value: str | None = None
    is_enabled: bool | None = None


class RedemptionCodeResponse(BaseModel):
    """GET /v1/admin/redemption-code response."""

    code: str
    valid_on: str


class AdminUserItem(BaseModel):
    """One row of the admin user listing."""

    user_id: UUID
    nickname: str
    device_id: str | None = None
    credits: int
    is_admin: bool
    created_at: datetime


class AdminUserListResponse(BaseModel):
    """GET /v1/admin/users response."""

    users: list[AdminUserItem]
    total: int
    page: int
    page_size: int


class AddCreditsRequest(BaseModel):
    """POST /v1/admin/users/{user_id}/credits request body."""

    amount: int = Field(..., gt=0, le=10000, description="Credits to add")


class HealthResponse(BaseModel):
    """GET /health response."""

    status: str
    database: str
    timestamp: str
