"""
API Routes - FastAPI endpoints for top-up, redemption, AI calls and users.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from datetime import UTC, datetime
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import PlainTextResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from qc_billing.api.dependencies import (
    get_ai_provider,
    get_alipay_config,
    get_request_host,
    get_retry_policy,
    get_sleep,
)
from qc_billing.config import Settings, get_settings
from qc_billing.db.session import get_read_db, get_write_db
from qc_billing.exceptions import (
    InsufficientCreditsError,
    InvalidImageError,
    InvalidPackageError,
    InvalidRedemptionCodeError,
    PaymentNotConfiguredError,
    RedemptionCodeUsedError,
    RedemptionQuotaExceededError,
    RetryableProviderError,
    SigningError,
    TerminalProviderError,
    UserNotFoundError,
)
from qc_billing.models.api import (
    AIInvokeRequest,
    AIInvokeResponse,
    BalanceResponse,
    CreateOrderRequest,
    CreateOrderResponse,
    HealthResponse,
    PackageItem,
    RechargeInfoResponse,
    RedeemRequest,
    RedeemResponse,
    ReferralCodeResponse,
    RegisterUserRequest,
    UserResponse,
)
from qc_billing.models.domain import AlipayConfig
from qc_billing.services.accounts import AccountService
from qc_billing.services.ai_provider import AIProvider
from qc_billing.services.analysis import AnalysisService
from qc_billing.services.credits import CreditService
from qc_billing.services.notifications import NotificationService
from qc_billing.services.orders import OrderService
from qc_billing.services.packages import list_packages
from qc_billing.services.redemption import RedemptionService
from qc_billing.services.retry import RetryPolicy, Sleep

logger = get_logger(__name__)

router = APIRouter()

INVALID_CODE_DETAIL = {
    "format": "Invalid redemption code",
    "date": "Redemption code is not valid today",
}


# =============================================================================
# Payment Endpoints
# =============================================================================


@router.get("/api/alipay", response_model=RechargeInfoResponse)
async def recharge_info(config: AlipayConfig = Depends(get_alipay_config)) -> RechargeInfoResponse:
    """Whether top-up is switched on, and the packages on offer."""
    return RechargeInfoResponse(
        enabled=config.enabled,
        packages=[
            PackageItem(id=p.id, price=float(p.price), credits=p.credits, label=p.label)
            for p in list_packages()
        ],
    )


@router.post("/api/alipay/orders", response_model=CreateOrderResponse)
async def create_order(
    request: CreateOrderRequest,
    db: AsyncSession = Depends(get_write_db),
    config: AlipayConfig = Depends(get_alipay_config),
    host: str = Depends(get_request_host),
    settings: Settings = Depends(get_settings),
) -> CreateOrderResponse:
    """
    Create a pending order and return the auto-submitting gateway form.

    Write operation - requires primary database.
    """
    service = OrderService(db, settings)
    try:
        form = await service.create_order(
            user_id=request.user_id,
            package_id=request.package_id,
            config=config,
            host=host,
        )
    except PaymentNotConfiguredError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Payment is not configured",
        ) from exc
    except InvalidPackageError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid package: {exc.package_id}",
        ) from exc
    except UserNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User not found",
        ) from exc
    except SigningError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create payment",
        ) from exc

    return CreateOrderResponse(order_id=form.order_id, form_html=form.form_html)


@router.post("/api/alipay/notify", response_class=PlainTextResponse)
async def alipay_notify(
    request: Request,
    db: AsyncSession = Depends(get_write_db),
    config: AlipayConfig = Depends(get_alipay_config),
    settings: Settings = Depends(get_settings),
) -> PlainTextResponse:
    """
    Gateway asynchronous notification.

    Answers the plain-text token the gateway reads: "success" stops
    redelivery, "fail" asks for another attempt.
    """
    form = await request.form()
    params = {key: value for key, value in form.items() if isinstance(value, str)}

    service = NotificationService(db, settings)
    outcome = await service.handle_notification(params, config)
    return PlainTextResponse(outcome.response_token)


# =============================================================================
# Redemption Endpoints
# =============================================================================


@router.post("/api/redeem", response_model=RedeemResponse)
async def redeem_code(
    request: RedeemRequest,
    db: AsyncSession = Depends(get_write_db),
    settings: Settings = Depends(get_settings),
) -> RedeemResponse:
    """Exchange a redemption code for credits."""
    service = RedemptionService(db, settings)
    try:
        result = await service.redeem(request.code, request.user_id, request.device_id)
    except InvalidRedemptionCodeError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=INVALID_CODE_DETAIL.get(exc.reason, "Invalid redemption code"),
        ) from exc
    except RedemptionCodeUsedError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Redemption code has already been used",
        ) from exc
    except RedemptionQuotaExceededError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="This device has already redeemed a code this month",
        ) from exc
    except UserNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User not found",
        ) from exc

    return RedeemResponse(credits=result.balance_after)


# =============================================================================
# AI Endpoints
# =============================================================================


@router.post("/api/ai", response_model=AIInvokeResponse)
async def invoke_ai(
    request: AIInvokeRequest,
    db: AsyncSession = Depends(get_write_db),
    provider: AIProvider = Depends(get_ai_provider),
    policy: RetryPolicy = Depends(get_retry_policy),
    sleep: Sleep = Depends(get_sleep),
) -> AIInvokeResponse:
    """
    Run an AI task. Image and analysis calls cost one credit on success.
    """
    service = AnalysisService(db, provider, policy, sleep=sleep)
    try:
        return await service.invoke(request)
    except InvalidImageError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
    except UserNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User not found",
        ) from exc
    except InsufficientCreditsError as exc:
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail="Insufficient credits",
        ) from exc
    except RetryableProviderError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service busy, please try again later",
        ) from exc
    except TerminalProviderError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="AI service error",
        ) from exc


# =============================================================================
# User Endpoints
# =============================================================================


@router.post("/v1/users", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
async def register_user(
    request: RegisterUserRequest,
    db: AsyncSession = Depends(get_write_db),
    settings: Settings = Depends(get_settings),
) -> UserResponse:
    """Register a user, paying the device signup bonus and any referral reward."""
    service = AccountService(db, settings)
    result = await service.register(
        nickname=request.nickname,
        device_id=request.device_id,
        referrer_code=request.referrer_code,
    )
    return UserResponse(
        user_id=result.user_id,
        nickname=result.nickname,
        credits=result.credits,
        referral_code=result.referral_code,
        signup_bonus_granted=result.signup_bonus_granted,
        referrer_rewarded=result.referrer_id is not None,
    )


@router.get("/v1/users/{user_id}/credits", response_model=BalanceResponse)
async def get_balance(
    user_id: UUID,
    db: AsyncSession = Depends(get_read_db),
) -> BalanceResponse:
    """Current credit balance. Read-only - uses replica."""
    try:
        balance = await CreditService(db).get_balance(user_id)
    except UserNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User not found",
        ) from exc
    return BalanceResponse(user_id=user_id, credits=balance)


@router.get("/v1/users/{user_id}/referral-code", response_model=ReferralCodeResponse)
async def get_referral_code(
    user_id: UUID,
    db: AsyncSession = Depends(get_read_db),
    settings: Settings = Depends(get_settings),
) -> ReferralCodeResponse:
    """The code other users enter to reward this one."""
    try:
        code = await AccountService(db, settings).get_referral_code(user_id)
    except UserNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User not found",
        ) from exc
    if code is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User has no device id, so no referral code",
        )
    return ReferralCodeResponse(user_id=user_id, referral_code=code)


# =============================================================================
# Health
# =============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_read_db)) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    try:
        await db.execute(text("SELECT 1"))
    except Exception as exc:
        logger.error("health_check_database_failed", error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database unavailable",
        ) from exc

    return HealthResponse(
        status="healthy",
        database="connected",
        timestamp=datetime.now(UTC).isoformat(),
    )
