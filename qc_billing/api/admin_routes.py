"""
Admin API routes for payment configuration, redemption codes and users.

Protected by the X-User-ID header of a user flagged is_admin.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from qc_billing.api.dependencies import require_admin
from qc_billing.config import Settings, get_settings
from qc_billing.db.models import User
from qc_billing.db.session import get_read_db, get_write_db
from qc_billing.exceptions import UserNotFoundError
from qc_billing.models.api import (
    AddCreditsRequest,
    AdminUserItem,
    AdminUserListResponse,
    BalanceResponse,
    ConfigListResponse,
    CreditChannel,
    RedemptionCodeResponse,
    UpdateConfigRequest,
)
from qc_billing.services.credits import CreditService
from qc_billing.services.payment_config import PaymentConfigService
from qc_billing.services.redemption import RedemptionService, generate_code

logger = get_logger(__name__)
router = APIRouter(prefix="/v1/admin", tags=["admin"])


@router.get("/config", response_model=ConfigListResponse)
async def list_config(
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_write_db),
) -> ConfigListResponse:
    """All payment_config rows; key material is masked."""
    configs = await PaymentConfigService(db).list_configs()
    return ConfigListResponse(configs=configs)


@router.put("/config", response_model=ConfigListResponse)
async def update_config(
    request: UpdateConfigRequest,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_write_db),
) -> ConfigListResponse:
    """
    Create or update one payment_config row.

    Takes effect on the next request; nothing is cached.
    """
    service = PaymentConfigService(db)
    await service.upsert(request.key, request.value, request.is_enabled)
    logger.info("admin_config_updated", admin_id=str(admin.id), key=request.key)
    return ConfigListResponse(configs=await service.list_configs())


@router.get("/redemption-code", response_model=RedemptionCodeResponse)
async def issue_redemption_code(
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_write_db),
    settings: Settings = Depends(get_settings),
) -> RedemptionCodeResponse:
    """A fresh code valid for today's window."""
    today = RedemptionService(db, settings).today()
    code = generate_code(today)
    logger.info("admin_redemption_code_issued", admin_id=str(admin.id), valid_on=today.isoformat())
    return RedemptionCodeResponse(code=code, valid_on=today.isoformat())


# ============================================================================
# Users
# ============================================================================


@router.get("/users", response_model=AdminUserListResponse)
async def list_users(
    page: int = Query(1, ge=1, description="Page number"),
    page_size: int = Query(50, ge=1, le=500, description="Items per page"),
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_read_db),
) -> AdminUserListResponse:
    """All users, newest first."""
    total_result = await db.execute(select(func.count()).select_from(User))
    total = total_result.scalar_one()

    result = await db.execute(
        select(User)
        .order_by(User.created_at.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
        .execution_options(populate_existing=True)
    )
    users = [
        AdminUserItem(
            user_id=user.id,
            nickname=user.nickname,
            device_id=user.device_id,
            credits=user.credits,
            is_admin=user.is_admin,
            created_at=user.created_at,
        )
        for user in result.scalars().all()
    ]
    return AdminUserListResponse(users=users, total=total, page=page, page_size=page_size)


@router.post("/users/{user_id}/credits", response_model=BalanceResponse)
async def add_user_credits(
    user_id: UUID,
    request: AddCreditsRequest,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_write_db),
) -> BalanceResponse:
    """Manually add credits to a user's balance."""
    credits = CreditService(db)
    try:
        await credits.grant(user_id, request.amount, CreditChannel.ADMIN)
    except UserNotFoundError as exc:
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User not found",
        ) from exc
    await db.commit()

    balance = await credits.get_balance(user_id)
    logger.info(
        "admin_credits_added",
        admin_id=str(admin.id),
        user_id=str(user_id),
        amount=request.amount,
        balance_after=balance,
    )
    return BalanceResponse(user_id=user_id, credits=balance)
