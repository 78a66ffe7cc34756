"""
Account Service - registration, signup bonus and referral reward.

NO DICTIONARIES - All operations use strongly typed domain models.

A user's referral code is the last N characters of the device id they
registered from. The signup bonus is paid once per device: device_usage is
claimed in its own transaction before the user row is created, so two
registrations racing on one device cannot both get the bonus. If the user
row then fails to commit, the claim is released so the device can still
register with its bonus.
"""

from uuid import UUID

from sqlalchemy import delete, insert, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from qc_billing.config import Settings
from qc_billing.db.models import DeviceUsage, User
from qc_billing.exceptions import UserNotFoundError
from qc_billing.models.api import CreditChannel
from qc_billing.models.domain import RegistrationResult
from qc_billing.observability.metrics import metrics
from qc_billing.services.credits import CreditService

logger = get_logger(__name__)


def referral_code_for(device_id: str | None, length: int) -> str | None:
    """Referral code derived from a device id (its trailing characters)."""
    if not device_id:
        return None
    return device_id[-length:]


class AccountService:
    """Service for user registration and referral lookups."""

    def __init__(self, session: AsyncSession, settings: Settings) -> None:
        """Initialize account service with database session and static settings."""
        self.session = session
        self.settings = settings

    async def register(
        self,
        nickname: str,
        device_id: str | None = None,
        referrer_code: str | None = None,
    ) -> RegistrationResult:
        """
        Create a user, paying the signup bonus and any referral reward.

        Registrations without a device id always get the bonus; there is
        nothing to deduplicate on.
        """
        bonus_granted = True
        if device_id:
            bonus_granted = await self._claim_device(device_id)

        initial_credits = self.settings.signup_bonus_credits if bonus_granted else 0
        user = User(
            nickname=nickname,
            device_id=device_id,
            device_suffix=referral_code_for(device_id, self.settings.referral_code_length),
            credits=initial_credits,
        )
        self.session.add(user)
        referrer_id: UUID | None = None
        try:
            await self.session.flush()
            user_id = user.id
            if referrer_code and device_id:
                referrer_id = await self._reward_referrer(referrer_code.strip(), device_id, user_id)
            await self.session.commit()
        except SQLAlchemyError:
            await self.session.rollback()
            if device_id and bonus_granted:
                await self._release_device(device_id)
            raise

        if bonus_granted:
            metrics.record_credit_grant(CreditChannel.SIGNUP.value, initial_credits)
        metrics.record_registration(bonus_granted)
        logger.info(
            "user_registered",
            user_id=str(user_id),
            device_id=device_id,
            signup_bonus_granted=bonus_granted,
            referrer_id=str(referrer_id) if referrer_id else None,
        )

        return RegistrationResult(
            user_id=user_id,
            nickname=nickname,
            credits=initial_credits,
            referral_code=referral_code_for(device_id, self.settings.referral_code_length),
            signup_bonus_granted=bonus_granted,
            referrer_id=referrer_id,
        )

    async def get_referral_code(self, user_id: UUID) -> str | None:
        """
        Get the user's referral code.

        Raises:
            UserNotFoundError: User doesn't exist
        """
        result = await self.session.execute(
            select(User.device_suffix, User.device_id).where(User.id == user_id)
        )
        row = result.one_or_none()
        if row is None:
            raise UserNotFoundError(user_id)
        device_suffix, device_id = row
        return device_suffix or referral_code_for(device_id, self.settings.referral_code_length)

    async def _claim_device(self, device_id: str) -> bool:
        """Record the device as bonused. False if it already was."""
        try:
            await self.session.execute(insert(DeviceUsage).values(device_id=device_id))
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            logger.info("signup_bonus_device_already_used", device_id=device_id)
            return False
        return True

    async def _release_device(self, device_id: str) -> None:
        """Undo a device claim whose user was never created."""
        await self.session.execute(delete(DeviceUsage).where(DeviceUsage.device_id == device_id))
        await self.session.commit()
        logger.warning("signup_bonus_device_released", device_id=device_id)

    async def _reward_referrer(
        self, referrer_code: str, device_id: str, new_user_id: UUID
    ) -> UUID | None:
        """Credit the earliest user whose referral code matches, unless it's this device."""
        if len(referrer_code) != self.settings.referral_code_length:
            logger.info("referral_code_ignored", reason="length", referrer_code=referrer_code)
            return None

        result = await self.session.execute(
            select(User.id)
            .where(
                User.device_suffix == referrer_code,
                User.device_id != device_id,
                User.id != new_user_id,
            )
            .order_by(User.created_at)
            .limit(1)
        )
        referrer_id = result.scalar_one_or_none()
        if referrer_id is None:
            logger.info("referral_code_unmatched", referrer_code=referrer_code)
            return None

        await CreditService(self.session).grant(
            referrer_id, self.settings.referral_bonus_credits, CreditChannel.REFERRAL
        )
        return referrer_id
