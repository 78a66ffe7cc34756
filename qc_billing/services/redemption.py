"""
Redemption Service - date-bound single-use codes.

A code is 9 characters: DD + 2 letters + DD + 3 letters, where the first DD is
the day of month it was issued and the second DD is the day of month 13 days
later. Codes are only accepted on their issue day (local time). Each code
grants once system-wide, and each device redeems at most once per month.
"""

import secrets
import string
from collections.abc import Callable
from datetime import date, datetime, timedelta
from uuid import UUID
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from qc_billing.config import Settings
from qc_billing.db.models import RedemptionLog, UsedRedemptionCode
from qc_billing.exceptions import (
    InvalidRedemptionCodeError,
    RedemptionCodeUsedError,
    RedemptionQuotaExceededError,
    UserNotFoundError,
)
from qc_billing.models.api import CreditChannel
from qc_billing.models.domain import RedemptionResult
from qc_billing.observability.metrics import metrics
from qc_billing.services.credits import CreditService

logger = get_logger(__name__)

CODE_LENGTH = 9
EXPIRY_OFFSET_DAYS = 13


def _is_upper_letters(value: str) -> bool:
    return len(value) > 0 and all(ch in string.ascii_uppercase for ch in value)


def _is_digits(value: str) -> bool:
    return len(value) > 0 and all(ch in string.digits for ch in value)


def day_markers(today: date) -> tuple[str, str]:
    """Zero-padded day of ``today`` and of ``today + 13 days``."""
    expiry = today + timedelta(days=EXPIRY_OFFSET_DAYS)
    return f"{today.day:02d}", f"{expiry.day:02d}"


def validate_code(code: str, today: date) -> None:
    """
    Check shape and date window.

    Raises:
        InvalidRedemptionCodeError: reason is "format" or "date"
    """
    if len(code) != CODE_LENGTH:
        raise InvalidRedemptionCodeError(code, "format")

    issued_day, expiry_day = code[0:2], code[4:6]
    if not (_is_digits(issued_day) and _is_digits(expiry_day)):
        raise InvalidRedemptionCodeError(code, "format")
    if not (_is_upper_letters(code[2:4]) and _is_upper_letters(code[6:9])):
        raise InvalidRedemptionCodeError(code, "format")

    if (issued_day, expiry_day) != day_markers(today):
        raise InvalidRedemptionCodeError(code, "date")


def generate_code(today: date) -> str:
    """Issue a code valid on ``today``."""
    issued_day, expiry_day = day_markers(today)
    letters = string.ascii_uppercase
    first = "".join(secrets.choice(letters) for _ in range(2))
    second = "".join(secrets.choice(letters) for _ in range(3))
    return f"{issued_day}{first}{expiry_day}{second}"


def redemption_month(today: date) -> str:
    return today.strftime("%Y-%m")


class RedemptionService:
    """Validates codes and applies the single-use / per-device-month grant."""

    def __init__(
        self,
        session: AsyncSession,
        settings: Settings,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """
        Initialize redemption service.

        Args:
            session: Database session
            settings: Static settings (grant size, business timezone)
            clock: Returns the current aware datetime; defaults to now()
        """
        self.session = session
        self.settings = settings
        self.clock = clock

    def today(self) -> date:
        """Current calendar date in the business timezone."""
        tz = ZoneInfo(self.settings.redemption_timezone)
        now = self.clock() if self.clock is not None else datetime.now(tz)
        return now.astimezone(tz).date()

    async def redeem(self, code: str, user_id: UUID, device_id: str) -> RedemptionResult:
        """
        Redeem a code for a user on a device.

        The code claim, the device-month log row and the balance increment
        commit in one transaction. Concurrent attempts on the same code or
        the same device-month are settled by the table keys.

        Raises:
            InvalidRedemptionCodeError: Malformed or outside its date window
            RedemptionCodeUsedError: Code already granted
            RedemptionQuotaExceededError: Device already redeemed this month
            UserNotFoundError: User doesn't exist
        """
        today = self.today()
        log = logger.bind(code=code, user_id=str(user_id), device_id=device_id)

        try:
            validate_code(code, today)
        except InvalidRedemptionCodeError as exc:
            log.info("redemption_rejected", reason=exc.reason)
            metrics.record_redemption(f"invalid_{exc.reason}")
            raise

        month = redemption_month(today)

        if await self._code_used(code):
            log.info("redemption_rejected", reason="used")
            metrics.record_redemption("used")
            raise RedemptionCodeUsedError(code)

        if await self._device_redeemed(device_id, month):
            log.info("redemption_rejected", reason="quota", month=month)
            metrics.record_redemption("quota")
            raise RedemptionQuotaExceededError(device_id, month)

        credits = CreditService(self.session)
        amount = self.settings.redemption_credits
        try:
            self.session.add(UsedRedemptionCode(code=code, user_id=user_id))
            self.session.add(
                RedemptionLog(
                    user_id=user_id,
                    device_id=device_id,
                    code=code,
                    redeemed_month=month,
                )
            )
            await self.session.flush()
            await credits.grant(user_id, amount, CreditChannel.REDEMPTION)
            balance_after = await credits.get_balance(user_id)
            await self.session.commit()
        except IntegrityError as exc:
            await self.session.rollback()
            # Lost a race to a concurrent redemption; report which key it hit.
            if await self._code_used(code):
                log.info("redemption_rejected", reason="used", concurrent=True)
                metrics.record_redemption("used")
                raise RedemptionCodeUsedError(code) from exc
            log.info("redemption_rejected", reason="quota", month=month, concurrent=True)
            metrics.record_redemption("quota")
            raise RedemptionQuotaExceededError(device_id, month) from exc
        except UserNotFoundError:
            await self.session.rollback()
            metrics.record_redemption("user_not_found")
            raise

        metrics.record_redemption("success")
        log.info("redemption_succeeded", credits=amount, balance_after=balance_after, month=month)
        return RedemptionResult(
            user_id=user_id,
            code=code,
            credits_granted=amount,
            balance_after=balance_after,
            redeemed_month=month,
        )

    async def _code_used(self, code: str) -> bool:
        result = await self.session.execute(
            select(UsedRedemptionCode.code).where(UsedRedemptionCode.code == code)
        )
        return result.scalar_one_or_none() is not None

    async def _device_redeemed(self, device_id: str, month: str) -> bool:
        result = await self.session.execute(
            select(RedemptionLog.id).where(
                RedemptionLog.device_id == device_id,
                RedemptionLog.redeemed_month == month,
            )
        )
        return result.scalar_one_or_none() is not None
