"""
Credit Service - atomic balance mutations.

NO DICTIONARIES - All operations use strongly typed domain models.

Every balance change is a single conditional UPDATE evaluated by the database,
so concurrent handlers never lose an increment and a balance never goes
negative. The service never commits: callers own the transaction so a grant
and the record that justifies it (paid order, redemption log) land together.
"""

from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from qc_billing.db.models import User
from qc_billing.exceptions import InsufficientCreditsError, UserNotFoundError
from qc_billing.models.api import AITask, CreditChannel
from qc_billing.observability.metrics import metrics

logger = get_logger(__name__)


class CreditService:
    """Balance reads and atomic increments/decrements on users.credits."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize credit service with database session."""
        self.session = session

    async def get_balance(self, user_id: UUID) -> int:
        """
        Read the current balance straight from the database.

        Raises:
            UserNotFoundError: User doesn't exist
        """
        result = await self.session.execute(select(User.credits).where(User.id == user_id))
        balance = result.scalar_one_or_none()
        if balance is None:
            raise UserNotFoundError(user_id)
        return balance

    async def user_exists(self, user_id: UUID) -> bool:
        result = await self.session.execute(select(User.id).where(User.id == user_id))
        return result.scalar_one_or_none() is not None

    async def grant(self, user_id: UUID, amount: int, channel: CreditChannel) -> None:
        """
        Add credits as ``credits = credits + amount``.

        Raises:
            ValueError: If amount is not positive
            UserNotFoundError: No row was updated
        """
        if amount <= 0:
            raise ValueError(f"Grant amount must be positive: {amount}")

        stmt = (
            update(User)
            .where(User.id == user_id)
            .values(credits=User.credits + amount)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        if result.rowcount != 1:
            logger.error(
                "credit_grant_user_missing",
                user_id=str(user_id),
                amount=amount,
                channel=channel.value,
            )
            raise UserNotFoundError(user_id)

        metrics.record_credit_grant(channel.value, amount)
        logger.info(
            "credits_granted",
            user_id=str(user_id),
            amount=amount,
            channel=channel.value,
        )

    async def debit(self, user_id: UUID, task: AITask) -> int:
        """
        Spend one credit, only while the balance is positive.

        Returns:
            Balance after the debit

        Raises:
            UserNotFoundError: User doesn't exist
            InsufficientCreditsError: Balance was already zero
        """
        stmt = (
            update(User)
            .where(User.id == user_id, User.credits > 0)
            .values(credits=User.credits - 1)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        if result.rowcount != 1:
            balance = await self.get_balance(user_id)
            raise InsufficientCreditsError(user_id, balance)

        metrics.record_credit_debit(task.value)
        balance_after = await self.get_balance(user_id)
        logger.info(
            "credit_debited",
            user_id=str(user_id),
            task=task.value,
            balance_after=balance_after,
        )
        return balance_after
