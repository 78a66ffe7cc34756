"""
Order Service - pending order creation and lookup.

NO DICTIONARIES - All operations use strongly typed domain models.
"""

import secrets
import string
import time
from datetime import datetime
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from qc_billing.config import Settings
from qc_billing.db.models import PaymentOrder
from qc_billing.exceptions import (
    OrderNotFoundError,
    PaymentNotConfiguredError,
    SigningError,
    UserNotFoundError,
)
from qc_billing.models.api import OrderStatus
from qc_billing.models.domain import AlipayConfig, OrderData, PaymentForm
from qc_billing.observability.metrics import metrics
from qc_billing.services.alipay_gateway import AlipayGateway
from qc_billing.services.credits import CreditService
from qc_billing.services.packages import get_package

logger = get_logger(__name__)

ORDER_SUFFIX_ALPHABET = string.ascii_uppercase + string.digits
ORDER_SUFFIX_LENGTH = 6


def generate_order_id(prefix: str) -> str:
    """Prefix + epoch milliseconds + 6 random base36 characters."""
    suffix = "".join(secrets.choice(ORDER_SUFFIX_ALPHABET) for _ in range(ORDER_SUFFIX_LENGTH))
    return f"{prefix}{int(time.time() * 1000)}{suffix}"


def order_to_domain(order: PaymentOrder) -> OrderData:
    return OrderData(
        order_id=order.order_id,
        user_id=order.user_id,
        package_id=order.package_id,
        amount=order.amount,
        credits=order.credits,
        status=OrderStatus(order.status),
        trade_no=order.trade_no,
        paid_at=order.paid_at,
        created_at=order.created_at,
    )


class OrderService:
    """
    Creates pending orders and the signed gateway form that pays them.

    The order row is written before the form is returned so the notification
    handler always finds it.
    """

    def __init__(self, session: AsyncSession, settings: Settings) -> None:
        """Initialize order service with database session and static settings."""
        self.session = session
        self.settings = settings

    async def create_order(
        self,
        user_id: UUID,
        package_id: str,
        config: AlipayConfig,
        host: str,
        now: datetime | None = None,
    ) -> PaymentForm:
        """
        Record a pending order and return the signed auto-submit form.

        Raises:
            PaymentNotConfiguredError: App id or private key missing
            UserNotFoundError: User doesn't exist
            InvalidPackageError: Unknown package id
            SigningError: Private key unusable (order is not kept)
        """
        missing = config.missing_for_signing()
        if missing:
            logger.warning("order_rejected_payment_not_configured", missing=missing)
            raise PaymentNotConfiguredError(missing)

        if not await CreditService(self.session).user_exists(user_id):
            raise UserNotFoundError(user_id)

        package = get_package(package_id)

        order = PaymentOrder(
            order_id=generate_order_id(self.settings.order_id_prefix),
            user_id=user_id,
            package_id=package.id,
            amount=package.price,
            credits=package.credits,
            status=OrderStatus.PENDING.value,
        )
        self.session.add(order)
        await self.session.flush()

        gateway = AlipayGateway(config, self.settings)
        subject = self.settings.order_subject_template.format(credits=package.credits)
        try:
            form = gateway.build_payment_form(
                order_id=order.order_id,
                amount=package.price,
                subject=subject,
                host=host,
                now=now,
            )
        except SigningError:
            await self.session.rollback()
            metrics.record_error("SigningError", "create_order")
            raise

        await self.session.commit()

        metrics.record_order_created(package.id)
        logger.info(
            "order_created",
            order_id=form.order_id,
            user_id=str(user_id),
            package_id=package.id,
            amount=str(package.price),
            credits=package.credits,
        )
        return form

    async def get_order(self, order_id: str) -> OrderData:
        """
        Get order by merchant order id.

        Raises:
            OrderNotFoundError: Order doesn't exist
        """
        result = await self.session.execute(
            select(PaymentOrder)
            .where(PaymentOrder.order_id == order_id)
            .execution_options(populate_existing=True)
        )
        order = result.scalar_one_or_none()
        if order is None:
            raise OrderNotFoundError(order_id)
        return order_to_domain(order)
