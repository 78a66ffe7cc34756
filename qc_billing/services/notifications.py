"""
Notification Service - exactly-once crediting from gateway callbacks.

The gateway delivers at-least-once and retries until it reads "success".
A notification moves its order pending -> paid with a conditional UPDATE, and
only the request whose UPDATE matched a pending row grants credits. Order
transition and credit grant commit together or not at all.
"""

from collections.abc import Mapping
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from typing import Any
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from qc_billing.config import Settings
from qc_billing.db.models import PaymentOrder
from qc_billing.exceptions import SignatureVerificationError, UserNotFoundError
from qc_billing.models.api import CreditChannel, OrderStatus
from qc_billing.models.domain import AlipayConfig, NotificationOutcome
from qc_billing.observability.metrics import metrics
from qc_billing.services.alipay_gateway import AlipayGateway
from qc_billing.services.credits import CreditService

logger = get_logger(__name__)

SUCCESS_TRADE_STATUSES = frozenset({"TRADE_SUCCESS", "TRADE_FINISHED"})


def _acknowledge(reason: str, credits_granted: int = 0) -> NotificationOutcome:
    return NotificationOutcome(acknowledged=True, reason=reason, credits_granted=credits_granted)


def _reject(reason: str) -> NotificationOutcome:
    return NotificationOutcome(acknowledged=False, reason=reason)


def amount_matches(reported: str | None, expected: Decimal) -> bool:
    """Compare the gateway's total_amount with the order amount at cent precision."""
    if not reported:
        return False
    try:
        return Decimal(reported).quantize(Decimal("0.01")) == expected.quantize(Decimal("0.01"))
    except InvalidOperation:
        return False


class NotificationService:
    """Handles asynchronous payment notifications from the gateway."""

    def __init__(self, session: AsyncSession, settings: Settings) -> None:
        """Initialize notification service with database session and static settings."""
        self.session = session
        self.settings = settings

    async def handle_notification(
        self,
        params: Mapping[str, str],
        config: AlipayConfig,
        now: datetime | None = None,
    ) -> NotificationOutcome:
        """
        Verify and apply one notification.

        Returns an outcome whose response_token is "success" (stop retrying) or
        "fail" (deliver again). Never raises for expected conditions.
        """
        order_id = params.get("out_trade_no", "")
        trade_no = params.get("trade_no") or None
        trade_status = params.get("trade_status", "")
        log = logger.bind(order_id=order_id, trade_no=trade_no, trade_status=trade_status)

        log.info("alipay_notify_received", param_count=len(params))

        rejection = self._check_signature(params, config, log)
        if rejection is not None:
            metrics.record_notification("rejected")
            return rejection

        if trade_status not in SUCCESS_TRADE_STATUSES:
            log.info("alipay_notify_ignored_status")
            metrics.record_notification("ignored")
            return _acknowledge(f"trade status {trade_status or 'missing'} is not a success")

        result = await self.session.execute(
            select(PaymentOrder)
            .where(PaymentOrder.order_id == order_id)
            .execution_options(populate_existing=True)
        )
        order = result.scalar_one_or_none()
        if order is None:
            log.warning("alipay_notify_order_not_found")
            metrics.record_notification("unknown_order")
            return _reject("order not found")

        if order.status == OrderStatus.PAID.value:
            log.info("alipay_notify_duplicate", user_id=str(order.user_id))
            metrics.record_notification("duplicate")
            return _acknowledge("order already paid")

        if not amount_matches(params.get("total_amount"), order.amount):
            log.error(
                "alipay_notify_amount_mismatch",
                reported_amount=params.get("total_amount"),
                order_amount=str(order.amount),
            )
            metrics.record_notification("amount_mismatch")
            return _reject("amount mismatch")

        user_id = order.user_id
        credits = order.credits
        try:
            settled = await self._settle(
                order_id, user_id, credits, trade_no, now or datetime.now(UTC)
            )
        except (SQLAlchemyError, UserNotFoundError) as exc:
            await self.session.rollback()
            log.error(
                "alipay_notify_settlement_failed",
                user_id=str(user_id),
                error=str(exc),
                error_type=type(exc).__name__,
            )
            metrics.record_error(type(exc).__name__, "alipay_notify")
            metrics.record_notification("failed")
            return _reject("settlement failed")

        if not settled:
            log.info("alipay_notify_lost_race", user_id=str(user_id))
            metrics.record_notification("duplicate")
            return _acknowledge("order already paid")

        log.info("alipay_notify_credited", user_id=str(user_id), credits=credits)
        metrics.record_notification("credited")
        return _acknowledge("credited", credits_granted=credits)

    def _check_signature(
        self, params: Mapping[str, str], config: AlipayConfig, log: Any
    ) -> NotificationOutcome | None:
        """Return a rejection outcome, or None when processing may continue."""
        if not config.public_key:
            log.error("alipay_notify_public_key_missing")
            return _reject("public key not configured")

        gateway = AlipayGateway(config, self.settings)
        try:
            verified = gateway.verify_notification(params)
        except SignatureVerificationError as exc:
            log.error("alipay_notify_public_key_invalid", error=str(exc))
            return _reject("public key unusable")

        if verified:
            return None

        tolerant = self.settings.alipay_allow_unverified_notify
        metrics.record_signature_failure(accepted=tolerant)
        log.warning("alipay_notify_signature_invalid", processing_anyway=tolerant)
        if tolerant:
            return None
        return _reject("signature invalid")

    async def _settle(
        self,
        order_id: str,
        user_id: UUID,
        credits: int,
        trade_no: str | None,
        paid_at: datetime,
    ) -> bool:
        """
        Move the order to paid and grant its credits in one transaction.

        Returns False when another delivery already claimed the order.
        """
        stmt = (
            update(PaymentOrder)
            .where(
                PaymentOrder.order_id == order_id,
                PaymentOrder.status == OrderStatus.PENDING.value,
            )
            .values(status=OrderStatus.PAID.value, trade_no=trade_no, paid_at=paid_at)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        if result.rowcount != 1:
            await self.session.rollback()
            return False

        await CreditService(self.session).grant(user_id, credits, CreditChannel.PAYMENT)
        await self.session.commit()
        return True
