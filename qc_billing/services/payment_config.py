"""
Payment Configuration Service - Load gateway credentials from database.

Credentials are operator-editable at runtime, so they are read per request and
passed explicitly to the services that need them. No process-wide cache.
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from qc_billing.db.models import PaymentConfig
from qc_billing.models.api import ConfigItem
from qc_billing.models.domain import AlipayConfig

logger = get_logger(__name__)

APP_ID_KEY = "alipay_appid"
PRIVATE_KEY_KEY = "alipay_private_key"
PUBLIC_KEY_KEY = "alipay_public_key"
ENABLED_KEY = "alipay_enabled"

ALIPAY_KEYS = (APP_ID_KEY, PRIVATE_KEY_KEY, PUBLIC_KEY_KEY, ENABLED_KEY)
SECRET_KEYS = frozenset({PRIVATE_KEY_KEY, PUBLIC_KEY_KEY})


def mask_secret(value: str) -> str:
    """Show only the last four characters of a secret."""
    if len(value) <= 4:
        return "****"
    return "****" + value[-4:]


class PaymentConfigService:
    """Service for reading and updating payment_config rows."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize payment config service with database session."""
        self.session = session

    async def get_alipay_config(self) -> AlipayConfig:
        """
        Read the current Alipay credentials.

        Missing rows come back as empty strings; callers decide which ones they need.
        The gateway is enabled only when the alipay_enabled row exists and is switched on.
        """
        stmt = select(PaymentConfig).where(PaymentConfig.key.in_(ALIPAY_KEYS))
        result = await self.session.execute(stmt)
        rows = {row.key: row for row in result.scalars().all()}

        def value_of(key: str) -> str:
            row = rows.get(key)
            return (row.value or "").strip() if row is not None else ""

        enabled_row = rows.get(ENABLED_KEY)
        config = AlipayConfig(
            app_id=value_of(APP_ID_KEY),
            private_key=value_of(PRIVATE_KEY_KEY),
            public_key=value_of(PUBLIC_KEY_KEY),
            enabled=enabled_row is not None and enabled_row.is_enabled,
        )

        logger.debug(
            "alipay_config_loaded",
            has_app_id=bool(config.app_id),
            has_private_key=bool(config.private_key),
            has_public_key=bool(config.public_key),
            enabled=config.enabled,
        )
        return config

    async def list_configs(self) -> dict[str, ConfigItem]:
        """All config rows with secret values masked."""
        result = await self.session.execute(select(PaymentConfig).order_by(PaymentConfig.key))
        items: dict[str, ConfigItem] = {}
        for row in result.scalars().all():
            value = row.value or ""
            if row.key in SECRET_KEYS and value:
                value = mask_secret(value)
            items[row.key] = ConfigItem(value=value, is_enabled=row.is_enabled)
        return items

    async def upsert(self, key: str, value: str | None, is_enabled: bool | None) -> None:
        """Create or update one row. Fields left as None keep their current value."""
        row = await self.session.get(PaymentConfig, key)
        if row is None:
            row = PaymentConfig(
                key=key,
                value=value,
                is_enabled=True if is_enabled is None else is_enabled,
            )
            self.session.add(row)
        else:
            if value is not None:
                row.value = value
            if is_enabled is not None:
                row.is_enabled = is_enabled

        await self.session.commit()
        logger.info(
            "payment_config_updated",
            key=key,
            value_changed=value is not None,
            is_enabled=row.is_enabled,
        )
