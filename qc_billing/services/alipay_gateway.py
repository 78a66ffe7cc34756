"""
Alipay Gateway - request construction and notification verification.

NO DICTIONARIES - Callers get a PaymentForm back; the raw parameter mapping
only exists long enough to be signed and rendered.
"""

import html
import json
from collections.abc import Mapping
from datetime import datetime
from decimal import Decimal
from zoneinfo import ZoneInfo

from structlog import get_logger

from qc_billing.config import Settings
from qc_billing.exceptions import PaymentNotConfiguredError, SigningError
from qc_billing.models.domain import AlipayConfig, PaymentForm
from qc_billing.services.signature import SIGN_FIELD, sign_params, verify_params

logger = get_logger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
NOTIFY_PATH = "/api/alipay/notify"


def format_amount(amount: Decimal) -> str:
    """Fixed two decimal places, as the gateway expects."""
    return f"{amount:.2f}"


def callback_base_url(host: str) -> str:
    """Scheme + host for return/notify URLs; plain http only for local development."""
    scheme = "http" if "localhost" in host or host.startswith("127.0.0.1") else "https"
    return f"{scheme}://{host}"


def render_auto_submit_form(action: str, params: Mapping[str, str]) -> str:
    """Hidden-field POST form that submits itself on load."""
    fields = "\n".join(
        f'  <input type="hidden" name="{html.escape(name)}" value="{html.escape(value)}">'
        for name, value in params.items()
    )
    return (
        f'<form id="alipaysubmit" name="alipaysubmit" action="{html.escape(action)}" method="POST">\n'
        f"{fields}\n"
        '  <input type="submit" value="Pay" style="display:none">\n'
        "</form>\n"
        "<script>document.forms['alipaysubmit'].submit();</script>"
    )


class AlipayGateway:
    """
    Alipay wap-pay gateway for one request's worth of credentials.

    Constructed per request from the current payment_config rows.
    """

    def __init__(self, config: AlipayConfig, settings: Settings) -> None:
        self.config = config
        self.settings = settings

    def gateway_timestamp(self, now: datetime | None = None) -> str:
        """Current time in the gateway's timezone, second precision."""
        tz = ZoneInfo(self.settings.alipay_timezone)
        moment = now.astimezone(tz) if now is not None else datetime.now(tz)
        return moment.strftime(TIMESTAMP_FORMAT)

    def build_payment_form(
        self,
        order_id: str,
        amount: Decimal,
        subject: str,
        host: str,
        now: datetime | None = None,
    ) -> PaymentForm:
        """
        Build, sign and render a page-pay request.

        Raises:
            PaymentNotConfiguredError: App id or private key missing
            SigningError: Private key unusable
        """
        missing = self.config.missing_for_signing()
        if missing:
            raise PaymentNotConfiguredError(missing)

        base_url = callback_base_url(host)
        biz_content = json.dumps(
            {
                "out_trade_no": order_id,
                "total_amount": format_amount(amount),
                "subject": subject,
                "product_code": self.settings.alipay_product_code,
            },
            ensure_ascii=False,
            separators=(",", ":"),
        )

        params: dict[str, str] = {
            "app_id": self.config.app_id,
            "method": self.settings.alipay_method,
            "format": "JSON",
            "return_url": f"{base_url}/",
            "charset": "utf-8",
            "sign_type": "RSA2",
            "timestamp": self.gateway_timestamp(now),
            "version": "1.0",
            "notify_url": f"{base_url}{NOTIFY_PATH}",
            "biz_content": biz_content,
        }

        try:
            params[SIGN_FIELD] = sign_params(params, self.config.private_key)
        except SigningError as exc:
            logger.error("alipay_request_signing_failed", order_id=order_id, error=str(exc))
            raise

        action = f"{self.settings.alipay_gateway_url}?charset=utf-8"
        form_html = render_auto_submit_form(action, params)

        logger.info(
            "alipay_payment_form_built",
            order_id=order_id,
            amount=format_amount(amount),
            notify_url=params["notify_url"],
        )
        return PaymentForm(order_id=order_id, params=tuple(params.items()), form_html=form_html)

    def verify_notification(self, params: Mapping[str, str]) -> bool:
        """
        Check a notification's RSA2 signature against the gateway public key.

        Raises:
            PaymentNotConfiguredError: No public key configured
            SignatureVerificationError: Public key unusable
        """
        if not self.config.public_key:
            raise PaymentNotConfiguredError(["alipay_public_key"])
        return verify_params(params, self.config.public_key)
