"""
Tests for order creation and the gateway request builder.
"""

import base64
import json
from dataclasses import replace
from datetime import UTC, datetime
from decimal import Decimal
from uuid import uuid4

import pytest
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding
from sqlalchemy import func, select

from qc_billing.db.models import PaymentOrder
from qc_billing.exceptions import (
    InvalidPackageError,
    OrderNotFoundError,
    PaymentNotConfiguredError,
    SigningError,
    UserNotFoundError,
)
from qc_billing.models.api import OrderStatus
from qc_billing.services.alipay_gateway import (
    AlipayGateway,
    callback_base_url,
    format_amount,
    render_auto_submit_form,
)
from qc_billing.services.orders import OrderService, generate_order_id
from qc_billing.services.packages import get_package, list_packages
from qc_billing.services.signature import canonicalize

# ============================================================================
# Helpers and Catalog
# ============================================================================


class TestGenerateOrderId:
    """Tests for merchant order ids."""

    def test_prefix_timestamp_suffix(self):
        """Prefix, 13-digit millisecond timestamp, 6 base36 characters."""
        order_id = generate_order_id("QC")
        assert order_id.startswith("QC")
        assert order_id[2:15].isdigit()
        suffix = order_id[15:]
        assert len(suffix) == 6
        assert all(ch.isupper() or ch.isdigit() for ch in suffix)

    def test_ids_are_unique(self):
        """Random suffixes make collisions practically impossible."""
        assert len({generate_order_id("QC") for _ in range(200)}) == 200


class TestPackages:
    """Tests for the package catalog."""

    def test_catalog(self):
        assert get_package("pkg_12").credits == 12
        assert get_package("pkg_12").price == Decimal("9.90")
        assert get_package("pkg_30").credits == 30
        assert get_package("pkg_30").price == Decimal("19.90")

    def test_unknown_package(self):
        with pytest.raises(InvalidPackageError):
            get_package("pkg_999")

    def test_listed_cheapest_first(self):
        assert [p.id for p in list_packages()] == ["pkg_12", "pkg_30"]


class TestGatewayHelpers:
    """Tests for small gateway formatting helpers."""

    def test_format_amount(self):
        assert format_amount(Decimal("9.9")) == "9.90"
        assert format_amount(Decimal("19.90")) == "19.90"

    def test_callback_base_url_https(self):
        assert callback_base_url("example.com") == "https://example.com"

    def test_callback_base_url_local(self):
        assert callback_base_url("localhost:8000") == "http://localhost:8000"
        assert callback_base_url("127.0.0.1:8000") == "http://127.0.0.1:8000"

    def test_form_escapes_values(self):
        """Values with quotes and angle brackets are HTML-escaped."""
        html = render_auto_submit_form("https://gw/do", {"biz_content": '{"a":"<b>"}'})
        assert "&quot;a&quot;:&quot;&lt;b&gt;&quot;" in html
        assert "<b>" not in html

    def test_form_submits_itself(self):
        html = render_auto_submit_form("https://gw/do", {"a": "1"})
        assert 'id="alipaysubmit"' in html
        assert "document.forms['alipaysubmit'].submit()" in html


class TestGatewayTimestamp:
    """Tests for gateway-local timestamps."""

    def test_converts_utc_to_shanghai(self, alipay_config, test_settings):
        """The gateway expects Beijing time."""
        gateway = AlipayGateway(alipay_config, test_settings)
        stamp = gateway.gateway_timestamp(datetime(2024, 3, 15, 2, 0, 0, tzinfo=UTC))
        assert stamp == "2024-03-15 10:00:00"

    def test_crosses_midnight(self, alipay_config, test_settings):
        gateway = AlipayGateway(alipay_config, test_settings)
        stamp = gateway.gateway_timestamp(datetime(2024, 3, 14, 20, 30, 15, tzinfo=UTC))
        assert stamp == "2024-03-15 04:30:15"


# ============================================================================
# Order Service
# ============================================================================


class TestCreateOrder:
    """Tests for OrderService.create_order."""

    async def test_form_params(self, db, test_settings, alipay_config, create_user):
        """The signed request carries every gateway parameter."""
        user = await create_user()
        now = datetime(2024, 3, 15, 2, 0, 0, tzinfo=UTC)

        form = await OrderService(db, test_settings).create_order(
            user.id, "pkg_12", alipay_config, host="example.com", now=now
        )
        params = dict(form.params)

        assert params["app_id"] == alipay_config.app_id
        assert params["method"] == "alipay.trade.wap.pay"
        assert params["format"] == "JSON"
        assert params["charset"] == "utf-8"
        assert params["sign_type"] == "RSA2"
        assert params["version"] == "1.0"
        assert params["timestamp"] == "2024-03-15 10:00:00"
        assert params["return_url"] == "https://example.com/"
        assert params["notify_url"] == "https://example.com/api/alipay/notify"

        biz = json.loads(params["biz_content"])
        assert biz["out_trade_no"] == form.order_id
        assert biz["total_amount"] == "9.90"
        assert biz["product_code"] == "QUICK_WAP_WAY"
        assert "12" in biz["subject"]

    async def test_biz_content_is_compact_json(self, db, test_settings, alipay_config, create_user):
        """No whitespace between JSON tokens."""
        user = await create_user()
        form = await OrderService(db, test_settings).create_order(
            user.id, "pkg_30", alipay_config, host="example.com"
        )
        biz_content = dict(form.params)["biz_content"]
        assert ", " not in biz_content
        assert '": ' not in biz_content

    async def test_signature_covers_sign_type(
        self, db, test_settings, alipay_config, create_user, rsa_private_key
    ):
        """The request signature verifies over every param except sign."""
        user = await create_user()
        form = await OrderService(db, test_settings).create_order(
            user.id, "pkg_12", alipay_config, host="example.com"
        )
        params = dict(form.params)
        signature = base64.b64decode(params["sign"])

        rsa_private_key.public_key().verify(
            signature,
            canonicalize(params, exclude=("sign",)).encode("utf-8"),
            padding.PKCS1v15(),
            hashes.SHA256(),
        )

    async def test_form_html_posts_to_gateway(self, db, test_settings, alipay_config, create_user):
        user = await create_user()
        form = await OrderService(db, test_settings).create_order(
            user.id, "pkg_12", alipay_config, host="example.com"
        )
        assert 'action="https://openapi.alipay.com/gateway.do?charset=utf-8"' in form.form_html
        assert 'method="POST"' in form.form_html
        assert form.order_id in form.form_html

    async def test_pending_order_persisted(self, db, test_settings, alipay_config, create_user):
        """The order exists before the user ever reaches the gateway."""
        user = await create_user()
        form = await OrderService(db, test_settings).create_order(
            user.id, "pkg_30", alipay_config, host="example.com"
        )

        order = await OrderService(db, test_settings).get_order(form.order_id)
        assert order.status is OrderStatus.PENDING
        assert order.user_id == user.id
        assert order.package_id == "pkg_30"
        assert order.amount == Decimal("19.90")
        assert order.credits == 30
        assert order.trade_no is None

    async def test_not_configured(self, db, test_settings, alipay_config, create_user):
        """Missing app id or private key is reported by name."""
        user = await create_user()
        config = replace(alipay_config, app_id="", private_key="")

        with pytest.raises(PaymentNotConfiguredError) as exc_info:
            await OrderService(db, test_settings).create_order(
                user.id, "pkg_12", config, host="example.com"
            )
        assert exc_info.value.missing == ["alipay_appid", "alipay_private_key"]

    async def test_unknown_user(self, db, test_settings, alipay_config):
        with pytest.raises(UserNotFoundError):
            await OrderService(db, test_settings).create_order(
                uuid4(), "pkg_12", alipay_config, host="example.com"
            )

    async def test_unknown_package(self, db, test_settings, alipay_config, create_user):
        user = await create_user()
        with pytest.raises(InvalidPackageError):
            await OrderService(db, test_settings).create_order(
                user.id, "pkg_1", alipay_config, host="example.com"
            )

    async def test_signing_failure_keeps_no_order(
        self, db, test_settings, alipay_config, create_user
    ):
        """An unusable private key aborts the order."""
        user = await create_user()
        config = replace(alipay_config, private_key="bm90IGEga2V5")

        with pytest.raises(SigningError):
            await OrderService(db, test_settings).create_order(
                user.id, "pkg_12", config, host="example.com"
            )

        count = await db.scalar(select(func.count()).select_from(PaymentOrder))
        assert count == 0


class TestGetOrder:
    """Tests for OrderService.get_order."""

    async def test_not_found(self, db, test_settings):
        with pytest.raises(OrderNotFoundError):
            await OrderService(db, test_settings).get_order("QC-missing")
