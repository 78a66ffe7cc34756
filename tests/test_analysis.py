"""
Tests for metered AI calls.
"""

import base64
from uuid import uuid4

import pytest

from qc_billing.exceptions import (
    InsufficientCreditsError,
    InvalidImageError,
    RetryableProviderError,
    TerminalProviderError,
    UserNotFoundError,
)
from qc_billing.models.api import (
    AIInvokeRequest,
    AITask,
    ContentCheck,
    ContentCheckResult,
    ImageInput,
)
from qc_billing.services.analysis import AnalysisService, decode_image
from qc_billing.services.credits import CreditService
from qc_billing.services.retry import RetryPolicy

JPEG_B64 = base64.b64encode(b"\xff\xd8\xff\xe0fake-jpeg").decode()


@pytest.fixture
def service(db, scripted_provider, fake_sleep):
    return AnalysisService(db, scripted_provider, RetryPolicy(), sleep=fake_sleep)


def analyze_request(user_id):
    return AIInvokeRequest(
        task=AITask.ANALYZE,
        prompt="Read this tongue",
        images=[ImageInput(data=JPEG_B64)],
        user_id=user_id,
    )


class TestDecodeImage:
    """Tests for inline image decoding."""

    def test_raw_base64(self):
        image = decode_image(ImageInput(data=JPEG_B64), 0)
        assert image.data.startswith(b"\xff\xd8")
        assert image.mime_type == "image/jpeg"

    def test_data_url_sets_mime_type(self):
        payload = "data:image/png;base64," + base64.b64encode(b"hello").decode()
        image = decode_image(ImageInput(data=payload), 0)
        assert image.data == b"hello"
        assert image.mime_type == "image/png"

    def test_invalid_base64(self):
        with pytest.raises(InvalidImageError) as exc_info:
            decode_image(ImageInput(data="***not base64***"), 2)
        assert exc_info.value.index == 2


class TestInvokeRequestModel:
    """Tests for AIInvokeRequest validation."""

    def test_billable_task_requires_user(self):
        with pytest.raises(ValueError):
            AIInvokeRequest(task=AITask.IMAGE, prompt="draw")

    def test_validate_needs_no_user(self):
        request = AIInvokeRequest(task=AITask.VALIDATE, prompt="check")
        assert request.user_id is None
        assert request.check is ContentCheck.FACE

    def test_image_accepts_camel_case_mime(self):
        image = ImageInput.model_validate({"data": "AAAA", "mimeType": "image/webp"})
        assert image.mime_type == "image/webp"


class TestBillableCalls:
    """Tests for debit-after-success."""

    async def test_success_debits_one(
        self, db, service, scripted_provider, sample_analysis, create_user
    ):
        user = await create_user(credits=3)
        scripted_provider.script = [sample_analysis]

        response = await service.invoke(analyze_request(user.id))

        assert response.analysis == sample_analysis
        assert response.credits_remaining == 2
        assert response.attempts == 1
        assert await CreditService(db).get_balance(user.id) == 2

    async def test_retried_call_debits_once(
        self, db, service, scripted_provider, sample_analysis, rate_limited,
        create_user, recorded_sleeps,
    ):
        """Fail, fail, succeed costs exactly one credit."""
        user = await create_user(credits=1)
        scripted_provider.script = [rate_limited(), rate_limited(), sample_analysis]

        response = await service.invoke(analyze_request(user.id))

        assert response.attempts == 3
        assert response.credits_remaining == 0
        assert scripted_provider.calls == ["analyze"] * 3
        assert recorded_sleeps == [2.0, 4.0]
        assert await CreditService(db).get_balance(user.id) == 0

    async def test_exhausted_retries_cost_nothing(
        self, db, service, scripted_provider, rate_limited, create_user
    ):
        user = await create_user(credits=2)
        scripted_provider.script = [rate_limited(), rate_limited(), rate_limited()]

        with pytest.raises(RetryableProviderError):
            await service.invoke(analyze_request(user.id))

        assert await CreditService(db).get_balance(user.id) == 2

    async def test_terminal_failure_costs_nothing(
        self, db, service, scripted_provider, provider_error, create_user
    ):
        user = await create_user(credits=2)
        scripted_provider.script = [provider_error(400, "Invalid argument")]

        with pytest.raises(TerminalProviderError):
            await service.invoke(analyze_request(user.id))

        assert scripted_provider.calls == ["analyze"]
        assert await CreditService(db).get_balance(user.id) == 2

    async def test_zero_balance_never_calls_provider(self, service, scripted_provider, create_user):
        user = await create_user(credits=0)
        scripted_provider.script = ["unused"]

        with pytest.raises(InsufficientCreditsError):
            await service.invoke(analyze_request(user.id))

        assert scripted_provider.calls == []

    async def test_unknown_user(self, service, scripted_provider):
        with pytest.raises(UserNotFoundError):
            await service.invoke(analyze_request(uuid4()))
        assert scripted_provider.calls == []

    async def test_image_generation(self, db, service, scripted_provider, create_user):
        user = await create_user(credits=1)
        scripted_provider.script = ["data:image/png;base64,AAAA"]

        response = await service.invoke(
            AIInvokeRequest(task=AITask.IMAGE, prompt="Draw a report card", user_id=user.id)
        )

        assert response.task is AITask.IMAGE
        assert response.image == "data:image/png;base64,AAAA"
        assert response.credits_remaining == 0

    async def test_invalid_image_rejected_before_billing(
        self, db, service, scripted_provider, create_user
    ):
        user = await create_user(credits=1)
        request = AIInvokeRequest(
            task=AITask.ANALYZE,
            prompt="Read",
            images=[ImageInput(data=JPEG_B64), ImageInput(data="%%%")],
            user_id=user.id,
        )

        with pytest.raises(InvalidImageError) as exc_info:
            await service.invoke(request)

        assert exc_info.value.index == 1
        assert scripted_provider.calls == []
        assert await CreditService(db).get_balance(user.id) == 1


class TestValidateImage:
    """Tests for the free, fail-open content check."""

    async def test_detected(self, service, scripted_provider):
        scripted_provider.script = [ContentCheckResult(has_face=True)]

        response = await service.invoke(AIInvokeRequest(task=AITask.VALIDATE, prompt="face?"))

        assert response.detected is True
        assert response.credits_remaining is None

    async def test_explicit_no_rejects(self, service, scripted_provider):
        scripted_provider.script = [ContentCheckResult(has_tongue=False)]

        response = await service.invoke(
            AIInvokeRequest(task=AITask.VALIDATE, prompt="tongue?", check=ContentCheck.TONGUE)
        )

        assert response.detected is False

    async def test_missing_flag_counts_as_detected(self, service, scripted_provider):
        scripted_provider.script = [ContentCheckResult()]

        response = await service.invoke(AIInvokeRequest(task=AITask.VALIDATE, prompt="face?"))

        assert response.detected is True

    async def test_provider_failure_fails_open(self, service, scripted_provider, provider_error):
        scripted_provider.script = [provider_error(400, "Invalid argument")]

        response = await service.invoke(AIInvokeRequest(task=AITask.VALIDATE, prompt="face?"))

        assert response.detected is True
        assert response.attempts == 1

    async def test_exhausted_retries_fail_open(self, service, scripted_provider, rate_limited):
        scripted_provider.script = [rate_limited(), rate_limited(), rate_limited()]

        response = await service.invoke(AIInvokeRequest(task=AITask.VALIDATE, prompt="face?"))

        assert response.detected is True
        assert response.attempts == 3

    async def test_validation_is_free(self, db, service, scripted_provider, create_user):
        user = await create_user(credits=1)
        scripted_provider.script = [ContentCheckResult(has_face=True)]

        await service.invoke(
            AIInvokeRequest(task=AITask.VALIDATE, prompt="face?", user_id=user.id)
        )

        assert await CreditService(db).get_balance(user.id) == 1
