"""
Analysis Service - metered AI calls.

One credit pays for one logical call, however many provider attempts it took.
The balance is checked before calling out and debited only after a result is
in hand, so failed calls never cost anything. Content validation is free and
fails open.
"""

import asyncio
import base64
import binascii
from collections.abc import Awaitable, Callable, Sequence
from typing import TypeVar
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from qc_billing.exceptions import AIProviderError, InsufficientCreditsError, InvalidImageError
from qc_billing.models.api import (
    AIInvokeRequest,
    AIInvokeResponse,
    AITask,
    ContentCheck,
    ImageInput,
)
from qc_billing.models.domain import InlineImage
from qc_billing.observability.tracing import trace_operation
from qc_billing.services.ai_provider import AIProvider
from qc_billing.services.credits import CreditService
from qc_billing.services.retry import Attempted, RetryPolicy, Sleep, invoke_with_retry

logger = get_logger(__name__)

T = TypeVar("T")


def decode_image(image: ImageInput, index: int) -> InlineImage:
    """
    Accept raw base64 or a data URL.

    Raises:
        InvalidImageError: Payload is not base64
    """
    payload = image.data
    mime_type = image.mime_type
    if payload.startswith("data:") and "," in payload:
        header, payload = payload.split(",", 1)
        declared = header[len("data:") :].split(";", 1)[0]
        if declared:
            mime_type = declared

    try:
        data = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise InvalidImageError(index) from exc
    return InlineImage(data=data, mime_type=mime_type)


def decode_images(images: Sequence[ImageInput]) -> list[InlineImage]:
    return [decode_image(image, index) for index, image in enumerate(images)]


class AnalysisService:
    """Runs AI tasks through the retry layer and bills successful ones."""

    def __init__(
        self,
        session: AsyncSession,
        provider: AIProvider,
        policy: RetryPolicy,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        """
        Initialize analysis service.

        Args:
            session: Database session for balance checks and debits
            provider: AI provider implementation
            policy: Retry budget
            sleep: Backoff sleep (injected in tests)
        """
        self.session = session
        self.provider = provider
        self.policy = policy
        self.sleep = sleep
        self.credits = CreditService(session)

    async def invoke(self, request: AIInvokeRequest) -> AIInvokeResponse:
        """
        Dispatch one request by task.

        Raises:
            InvalidImageError: An image is not decodable
            UserNotFoundError: Billable task for an unknown user
            InsufficientCreditsError: Billable task with zero balance
            RetryableProviderError: Transient failures outlasted the retry budget
            TerminalProviderError: Non-retryable provider failure
        """
        images = decode_images(request.images)

        if request.task is AITask.VALIDATE:
            return await self.validate_image(request.prompt, images, request.check)

        # Request model guarantees a user for billable tasks
        assert request.user_id is not None

        if request.task is AITask.IMAGE:
            return await self.generate_image(request.user_id, request.prompt, images)
        return await self.analyze(request.user_id, request.prompt, images)

    async def generate_image(
        self, user_id: UUID, prompt: str, images: Sequence[InlineImage]
    ) -> AIInvokeResponse:
        outcome, remaining = await self._run_billable(
            user_id,
            AITask.IMAGE,
            lambda: self.provider.generate_image(prompt, images),
        )
        return AIInvokeResponse(
            task=AITask.IMAGE,
            image=outcome.value,
            credits_remaining=remaining,
            attempts=outcome.attempts,
        )

    async def analyze(
        self, user_id: UUID, prompt: str, images: Sequence[InlineImage]
    ) -> AIInvokeResponse:
        outcome, remaining = await self._run_billable(
            user_id,
            AITask.ANALYZE,
            lambda: self.provider.analyze(prompt, images),
        )
        return AIInvokeResponse(
            task=AITask.ANALYZE,
            analysis=outcome.value,
            credits_remaining=remaining,
            attempts=outcome.attempts,
        )

    async def validate_image(
        self, prompt: str, images: Sequence[InlineImage], check: ContentCheck
    ) -> AIInvokeResponse:
        """
        Pre-flight content check. Free, and a provider failure counts as detected.
        """
        try:
            with trace_operation("ai_invoke", task=AITask.VALIDATE.value, check=check.value):
                outcome = await invoke_with_retry(
                    lambda: self.provider.check_content(prompt, images),
                    policy=self.policy,
                    operation_name=AITask.VALIDATE.value,
                    sleep=self.sleep,
                )
        except AIProviderError as exc:
            logger.warning(
                "content_check_failed_open",
                check=check.value,
                attempts=exc.attempts,
                error=exc.message,
            )
            return AIInvokeResponse(task=AITask.VALIDATE, detected=True, attempts=exc.attempts)

        flag = outcome.value.has_face if check is ContentCheck.FACE else outcome.value.has_tongue
        # Only an explicit "no" rejects the image.
        detected = flag is not False
        logger.info("content_checked", check=check.value, detected=detected)
        return AIInvokeResponse(task=AITask.VALIDATE, detected=detected, attempts=outcome.attempts)

    async def _run_billable(
        self,
        user_id: UUID,
        task: AITask,
        operation: Callable[[], Awaitable[T]],
    ) -> tuple[Attempted[T], int]:
        """Balance gate, retried call, then a single debit."""
        balance = await self.credits.get_balance(user_id)
        if balance <= 0:
            logger.info("ai_call_rejected_no_credits", user_id=str(user_id), task=task.value)
            raise InsufficientCreditsError(user_id, balance)
        # Release the read transaction before a potentially long provider call.
        await self.session.commit()

        with trace_operation("ai_invoke", task=task.value, user_id=str(user_id)) as span:
            outcome = await invoke_with_retry(
                operation,
                policy=self.policy,
                operation_name=task.value,
                sleep=self.sleep,
            )
            span.set_attribute("attempts", outcome.attempts)

        try:
            remaining = await self.credits.debit(user_id, task)
            await self.session.commit()
        except InsufficientCreditsError:
            # Balance drained by a concurrent call while this one ran.
            await self.session.rollback()
            logger.warning(
                "ai_debit_skipped_balance_exhausted",
                user_id=str(user_id),
                task=task.value,
                attempts=outcome.attempts,
            )
            remaining = 0

        return outcome, remaining
