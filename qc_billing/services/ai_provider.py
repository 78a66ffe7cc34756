"""
AI Provider Protocol - Provider-agnostic interface for metered AI calls.

NO DICTIONARIES - All data uses strongly typed models.
"""

from collections.abc import Sequence
from typing import Protocol

from qc_billing.models.api import AnalysisResult, ContentCheckResult
from qc_billing.models.domain import InlineImage


class AIProvider(Protocol):
    """
    AI provider protocol.

    Implementations raise the provider's own exceptions; classification into
    retryable / terminal happens in the retry layer, not here.
    """

    async def generate_image(self, prompt: str, images: Sequence[InlineImage]) -> str:
        """
        Generate an image from a prompt and reference images.

        Returns:
            The generated image as a data URL
        """
        ...

    async def analyze(self, prompt: str, images: Sequence[InlineImage]) -> AnalysisResult:
        """
        Produce a structured analysis of the images.

        Returns:
            Parsed analysis (title, score, content, advice)
        """
        ...

    async def check_content(
        self, prompt: str, images: Sequence[InlineImage]
    ) -> ContentCheckResult:
        """
        Detect whether a face / tongue is present in the images.

        Returns:
            Raw detection flags
        """
        ...
