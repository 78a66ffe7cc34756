"""
Gemini AI Provider Implementation.

NO DICTIONARIES - All data uses strongly typed models.
"""

import base64
from collections.abc import Sequence

from google import genai
from google.genai import types
from structlog import get_logger

from qc_billing.config import ConfigurationError, Settings
from qc_billing.models.api import AnalysisResult, ContentCheckResult
from qc_billing.models.domain import InlineImage

logger = get_logger(__name__)

ANALYSIS_SCHEMA = types.Schema(
    type=types.Type.OBJECT,
    properties={
        "title": types.Schema(type=types.Type.STRING),
        "score": types.Schema(type=types.Type.NUMBER),
        "content": types.Schema(type=types.Type.STRING),
        "advice": types.Schema(
            type=types.Type.ARRAY,
            items=types.Schema(type=types.Type.STRING),
        ),
    },
    required=["title", "content"],
)

CONTENT_CHECK_SCHEMA = types.Schema(
    type=types.Type.OBJECT,
    properties={
        "hasFace": types.Schema(type=types.Type.BOOLEAN),
        "hasTongue": types.Schema(type=types.Type.BOOLEAN),
    },
)


class EmptyResponseError(ValueError):
    """Raised when the model answers without the content that was asked for."""

    pass


def _contents(prompt: str, images: Sequence[InlineImage]) -> list[types.Part]:
    parts = [types.Part.from_bytes(data=image.data, mime_type=image.mime_type) for image in images]
    parts.append(types.Part(text=prompt))
    return parts


class GeminiProvider:
    """
    Gemini provider implementation.

    Implements the AIProvider protocol over the google-genai async client.
    """

    def __init__(self, api_key: str, settings: Settings) -> None:
        """
        Initialize Gemini provider.

        Args:
            api_key: Gemini API key
            settings: Model names per task

        Raises:
            ConfigurationError: If no API key is configured
        """
        if not api_key:
            raise ConfigurationError("GEMINI_API_KEY is required for AI calls")
        self.client = genai.Client(api_key=api_key)
        self.settings = settings

    async def generate_image(self, prompt: str, images: Sequence[InlineImage]) -> str:
        """Generate an image and return it as a data URL."""
        logger.info(
            "gemini_image_request",
            model=self.settings.gemini_image_model,
            image_count=len(images),
        )
        response = await self.client.aio.models.generate_content(
            model=self.settings.gemini_image_model,
            contents=_contents(prompt, images),
            config=types.GenerateContentConfig(response_modalities=["IMAGE"]),
        )

        for candidate in response.candidates or []:
            if candidate.content is None:
                continue
            for part in candidate.content.parts or []:
                inline = part.inline_data
                if inline is not None and inline.data:
                    encoded = base64.b64encode(inline.data).decode("ascii")
                    return f"data:{inline.mime_type or 'image/png'};base64,{encoded}"

        raise EmptyResponseError("No image generated")

    async def analyze(self, prompt: str, images: Sequence[InlineImage]) -> AnalysisResult:
        """Structured JSON analysis."""
        logger.info(
            "gemini_analysis_request",
            model=self.settings.gemini_analysis_model,
            image_count=len(images),
        )
        response = await self.client.aio.models.generate_content(
            model=self.settings.gemini_analysis_model,
            contents=_contents(prompt, images),
            config=types.GenerateContentConfig(
                response_mime_type="application/json",
                response_schema=ANALYSIS_SCHEMA,
            ),
        )
        if not response.text:
            raise EmptyResponseError("Empty analysis response")
        return AnalysisResult.model_validate_json(response.text)

    async def check_content(
        self, prompt: str, images: Sequence[InlineImage]
    ) -> ContentCheckResult:
        """Face / tongue presence flags."""
        response = await self.client.aio.models.generate_content(
            model=self.settings.gemini_validation_model,
            contents=_contents(prompt, images),
            config=types.GenerateContentConfig(
                response_mime_type="application/json",
                response_schema=CONTENT_CHECK_SCHEMA,
            ),
        )
        if not response.text:
            raise EmptyResponseError("Empty validation response")
        return ContentCheckResult.model_validate_json(response.text)
