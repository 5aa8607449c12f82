"""
OpenAI images adapter.

Wraps the OpenAI SDK images endpoint behind the provider interface.
"""

import base64
import binascii
import logging
from typing import Optional

import openai
from openai import OpenAI

from coin_gate.core.errors import ProviderAuthFailed, ProviderRejected

from .base import (
    GenerationRequest,
    ProviderArtifact,
    ProviderResult,
    ProviderTransientError,
)

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "dall-e-2"


class OpenAIImageProvider:
    """Image provider backed by ``client.images.generate``.

    Negative prompt, cfg scale, steps, seed and style preset have no
    equivalent in this API and are not sent.
    """

    name = "openai"

    def __init__(self, model: str = DEFAULT_MODEL, request_timeout: float = 60.0, api_key: Optional[str] = None):
        """Initialize the adapter.

        Args:
            model: OpenAI image model name (required)
            request_timeout: Default per-call timeout in seconds
            api_key: API key; the SDK falls back to OPENAI_API_KEY

        Raises:
            ValueError: If model is missing/empty
        """
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")
        self.model = model
        self.request_timeout = request_timeout
        self.client = OpenAI(api_key=api_key) if api_key else OpenAI()

    def generate(self, request: GenerationRequest, timeout: Optional[float] = None) -> ProviderResult:
        """Generate ``request.samples`` images.

        Raises:
            ProviderTransientError: Rate limits, timeouts, connection and 5xx errors
            ProviderAuthFailed: Authentication or permission errors
            ProviderRejected: Bad requests or responses without image data
        """
        try:
            response = self.client.images.generate(
                model=self.model,
                prompt=request.prompt,
                n=request.samples,
                size=f"{request.width}x{request.height}",
                response_format="b64_json",
                timeout=timeout if timeout is not None else self.request_timeout,
            )
        except (openai.AuthenticationError, openai.PermissionDeniedError) as e:
            raise ProviderAuthFailed(f"OpenAI rejected credentials: {e}")
        except openai.RateLimitError as e:
            retry_after = e.response.headers.get("retry-after") if e.response is not None else None
            raise ProviderTransientError(
                f"OpenAI rate limit hit: {e}",
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
            )
        except (openai.APITimeoutError, openai.APIConnectionError, openai.InternalServerError) as e:
            raise ProviderTransientError(f"OpenAI unavailable: {e}")
        except openai.BadRequestError as e:
            raise ProviderRejected(f"OpenAI rejected the request: {e}")

        data = response.data or []
        if not data:
            raise ProviderRejected("No image was generated")

        units = []
        for index, image in enumerate(data):
            if not image.b64_json:
                raise ProviderRejected(f"Image {index} has no data")
            try:
                payload = base64.b64decode(image.b64_json, validate=True)
            except binascii.Error:
                raise ProviderRejected(f"Image {index} has no decodable image data")
            units.append(ProviderArtifact(payload=payload))

        logger.debug(f"OpenAI returned {len(units)} image(s)")
        return ProviderResult(artifacts=units)
