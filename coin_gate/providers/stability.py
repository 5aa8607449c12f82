"""
Stability AI text-to-image adapter.

Calls the REST generation endpoint over httpx and classifies every
outcome for the retrying client.
"""

import base64
import binascii
import logging
import os
from typing import Any, Dict, Optional

import httpx

from coin_gate.core.errors import ProviderAuthFailed, ProviderRejected

from .base import (
    GenerationRequest,
    ProviderArtifact,
    ProviderResult,
    ProviderTransientError,
)

logger = logging.getLogger(__name__)

DEFAULT_API_BASE = "https://api.stability.ai"
DEFAULT_ENGINE = "stable-diffusion-xl-1024-v1-0"

# finishReason values that mean the unit is not a usable image
_FAILED_FINISH_REASONS = {"ERROR", "CONTENT_FILTERED"}


def _retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("retry-after")
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


class StabilityProvider:
    """Image provider backed by Stability AI's v1 generation API."""

    name = "stability"

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_base: str = DEFAULT_API_BASE,
        engine: str = DEFAULT_ENGINE,
        request_timeout: float = 60.0,
        client: Optional[httpx.Client] = None,
    ):
        """Initialize the adapter.

        Args:
            api_key: API key; defaults to the STABILITY_API_KEY variable
            api_base: Base URL of the API
            engine: Engine id used in the endpoint path
            request_timeout: Default per-call timeout in seconds
            client: Preconfigured httpx client (tests pass a MockTransport)

        Raises:
            ValueError: If no API key is available
        """
        api_key = api_key or os.environ.get("STABILITY_API_KEY")
        if not api_key:
            raise ValueError("Stability API key is required (set STABILITY_API_KEY)")
        self.api_key = api_key
        self.engine = engine
        self.request_timeout = request_timeout
        self.url = f"{api_base.rstrip('/')}/v1/generation/{engine}/text-to-image"
        self.client = client or httpx.Client()

    def _body(self, request: GenerationRequest) -> Dict[str, Any]:
        return {
            "text_prompts": [
                {"text": request.prompt, "weight": 1},
                {"text": request.negative_prompt, "weight": -1},
            ],
            "cfg_scale": request.cfg_scale,
            "height": request.height,
            "width": request.width,
            "samples": request.samples,
            "steps": request.steps,
            "style_preset": request.style_preset,
            "seed": request.seed,
        }

    def generate(self, request: GenerationRequest, timeout: Optional[float] = None) -> ProviderResult:
        """Generate ``request.samples`` images.

        Raises:
            ProviderTransientError: 429, 5xx, timeouts and network errors
            ProviderAuthFailed: 401 or 403
            ProviderRejected: other 4xx, or a 200 without usable images
        """
        try:
            response = self.client.post(
                self.url,
                json=self._body(request),
                headers={
                    "Content-Type": "application/json",
                    "Accept": "application/json",
                    "Authorization": f"Bearer {self.api_key}",
                },
                timeout=timeout if timeout is not None else self.request_timeout,
            )
        except httpx.TimeoutException as e:
            raise ProviderTransientError(f"Stability request timed out: {e}")
        except httpx.TransportError as e:
            raise ProviderTransientError(f"Stability connection failed: {e}")

        status = response.status_code
        if status in (401, 403):
            raise ProviderAuthFailed(f"Stability rejected credentials (HTTP {status})")
        if status == 429:
            raise ProviderTransientError("Stability rate limit hit", retry_after=_retry_after(response))
        if status >= 500:
            raise ProviderTransientError(f"Stability server error (HTTP {status})")
        if status >= 400:
            raise ProviderRejected(f"Stability rejected the request (HTTP {status}): {response.text[:200]}")

        return self._parse(response)

    def _parse(self, response: httpx.Response) -> ProviderResult:
        try:
            data = response.json()
        except ValueError:
            raise ProviderRejected("Stability returned a non-JSON body")

        artifacts = data.get("artifacts") if isinstance(data, dict) else None
        if not artifacts:
            message = data.get("message") if isinstance(data, dict) else None
            raise ProviderRejected(f"No image was generated: {message or 'empty artifacts'}")

        units = []
        if not isinstance(artifacts, list):
            raise ProviderRejected("Stability returned malformed artifacts")

        for index, item in enumerate(artifacts):
            if not isinstance(item, dict):
                raise ProviderRejected(f"Artifact {index} is malformed")
            finish_reason = item.get("finishReason", "SUCCESS")
            if not isinstance(finish_reason, str):
                raise ProviderRejected(f"Artifact {index} has an invalid finishReason")
            if finish_reason in _FAILED_FINISH_REASONS:
                raise ProviderRejected(f"Artifact {index} failed with {finish_reason}")
            try:
                payload = base64.b64decode(item["base64"], validate=True)
            except (KeyError, TypeError, binascii.Error):
                raise ProviderRejected(f"Artifact {index} has no decodable image data")
            units.append(ProviderArtifact(
                payload=payload,
                status=finish_reason.lower(),
                seed=item.get("seed"),
            ))

        logger.debug(f"Stability returned {len(units)} artifact(s)")
        return ProviderResult(artifacts=units, request_id=response.headers.get("x-request-id"))
