"""
Provider interface shared by all image generation adapters.

Adapters translate their transport's failures into three outcomes:
- ProviderTransientError: retry after a backoff
- ProviderAuthFailed / ProviderRejected: fatal, surface immediately
- anything else: retried, then reported as unavailable
"""

from dataclasses import asdict, dataclass, field, replace
from typing import Any, Dict, List, Optional, Protocol

DEFAULT_NEGATIVE_PROMPT = "blurry, low quality, distorted, deformed, disfigured"

STYLE_PRESETS = frozenset({
    "3d-model",
    "analog-film",
    "anime",
    "cinematic",
    "comic-book",
    "digital-art",
    "enhance",
    "fantasy-art",
    "isometric",
    "line-art",
    "low-poly",
    "modeling-compound",
    "neon-punk",
    "origami",
    "photographic",
    "pixel-art",
    "tile-texture",
})

MIN_STEPS, MAX_STEPS = 10, 150
MIN_CFG_SCALE, MAX_CFG_SCALE = 0.0, 35.0


class ProviderTransientError(Exception):
    """Retryable provider failure: rate limiting, timeouts, 5xx, network."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


@dataclass(frozen=True)
class GenerationRequest:
    """Parameters of one generation call."""
    prompt: str
    negative_prompt: str = DEFAULT_NEGATIVE_PROMPT
    width: int = 1024
    height: int = 1024
    samples: int = 1
    cfg_scale: float = 7.0
    steps: int = 30
    seed: int = 0
    style_preset: str = "digital-art"

    def __post_init__(self):
        """Validate request parameters."""
        if not self.prompt or not self.prompt.strip():
            raise ValueError("prompt is required and cannot be empty")
        if self.width <= 0 or self.height <= 0:
            raise ValueError("width and height must be > 0")
        if not MIN_STEPS <= self.steps <= MAX_STEPS:
            raise ValueError(f"steps must be between {MIN_STEPS} and {MAX_STEPS}")
        if not MIN_CFG_SCALE <= self.cfg_scale <= MAX_CFG_SCALE:
            raise ValueError(f"cfg_scale must be between {MIN_CFG_SCALE:g} and {MAX_CFG_SCALE:g}")
        if self.seed < 0:
            raise ValueError("seed must be >= 0")
        if self.style_preset not in STYLE_PRESETS:
            raise ValueError(f"style_preset must be one of: {sorted(STYLE_PRESETS)}")

    def with_samples(self, samples: int) -> "GenerationRequest":
        return replace(self, samples=samples)

    def to_params(self) -> Dict[str, Any]:
        """Parameters stored on artifact metadata for audit and replay."""
        return asdict(self)


@dataclass(frozen=True)
class ProviderArtifact:
    """One generated unit as returned by the provider."""
    payload: bytes
    status: str = "success"
    seed: Optional[int] = None


@dataclass(frozen=True)
class ProviderResult:
    """Ordered artifacts of one successful provider call."""
    artifacts: List[ProviderArtifact] = field(default_factory=list)
    attempts: int = 1
    request_id: Optional[str] = None


class ImageProvider(Protocol):
    name: str

    def generate(self, request: GenerationRequest, timeout: Optional[float] = None) -> ProviderResult:
        """Run one generation call, raising per the module contract."""
        ...
