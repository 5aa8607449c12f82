"""
Pricing calculations for coin-gated generation.

Handles coin cost computations and provider sample limits.
"""

from dataclasses import dataclass

from coin_gate.config.loader import PricingConfig


@dataclass(frozen=True)
class CoinPricing:
    """Per-unit coin pricing with the provider's sample limit."""
    unit_cost: int
    max_samples: int

    def __post_init__(self):
        """Validate pricing values are positive."""
        if self.unit_cost <= 0:
            raise ValueError("unit_cost must be > 0")
        if self.max_samples <= 0:
            raise ValueError("max_samples must be > 0")

    @classmethod
    def from_config(cls, config: PricingConfig) -> "CoinPricing":
        return cls(unit_cost=config.unit_cost, max_samples=config.max_samples)


# Fixed price: 10 coins per image, at most 10 images per call
DEFAULT_PRICING = CoinPricing(unit_cost=10, max_samples=10)


def clamp_samples(samples: int, pricing: CoinPricing = DEFAULT_PRICING) -> int:
    """Clamp a requested sample count to [1, max_samples]."""
    return max(1, min(int(samples), pricing.max_samples))


def calculate_cost(samples: int, pricing: CoinPricing = DEFAULT_PRICING) -> int:
    """Coins charged for ``samples`` generated units.

    Args:
        samples: Number of units, clamped to provider limits first
        pricing: Pricing to apply

    Returns:
        Total cost in whole coins
    """
    return clamp_samples(samples, pricing) * pricing.unit_cost
