# cost_calculator.py
# ------------------------------------------------------------------------------------
#  Local credit / USD estimates. The Ideogram API returns no pricing, so these
#  figures come from the published per-image credit rates.
# ------------------------------------------------------------------------------------

import math
from typing import Dict, List, Optional

from pydantic import BaseModel

from constants import (
    CREDITS_PER_IMAGE,
    DEFAULT_NUM_IMAGES,
    DEFAULT_RENDERING_SPEED,
    EDIT_CREDITS_PER_IMAGE,
    RENDERING_SPEEDS,
    USD_PER_CREDIT,
)


class CostEstimate(BaseModel):
    credits_used: float
    estimated_usd: float
    pricing_tier: str
    num_images: int


def _round_credits(credits: float) -> float:
    return round(credits, 2)


def _round_usd(usd: float) -> float:
    return round(usd, 4)


def _estimate(rates: Dict[str, float], num_images: Optional[int], rendering_speed: Optional[str]) -> CostEstimate:
    num_images = num_images or DEFAULT_NUM_IMAGES
    speed = rendering_speed or DEFAULT_RENDERING_SPEED
    credits = rates.get(speed, rates[DEFAULT_RENDERING_SPEED]) * num_images
    return CostEstimate(
        credits_used=_round_credits(credits),
        estimated_usd=_round_usd(credits * USD_PER_CREDIT),
        pricing_tier=speed,
        num_images=num_images,
    )


def calculate_cost(num_images: Optional[int] = None, rendering_speed: Optional[str] = None) -> CostEstimate:
    return _estimate(CREDITS_PER_IMAGE, num_images, rendering_speed)


def calculate_edit_cost(num_images: Optional[int] = None, rendering_speed: Optional[str] = None) -> CostEstimate:
    return _estimate(EDIT_CREDITS_PER_IMAGE, num_images, rendering_speed)


def credits_to_usd(credits: float) -> float:
    return _round_usd(credits * USD_PER_CREDIT)


def usd_to_credits(usd: float) -> float:
    return _round_credits(usd / USD_PER_CREDIT)


def format_cost(cost: CostEstimate) -> str:
    """e.g. '4 images × QUALITY: 0.80 credits (~$0.0400 USD)'"""
    plural = "" if cost.num_images == 1 else "s"
    return (
        f"{cost.num_images} image{plural} × {cost.pricing_tier}: "
        f"{cost.credits_used:.2f} credits (~${cost.estimated_usd:.4f} USD)"
    )


def format_cost_short(cost: CostEstimate) -> str:
    decimals = 2 if cost.estimated_usd >= 0.01 else 4
    return f"~${cost.estimated_usd:.{decimals}f}"


def estimate_images_from_budget(credit_budget: float, rendering_speed: str = DEFAULT_RENDERING_SPEED) -> int:
    return math.floor(credit_budget / CREDITS_PER_IMAGE[rendering_speed])


def estimate_edits_from_budget(credit_budget: float, rendering_speed: str = DEFAULT_RENDERING_SPEED) -> int:
    return math.floor(credit_budget / EDIT_CREDITS_PER_IMAGE[rendering_speed])


def compare_pricing_tiers(num_images: int = 1) -> List[CostEstimate]:
    return [calculate_cost(num_images, speed) for speed in RENDERING_SPEEDS]


def compare_edit_pricing_tiers(num_images: int = 1) -> List[CostEstimate]:
    return [calculate_edit_cost(num_images, speed) for speed in RENDERING_SPEEDS]


class CostTracker:
    """Running totals across operations (per process, not persisted)."""

    def __init__(self):
        self.reset()

    def reset(self) -> None:
        self._credits = 0.0
        self._usd = 0.0
        self.operation_count = 0

    def add_generate(self, num_images: int = 1, rendering_speed: str = DEFAULT_RENDERING_SPEED) -> CostEstimate:
        return self.add(calculate_cost(num_images, rendering_speed))

    def add_edit(self, num_images: int = 1, rendering_speed: str = DEFAULT_RENDERING_SPEED) -> CostEstimate:
        return self.add(calculate_edit_cost(num_images, rendering_speed))

    def add(self, cost: CostEstimate) -> CostEstimate:
        self._credits += cost.credits_used
        self._usd += cost.estimated_usd
        self.operation_count += 1
        return cost

    @property
    def total_credits(self) -> float:
        return _round_credits(self._credits)

    @property
    def total_usd(self) -> float:
        return _round_usd(self._usd)

    def summary(self) -> Dict[str, object]:
        return {
            "total_credits": self.total_credits,
            "total_usd": self.total_usd,
            "operation_count": self.operation_count,
            "formatted_total": (
                f"{self.operation_count} operations: {self.total_credits} credits "
                f"(~${self.total_usd:.4f} USD)"
            ),
        }
