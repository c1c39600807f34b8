import pytest

from cost_calculator import (
    CostTracker,
    calculate_cost,
    calculate_edit_cost,
    compare_edit_pricing_tiers,
    compare_pricing_tiers,
    credits_to_usd,
    estimate_edits_from_budget,
    estimate_images_from_budget,
    format_cost,
    format_cost_short,
    usd_to_credits,
)


def test_calculate_cost_defaults():
    cost = calculate_cost()
    assert cost.num_images == 1
    assert cost.pricing_tier == "DEFAULT"
    assert cost.credits_used == 0.1
    assert cost.estimated_usd == 0.005


def test_calculate_cost_quality_batch():
    cost = calculate_cost(4, "QUALITY")
    assert cost.credits_used == 0.8
    assert cost.estimated_usd == 0.04
    assert format_cost(cost) == "4 images × QUALITY: 0.80 credits (~$0.0400 USD)"


def test_unknown_speed_uses_default_rate():
    cost = calculate_cost(2, "WARP")
    assert cost.credits_used == 0.2
    assert cost.pricing_tier == "WARP"


def test_edit_cost_is_higher():
    assert calculate_edit_cost(1).credits_used == 0.12
    assert calculate_edit_cost(2, "TURBO").credits_used == 0.2


def test_conversions():
    assert credits_to_usd(2) == 0.1
    assert usd_to_credits(1) == 20.0


def test_format_cost_short():
    assert format_cost_short(calculate_cost(1, "FLASH")) == "~$0.0020"
    assert format_cost_short(calculate_cost(8, "QUALITY")) == "~$0.08"
    assert format_cost(calculate_cost(1)) == "1 image × DEFAULT: 0.10 credits (~$0.0050 USD)"


@pytest.mark.parametrize(
    "budget, speed, expected",
    [(1.0, "DEFAULT", 10), (1.0, "QUALITY", 5), (0.1, "FLASH", 2), (0.05, "DEFAULT", 0)],
)
def test_estimate_images_from_budget(budget, speed, expected):
    assert estimate_images_from_budget(budget, speed) == expected


def test_estimate_edits_from_budget():
    assert estimate_edits_from_budget(1.3) == 10


def test_compare_tiers_order():
    tiers = compare_pricing_tiers(2)
    assert [t.pricing_tier for t in tiers] == ["FLASH", "TURBO", "DEFAULT", "QUALITY"]
    assert [t.num_images for t in tiers] == [2, 2, 2, 2]
    assert len(compare_edit_pricing_tiers()) == 4


def test_cost_tracker():
    tracker = CostTracker()
    tracker.add_generate(4, "QUALITY")
    tracker.add_edit(1)

    assert tracker.operation_count == 2
    assert tracker.total_credits == 0.92
    assert tracker.total_usd == 0.046
    summary = tracker.summary()
    assert summary["formatted_total"] == "2 operations: 0.92 credits (~$0.0460 USD)"

    tracker.reset()
    assert tracker.operation_count == 0
    assert tracker.total_credits == 0
