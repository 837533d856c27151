"""
Unit tests for credit pricing.

Tests per-tag weights, the multi-subject rule, the floor and determinism.
"""

import pytest

from variation_guard.core.errors import InvalidRequest
from variation_guard.core.pricing import (
    DEFAULT_COST_TABLE,
    CostTable,
    calculate_required_credits,
    cost_breakdown,
)
from variation_guard.core.variants import BreedCoat, Format, MultiSubject, Outfit, VariantKind


class TestCostTable:
    """Test cost table validation."""

    def test_defaults_match_reference_values(self):
        assert DEFAULT_COST_TABLE == CostTable(
            base_variation_cost=1,
            outfit_variation_cost=1,
            format_variation_cost=1,
            multi_animal_cost=2
        )

    @pytest.mark.parametrize("field", [
        "base_variation_cost", "outfit_variation_cost", "format_variation_cost", "multi_animal_cost"
    ])
    def test_non_positive_weight_rejected(self, field):
        with pytest.raises(ValueError, match=field):
            CostTable(**{field: 0})

    def test_unit_cost_lookup(self):
        table = CostTable(base_variation_cost=3, outfit_variation_cost=4, format_variation_cost=5, multi_animal_cost=6)
        assert table.unit_cost(VariantKind.BREED_COAT) == 3
        assert table.unit_cost(VariantKind.OUTFIT) == 4
        assert table.unit_cost(VariantKind.FORMAT) == 5
        assert table.unit_cost(VariantKind.MULTI_SUBJECT) == 6


class TestRequiredCredits:
    """Test required credit calculation."""

    def test_example_two_breed_coats_and_outfit(self):
        specs = [BreedCoat("b1", "c1"), BreedCoat("b2", "c2"), Outfit("o1")]
        assert calculate_required_credits(specs, CostTable(base_variation_cost=1, outfit_variation_cost=1)) == 3

    def test_weights_applied_per_tag(self):
        table = CostTable(base_variation_cost=2, outfit_variation_cost=3, format_variation_cost=5)
        specs = [BreedCoat("b1", "c1"), Outfit("o1"), Outfit("o2"), Format("square")]
        # 1*2 + 2*3 + 1*5
        assert calculate_required_credits(specs, table) == 13

    def test_multi_subject_is_flat_and_does_not_stack(self):
        table = CostTable(base_variation_cost=4, multi_animal_cost=2)
        specs = [MultiSubject.from_mapping({"subjects": 3}), BreedCoat("b1", "c1"), Format("square")]
        assert calculate_required_credits(specs, table) == 2

    def test_multi_subject_alone(self):
        assert calculate_required_credits([MultiSubject.from_mapping({})], CostTable(multi_animal_cost=2)) == 2

    def test_empty_request_is_invalid_not_free(self):
        with pytest.raises(InvalidRequest):
            calculate_required_credits([])

    def test_non_empty_request_costs_at_least_one(self):
        assert calculate_required_credits([Format("square")]) >= 1

    def test_deterministic(self):
        specs = [Outfit("o1"), BreedCoat("b1", "c1"), Format("portrait")]
        first = calculate_required_credits(specs)
        assert all(calculate_required_credits(specs) == first for _ in range(10))


class TestCostBreakdown:
    """Test quote breakdown."""

    def test_breakdown_counts_and_total(self):
        specs = [BreedCoat("b1", "c1"), Outfit("o1"), Outfit("o2")]
        breakdown = cost_breakdown(specs)
        assert breakdown == {
            "breed_coat": 1,
            "outfit": 2,
            "format": 0,
            "multi_subject": 0,
            "total": 3,
        }
