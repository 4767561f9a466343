"""
Tests for backend/services/impact_service.py.
"""

from __future__ import annotations

import itertools

import pytest

from backend.services.impact_service import (
    TREE_CO2_KG,
    calculate_impact,
    calculate_points,
    calculate_value,
)
from backend.services.material_catalog import MaterialCatalog


class TestCalculateImpact:
    """Tests for the environmental impact calculator."""

    def test_sums_per_material_coefficients(self, catalog: MaterialCatalog):
        impact = calculate_impact([("mat-alu", 10), ("mat-pet", 5)], catalog)

        assert impact.co2_saved == 97.5  # 90 + 7.5
        assert impact.water_saved == 140.0  # 120 + 20
        assert impact.landfill_saved == 60.0  # 30 + 30

    def test_trees_is_co2_over_22(self, catalog: MaterialCatalog):
        impact = calculate_impact([("mat-alu", 10), ("mat-pet", 5)], catalog)
        assert impact.trees_equivalent == pytest.approx(97.5 / TREE_CO2_KG)

    def test_unknown_material_is_skipped(self, catalog: MaterialCatalog):
        with_unknown = calculate_impact([("mat-alu", 1), ("mat-ghost", 50)], catalog)
        without = calculate_impact([("mat-alu", 1)], catalog)
        assert with_unknown == without

    def test_non_positive_weight_contributes_nothing(self, catalog: MaterialCatalog):
        impact = calculate_impact([("mat-alu", 0), ("mat-pet", -3)], catalog)
        assert impact.co2_saved == 0.0
        assert impact.trees_equivalent == 0.0

    def test_empty_input(self, catalog: MaterialCatalog):
        impact = calculate_impact([], catalog)
        assert impact.model_dump() == {
            "co2_saved": 0.0,
            "water_saved": 0.0,
            "landfill_saved": 0.0,
            "trees_equivalent": 0.0,
        }

    def test_order_independent(self, catalog: MaterialCatalog):
        items = [("mat-alu", 0.1), ("mat-pet", 0.2), ("mat-paper", 0.3), ("mat-glass", 1.7)]
        results = {calculate_impact(list(p), catalog) for p in itertools.permutations(items)}
        assert len(results) == 1


class TestCalculatePoints:
    """Tests for reward points."""

    def test_weight_times_rate_times_points_per_unit(self, catalog: MaterialCatalog):
        # 10 * 18.55 * 1 + 5 * 1.50 * 1 = 193.0
        assert calculate_points([("mat-alu", 10), ("mat-pet", 5)], catalog) == 193

    def test_points_multiplier_applies(self, catalog: MaterialCatalog):
        # 10 * 0.40 * 2 = 8
        assert calculate_points([("mat-glass", 10)], catalog) == 8

    def test_half_rounds_up(self, catalog: MaterialCatalog):
        # 3.125 * 0.40 * 2 = 2.5 -> 3
        assert calculate_points([("mat-glass", 3.125)], catalog) == 3

    def test_order_independent(self, catalog: MaterialCatalog):
        items = [("mat-alu", 0.37), ("mat-paper", 2.9), ("mat-glass", 0.11)]
        results = {calculate_points(list(p), catalog) for p in itertools.permutations(items)}
        assert len(results) == 1


class TestCalculateValue:
    """Tests for the monetary value helper."""

    def test_rounds_to_cents(self, catalog: MaterialCatalog):
        # 0.333 * 18.55 = 6.17715
        assert calculate_value([("mat-alu", 0.333)], catalog) == 6.18

    def test_unknown_material_skipped(self, catalog: MaterialCatalog):
        assert calculate_value([("mat-ghost", 10), ("mat-pet", 2)], catalog) == 3.0
