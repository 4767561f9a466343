"""
Woza Mali Engine - Impact Service

Pure calculations over (material id, weight kg) pairs:
- environmental impact (CO2, water, landfill, tree-years)
- reward points

Unresolvable materials and non-positive weights are skipped: partial data
must not block metrics for the rest of a collection. Sums use math.fsum so
the result does not depend on line-item order, and rounding happens once on
the totals.
"""

from __future__ import annotations

import logging
import math
from typing import Iterable, Iterator, Tuple

from ..core.models import ImpactSummary, MaterialDescriptor, round_half_up
from .material_catalog import MaterialCatalog

logger = logging.getLogger(__name__)

# One tree absorbs roughly 22 kg of CO2 per year
TREE_CO2_KG = 22.0

WeightedMaterial = Tuple[str, float]


def resolve_items(
    items: Iterable[WeightedMaterial], catalog: MaterialCatalog
) -> Iterator[Tuple[MaterialDescriptor, float]]:
    """Yield (descriptor, weight) for every usable item, skipping the rest."""
    for material_id, weight in items:
        if weight is None or weight <= 0:
            continue
        material = catalog.get(material_id)
        if material is None:
            logger.debug("Skipping unknown material %s in metric calculation", material_id)
            continue
        yield material, float(weight)


def calculate_impact(items: Iterable[WeightedMaterial], catalog: MaterialCatalog) -> ImpactSummary:
    """Environmental impact of a set of line items."""
    co2: list[float] = []
    water: list[float] = []
    landfill: list[float] = []
    for material, weight in resolve_items(items, catalog):
        co2.append(weight * material.co2_per_kg)
        water.append(weight * material.water_l_per_kg)
        landfill.append(weight * material.landfill_l_per_kg)

    co2_saved = round_half_up(math.fsum(co2))
    return ImpactSummary(
        co2_saved=co2_saved,
        water_saved=round_half_up(math.fsum(water)),
        landfill_saved=round_half_up(math.fsum(landfill)),
        trees_equivalent=co2_saved / TREE_CO2_KG,
    )


def calculate_points(items: Iterable[WeightedMaterial], catalog: MaterialCatalog) -> int:
    """Reward points: weight x rate x points-per-currency-unit, rounded to an integer."""
    total = math.fsum(
        weight * material.rate_per_kg * material.points_per_currency_unit
        for material, weight in resolve_items(items, catalog)
    )
    return int(round_half_up(total, 0))


def calculate_value(items: Iterable[WeightedMaterial], catalog: MaterialCatalog) -> float:
    """Monetary value (weight x rate) rounded to cents."""
    return round_half_up(
        math.fsum(weight * material.rate_per_kg for material, weight in resolve_items(items, catalog))
    )
