"""
Woza Mali Engine - Allocation Service

Splits the monetary value of a collection between the beneficiary fund and
the depositor's wallet.

Allocation rules (FUND_RULES is the only copy of this table):
- Aluminium-class:   0% fund / 100% depositor
- PET/plastic-class: 100% fund / 0% depositor
- Everything else:   70% fund / 30% depositor

Materials are classified by their catalog `category` column when it names
a known class, otherwise by material name. Anything unrecognised lands in
the "other" bucket instead of failing.
"""

from __future__ import annotations

import logging
import math
from collections import defaultdict
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional

from ..core.models import FundSplit, MaterialDescriptor, round_half_up
from .impact_service import WeightedMaterial, resolve_items
from .material_catalog import MaterialCatalog

logger = logging.getLogger(__name__)


# =============================================================================
# Constants - Rule Table
# =============================================================================


class FundCategory(str, Enum):
    """Allocation class of a material."""

    ALUMINIUM = "aluminium"
    PET = "pet"
    OTHER = "other"


@dataclass(frozen=True)
class ShareRule:
    """Fraction of value routed to the fund and to the depositor."""

    fund_share: float
    depositor_share: float


FUND_RULES: dict[FundCategory, ShareRule] = {
    FundCategory.ALUMINIUM: ShareRule(fund_share=0.0, depositor_share=1.0),
    FundCategory.PET: ShareRule(fund_share=1.0, depositor_share=0.0),
    FundCategory.OTHER: ShareRule(fund_share=0.7, depositor_share=0.3),
}

# Normalised category/name values that identify each class
CATEGORY_ALIASES: dict[FundCategory, frozenset[str]] = {
    FundCategory.ALUMINIUM: frozenset(
        {"aluminium", "aluminum", "aluminium cans", "aluminum cans", "alu", "cans"}
    ),
    FundCategory.PET: frozenset(
        {"pet", "pet bottles", "pet bottle", "plastic", "plastics", "pet/plastic", "pet plastic"}
    ),
}

# Tolerance for fund + wallet vs. the record's aggregate value
VALUE_TOLERANCE = 0.01


# =============================================================================
# Core Functions
# =============================================================================


def _match_alias(value: Optional[str]) -> Optional[FundCategory]:
    if not value:
        return None
    normalised = " ".join(value.strip().lower().split())
    for category, aliases in CATEGORY_ALIASES.items():
        if normalised in aliases:
            return category
    return None


def classify_material(material: MaterialDescriptor) -> FundCategory:
    """
    Determine which allocation class a material belongs to.

    Args:
        material: Catalog descriptor

    Returns:
        FundCategory, OTHER when neither category nor name is recognised
    """
    return _match_alias(material.category) or _match_alias(material.name) or FundCategory.OTHER


def allocate(
    items: Iterable[WeightedMaterial],
    catalog: MaterialCatalog,
    total_value: Optional[float] = None,
) -> FundSplit:
    """
    Compute the fund/wallet split for a set of line items.

    Args:
        items: (material id, weight kg) pairs; unresolvable ones are skipped
        catalog: Material catalog
        total_value: Aggregate value of the record, used as a consistency check

    Returns:
        FundSplit with per-category breakdown
        ({category}_value / {category}_fund / {category}_wallet)
    """
    values: dict[FundCategory, list[float]] = defaultdict(list)
    for material, weight in resolve_items(items, catalog):
        values[classify_material(material)].append(weight * material.rate_per_kg)

    fund_parts: list[float] = []
    wallet_parts: list[float] = []
    breakdown: dict[str, float] = {}
    for category, rule in FUND_RULES.items():
        value = math.fsum(values.get(category, []))
        fund_part = value * rule.fund_share
        wallet_part = value * rule.depositor_share
        fund_parts.append(fund_part)
        wallet_parts.append(wallet_part)
        breakdown[f"{category.value}_value"] = round_half_up(value)
        breakdown[f"{category.value}_fund"] = round_half_up(fund_part)
        breakdown[f"{category.value}_wallet"] = round_half_up(wallet_part)

    split = FundSplit(
        fund_amount=round_half_up(math.fsum(fund_parts)),
        wallet_amount=round_half_up(math.fsum(wallet_parts)),
        breakdown=breakdown,
    )

    if total_value is not None and abs(split.total - total_value) > VALUE_TOLERANCE:
        logger.warning(
            "Fund split %.2f + %.2f does not match aggregate value %.2f",
            split.fund_amount,
            split.wallet_amount,
            total_value,
        )

    return split
