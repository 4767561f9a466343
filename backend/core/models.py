"""
Woza Mali Engine - Core Data Models

Pydantic models for everything the intake pipeline reads, writes or returns:
- Submission payloads (SubmissionRequest, LineItemInput, PhotoInput)
- Stored rows (CollectionRecord, LineItem, PhotoAttachment, LedgerEntry)
- Catalog reference data (MaterialDescriptor)
- Derived, non-persisted values (ImpactSummary, FundSplit, SettlementResult)

Usage:
    from backend.core.models import SubmissionRequest

    request = SubmissionRequest.model_validate(payload)
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

# =============================================================================
# Helpers
# =============================================================================


def round_half_up(value: float, places: int = 2) -> float:
    """Round away from zero on .5, independent of binary float representation."""
    quantum = Decimal(1).scaleb(-places)
    return float(Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_float(value: Any, default: float = 0.0) -> float:
    if value is None or value == "":
        return default
    return float(value)


# =============================================================================
# Enums
# =============================================================================


class CollectionStatus(str, Enum):
    """Lifecycle status of a collection record."""

    SUBMITTED = "submitted"
    APPROVED = "approved"
    REJECTED = "rejected"


class PhotoType(str, Enum):
    """Evidence photo tag."""

    SCALE = "scale"
    RECYCLABLES = "recyclables"


# =============================================================================
# Catalog
# =============================================================================


class MaterialDescriptor(BaseModel):
    """Static reference data for one material."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    rate_per_kg: float = Field(default=0.0, ge=0)
    co2_per_kg: float = 0.0
    water_l_per_kg: float = 0.0
    landfill_l_per_kg: float = 0.0
    points_per_currency_unit: float = 1.0
    category: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "MaterialDescriptor":
        """Build from a `materials` row; missing coefficients default to 0."""
        points = row.get("points_per_currency_unit", row.get("points_per_rand"))
        return cls(
            id=str(row["id"]),
            name=str(row.get("name") or ""),
            rate_per_kg=_as_float(row.get("rate_per_kg")),
            co2_per_kg=_as_float(row.get("co2_per_kg")),
            water_l_per_kg=_as_float(row.get("water_l_per_kg")),
            landfill_l_per_kg=_as_float(row.get("landfill_l_per_kg")),
            points_per_currency_unit=_as_float(points, default=1.0),
            category=row.get("category"),
        )


# =============================================================================
# Submission payloads
# =============================================================================


class LineItemInput(BaseModel):
    """One material entry as captured in the field.

    Weight is not constrained here: entries with weight <= 0 are filtered
    by the pipeline rather than rejected wholesale.
    """

    model_config = ConfigDict(populate_by_name=True)

    material_id: str = Field(..., min_length=1)
    weight_kg: float = Field(..., validation_alias=AliasChoices("weight_kg", "kilograms"))
    contamination_pct: float = Field(default=0.0, ge=0, le=100)
    notes: Optional[str] = None


class PhotoInput(BaseModel):
    """Reference to an already-uploaded evidence image."""

    url: str = Field(..., min_length=1)
    photo_type: PhotoType
    description: Optional[str] = None


class SubmissionRequest(BaseModel):
    """Everything a collector submits for one field visit."""

    depositor_id: str = Field(..., min_length=1)
    collector_id: str = Field(..., min_length=1)
    line_items: List[LineItemInput] = Field(default_factory=list)
    notes: Optional[str] = None
    photos: List[PhotoInput] = Field(default_factory=list)
    scale_photo: Optional[str] = None
    recyclables_photo: Optional[str] = None
    address_id: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = None

    def photo_inputs(self) -> List[PhotoInput]:
        """Explicit photos followed by the scale/recyclables shorthand."""
        photos = list(self.photos)
        if self.scale_photo:
            photos.append(
                PhotoInput(
                    url=self.scale_photo,
                    photo_type=PhotoType.SCALE,
                    description="Scale photo from live collection",
                )
            )
        if self.recyclables_photo:
            photos.append(
                PhotoInput(
                    url=self.recyclables_photo,
                    photo_type=PhotoType.RECYCLABLES,
                    description="Recyclables photo from live collection",
                )
            )
        return photos


# =============================================================================
# Stored rows
# =============================================================================


class CollectionRecord(BaseModel):
    """Parent row for one field pickup (`collections`)."""

    id: str
    depositor_id: str
    collector_id: str
    address_id: Optional[str] = None
    status: CollectionStatus = CollectionStatus.SUBMITTED
    created_at: datetime = Field(default_factory=_utcnow)
    aggregate_weight: float = 0.0
    aggregate_value: float = 0.0

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "CollectionRecord":
        return cls(
            id=str(row["id"]),
            depositor_id=str(row["depositor_id"]),
            collector_id=str(row["collector_id"]),
            address_id=row.get("address_id"),
            status=row.get("status") or CollectionStatus.SUBMITTED,
            created_at=row.get("created_at") or _utcnow(),
            aggregate_weight=_as_float(row.get("total_kg")),
            aggregate_value=_as_float(row.get("total_value")),
        )


class LineItem(BaseModel):
    """Persisted material line (`collection_line_items`); immutable once written."""

    model_config = ConfigDict(frozen=True)

    id: Optional[str] = None
    collection_id: str
    material_id: str
    weight_kg: float = Field(..., gt=0)
    contamination_pct: float = Field(default=0.0, ge=0, le=100)
    notes: Optional[str] = None

    def to_row(self) -> Dict[str, Any]:
        return {
            "collection_id": self.collection_id,
            "material_id": self.material_id,
            "kilograms": self.weight_kg,
            "contamination_pct": self.contamination_pct,
            "notes": self.notes,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "LineItem":
        return cls(
            id=str(row["id"]) if row.get("id") is not None else None,
            collection_id=str(row["collection_id"]),
            material_id=str(row["material_id"]),
            weight_kg=_as_float(row.get("kilograms")),
            contamination_pct=_as_float(row.get("contamination_pct")),
            notes=row.get("notes"),
        )


class PhotoAttachment(BaseModel):
    """Evidence photo row (`collection_photos`)."""

    collection_id: str
    photo_url: str
    photo_type: PhotoType
    description: Optional[str] = None

    def to_row(self) -> Dict[str, Any]:
        return {
            "collection_id": self.collection_id,
            "photo_url": self.photo_url,
            "photo_type": self.photo_type.value,
            "description": self.description,
        }


class LedgerEntry(BaseModel):
    """Append-only wallet credit (`wallet_ledger`)."""

    model_config = ConfigDict(frozen=True)

    id: Optional[str] = None
    depositor_id: str
    collection_id: str
    points: int
    amount: float
    description: str
    created_at: datetime = Field(default_factory=_utcnow)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "LedgerEntry":
        return cls(
            id=str(row["id"]) if row.get("id") is not None else None,
            depositor_id=str(row["depositor_id"]),
            collection_id=str(row["collection_id"]),
            points=int(row.get("points") or 0),
            amount=_as_float(row.get("amount")),
            description=str(row.get("description") or ""),
            created_at=row.get("created_at") or _utcnow(),
        )


# =============================================================================
# Derived values
# =============================================================================


class ImpactSummary(BaseModel):
    """Environmental impact of a collection; never persisted."""

    model_config = ConfigDict(frozen=True)

    co2_saved: float = 0.0
    water_saved: float = 0.0
    landfill_saved: float = 0.0
    trees_equivalent: float = 0.0


class FundSplit(BaseModel):
    """Beneficiary fund vs depositor wallet split; never persisted."""

    model_config = ConfigDict(frozen=True)

    fund_amount: float = 0.0
    wallet_amount: float = 0.0
    breakdown: Dict[str, float] = Field(default_factory=dict)

    @property
    def total(self) -> float:
        return round_half_up(self.fund_amount + self.wallet_amount)


class SettlementResult(BaseModel):
    """What a successful submission returns."""

    record_id: str
    total_kg: float
    total_value: float
    points_earned: int
    environmental_impact: ImpactSummary
    fund_allocation: FundSplit
    ledger_entry_id: Optional[str] = None

    def to_contract(self) -> Dict[str, Any]:
        """The versioned result shape UI/API callers depend on."""
        return {
            "record_id": self.record_id,
            "total_kg": self.total_kg,
            "total_value": self.total_value,
            "points_earned": self.points_earned,
            "environmental_impact": self.environmental_impact.model_dump(),
            "fund_allocation": {
                "fund_amount": self.fund_allocation.fund_amount,
                "wallet_amount": self.fund_allocation.wallet_amount,
                "breakdown": dict(self.fund_allocation.breakdown),
            },
        }
