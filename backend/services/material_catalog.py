"""
Woza Mali Engine - Material Catalog

Read-only lookup of material rates and environmental coefficients, loaded
once from the `materials` table.

Usage:
    from backend.services.material_catalog import MaterialCatalog

    catalog = await MaterialCatalog.load(store)
    aluminium = catalog.require(material_id)
"""

from __future__ import annotations

import logging
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Iterable, Iterator, Mapping, Optional

from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..core.error_taxonomy import MaterialNotFoundError, TransientStoreError
from ..core.models import MaterialDescriptor
from ..db import MATERIALS_TABLE

if TYPE_CHECKING:
    from ..db import CollectionStore

logger = logging.getLogger(__name__)

CATALOG_COLUMNS = (
    "id,name,rate_per_kg,co2_per_kg,water_l_per_kg,landfill_l_per_kg,"
    "points_per_currency_unit,category"
)


class MaterialCatalog:
    """Immutable id -> MaterialDescriptor map."""

    def __init__(self, materials: Iterable[MaterialDescriptor]) -> None:
        self._by_id: Mapping[str, MaterialDescriptor] = MappingProxyType(
            {material.id: material for material in materials}
        )

    @classmethod
    def from_rows(cls, rows: Iterable[dict[str, Any]]) -> "MaterialCatalog":
        return cls(MaterialDescriptor.from_row(row) for row in rows)

    @classmethod
    async def load(cls, store: "CollectionStore", max_attempts: int = 3) -> "MaterialCatalog":
        """Read the whole materials table, retrying transient store failures."""

        @retry(
            retry=retry_if_exception_type(TransientStoreError),
            stop=stop_after_attempt(max_attempts),
            wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async def _fetch() -> list[dict[str, Any]]:
            return await store.select_rows(MATERIALS_TABLE, columns=CATALOG_COLUMNS)

        rows = await _fetch()
        catalog = cls.from_rows(rows)
        logger.info("Material catalog loaded (%d materials)", len(catalog), extra={"count": len(catalog)})
        return catalog

    def get(self, material_id: str) -> Optional[MaterialDescriptor]:
        return self._by_id.get(str(material_id))

    def require(self, material_id: str, step: str | None = None) -> MaterialDescriptor:
        material = self.get(material_id)
        if material is None:
            raise MaterialNotFoundError(str(material_id), step=step)
        return material

    def materials(self) -> list[MaterialDescriptor]:
        return list(self._by_id.values())

    def __contains__(self, material_id: object) -> bool:
        return str(material_id) in self._by_id

    def __len__(self) -> int:
        return len(self._by_id)

    def __iter__(self) -> Iterator[MaterialDescriptor]:
        return iter(self._by_id.values())
