from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

SKU_TEMPLATE = "TEST-SKU-{vu}"
DIMENSION_UNIT = "INCHES"
WEIGHT_UNIT = "POUNDS"


@dataclass(frozen=True)
class Measurement:
    value: float
    unit: str

    def to_payload(self) -> dict[str, Any]:
        return {"value": self.value, "unit": self.unit}


@dataclass(frozen=True)
class DimensionSet:
    length: Measurement
    width: Measurement
    height: Measurement
    weight: Measurement

    def to_payload(self) -> dict[str, Any]:
        return {
            "length": self.length.to_payload(),
            "width": self.width.to_payload(),
            "height": self.height.to_payload(),
            "weight": self.weight.to_payload(),
        }


def uniform_dimensions(size: float = 10, weight: float = 10) -> DimensionSet:
    return DimensionSet(
        length=Measurement(size, DIMENSION_UNIT),
        width=Measurement(size, DIMENSION_UNIT),
        height=Measurement(size, DIMENSION_UNIT),
        weight=Measurement(weight, WEIGHT_UNIT),
    )


@dataclass(frozen=True)
class ProductTemplate:
    """Product payload built once per run and shared read-only by every VU.

    Only the SKU differs between VUs. The nested ``dimensions`` and
    ``attributes`` payloads are rendered once and every instance returned by
    :meth:`for_vu` references the same objects, so callers must not mutate
    them.
    """

    title: str
    item: DimensionSet
    package: DimensionSet
    is_hazmat: bool = False
    sku_template: str = SKU_TEMPLATE
    _dimensions: dict[str, Any] = field(init=False, repr=False, compare=False)
    _attributes: dict[str, Any] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(
            self,
            "_dimensions",
            {"item": self.item.to_payload(), "package": self.package.to_payload()},
        )
        object.__setattr__(
            self,
            "_attributes",
            {"hazmat_info": {"is_hazmat": self.is_hazmat}},
        )

    def sku_for(self, vu_id: int) -> str:
        return self.sku_template.format(vu=vu_id)

    def for_vu(self, vu_id: int) -> dict[str, Any]:
        return {
            "sku": self.sku_for(vu_id),
            "title": self.title,
            "dimensions": self._dimensions,
            "attributes": self._attributes,
        }


def build_product_template() -> ProductTemplate:
    return ProductTemplate(
        title="Test Product",
        item=uniform_dimensions(),
        package=uniform_dimensions(),
    )


__all__ = [
    "DimensionSet",
    "Measurement",
    "ProductTemplate",
    "build_product_template",
    "uniform_dimensions",
]
