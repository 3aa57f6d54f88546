import math

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator, model_validator
from pydantic.alias_generators import to_camel
from typing import Optional, List, Literal


ItemType = Literal["material", "consumable", "other"]
InventoryKind = Literal["material", "consumable"]


class ParsedItem(BaseModel):
    """
    One detected line on a supplier invoice.

    When is_new is False exactly one of material_id / consumable_id is set and
    the description reflects the matched inventory record.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    type: ItemType = "other"
    material_id: Optional[str] = None
    consumable_id: Optional[str] = None
    description: str = ""
    quantity: int = 1                   # always positive
    unit_cost: float = 0.0              # per unit, before tax
    is_new: bool = Field(default=None, validate_default=True)
    suggested_name: Optional[str] = None
    suggested_category: Optional[InventoryKind] = None

    @field_validator("description", mode="before")
    @classmethod
    def _blank_description(cls, v):
        return "" if v is None else str(v).strip()

    @field_validator("quantity", mode="before")
    @classmethod
    def _positive_quantity(cls, v):
        try:
            qty = int(round(float(v)))
        except (TypeError, ValueError, OverflowError):
            # inf raises OverflowError, nan raises ValueError
            return 1
        return qty if qty > 0 else 1

    @field_validator("unit_cost", mode="before")
    @classmethod
    def _non_negative_cost(cls, v):
        try:
            cost = float(v)
        except (TypeError, ValueError, OverflowError):
            return 0.0
        return cost if math.isfinite(cost) and cost >= 0 else 0.0

    @field_validator("material_id", "consumable_id", "suggested_name", mode="before")
    @classmethod
    def _empty_to_none(cls, v):
        if v is None:
            return None
        v = str(v).strip()
        return v or None

    @field_validator("is_new", mode="before")
    @classmethod
    def _missing_is_new(cls, v, info: ValidationInfo):
        if v is None:
            # No flag from the parser: new unless it carried an inventory id
            return not (info.data.get("material_id") or info.data.get("consumable_id"))
        return v

    @field_validator("suggested_category", mode="before")
    @classmethod
    def _known_category(cls, v):
        return v if v in ("material", "consumable") else None

    @field_validator("type", mode="before")
    @classmethod
    def _known_type(cls, v):
        return v if v in ("material", "consumable", "other") else "other"

    @model_validator(mode="after")
    def _matched_items_carry_one_id(self):
        # A "matched" item without exactly one reference cannot be resolved;
        # treat it as new so the user gets to decide.
        if not self.is_new and bool(self.material_id) == bool(self.consumable_id):
            self.is_new = True
            self.material_id = None
            self.consumable_id = None
            self.type = "other"
        if not self.is_new:
            self.type = "material" if self.material_id else "consumable"
        return self

    @property
    def display_name(self) -> str:
        """Suggested name, falling back to the raw description."""
        return self.suggested_name or self.description


class ParsedInvoice(BaseModel):
    """
    Structured invoice data as returned by the document-parsing service.
    Dates are ISO 8601 strings (YYYY-MM-DD).
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    supplier_name: Optional[str] = None
    invoice_number: Optional[str] = None
    expected_delivery: Optional[str] = None    # YYYY-MM-DD
    notes: Optional[str] = None
    items: List[ParsedItem] = Field(default_factory=list)

    @field_validator("supplier_name", "invoice_number", "expected_delivery", "notes", mode="before")
    @classmethod
    def _text_or_none(cls, v):
        if v is None:
            return None
        v = str(v).strip()
        return v or None

    @field_validator("items", mode="before")
    @classmethod
    def _missing_items(cls, v):
        return v or []

    @property
    def new_item_indexes(self) -> List[int]:
        return [i for i, item in enumerate(self.items) if item.is_new]
