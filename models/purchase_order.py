from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from typing import Optional, List

from .invoice import ItemType


class PurchaseOrderDraftItem(BaseModel):
    """A reconciled invoice line, ready to become a purchase-order line."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    type: ItemType
    material_id: Optional[str] = None
    consumable_id: Optional[str] = None
    description: str
    quantity: int
    unit_cost: float


class PurchaseOrderDraft(BaseModel):
    """
    Transfer payload consumed by the purchase-order creation screen.
    Items appear in the same order as on the supplier invoice.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    supplier_name: Optional[str] = None
    invoice_number: Optional[str] = None
    expected_delivery: Optional[str] = None     # YYYY-MM-DD
    notes: Optional[str] = None
    items: List[PurchaseOrderDraftItem] = Field(default_factory=list)

    @property
    def total(self) -> float:
        return round(sum(i.quantity * i.unit_cost for i in self.items), 2)
