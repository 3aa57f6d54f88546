from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from typing import Literal

from .invoice import InventoryKind


DecisionAction = Literal["create", "link"]


class MaterialForm(BaseModel):
    """Draft fields for creating a new material from an invoice line."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    type: str = "filament"
    material_type: str = "PLA"
    brand: str = ""
    colour: str = ""
    spool_weight_g: float = 1000
    price: float = 0.0


class ConsumableForm(BaseModel):
    """Draft fields for creating a new consumable from an invoice line."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    name: str = ""
    category: str = "other"
    unit_cost: str = ""                 # free text, parsed on creation


class Decision(BaseModel):
    """
    What the user wants done with one new (unmatched) invoice line.

    Both draft forms are always kept, so switching action or category never
    loses what was typed into the other branch.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    action: DecisionAction = "create"
    category: InventoryKind = "consumable"
    material_form: MaterialForm = Field(default_factory=MaterialForm)
    consumable_form: ConsumableForm = Field(default_factory=ConsumableForm)
    linked_material_id: str = ""
    linked_consumable_id: str = ""

    @property
    def linked_id(self) -> str:
        """Selected existing record for the current category ('' if none)."""
        if self.category == "material":
            return self.linked_material_id
        return self.linked_consumable_id
