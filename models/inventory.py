from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel
from typing import Optional, List, Literal


MATERIAL_KINDS = ("filament", "resin")
CONSUMABLE_CATEGORIES = ("nozzle", "build_plate", "belt", "lubricant", "other")


class Material(BaseModel):
    """A filament spool or resin bottle already in inventory."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    type: str = "filament"             # filament / resin
    material_type: str                 # PLA, PETG, ABS, ...
    brand: Optional[str] = None
    colour: Optional[str] = None
    spool_weight_g: float = 1000
    price: float = 0.0

    @property
    def label(self) -> str:
        parts = [self.material_type]
        if self.brand:
            parts.append(f"({self.brand})")
        label = " ".join(parts)
        if self.colour:
            label += f", {self.colour}"
        return label


class Consumable(BaseModel):
    """A nozzle, build plate, belt, lubricant, ... already in inventory."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    name: str
    category: str = "other"


class InventorySnapshot(BaseModel):
    """
    Existing inventory loaded once at session start.
    Used only for read-only comparison; never refreshed mid-session.
    """
    materials: List[Material] = Field(default_factory=list)
    consumables: List[Consumable] = Field(default_factory=list)

    def material(self, material_id: str) -> Optional[Material]:
        return next((m for m in self.materials if m.id == material_id), None)

    def consumable(self, consumable_id: str) -> Optional[Consumable]:
        return next((c for c in self.consumables if c.id == consumable_id), None)


class MaterialCreate(BaseModel):
    """Payload accepted by the inventory service when creating a material."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    type: Literal["filament", "resin"] = "filament"
    material_type: str = Field(min_length=1)
    brand: Optional[str] = None
    colour: Optional[str] = None
    spool_weight_g: float = Field(default=1000, gt=0)
    price: float = Field(ge=0)

    @field_validator("material_type", mode="before")
    @classmethod
    def _strip_type(cls, v):
        return (v or "").strip() if isinstance(v, str) or v is None else v

    @field_validator("brand", "colour", mode="before")
    @classmethod
    def _empty_to_none(cls, v):
        if v is None:
            return None
        return str(v).strip() or None


class ConsumableCreate(BaseModel):
    """Payload accepted by the inventory service when creating a consumable."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    name: str = Field(min_length=1)
    category: Literal["nozzle", "build_plate", "belt", "lubricant", "other"] = "other"
    unit_cost: Optional[float] = None

    @field_validator("name", mode="before")
    @classmethod
    def _strip_name(cls, v):
        return (v or "").strip() if isinstance(v, str) or v is None else v

    @field_validator("unit_cost", mode="before")
    @classmethod
    def _parse_cost(cls, v):
        # The review form keeps the cost as free text
        if v is None:
            return None
        if isinstance(v, str):
            v = v.strip()
            if not v:
                return None
        return v
