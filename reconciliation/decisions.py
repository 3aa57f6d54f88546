"""
Per-line decisions for new (unmatched) invoice items.

Every new item gets a Decision with sensible defaults straight after parsing;
the review step then replaces single fields as the user edits.  Nothing is
validated here -- the inventory service rejects bad drafts at creation time.

Once the bulk commit consumes the set it is resolved and read-only.
"""
import logging
from typing import Any, Iterator, Optional

from models.decision import ConsumableForm, Decision, MaterialForm
from models.invoice import ParsedInvoice, ParsedItem

logger = logging.getLogger(__name__)

# Checked in this order; the first one found in the name wins
MATERIAL_TYPES = ["PLA", "PETG", "ABS", "TPU", "ASA", "Nylon", "Resin", "Other"]

DEFAULT_SPOOL_WEIGHT_G = 1000


class DecisionsConsumedError(RuntimeError):
    """Raised when a resolved decision set is edited or committed again."""


def infer_material(name: Optional[str]) -> tuple[str, str]:
    """
    Guess (type, material_type) from a product name.

    >>> infer_material("Elegoo ABS-like Resin 1kg")
    ('resin', 'ABS')
    """
    upper = (name or "").upper()
    material_type = next((t for t in MATERIAL_TYPES if t.upper() in upper), "PLA")
    kind = "resin" if "RESIN" in upper else "filament"
    return kind, material_type


def make_default_decision(item: ParsedItem) -> Decision:
    """Build the starting decision for a new invoice line."""
    category = "material" if item.suggested_category == "material" else "consumable"
    kind, material_type = infer_material(item.display_name)
    return Decision(
        action="create",
        category=category,
        material_form=MaterialForm(
            type=kind,
            material_type=material_type,
            brand="",
            colour="",
            spool_weight_g=DEFAULT_SPOOL_WEIGHT_G,
            price=item.unit_cost,
        ),
        consumable_form=ConsumableForm(
            name=item.display_name,
            category="other",
            unit_cost=_cost_text(item.unit_cost),
        ),
        linked_material_id="",
        linked_consumable_id="",
    )


def _cost_text(cost: float) -> str:
    # 25.0 -> "25", 12.5 -> "12.5"
    return str(int(cost)) if cost == int(cost) else repr(cost)


class DecisionSet:
    """
    Mutable decisions for one review session, keyed by item index.

    Only items with is_new=True ever get an entry.
    """

    def __init__(self, decisions: Optional[dict[int, Decision]] = None):
        self._decisions: dict[int, Decision] = dict(decisions or {})
        self._consumed = False

    @classmethod
    def for_invoice(cls, invoice: ParsedInvoice) -> "DecisionSet":
        decisions = {
            index: make_default_decision(item)
            for index, item in enumerate(invoice.items)
            if item.is_new
        }
        logger.info(
            "Built %d default decision(s) for %d invoice line(s)",
            len(decisions), len(invoice.items),
        )
        return cls(decisions)

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._decisions)

    def __contains__(self, index: int) -> bool:
        return index in self._decisions

    def __iter__(self) -> Iterator[int]:
        return iter(sorted(self._decisions))

    def __getitem__(self, index: int) -> Decision:
        return self._decisions[index]

    def items(self) -> list[tuple[int, Decision]]:
        return [(i, self._decisions[i]) for i in sorted(self._decisions)]

    def to_create(self) -> list[tuple[int, Decision]]:
        return [(i, d) for i, d in self.items() if d.action == "create"]

    def to_link(self) -> list[tuple[int, Decision]]:
        return [(i, d) for i, d in self.items() if d.action == "link"]

    @property
    def consumed(self) -> bool:
        return self._consumed

    # ------------------------------------------------------------------
    # Mutations (one field at a time)
    # ------------------------------------------------------------------

    def _editable(self, index: int) -> Decision:
        if self._consumed:
            raise DecisionsConsumedError("Decisions have already been committed")
        return self._decisions[index]

    def set_action(self, index: int, action: str) -> None:
        self._editable(index).action = action

    def set_category(self, index: int, category: str) -> None:
        self._editable(index).category = category

    def update_material_form(self, index: int, field: str, value: Any) -> None:
        form = self._editable(index).material_form
        if field not in MaterialForm.model_fields:
            raise KeyError(f"Unknown material field: {field}")
        setattr(form, field, value)

    def update_consumable_form(self, index: int, field: str, value: Any) -> None:
        form = self._editable(index).consumable_form
        if field not in ConsumableForm.model_fields:
            raise KeyError(f"Unknown consumable field: {field}")
        setattr(form, field, value)

    def link_material(self, index: int, material_id: str) -> None:
        """Select an existing material; switches the line to link it."""
        decision = self._editable(index)
        decision.linked_material_id = material_id
        decision.action = "link"
        decision.category = "material"

    def link_consumable(self, index: int, consumable_id: str) -> None:
        """Select an existing consumable; switches the line to link it."""
        decision = self._editable(index)
        decision.linked_consumable_id = consumable_id
        decision.action = "link"
        decision.category = "consumable"

    def apply(self, index: int, changes: dict) -> None:
        """
        Apply a batch of edits from a scripted decisions file.

        Recognised keys: action, category, material (dict of form fields),
        consumable (dict of form fields), linkMaterialId, linkConsumableId.
        """
        if "action" in changes:
            self.set_action(index, changes["action"])
        if "category" in changes:
            self.set_category(index, changes["category"])
        for key, value in (changes.get("material") or {}).items():
            self.update_material_form(index, _field_name(MaterialForm, key), value)
        for key, value in (changes.get("consumable") or {}).items():
            self.update_consumable_form(index, _field_name(ConsumableForm, key), value)
        if changes.get("linkMaterialId"):
            self.link_material(index, changes["linkMaterialId"])
        if changes.get("linkConsumableId"):
            self.link_consumable(index, changes["linkConsumableId"])

    # ------------------------------------------------------------------
    # Commit
    # ------------------------------------------------------------------

    def consume(self) -> list[tuple[int, Decision]]:
        """Hand every decision to the bulk commit; the set is read-only afterwards."""
        if self._consumed:
            raise DecisionsConsumedError("Decisions have already been committed")
        self._consumed = True
        return self.items()


def _field_name(model, key: str) -> str:
    """Accept either snake_case attribute names or camelCase aliases."""
    if key in model.model_fields:
        return key
    for name, info in model.model_fields.items():
        if info.alias == key:
            return name
    return key
