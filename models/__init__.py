from .invoice import ParsedInvoice, ParsedItem
from .inventory import InventorySnapshot, Material, Consumable, MaterialCreate, ConsumableCreate
from .decision import Decision, MaterialForm, ConsumableForm
from .purchase_order import PurchaseOrderDraft, PurchaseOrderDraftItem
from .result import Resolution, CreationFailure, CommitSummary

__all__ = [
    "ParsedInvoice", "ParsedItem",
    "InventorySnapshot", "Material", "Consumable", "MaterialCreate", "ConsumableCreate",
    "Decision", "MaterialForm", "ConsumableForm",
    "PurchaseOrderDraft", "PurchaseOrderDraftItem",
    "Resolution", "CreationFailure", "CommitSummary",
]
