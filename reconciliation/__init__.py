from .similarity import TokenSimilarityMatcher, FuzzySimilarityMatcher, SimilarItems, get_matcher
from .decisions import DecisionSet, DecisionsConsumedError, make_default_decision
from .invoice_parser import InvoiceParser, InvoiceParseError
from .inventory import CsvInventory, HttpInventory, InventoryError, InventoryValidationError, get_inventory
from .handoff import PurchaseOrderHandoff
from .session import ReconciliationSession, SessionPhase, SessionClosedError, SessionStateError, UploadRejected

__all__ = [
    "TokenSimilarityMatcher", "FuzzySimilarityMatcher", "SimilarItems", "get_matcher",
    "DecisionSet", "DecisionsConsumedError", "make_default_decision",
    "InvoiceParser", "InvoiceParseError",
    "CsvInventory", "HttpInventory", "InventoryError", "InventoryValidationError", "get_inventory",
    "PurchaseOrderHandoff",
    "ReconciliationSession", "SessionPhase", "SessionClosedError", "SessionStateError", "UploadRejected",
]
