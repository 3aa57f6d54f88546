"""
Reconciliation session orchestrator.

ReconciliationSession drives one invoice import from upload to the
purchase-order handoff.  It is owned by whoever opened it (the CLI command)
and holds everything in memory; closing it discards the parsed invoice, the
decisions and the resolutions.  The only durable side effects are the
inventory records actually created.

Phases:
  1. upload    -- validate type/size, base64-encode, parse via the LLM
  2. review    -- one Decision per new line, similarity suggestions
  3. creating  -- create the 'create' decisions one by one (or through a
                  small thread pool), tracking (completed, total) progress
  4. done      -- resolutions in invoice order, purchase-order draft handoff

Failures never escape a phase: upload/parse problems land in `error`,
per-line creation problems in `creation_errors`, and the session still
reaches `done` after a partially failed commit.
"""
import base64
import logging
import mimetypes
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from config import Config
from models.decision import Decision
from models.invoice import ParsedInvoice, ParsedItem
from models.inventory import InventorySnapshot
from models.purchase_order import PurchaseOrderDraft, PurchaseOrderDraftItem
from models.result import CommitSummary, CreationFailure, Resolution
from .decisions import DecisionSet
from .handoff import PurchaseOrderHandoff
from .inventory import InventoryError
from .invoice_parser import InvoiceParseError
from .similarity import SimilarItems, get_matcher

logger = logging.getLogger(__name__)


class SessionPhase(str, Enum):
    UPLOAD = "upload"
    REVIEW = "review"
    CREATING = "creating"
    DONE = "done"
    CLOSED = "closed"


class UploadRejected(ValueError):
    """The selected file was refused before any network call."""


class SessionClosedError(RuntimeError):
    """The session was closed; its state is gone."""


class SessionStateError(RuntimeError):
    """An operation was attempted in the wrong phase."""


# Extensions mimetypes does not know on every platform
_EXTRA_MIME_TYPES = {".webp": "image/webp"}


def guess_mime_type(file_name: str) -> Optional[str]:
    suffix = Path(file_name).suffix.lower()
    if suffix in _EXTRA_MIME_TYPES:
        return _EXTRA_MIME_TYPES[suffix]
    return mimetypes.guess_type(file_name)[0]


def validate_upload(
    size: int,
    mime_type: Optional[str],
    config: Config,
) -> str:
    """Return the accepted MIME type or raise UploadRejected."""
    if mime_type not in config.allowed_mime_types:
        raise UploadRejected("Unsupported file type. Use PNG, JPEG, WebP, GIF, or PDF.")
    if size > config.max_upload_bytes:
        limit_mb = config.max_upload_bytes // (1024 * 1024)
        raise UploadRejected(f"File too large. Maximum {limit_mb}MB.")
    return mime_type


def material_payload(decision: Decision) -> dict:
    form = decision.material_form
    return {
        "type": form.type,
        "materialType": form.material_type,
        "brand": form.brand or None,
        "colour": form.colour or None,
        "spoolWeightG": form.spool_weight_g,
        "price": form.price,
    }


def consumable_payload(decision: Decision) -> dict:
    form = decision.consumable_form
    return {
        "name": form.name,
        "category": form.category,
        "unitCost": form.unit_cost or None,
    }


class ReconciliationSession:
    """
    One invoice import, from upload to purchase-order handoff.

    Usage:
        with ReconciliationSession(parser, inventory, config) as session:
            if session.upload("invoice.pdf"):
                session.decisions.set_action(1, "link")
                summary = session.commit()
                session.hand_off()
    """

    def __init__(
        self,
        parser,
        inventory,
        config: Optional[Config] = None,
        matcher=None,
        handoff: Optional[PurchaseOrderHandoff] = None,
        snapshot: Optional[InventorySnapshot] = None,
    ):
        self.config = config or Config()
        self.parser = parser
        self.inventory = inventory
        self.matcher = matcher or get_matcher(self.config)
        self.handoff = handoff or PurchaseOrderHandoff(self.config)

        self.phase = SessionPhase.UPLOAD
        self.error: Optional[str] = None
        self.warnings: list[str] = []
        self.file_name: Optional[str] = None
        self._file_path: Optional[Path] = None

        self.invoice: Optional[ParsedInvoice] = None
        self._decisions: Optional[DecisionSet] = None
        self.summary: Optional[CommitSummary] = None
        self.creation_errors: list[CreationFailure] = []

        self._lock = threading.Lock()
        self._completed = 0
        self._total = 0

        # Read once; concurrent inventory edits are not seen until the next session
        self.snapshot = snapshot if snapshot is not None else self._load_snapshot()

    def _load_snapshot(self) -> InventorySnapshot:
        try:
            return self.inventory.load_snapshot()
        except InventoryError as e:
            logger.warning("Could not load inventory for duplicate detection: %s", e)
            self.warnings.append(f"Existing inventory unavailable, no suggestions: {e}")
            return InventorySnapshot()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def __enter__(self) -> "ReconciliationSession":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self.phase == SessionPhase.CLOSED

    def close(self) -> None:
        """
        End the session at any phase.

        A running commit stops issuing creation calls; a call already in
        flight finishes but its result is discarded.
        """
        if self.closed:
            return
        logger.info("Closing reconciliation session (was %s)", self.phase.value)
        self.phase = SessionPhase.CLOSED
        self.invoice = None
        self._decisions = None
        self.summary = None

    def _require(self, *phases: SessionPhase) -> None:
        if self.closed:
            raise SessionClosedError("Reconciliation session is closed")
        if self.phase not in phases:
            allowed = ", ".join(p.value for p in phases)
            raise SessionStateError(f"Not allowed in phase '{self.phase.value}' (needs {allowed})")

    # ------------------------------------------------------------------
    # Phase 1: upload
    # ------------------------------------------------------------------

    def upload(self, path: str | Path) -> bool:
        """
        Validate, encode and parse an invoice file.
        Returns True and moves to review on success; otherwise sets `error`.
        """
        self._require(SessionPhase.UPLOAD)
        path = Path(path)
        try:
            size = path.stat().st_size
        except OSError as e:
            self.error = f"Could not read {path.name}: {e.strerror or e}"
            return False
        try:
            mime_type = validate_upload(size, guess_mime_type(path.name), self.config)
        except UploadRejected as e:
            self.error = str(e)
            return False

        self.file_name = path.name
        self._file_path = path
        try:
            data = path.read_bytes()
        except OSError as e:
            self.error = f"Could not read {path.name}: {e.strerror or e}"
            return False
        return self._parse(data, mime_type)

    def upload_bytes(self, data: bytes, file_name: str, mime_type: Optional[str] = None) -> bool:
        """Same as upload() for content that is already in memory."""
        self._require(SessionPhase.UPLOAD)
        mime_type = mime_type or guess_mime_type(file_name)
        try:
            mime_type = validate_upload(len(data), mime_type, self.config)
        except UploadRejected as e:
            self.error = str(e)
            return False
        self.file_name = file_name
        self._file_path = None
        return self._parse(data, mime_type)

    def retry(self) -> bool:
        """Parse the last selected file again after a failure."""
        self._require(SessionPhase.UPLOAD)
        if self._file_path is None:
            self.error = "No file selected."
            return False
        return self.upload(self._file_path)

    def dismiss_error(self) -> None:
        """Clear the upload error and the remembered file ('Try again')."""
        self.error = None
        self.file_name = None
        self._file_path = None

    def _parse(self, data: bytes, mime_type: str) -> bool:
        self.error = None
        encoded = base64.b64encode(data).decode("ascii")
        try:
            invoice = self.parser.parse(encoded, mime_type, self.snapshot, file_name=self.file_name)
        except InvoiceParseError as e:
            self.error = str(e) or "Failed to parse invoice."
            return False
        except Exception as e:
            logger.error("Invoice upload failed for %s: %s", self.file_name, e, exc_info=True)
            self.error = "Failed to upload. Check your connection."
            return False

        if self.closed:
            logger.info("Session closed while parsing; discarding result")
            return False

        self.invoice = invoice
        self._decisions = DecisionSet.for_invoice(invoice)
        self.phase = SessionPhase.REVIEW
        logger.info(
            "Review ready for %s: %d matched, %d new",
            self.file_name, len(invoice.items) - len(self._decisions), len(self._decisions),
        )
        return True

    # ------------------------------------------------------------------
    # Phase 2: review
    # ------------------------------------------------------------------

    @property
    def decisions(self) -> DecisionSet:
        if self.closed or self._decisions is None:
            raise SessionClosedError("No decisions: session closed or nothing parsed yet")
        return self._decisions

    @property
    def matched_items(self) -> list[tuple[int, ParsedItem]]:
        self._require(SessionPhase.REVIEW, SessionPhase.CREATING, SessionPhase.DONE)
        return [(i, item) for i, item in enumerate(self.invoice.items) if not item.is_new]

    @property
    def new_items(self) -> list[tuple[int, ParsedItem, Decision]]:
        self._require(SessionPhase.REVIEW, SessionPhase.CREATING, SessionPhase.DONE)
        return [
            (i, item, self._decisions[i])
            for i, item in enumerate(self.invoice.items)
            if item.is_new
        ]

    def suggestions(self, index: int) -> SimilarItems:
        """Existing records that look like the same product as line `index`."""
        self._require(SessionPhase.REVIEW)
        item = self.invoice.items[index]
        return self.matcher.find_similar(item.display_name, self.snapshot)

    def use_suggestion(self, index: int, kind: str, inventory_id: str) -> None:
        """'Use this': link line `index` to a suggested existing record."""
        self._require(SessionPhase.REVIEW)
        if kind == "material":
            if self.snapshot.material(inventory_id) is None:
                raise KeyError(f"Unknown material: {inventory_id}")
            self._decisions.link_material(index, inventory_id)
        elif kind == "consumable":
            if self.snapshot.consumable(inventory_id) is None:
                raise KeyError(f"Unknown consumable: {inventory_id}")
            self._decisions.link_consumable(index, inventory_id)
        else:
            raise ValueError(f"Unknown inventory kind: {kind}")

    # ------------------------------------------------------------------
    # Phase 3: creating
    # ------------------------------------------------------------------

    @property
    def progress(self) -> tuple[int, int]:
        """(completed, total) creation calls for the running or last commit."""
        with self._lock:
            return self._completed, self._total

    def commit(self) -> CommitSummary:
        """
        Create every 'create' decision, resolve every 'link' decision, and
        move to done.  Individual failures are recorded, never raised.
        """
        self._require(SessionPhase.REVIEW)
        invoice = self.invoice
        entries = self._decisions.consume()
        to_create = [(i, d) for i, d in entries if d.action == "create"]
        to_link = [(i, d) for i, d in entries if d.action == "link"]

        self.phase = SessionPhase.CREATING
        self.creation_errors = []
        with self._lock:
            self._completed, self._total = 0, len(to_create)
        logger.info(
            "Committing %d decision(s): %d to create, %d to link",
            len(entries), len(to_create), len(to_link),
        )

        created = self._run_creations(to_create)

        resolutions: dict[int, Resolution] = dict(created)
        for index, decision in to_link:
            resolutions[index] = self._resolve_link(index, decision)
        for index, decision in entries:
            if decision.action not in ("create", "link"):
                message = f"Unknown action '{decision.action}'"
                logger.warning("Line %d: %s", index, message)
                self.warnings.append(f"Line {index + 1}: {message}")
                resolutions[index] = Resolution(
                    index=index, source="unresolved", error=message,
                )
        for index, item in enumerate(invoice.items):
            if not item.is_new:
                resolutions[index] = Resolution(
                    index=index,
                    inventory_id=item.material_id or item.consumable_id,
                    kind="material" if item.material_id else "consumable",
                    source="matched",
                )

        cancelled = self.closed
        ordered = []
        for index in range(len(invoice.items)):
            res = resolutions.get(index)
            if res is None:
                res = Resolution(index=index, source="unresolved", error="Session closed before creation")
            ordered.append(res)

        summary = CommitSummary(
            resolutions=ordered,
            failures=list(self.creation_errors),
            attempted=len(to_create),
            created_count=sum(1 for r in ordered if r.source == "created"),
            linked_count=sum(1 for r in ordered if r.source == "linked"),
            cancelled=cancelled,
        )

        if cancelled:
            logger.info("Commit finished after session close; results discarded")
            return summary

        self.summary = summary
        self.phase = SessionPhase.DONE
        logger.info(
            "Commit complete: %d created, %d linked, %d failed",
            summary.created_count, summary.linked_count, len(summary.failures),
        )
        return summary

    def _run_creations(self, to_create: list[tuple[int, Decision]]) -> dict[int, Resolution]:
        results: dict[int, Resolution] = {}
        workers = max(1, int(self.config.creation_workers or 1))

        if workers == 1 or len(to_create) <= 1:
            for index, decision in to_create:
                if self.closed:
                    break
                resolution = self._create_one(index, decision)
                if not self.closed:
                    results[index] = resolution
                self._tick()
            return results

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="inventory-create") as pool:
            futures = {
                pool.submit(self._create_unless_closed, index, decision): index
                for index, decision in to_create
            }
            for future in as_completed(futures):
                resolution = future.result()
                if resolution is not None and not self.closed:
                    results[futures[future]] = resolution
                self._tick()
        return results

    def _tick(self) -> None:
        with self._lock:
            self._completed += 1
            completed, total = self._completed, self._total
        logger.debug("Creation progress: %d/%d", completed, total)

    def _create_unless_closed(self, index: int, decision: Decision) -> Optional[Resolution]:
        if self.closed:
            return None
        return self._create_one(index, decision)

    def _create_one(self, index: int, decision: Decision) -> Resolution:
        kind = decision.category
        try:
            if kind == "material":
                new_id = self.inventory.create_material(material_payload(decision))
            else:
                new_id = self.inventory.create_consumable(consumable_payload(decision))
        except InventoryError as e:
            return self._failed(index, kind, f"Failed to create {kind}: {e}")
        except Exception as e:
            logger.error("Unexpected error creating %s for line %d: %s", kind, index, e, exc_info=True)
            return self._failed(index, kind, f"Failed to create {kind}: {e}")
        return Resolution(index=index, inventory_id=new_id, kind=kind, source="created")

    def _failed(self, index: int, kind: str, message: str) -> Resolution:
        logger.warning("Line %d: %s", index, message)
        with self._lock:
            self.creation_errors.append(CreationFailure(index=index, kind=kind, message=message))
        return Resolution(index=index, kind=kind, source="failed", error=message)

    def _resolve_link(self, index: int, decision: Decision) -> Resolution:
        if decision.linked_id:
            return Resolution(
                index=index,
                inventory_id=decision.linked_id,
                kind=decision.category,
                source="linked",
            )
        message = f"No existing {decision.category} selected to link"
        logger.warning("Line %d: %s", index, message)
        self.warnings.append(f"Line {index + 1}: {message}")
        return Resolution(index=index, kind=decision.category, source="unresolved", error=message)

    # ------------------------------------------------------------------
    # Phase 4: done
    # ------------------------------------------------------------------

    @property
    def created_count(self) -> int:
        self._require(SessionPhase.DONE)
        return self.summary.created_count

    @property
    def resolutions(self) -> list[Resolution]:
        self._require(SessionPhase.DONE)
        return self.summary.resolutions

    def build_purchase_order_draft(self) -> PurchaseOrderDraft:
        """Every invoice line, in order, with its matched/linked/created id."""
        self._require(SessionPhase.DONE)
        invoice = self.invoice
        items = []
        for item, res in zip(invoice.items, self.summary.resolutions):
            material_id = res.inventory_id if res.kind == "material" else None
            consumable_id = res.inventory_id if res.kind == "consumable" else None
            if material_id:
                item_type = "material"
            elif consumable_id:
                item_type = "consumable"
            else:
                item_type = "other"
            items.append(PurchaseOrderDraftItem(
                type=item_type,
                material_id=material_id,
                consumable_id=consumable_id,
                description=item.description,
                quantity=item.quantity,
                unit_cost=item.unit_cost,
            ))
        return PurchaseOrderDraft(
            supplier_name=invoice.supplier_name,
            invoice_number=invoice.invoice_number,
            expected_delivery=invoice.expected_delivery,
            notes=invoice.notes,
            items=items,
        )

    def hand_off(self) -> dict[str, Any]:
        """Pass the draft to purchase-order creation and end the session."""
        draft = self.build_purchase_order_draft()
        result = self.handoff.send(draft)
        self.close()
        return result
