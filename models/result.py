from pydantic import BaseModel, Field
from typing import Optional, List, Literal


ResolutionKind = Literal["material", "consumable", "other"]

ResolutionSource = Literal[
    "matched",      # already matched by the document parser
    "created",      # new inventory record created during commit
    "linked",       # user linked the line to an existing record
    "failed",       # creation was attempted and failed
    "unresolved",   # link chosen but no record selected, or session closed
]


class Resolution(BaseModel):
    """Final mapping from one invoice line to a concrete inventory record."""
    index: int                              # position in ParsedInvoice.items
    inventory_id: Optional[str] = None
    kind: ResolutionKind = "other"
    source: ResolutionSource
    error: Optional[str] = None             # set for failed / unresolved

    @property
    def resolved(self) -> bool:
        return self.inventory_id is not None


class CreationFailure(BaseModel):
    """A visible per-item error recorded during bulk creation."""
    index: int
    kind: ResolutionKind
    message: str


class CommitSummary(BaseModel):
    """
    The outcome of a bulk commit.
    resolutions always has one entry per original invoice line, in order.
    """
    resolutions: List[Resolution] = Field(default_factory=list)
    failures: List[CreationFailure] = Field(default_factory=list)
    attempted: int = 0
    created_count: int = 0
    linked_count: int = 0
    cancelled: bool = False

    @property
    def failed_count(self) -> int:
        return sum(1 for r in self.resolutions if r.source == "failed")
