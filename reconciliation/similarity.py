"""
Duplicate suggestions for new invoice lines.

Given a detected line-item name, find existing materials and consumables that
are plausibly the same product so the user can link instead of creating a
near-duplicate.  Two interchangeable strategies:

  - TokenSimilarityMatcher  -- word overlap (default).  A material needs 2
    words in common with "<type> <brand> <colour>", a consumable 1 word in
    common with its name.  Results keep inventory order.
  - FuzzySimilarityMatcher  -- rapidfuzz token_set_ratio above a threshold,
    ranked best-first.

Both are advisory only: misses and irrelevant suggestions are acceptable.
"""
import logging
import re
from dataclasses import dataclass, field
from typing import Optional

from rapidfuzz import fuzz

from models.inventory import Consumable, InventorySnapshot, Material

logger = logging.getLogger(__name__)

# Separators between words in an invoice description
_SPLIT_RE = re.compile(r"[\s\-_,]+")

# Words of this length or shorter are noise ("of", "x1", "kg")
MIN_TOKEN_LENGTH = 3

MAX_SUGGESTIONS = 3


def tokenize(name: Optional[str]) -> list[str]:
    """Lower-case and split a name, dropping tokens of 2 characters or fewer."""
    if not name:
        return []
    return [w for w in _SPLIT_RE.split(name.lower()) if len(w) >= MIN_TOKEN_LENGTH]


def material_target(material: Material) -> str:
    """Comparison string for a material: subtype, brand and colour."""
    return f"{material.material_type} {material.brand or ''} {material.colour or ''}".lower()


def consumable_target(consumable: Consumable) -> str:
    return consumable.name.lower()


def _token_hits(tokens: list[str], target: str) -> int:
    return sum(1 for t in tokens if t in target)


@dataclass
class SimilarItems:
    """Capped suggestion lists, one per inventory kind."""
    materials: list[Material] = field(default_factory=list)
    consumables: list[Consumable] = field(default_factory=list)

    def __bool__(self) -> bool:
        return bool(self.materials or self.consumables)


class TokenSimilarityMatcher:
    """Word-overlap heuristic."""

    def __init__(
        self,
        material_min_hits: int = 2,
        consumable_min_hits: int = 1,
        limit: int = MAX_SUGGESTIONS,
    ):
        self.material_min_hits = material_min_hits
        self.consumable_min_hits = consumable_min_hits
        self.limit = limit

    def similar_materials(self, name: Optional[str], materials: list[Material]) -> list[Material]:
        tokens = tokenize(name)
        if not tokens:
            return []
        hits = [
            m for m in materials
            if _token_hits(tokens, material_target(m)) >= self.material_min_hits
        ]
        return hits[: self.limit]

    def similar_consumables(self, name: Optional[str], consumables: list[Consumable]) -> list[Consumable]:
        tokens = tokenize(name)
        if not tokens:
            return []
        hits = [
            c for c in consumables
            if _token_hits(tokens, consumable_target(c)) >= self.consumable_min_hits
        ]
        return hits[: self.limit]

    def find_similar(self, name: Optional[str], snapshot: InventorySnapshot) -> SimilarItems:
        return SimilarItems(
            materials=self.similar_materials(name, snapshot.materials),
            consumables=self.similar_consumables(name, snapshot.consumables),
        )


class FuzzySimilarityMatcher:
    """rapidfuzz scorer with the same interface, ranked best-first."""

    def __init__(self, threshold: int = 70, limit: int = MAX_SUGGESTIONS):
        self.threshold = threshold
        self.limit = limit

    def _rank(self, name: str, candidates: list, target_fn) -> list:
        query = " ".join(tokenize(name))
        if not query:
            return []
        scored = []
        for position, candidate in enumerate(candidates):
            score = fuzz.token_set_ratio(query, target_fn(candidate))
            if score >= self.threshold:
                scored.append((score, position, candidate))
        # Stable on ties: inventory order decides
        scored.sort(key=lambda s: (-s[0], s[1]))
        logger.debug(
            "Fuzzy suggestions for '%s': %s",
            name, [(round(s, 1), target_fn(c)) for s, _, c in scored[: self.limit]],
        )
        return [c for _, _, c in scored[: self.limit]]

    def similar_materials(self, name: Optional[str], materials: list[Material]) -> list[Material]:
        return self._rank(name or "", materials, material_target)

    def similar_consumables(self, name: Optional[str], consumables: list[Consumable]) -> list[Consumable]:
        return self._rank(name or "", consumables, consumable_target)

    def find_similar(self, name: Optional[str], snapshot: InventorySnapshot) -> SimilarItems:
        return SimilarItems(
            materials=self.similar_materials(name, snapshot.materials),
            consumables=self.similar_consumables(name, snapshot.consumables),
        )


def get_matcher(config) -> TokenSimilarityMatcher | FuzzySimilarityMatcher:
    """Build the matcher selected by config.similarity_strategy."""
    strategy = (config.similarity_strategy or "token").lower()
    if strategy == "fuzzy":
        return FuzzySimilarityMatcher(
            threshold=config.fuzzy_threshold,
            limit=config.max_suggestions,
        )
    if strategy != "token":
        logger.warning("Unknown similarity strategy '%s' -- using token overlap", strategy)
    return TokenSimilarityMatcher(
        material_min_hits=config.material_min_token_hits,
        consumable_min_hits=config.consumable_min_token_hits,
        limit=config.max_suggestions,
    )
