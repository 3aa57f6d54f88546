"""
Central configuration for the invoice import tool.

All paths, thresholds, and model settings are defined here.
Override via environment variables or by passing a Config instance directly.

Settings priority (highest wins):
  1. Environment variables
  2. config/import_settings.json  (admin-editable, persisted)
  3. Hardcoded defaults in this file
"""
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

# Project root (directory containing this file)
PROJECT_ROOT = Path(__file__).parent

# Default data locations (relative to project root)
DEFAULT_DATA_DIR        = PROJECT_ROOT / "data"
DEFAULT_MATERIALS_CSV   = DEFAULT_DATA_DIR / "materials.csv"
DEFAULT_CONSUMABLES_CSV = DEFAULT_DATA_DIR / "consumables.csv"
DEFAULT_HANDOFF_DIR     = PROJECT_ROOT / "output" / "handoff"

# Accepted invoice uploads
ALLOWED_MIME_TYPES = (
    "image/png",
    "image/jpeg",
    "image/webp",
    "image/gif",
    "application/pdf",
)
MAX_UPLOAD_BYTES = 20 * 1024 * 1024

# Settings file keys that also have an environment variable; a set variable wins
_ENV_VARS = {
    "llm_model":               "LLM_MODEL",
    "inventory_backend":       "INVENTORY_BACKEND",
    "inventory_api_url":       "INVENTORY_API_URL",
    "request_timeout_seconds": "REQUEST_TIMEOUT",
    "similarity_strategy":     "SIMILARITY_STRATEGY",
    "creation_workers":        "CREATION_WORKERS",
    "handoff_ttl_minutes":     "HANDOFF_TTL_MINUTES",
    "po_handoff_url":          "PO_HANDOFF_URL",
    "po_handoff_headers_json": "PO_HANDOFF_HEADERS",
    "po_handoff_template":     "PO_HANDOFF_TEMPLATE",
}


@dataclass
class Config:
    # --- LLM settings (OpenAI-compatible API, must accept image/file input) ---
    # OpenAI:   LLM_BASE_URL=https://api.openai.com/v1   LLM_API_KEY=sk-...
    # Ollama:   LLM_BASE_URL=http://localhost:11434/v1   LLM_API_KEY=ollama  (vision model)
    llm_model: str = field(
        default_factory=lambda: os.getenv("LLM_MODEL", "gpt-4o-mini")
    )
    llm_base_url: str = field(
        default_factory=lambda: os.getenv("LLM_BASE_URL", "https://api.openai.com/v1")
    )
    llm_api_key: str = field(
        default_factory=lambda: os.getenv("LLM_API_KEY", "")
    )
    llm_max_tokens: int = 4096

    # --- Inventory backend ---
    # "csv"  → data/materials.csv + data/consumables.csv (default)
    # "http" → REST inventory service at INVENTORY_API_URL
    inventory_backend: str = field(
        default_factory=lambda: os.getenv("INVENTORY_BACKEND", "csv").lower()
    )
    materials_csv: Path = field(
        default_factory=lambda: Path(os.getenv("MATERIALS_CSV", str(DEFAULT_MATERIALS_CSV)))
    )
    consumables_csv: Path = field(
        default_factory=lambda: Path(os.getenv("CONSUMABLES_CSV", str(DEFAULT_CONSUMABLES_CSV)))
    )
    inventory_api_url: Optional[str] = field(
        default_factory=lambda: os.getenv("INVENTORY_API_URL")
    )
    inventory_api_token: Optional[str] = field(
        default_factory=lambda: os.getenv("INVENTORY_API_TOKEN")
    )
    request_timeout_seconds: int = field(
        default_factory=lambda: int(os.getenv("REQUEST_TIMEOUT", "30"))
    )

    # --- Upload validation ---
    max_upload_bytes: int = MAX_UPLOAD_BYTES
    allowed_mime_types: tuple = ALLOWED_MIME_TYPES

    # --- Similarity suggestions ---
    similarity_strategy: str = field(
        default_factory=lambda: os.getenv("SIMILARITY_STRATEGY", "token").lower()
    )
    # token → word-overlap heuristic (default)
    # fuzzy → rapidfuzz token_set_ratio, ranked best-first
    material_min_token_hits:   int = 2    # material needs 2 words in common
    consumable_min_token_hits: int = 1    # consumable names are shorter
    max_suggestions:           int = 3    # per kind
    fuzzy_threshold:           int = 70   # minimum rapidfuzz score (0-100)

    # --- Bulk creation ---
    creation_workers: int = field(
        default_factory=lambda: int(os.getenv("CREATION_WORKERS", "1"))
    )
    # 1 → one creation call at a time; >1 → bounded thread pool

    # --- Purchase-order handoff ---
    handoff_dir: Path = field(
        default_factory=lambda: Path(os.getenv("HANDOFF_DIR", str(DEFAULT_HANDOFF_DIR)))
    )
    handoff_ttl_minutes: int = field(
        default_factory=lambda: int(os.getenv("HANDOFF_TTL_MINUTES", "30"))
    )
    po_handoff_url: Optional[str] = field(
        default_factory=lambda: os.getenv("PO_HANDOFF_URL")
    )
    po_handoff_headers_json: Optional[str] = field(
        default_factory=lambda: os.getenv("PO_HANDOFF_HEADERS")
    )
    po_handoff_template: str = field(
        default_factory=lambda: os.getenv("PO_HANDOFF_TEMPLATE", "purchase_order_handoff.json.j2")
    )

    def __post_init__(self) -> None:
        """Overlay runtime-tunable settings from import_settings.json if present."""
        config_dir = Path(os.getenv("CONFIG_DIR", str(PROJECT_ROOT / "config")))
        settings_file = config_dir / "import_settings.json"
        if not settings_file.exists():
            return
        _type_map: dict[str, type] = {
            "llm_model":                 str,
            "llm_max_tokens":            int,
            "inventory_backend":         str,
            "inventory_api_url":         str,
            "request_timeout_seconds":   int,
            "max_upload_bytes":          int,
            "similarity_strategy":       str,
            "material_min_token_hits":   int,
            "consumable_min_token_hits": int,
            "max_suggestions":           int,
            "fuzzy_threshold":           int,
            "creation_workers":          int,
            "handoff_ttl_minutes":       int,
            "po_handoff_url":            str,
            "po_handoff_headers_json":   str,
            "po_handoff_template":       str,
        }
        try:
            with open(settings_file, encoding="utf-8") as f:
                overrides = {k: v for k, v in json.load(f).items() if not k.startswith("_")}
            for key, val in overrides.items():
                if key in _ENV_VARS and os.getenv(_ENV_VARS[key]) is not None:
                    continue
                if key in _type_map and hasattr(self, key):
                    setattr(self, key, _type_map[key](val))
        except Exception as exc:
            logger.warning("Failed to load import_settings.json: %s", exc)

    def ensure_handoff_dir(self) -> None:
        self.handoff_dir.mkdir(parents=True, exist_ok=True)
