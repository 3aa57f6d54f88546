"""
Inventory service access.

The reconciliation flow only needs four things from the inventory subsystem:
list materials, list consumables, create a material, create a consumable.
Two backends provide them:

  - CsvInventory   -- data/materials.csv + data/consumables.csv (default)
  - HttpInventory  -- the REST inventory service (/api/materials,
                      /api/consumables) using a bearer token

Creation payloads are validated with the same rules the inventory service
applies (see models.inventory.MaterialCreate / ConsumableCreate) and a bad
draft raises InventoryValidationError with a readable message.
"""
import csv
import json
import logging
import threading
import urllib.error
import urllib.request
import uuid
from pathlib import Path
from typing import Any, Optional, Protocol

from pydantic import ValidationError

from models.inventory import (
    Consumable,
    ConsumableCreate,
    InventorySnapshot,
    Material,
    MaterialCreate,
)

logger = logging.getLogger(__name__)

MATERIAL_FIELDS = ["id", "type", "material_type", "brand", "colour", "spool_weight_g", "price"]
CONSUMABLE_FIELDS = ["id", "name", "category", "unit_cost"]


class InventoryError(RuntimeError):
    """The inventory service failed or could not be reached."""


class InventoryValidationError(InventoryError):
    """The inventory service rejected a creation payload."""


def _validation_message(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "payload"
        parts.append(f"{loc}: {err.get('msg')}")
    return "Validation failed: " + "; ".join(parts)


def validate_material(payload: dict) -> MaterialCreate:
    try:
        return MaterialCreate.model_validate(payload)
    except ValidationError as e:
        raise InventoryValidationError(_validation_message(e)) from e


def validate_consumable(payload: dict) -> ConsumableCreate:
    try:
        return ConsumableCreate.model_validate(payload)
    except ValidationError as e:
        raise InventoryValidationError(_validation_message(e)) from e


class InventoryBackend(Protocol):
    def list_materials(self) -> list[Material]: ...
    def list_consumables(self) -> list[Consumable]: ...
    def create_material(self, payload: dict) -> str: ...
    def create_consumable(self, payload: dict) -> str: ...
    def load_snapshot(self) -> InventorySnapshot: ...


class _SnapshotMixin:
    def load_snapshot(self) -> InventorySnapshot:
        """Read the current inventory once for a reconciliation session."""
        snapshot = InventorySnapshot(
            materials=self.list_materials(),
            consumables=self.list_consumables(),
        )
        logger.info(
            "Inventory snapshot: %d materials, %d consumables",
            len(snapshot.materials), len(snapshot.consumables),
        )
        return snapshot


# ---------------------------------------------------------------------------
# CSV backend
# ---------------------------------------------------------------------------

class CsvInventory(_SnapshotMixin):
    """
    Materials and consumables kept in two CSV files.

    CSV formats:
      materials.csv:   id, type, material_type, brand, colour, spool_weight_g, price
      consumables.csv: id, name, category, unit_cost

    New records are appended with a generated id.
    """

    def __init__(self, materials_csv: str | Path, consumables_csv: str | Path):
        self.materials_csv = Path(materials_csv)
        self.consumables_csv = Path(consumables_csv)
        self._lock = threading.Lock()

    def list_materials(self) -> list[Material]:
        materials = []
        for row in self._read(self.materials_csv):
            try:
                materials.append(Material(
                    id=row["id"].strip(),
                    type=(row.get("type") or "filament").strip() or "filament",
                    material_type=(row.get("material_type") or "").strip(),
                    brand=(row.get("brand") or "").strip() or None,
                    colour=(row.get("colour") or "").strip() or None,
                    spool_weight_g=(row.get("spool_weight_g") or "").strip() or 1000,
                    price=(row.get("price") or "").strip() or 0,
                ))
            except (KeyError, ValidationError) as e:
                logger.warning("Skipping bad material row %s: %s", row.get("id"), e)
        return materials

    def list_consumables(self) -> list[Consumable]:
        consumables = []
        for row in self._read(self.consumables_csv):
            try:
                consumables.append(Consumable(
                    id=row["id"].strip(),
                    name=(row.get("name") or "").strip(),
                    category=(row.get("category") or "").strip() or "other",
                ))
            except (KeyError, ValidationError) as e:
                logger.warning("Skipping bad consumable row %s: %s", row.get("id"), e)
        return consumables

    def create_material(self, payload: dict) -> str:
        data = validate_material(payload)
        new_id = f"mat_{uuid.uuid4().hex[:12]}"
        self._append(self.materials_csv, MATERIAL_FIELDS, {
            "id": new_id,
            "type": data.type,
            "material_type": data.material_type,
            "brand": data.brand or "",
            "colour": data.colour or "",
            "spool_weight_g": data.spool_weight_g,
            "price": data.price,
        })
        logger.info("Created material %s (%s)", new_id, data.material_type)
        return new_id

    def create_consumable(self, payload: dict) -> str:
        data = validate_consumable(payload)
        new_id = f"con_{uuid.uuid4().hex[:12]}"
        self._append(self.consumables_csv, CONSUMABLE_FIELDS, {
            "id": new_id,
            "name": data.name,
            "category": data.category,
            "unit_cost": "" if data.unit_cost is None else data.unit_cost,
        })
        logger.info("Created consumable %s (%s)", new_id, data.name)
        return new_id

    def status(self) -> dict:
        return {
            "materials_csv": {"path": str(self.materials_csv), "exists": self.materials_csv.exists(),
                              "count": len(self.list_materials())},
            "consumables_csv": {"path": str(self.consumables_csv), "exists": self.consumables_csv.exists(),
                                "count": len(self.list_consumables())},
        }

    def _read(self, path: Path) -> list[dict]:
        if not path.exists():
            logger.warning("Inventory CSV not found: %s -- treating as empty", path)
            return []
        with open(path, newline="", encoding="utf-8") as f:
            return list(csv.DictReader(f))

    def _append(self, path: Path, fieldnames: list[str], row: dict) -> None:
        with self._lock:
            path.parent.mkdir(parents=True, exist_ok=True)
            file_exists = path.exists() and path.stat().st_size > 0
            with open(path, "a", newline="", encoding="utf-8") as f:
                writer = csv.DictWriter(f, fieldnames=fieldnames)
                if not file_exists:
                    writer.writeheader()
                writer.writerow(row)


# ---------------------------------------------------------------------------
# HTTP backend
# ---------------------------------------------------------------------------

class HttpInventory(_SnapshotMixin):
    """
    Talks to the inventory REST service.

      GET  {base}/api/materials      -> [Material, ...]
      GET  {base}/api/consumables    -> [Consumable, ...]
      POST {base}/api/materials      -> 201 {"id": ...} | 400 {"error": ...}
      POST {base}/api/consumables    -> 201 {"id": ...} | 400 {"error": ...}
    """

    def __init__(self, base_url: str, token: Optional[str] = None, timeout: int = 30):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout

    def list_materials(self) -> list[Material]:
        return [Material.model_validate(m) for m in self._request("GET", "/api/materials") or []]

    def list_consumables(self) -> list[Consumable]:
        return [Consumable.model_validate(c) for c in self._request("GET", "/api/consumables") or []]

    def create_material(self, payload: dict) -> str:
        data = validate_material(payload)
        created = self._request("POST", "/api/materials", data.model_dump(by_alias=True))
        return self._created_id(created, "material")

    def create_consumable(self, payload: dict) -> str:
        data = validate_consumable(payload)
        created = self._request("POST", "/api/consumables", data.model_dump(by_alias=True))
        return self._created_id(created, "consumable")

    def status(self) -> dict:
        try:
            self._request("GET", "/api/consumables")
            return {"ok": True, "base_url": self.base_url}
        except InventoryError as e:
            return {"ok": False, "base_url": self.base_url, "error": str(e)}

    @staticmethod
    def _created_id(created: Any, kind: str) -> str:
        if not isinstance(created, dict) or not created.get("id"):
            raise InventoryError(f"Inventory service returned no id for new {kind}")
        logger.info("Created %s %s", kind, created["id"])
        return str(created["id"])

    def _request(self, method: str, path: str, body: Optional[dict] = None) -> Any:
        url = f"{self.base_url}{path}"
        data = json.dumps(body).encode("utf-8") if body is not None else None
        req = urllib.request.Request(url, data=data, method=method)
        req.add_header("Accept", "application/json")
        req.add_header("User-Agent", "Invoice-Import/1.0")
        if data is not None:
            req.add_header("Content-Type", "application/json; charset=utf-8")
        if self.token:
            req.add_header("Authorization", f"Bearer {self.token}")

        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as response:
                raw = response.read().decode("utf-8", errors="replace")
                return json.loads(raw) if raw else None
        except urllib.error.HTTPError as e:
            resp_body = e.read().decode("utf-8", errors="replace") if e.fp else ""
            message = _error_message(resp_body) or f"HTTP {e.code}"
            logger.error("%s %s failed: HTTP %d - %s", method, path, e.code, message)
            if e.code in (400, 422):
                raise InventoryValidationError(message) from e
            raise InventoryError(message) from e
        except urllib.error.URLError as e:
            logger.error("%s %s unreachable: %s", method, path, e.reason)
            raise InventoryError(f"Inventory service unreachable: {e.reason}") from e
        except json.JSONDecodeError as e:
            raise InventoryError(f"Inventory service returned invalid JSON: {e}") from e


def _error_message(body: str) -> Optional[str]:
    """Pull the human-readable 'error' field out of an error response."""
    if not body:
        return None
    try:
        payload = json.loads(body)
    except json.JSONDecodeError:
        return body[:200]
    if isinstance(payload, dict) and payload.get("error"):
        return str(payload["error"])
    return body[:200]


def get_inventory(config) -> CsvInventory | HttpInventory:
    """Build the inventory backend selected by config.inventory_backend."""
    if config.inventory_backend == "http":
        if not config.inventory_api_url:
            raise ValueError("INVENTORY_BACKEND=http requires INVENTORY_API_URL")
        return HttpInventory(
            config.inventory_api_url,
            token=config.inventory_api_token,
            timeout=config.request_timeout_seconds,
        )
    return CsvInventory(config.materials_csv, config.consumables_csv)
