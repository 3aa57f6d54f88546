"""
Pytest configuration and shared fixtures for the invoice import test suite.
"""
import os
import shutil
import tempfile
from pathlib import Path
from typing import Generator

import pytest

PROJECT_ROOT = Path(__file__).parent.parent
os.chdir(PROJECT_ROOT)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Provide a temporary directory for test files."""
    tmp_path = tempfile.mkdtemp(prefix="invoice_import_test_")
    yield Path(tmp_path)
    shutil.rmtree(tmp_path, ignore_errors=True)


@pytest.fixture
def test_config(temp_dir: Path, monkeypatch) -> "Config":
    """Provide a test configuration with isolated directories."""
    monkeypatch.setenv("CONFIG_DIR", str(temp_dir / "config"))
    from config import Config

    config = Config()
    config.inventory_backend = "csv"
    config.materials_csv = temp_dir / "data" / "materials.csv"
    config.consumables_csv = temp_dir / "data" / "consumables.csv"
    config.handoff_dir = temp_dir / "output" / "handoff"
    config.similarity_strategy = "token"
    config.creation_workers = 1
    config.po_handoff_url = None

    config.materials_csv.parent.mkdir(parents=True, exist_ok=True)
    return config


@pytest.fixture
def sample_materials_csv(test_config) -> Path:
    """Create a sample materials CSV file."""
    content = """id,type,material_type,brand,colour,spool_weight_g,price
m1,filament,PLA,eSun,Black,1000,25.00
m2,filament,PETG,Polymaker,White,1000,32.00
m3,filament,ABS,Bambu Lab,Grey,1000,29.00
m4,resin,Resin,Elegoo,Grey,1000,45.00
"""
    test_config.materials_csv.write_text(content)
    return test_config.materials_csv


@pytest.fixture
def sample_consumables_csv(test_config) -> Path:
    """Create a sample consumables CSV file."""
    content = """id,name,category,unit_cost
c1,Brass Nozzle 0.4mm,nozzle,4.50
c2,Textured PEI Build Plate,build_plate,39.00
c3,GT2 Timing Belt 6mm,belt,12.00
"""
    test_config.consumables_csv.write_text(content)
    return test_config.consumables_csv


@pytest.fixture
def sample_snapshot() -> "InventorySnapshot":
    """An in-memory inventory matching the sample CSV files."""
    from models.inventory import Consumable, InventorySnapshot, Material

    return InventorySnapshot(
        materials=[
            Material(id="m1", type="filament", material_type="PLA", brand="eSun", colour="Black", price=25),
            Material(id="m2", type="filament", material_type="PETG", brand="Polymaker", colour="White", price=32),
            Material(id="m3", type="filament", material_type="ABS", brand="Bambu Lab", colour="Grey", price=29),
            Material(id="m4", type="resin", material_type="Resin", brand="Elegoo", colour="Grey", price=45),
        ],
        consumables=[
            Consumable(id="c1", name="Brass Nozzle 0.4mm", category="nozzle"),
            Consumable(id="c2", name="Textured PEI Build Plate", category="build_plate"),
            Consumable(id="c3", name="GT2 Timing Belt 6mm", category="belt"),
        ],
    )


@pytest.fixture
def sample_parsed_invoice() -> dict:
    """Parser output: one matched material and one new material."""
    return {
        "supplierName": "Filament Warehouse Pty Ltd",
        "invoiceNumber": "INV-5521",
        "expectedDelivery": "2026-03-15",
        "notes": "Net 14",
        "items": [
            {
                "type": "material",
                "materialId": "m1",
                "consumableId": None,
                "description": "Black PLA 1kg",
                "quantity": 4,
                "unitCost": 24.5,
                "isNew": False,
                "suggestedName": None,
                "suggestedCategory": None,
            },
            {
                "type": "other",
                "materialId": None,
                "consumableId": None,
                "description": "eSun PETG Red",
                "quantity": 2,
                "unitCost": 25,
                "isNew": True,
                "suggestedName": "eSun PETG Red",
                "suggestedCategory": "material",
            },
        ],
    }


@pytest.fixture
def mixed_parsed_invoice() -> dict:
    """Parser output with matched, new material and new consumable lines."""
    return {
        "supplierName": "Maker Parts Co",
        "invoiceNumber": "MP-204",
        "expectedDelivery": None,
        "notes": None,
        "items": [
            {"type": "consumable", "consumableId": "c1", "description": "Brass Nozzle 0.4mm",
             "quantity": 10, "unitCost": 4.2, "isNew": False},
            {"type": "other", "description": "Hardened Steel 0.4mm Nozzle", "quantity": 3,
             "unitCost": 12.5, "isNew": True, "suggestedName": "Hardened Steel 0.4mm Nozzle",
             "suggestedCategory": "consumable"},
            {"type": "other", "description": "Elegoo ABS-Like Resin Grey 1kg", "quantity": 2,
             "unitCost": 39.9, "isNew": True, "suggestedName": "Elegoo ABS-Like Resin Grey",
             "suggestedCategory": "material"},
            {"type": "material", "materialId": "m2", "description": "PETG White 1kg",
             "quantity": 5, "unitCost": 31, "isNew": False},
            {"type": "other", "description": "Capricorn PTFE Tube 1m", "quantity": 1,
             "unitCost": 15, "isNew": True, "suggestedName": "Capricorn PTFE Tube",
             "suggestedCategory": "consumable"},
        ],
    }


class FakeParser:
    """Stands in for InvoiceParser; returns a fixed invoice or raises."""

    def __init__(self, invoice: dict | None = None, error: Exception | None = None):
        self.invoice = invoice
        self.error = error
        self.calls: list[dict] = []

    def parse(self, file_b64, mime_type, snapshot, file_name="invoice"):
        from models.invoice import ParsedInvoice

        self.calls.append({"file_b64": file_b64, "mime_type": mime_type, "file_name": file_name})
        if self.error is not None:
            raise self.error
        return ParsedInvoice.model_validate(self.invoice)


class FakeInventory:
    """
    In-memory inventory service.

    fail_names: creation payloads whose name / materialType is in this set
    are rejected with InventoryError.
    """

    def __init__(self, snapshot=None, fail_names: set | None = None):
        from models.inventory import InventorySnapshot

        self.snapshot = snapshot or InventorySnapshot()
        self.fail_names = fail_names or set()
        self.created: list[tuple[str, dict]] = []
        self.on_create = None

    def load_snapshot(self):
        return self.snapshot

    def list_materials(self):
        return self.snapshot.materials

    def list_consumables(self):
        return self.snapshot.consumables

    def create_material(self, payload: dict) -> str:
        from reconciliation.inventory import InventoryError, validate_material

        if self.on_create:
            self.on_create(payload)
        data = validate_material(payload)
        if data.material_type in self.fail_names:
            raise InventoryError("Material limit reached (10).")
        self.created.append(("material", payload))
        return f"new-mat-{len(self.created)}"

    def create_consumable(self, payload: dict) -> str:
        from reconciliation.inventory import InventoryError, validate_consumable

        if self.on_create:
            self.on_create(payload)
        data = validate_consumable(payload)
        if data.name in self.fail_names:
            raise InventoryError("Failed to create consumable")
        self.created.append(("consumable", payload))
        return f"new-con-{len(self.created)}"


@pytest.fixture
def fake_inventory(sample_snapshot) -> FakeInventory:
    return FakeInventory(sample_snapshot)


@pytest.fixture
def invoice_image(temp_dir: Path) -> Path:
    """A small file with an accepted image extension."""
    path = temp_dir / "invoice.png"
    path.write_bytes(b"\x89PNG\r\n\x1a\n" + b"\x00" * 64)
    return path


@pytest.fixture
def make_session(test_config, fake_inventory):
    """Factory for a ReconciliationSession wired to fakes."""
    from reconciliation.session import ReconciliationSession

    def _make(invoice: dict | None = None, error: Exception | None = None, inventory=None):
        parser = FakeParser(invoice=invoice, error=error)
        return ReconciliationSession(parser, inventory or fake_inventory, test_config)

    return _make


# Configure pytest markers
def pytest_configure(config):
    """Configure custom pytest markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "slow: Slow tests")
