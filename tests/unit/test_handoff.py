"""
Unit tests for the purchase-order draft handoff.
"""
import json
import os
import threading
from datetime import datetime, timedelta, timezone
from http.server import BaseHTTPRequestHandler, HTTPServer
from pathlib import Path

import pytest

from bootstrap import ensure_config_files
from models.purchase_order import PurchaseOrderDraft, PurchaseOrderDraftItem
from reconciliation.handoff import HANDOFF_FILENAME, PurchaseOrderHandoff


@pytest.fixture
def draft() -> PurchaseOrderDraft:
    return PurchaseOrderDraft(
        supplier_name="Filament Warehouse Pty Ltd",
        invoice_number="INV-5521",
        expected_delivery="2026-03-15",
        items=[
            PurchaseOrderDraftItem(type="material", material_id="m1", description="Black PLA 1kg",
                                   quantity=4, unit_cost=24.5),
            PurchaseOrderDraftItem(type="material", material_id="mat_abc", description="eSun PETG Red",
                                   quantity=2, unit_cost=25),
        ],
    )


@pytest.mark.unit
class TestTransferFile:

    def test_send_and_load(self, test_config, draft):
        handoff = PurchaseOrderHandoff(test_config)
        result = handoff.send(draft)

        assert result["status"] == "success"
        assert Path(result["path"]).name == HANDOFF_FILENAME

        envelope = json.loads(handoff.path.read_text())
        assert envelope["draft"]["items"][1]["materialId"] == "mat_abc"
        assert envelope["draft"]["supplierName"] == "Filament Warehouse Pty Ltd"

        loaded = handoff.load()
        assert loaded == draft
        assert not handoff.path.exists()

    def test_load_without_consume(self, test_config, draft):
        handoff = PurchaseOrderHandoff(test_config)
        handoff.send(draft)
        assert handoff.load(consume=False) is not None
        assert handoff.load() is not None
        assert handoff.load() is None

    def test_expired_draft_is_discarded(self, test_config, draft):
        handoff = PurchaseOrderHandoff(test_config)
        handoff.send(draft)
        envelope = json.loads(handoff.path.read_text())
        envelope["expiresAt"] = (datetime.now(timezone.utc) - timedelta(minutes=1)).isoformat()
        handoff.path.write_text(json.dumps(envelope))

        assert handoff.load() is None
        assert not handoff.path.exists()

    def test_corrupt_file_is_discarded(self, test_config):
        handoff = PurchaseOrderHandoff(test_config)
        handoff.path.parent.mkdir(parents=True, exist_ok=True)
        handoff.path.write_text("{not json")

        assert handoff.load() is None
        assert not handoff.path.exists()

    def test_nothing_pending(self, test_config):
        assert PurchaseOrderHandoff(test_config).load() is None

    def test_draft_total(self, draft):
        assert draft.total == 148.0


@pytest.mark.unit
class TestWebhook:

    def test_skipped_without_url(self, test_config, draft):
        result = PurchaseOrderHandoff(test_config).send_webhook(draft, "2026-03-01T00:00:00+00:00")
        assert result["status"] == "skipped"

    def test_render_default_template(self, test_config, draft):
        ensure_config_files(Path(os.environ["CONFIG_DIR"]))
        handoff = PurchaseOrderHandoff(test_config)

        payload = json.loads(handoff.render_payload(draft, "2026-03-01T00:00:00+00:00"))

        assert payload["event"] == "invoice_to_purchase_order"
        assert payload["itemCount"] == 2
        assert payload["total"] == 148.0
        assert payload["invoiceNumber"] == "INV-5521"
        assert payload["notes"] is None
        assert [i["materialId"] for i in payload["items"]] == ["m1", "mat_abc"]

    def test_missing_template(self, test_config, draft):
        test_config.po_handoff_template = "nope.json.j2"
        with pytest.raises(ValueError, match="not found"):
            PurchaseOrderHandoff(test_config).render_payload(draft, "2026-03-01T00:00:00+00:00")

    def test_posts_rendered_payload_with_headers(self, test_config, draft):
        ensure_config_files(Path(os.environ["CONFIG_DIR"]))
        received = {}

        class Handler(BaseHTTPRequestHandler):
            def do_POST(self):
                length = int(self.headers["Content-Length"])
                received["body"] = json.loads(self.rfile.read(length))
                received["token"] = self.headers.get("X-Api-Key")
                self.send_response(202 if received["token"] else 400)
                self.end_headers()
                self.wfile.write(b"missing key")

            def log_message(self, *args):
                pass

        server = HTTPServer(("127.0.0.1", 0), Handler)
        thread = threading.Thread(target=server.serve_forever, daemon=True)
        thread.start()
        try:
            test_config.po_handoff_url = f"http://127.0.0.1:{server.server_port}/po"
            test_config.po_handoff_headers_json = '{"X-Api-Key": "secret"}'
            accepted = PurchaseOrderHandoff(test_config).send(draft)["webhook"]

            test_config.po_handoff_headers_json = "not json"
            rejected = PurchaseOrderHandoff(test_config).send_webhook(draft, "2026-03-01T00:00:00+00:00")
        finally:
            server.shutdown()
            server.server_close()

        assert accepted == {"status": "success", "status_code": 202}
        assert received["body"]["itemCount"] == 2
        assert rejected["status"] == "failed"
        assert rejected["status_code"] == 400
        assert rejected["error"] == "missing key"

    def test_unreachable_url_reports_failure(self, test_config, draft):
        ensure_config_files(Path(os.environ["CONFIG_DIR"]))
        test_config.po_handoff_url = "http://127.0.0.1:9/handoff"
        test_config.request_timeout_seconds = 1

        result = PurchaseOrderHandoff(test_config).send(draft)

        assert result["status"] == "success"
        assert result["webhook"]["status"] == "failed"


@pytest.mark.unit
class TestBootstrap:

    def test_restores_and_repairs(self, temp_dir):
        config_dir = temp_dir / "cfg"
        restored = ensure_config_files(config_dir)
        assert "import_settings.json" in restored
        assert "purchase_order_handoff.json.j2" in restored

        (config_dir / "import_settings.json").write_text("{broken")
        assert ensure_config_files(config_dir) == ["import_settings.json"]
        json.loads((config_dir / "import_settings.json").read_text())
