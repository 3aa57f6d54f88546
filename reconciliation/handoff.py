"""
Purchase-order draft handoff.

After reconciliation the full item list (every line carrying a concrete
materialId / consumableId) is passed to purchase-order creation.  The
transfer is short-lived: the draft is written to a single JSON file in the
handoff directory with an expiry time, and the purchase-order side reads it
once.  Optionally the draft is also pushed to an external URL as a
templated JSON payload (Jinja2 template from the config directory).
"""
import json
import logging
import os
import urllib.error
import urllib.request
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from jinja2 import FileSystemLoader, TemplateError, TemplateNotFound, select_autoescape
from jinja2.sandbox import SandboxedEnvironment

from models.purchase_order import PurchaseOrderDraft

logger = logging.getLogger(__name__)

HANDOFF_FILENAME = "invoice_to_purchase_order.json"


class PurchaseOrderHandoff:
    """Writes, reads and optionally forwards the purchase-order draft."""

    def __init__(self, config: Any) -> None:
        self.config = config
        self.path = Path(config.handoff_dir) / HANDOFF_FILENAME
        self.config_dir = Path(os.getenv("CONFIG_DIR", str(Path(__file__).parent.parent / "config")))

        self.jinja_env = SandboxedEnvironment(
            loader=FileSystemLoader(str(self.config_dir)),
            autoescape=select_autoescape(['json', 'xml']),
            keep_trailing_newline=True
        )

    # ------------------------------------------------------------------
    # Transfer file
    # ------------------------------------------------------------------

    def send(self, draft: PurchaseOrderDraft) -> Dict[str, Any]:
        """
        Hand the draft over to purchase-order creation.

        Returns a dict describing what happened (file path, expiry, and the
        webhook result when a URL is configured).
        """
        now = datetime.now(timezone.utc)
        expires = now + timedelta(minutes=self.config.handoff_ttl_minutes)
        envelope = {
            "createdAt": now.isoformat(),
            "expiresAt": expires.isoformat(),
            "draft": draft.model_dump(by_alias=True),
        }

        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".tmp")
        tmp.write_text(json.dumps(envelope, indent=2), encoding="utf-8")
        tmp.replace(self.path)
        logger.info(
            "Purchase-order draft handed off: %d item(s), expires %s",
            len(draft.items), expires.isoformat(),
        )

        result: Dict[str, Any] = {
            "status": "success",
            "path": str(self.path),
            "expires_at": envelope["expiresAt"],
        }
        if self.config.po_handoff_url:
            result["webhook"] = self.send_webhook(draft, envelope["createdAt"])
        return result

    def load(self, consume: bool = True) -> Optional[PurchaseOrderDraft]:
        """
        Read the pending draft, or None if there is none or it has expired.
        The file is removed once read (consume=True) or once expired.
        """
        if not self.path.exists():
            return None
        try:
            envelope = json.loads(self.path.read_text(encoding="utf-8"))
            expires = datetime.fromisoformat(envelope["expiresAt"])
            draft = PurchaseOrderDraft.model_validate(envelope["draft"])
        except (OSError, ValueError, KeyError) as e:
            logger.warning("Discarding unreadable handoff file %s: %s", self.path, e)
            self.path.unlink(missing_ok=True)
            return None

        if datetime.now(timezone.utc) >= expires:
            logger.info("Purchase-order handoff expired at %s", expires.isoformat())
            self.path.unlink(missing_ok=True)
            return None

        if consume:
            self.path.unlink(missing_ok=True)
        return draft

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)

    # ------------------------------------------------------------------
    # Webhook
    # ------------------------------------------------------------------

    def render_payload(self, draft: PurchaseOrderDraft, created_at: str) -> str:
        """
        Render the handoff payload using the configured Jinja2 template.
        """
        template_name = self.config.po_handoff_template
        try:
            template = self.jinja_env.get_template(template_name)
        except TemplateNotFound as e:
            logger.error("Handoff template not found: %s", template_name)
            raise ValueError(f"Handoff template '{template_name}' not found in {self.config_dir}") from e

        context = {
            "draft": draft.model_dump(by_alias=True),
            "created_at": created_at,
            "item_count": len(draft.items),
            "total": draft.total,
        }
        return template.render(**context)

    def send_webhook(self, draft: PurchaseOrderDraft, created_at: str) -> Dict[str, Any]:
        """
        Forward the draft to PO_HANDOFF_URL.

        The transfer file is already written, so a webhook problem is reported
        in the returned dict rather than raised.
        """
        if not self.config.po_handoff_url:
            return {"status": "skipped", "reason": "PO_HANDOFF_URL not configured"}
        try:
            body = self.render_payload(draft, created_at)
        except (ValueError, TemplateError) as e:
            logger.error("Handoff payload not rendered: %s", e)
            return {"status": "failed", "error": f"Template rendering failed: {e}"}

        try:
            with urllib.request.urlopen(
                self._webhook_request(body), timeout=self.config.request_timeout_seconds
            ) as response:
                logger.info("Handoff webhook accepted: HTTP %d", response.status)
                return {"status": "success", "status_code": response.status}
        except urllib.error.HTTPError as e:
            detail = e.read().decode("utf-8", errors="replace")[:500] if e.fp else e.reason
            logger.error("Handoff webhook rejected: HTTP %d %s", e.code, detail)
            return {"status": "failed", "status_code": e.code, "error": detail}
        except OSError as e:
            # URLError, timeouts, refused connections
            logger.error("Handoff webhook unreachable: %s", e)
            return {"status": "failed", "error": str(e)}

    def _webhook_request(self, body: str) -> urllib.request.Request:
        headers = {
            "Content-Type": "application/json; charset=utf-8",
            "User-Agent": "Invoice-Import-Handoff/1.0",
        }
        extra = self.config.po_handoff_headers_json
        if extra:
            try:
                headers.update({k: str(v) for k, v in json.loads(extra).items()})
            except (ValueError, AttributeError) as e:
                logger.warning("Ignoring malformed PO_HANDOFF_HEADERS: %s", e)
        return urllib.request.Request(
            self.config.po_handoff_url,
            data=body.encode("utf-8"),
            headers=headers,
            method="POST",
        )
