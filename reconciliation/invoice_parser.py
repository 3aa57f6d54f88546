"""
OpenAI-compatible document understanding for supplier invoices.

The uploaded invoice (photo, scan or PDF) is sent to a vision-capable LLM
together with the user's existing materials and consumables, and the model
returns the invoice as JSON: supplier, invoice number, expected delivery,
notes, and every line item either matched to an inventory id or flagged
isNew with a suggested name and category.

Works with any OpenAI-compatible backend that accepts image input:
  - OpenAI:   LLM_BASE_URL=https://api.openai.com/v1   LLM_API_KEY=sk-...
  - Ollama:   LLM_BASE_URL=http://localhost:11434/v1   LLM_API_KEY=ollama
"""
import json
import logging
import re
from typing import Optional

from pydantic import ValidationError

from models.invoice import ParsedInvoice
from models.inventory import InventorySnapshot

logger = logging.getLogger(__name__)


class InvoiceParseError(ValueError):
    """The document could not be turned into a ParsedInvoice."""


# ---------------------------------------------------------------------------
# Prompt templates
# ---------------------------------------------------------------------------

_SYSTEM_PROMPT = """You are a purchase order assistant for a 3D printing business. Extract line items from supplier invoices.

EXISTING MATERIALS IN INVENTORY:
{materials}

EXISTING CONSUMABLES IN INVENTORY:
{consumables}

TASK:
1. Extract the supplier name from the invoice
2. Extract every line item: description, quantity, unit cost (before tax)
3. For each item, determine if it matches an existing material or consumable:
   - If it matches a material -> set type to "material" and include the materialId
   - If it matches a consumable -> set type to "consumable" and include the consumableId
   - If no match -> set type to "other" and set isNew=true with a suggested product name and category ("material" or "consumable")
4. Extract the expected delivery date if mentioned (YYYY-MM-DD)
5. Extract invoice/reference number if present

IMPORTANT RULES:
- Return ONLY the JSON object -- no markdown, no explanation, no code fences
- All monetary amounts must be plain numbers (no currency symbols, no commas)
- Quantities are whole numbers
- Use null for any field not found in the invoice

Return a JSON object with exactly this structure:
{{
  "supplierName": "string or null",
  "invoiceNumber": "string or null",
  "expectedDelivery": "YYYY-MM-DD or null",
  "items": [
    {{
      "type": "material | consumable | other",
      "materialId": "existing material id or null",
      "consumableId": "existing consumable id or null",
      "description": "string",
      "quantity": integer,
      "unitCost": number,
      "isNew": boolean,
      "suggestedName": "string or null",
      "suggestedCategory": "material | consumable | null"
    }}
  ],
  "notes": "payment terms or other relevant notes, or null"
}}"""

_USER_PROMPT = (
    "Extract all line items from this supplier invoice. "
    "Match items to existing materials/consumables where possible."
)


def _inventory_context(snapshot: InventorySnapshot) -> tuple[str, str]:
    """Render the inventory as bullet lists the model can match against."""
    materials = "\n".join(
        f"- {m.label} [category: {m.type}] [ID: {m.id}]" for m in snapshot.materials
    )
    consumables = "\n".join(
        f"- {c.name}{f' [{c.category}]' if c.category else ''} [ID: {c.id}]"
        for c in snapshot.consumables
    )
    return materials or "None configured.", consumables or "None configured."


def strip_data_url(data: str) -> str:
    """'data:image/png;base64,AAAA' -> 'AAAA'."""
    comma = data.find(",")
    return data[comma + 1:] if comma != -1 else data


# ---------------------------------------------------------------------------
# InvoiceParser
# ---------------------------------------------------------------------------

class InvoiceParser:
    """
    Uses any OpenAI-compatible LLM API to read an invoice document.

    parse() raises InvoiceParseError with a message suitable for showing to
    the user verbatim.
    """

    def __init__(
        self,
        model: str = "gpt-4o-mini",
        base_url: str = "https://api.openai.com/v1",
        api_key: str = "",
        max_tokens: int = 4096,
        timeout: int = 120,
    ):
        self.model      = model
        self.base_url   = base_url
        self.api_key    = api_key
        self.max_tokens = max_tokens
        self.timeout    = timeout
        self._client    = None

    def _get_client(self):
        """Lazily initialise the OpenAI client."""
        if self._client is None:
            from openai import OpenAI
            self._client = OpenAI(
                base_url=self.base_url,
                api_key=self.api_key or "not-set",
                timeout=self.timeout,
            )
        return self._client

    def build_messages(
        self,
        file_b64: str,
        mime_type: str,
        snapshot: InventorySnapshot,
        file_name: str = "invoice",
    ) -> list[dict]:
        materials, consumables = _inventory_context(snapshot)
        system = _SYSTEM_PROMPT.format(materials=materials, consumables=consumables)
        data_url = f"data:{mime_type};base64,{strip_data_url(file_b64)}"

        if mime_type == "application/pdf":
            document = {
                "type": "file",
                "file": {"filename": file_name, "file_data": data_url},
            }
        else:
            document = {"type": "image_url", "image_url": {"url": data_url}}

        return [
            {"role": "system", "content": system},
            {"role": "user", "content": [document, {"type": "text", "text": _USER_PROMPT}]},
        ]

    def parse(
        self,
        file_b64: str,
        mime_type: str,
        snapshot: InventorySnapshot,
        file_name: str = "invoice",
    ) -> ParsedInvoice:
        """Send the document to the LLM and validate its JSON answer."""
        if not file_b64:
            raise InvoiceParseError("File is required")

        messages = self.build_messages(file_b64, mime_type, snapshot, file_name)
        logger.info("Parsing invoice %s (%s, model=%s)", file_name, mime_type, self.model)

        try:
            response = self._get_client().chat.completions.create(
                model=self.model,
                messages=messages,
                max_tokens=self.max_tokens,
                temperature=0.0,
            )
            raw = (response.choices[0].message.content or "").strip()
        except Exception as e:
            logger.error("Invoice parse request failed: %s", e)
            raise InvoiceParseError(f"Failed to parse invoice: {e}") from e

        if not raw:
            raise InvoiceParseError("AI returned an unexpected response format.")

        invoice = self._parse_json_response(raw)
        if invoice is None:
            logger.warning("AI invoice parse returned invalid JSON: %s", raw[:500])
            raise InvoiceParseError("AI could not parse the invoice. Try a clearer image.")

        logger.info(
            "Parsed invoice %s: %d line item(s), %d new",
            invoice.invoice_number or "(no number)",
            len(invoice.items),
            len(invoice.new_item_indexes),
        )
        return invoice

    def _parse_json_response(self, raw: str) -> Optional[ParsedInvoice]:
        """
        Extract and validate JSON from the model's response.
        Handles markdown code fences and attempts basic JSON repair.
        """
        raw = re.sub(r"^```(?:json)?\s*", "", raw, flags=re.IGNORECASE)
        raw = re.sub(r"\s*```$", "", raw)
        raw = raw.strip()

        # Find outermost JSON object
        start = raw.find("{")
        end = raw.rfind("}") + 1
        if start == -1 or end == 0:
            logger.warning("No JSON object found in LLM response")
            return None

        json_str = raw[start:end]
        try:
            data = json.loads(json_str)
        except json.JSONDecodeError as e:
            logger.warning("JSON decode error: %s", e)
            # Attempt repair: remove trailing commas before } or ]
            json_str = re.sub(r",\s*([}\]])", r"\1", json_str)
            try:
                data = json.loads(json_str)
            except json.JSONDecodeError:
                logger.error("Could not repair JSON from LLM response")
                return None

        if not isinstance(data, dict):
            return None

        try:
            return ParsedInvoice.model_validate(data)
        except ValidationError as e:
            logger.warning("Pydantic validation failed: %s", e)
            return None

    def check_connection(self) -> dict:
        """
        Verify the LLM endpoint is reachable and the configured model is available.
        """
        try:
            client = self._get_client()
            models_response = client.models.list()
            available = [m.id for m in models_response.data]
            model_available = any(self.model in m for m in available)
            return {
                "ok": True,
                "base_url": self.base_url,
                "model_available": model_available,
                "available_models": available,
            }
        except Exception as e:
            return {
                "ok": False,
                "base_url": self.base_url,
                "error": str(e),
                "model_available": False,
            }
