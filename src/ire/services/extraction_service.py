from __future__ import annotations

import base64
import json
import logging
import re
from dataclasses import dataclass
from typing import Optional

import requests

from ire.config import ExtractionSettings
from ire.domain.errors import QuotaExceededError, UpstreamExtractionError, ValidationError
from ire.domain.models import ExtractedItem, ExtractionResult, UsageCheck, UsageSnapshot
from ire.services.quota_service import QuotaGateway

log = logging.getLogger("ire.extraction")

GEMINI_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"
VISION_URL = "https://vision.googleapis.com/v1/images:annotate"

ACCEPTED_MIME_TYPES = ("image/jpeg", "image/png", "image/webp", "image/gif")
MAX_DOCUMENT_BYTES = 10 * 1024 * 1024

_ITEM_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "name": {"type": "STRING", "description": "Item / ingredient name as printed"},
        "box": {"type": "NUMBER", "description": "Box count, digits only"},
        "ea": {"type": "NUMBER", "description": "Loose unit count, digits only"},
        "quantity": {"type": "NUMBER", "description": "Total quantity, digits only"},
        "unit": {"type": "STRING", "description": "Unit (kg, g, ea, box ...)"},
        "unit_price": {"type": "NUMBER", "description": "Unit price, digits only"},
        "total_price": {"type": "NUMBER", "description": "Line amount, digits only"},
        "note": {"type": "STRING", "description": "Remarks column"},
    },
    "required": ["name", "quantity"],
}

INVOICE_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "supplier": {"type": "STRING", "description": "Supplier name"},
        "reference_no": {"type": "STRING", "description": "Invoice / statement number"},
        "items": {"type": "ARRAY", "items": _ITEM_SCHEMA},
    },
    "required": ["items"],
}

IMAGE_PROMPT = """Extract the supplier invoice shown in the image.

Return supplier, reference_no and one entry in items for every table row.
- name: item name (keep size text such as 1kg, 10pk)
- box, ea: box and loose unit counts when those columns exist
- quantity: total quantity column
- unit_price, total_price: use 0 when the column is missing or blank
- note: remarks column
Rules: skip subtotal/total rows, strip commas, currency symbols and spaces
from numbers, use null for other empty cells."""

TEXT_PROMPT = """Extract every item row from the supplier invoice text below.

Map columns: item name -> name, BOX -> box, EA -> ea, quantity -> quantity,
unit price -> unit_price, amount -> total_price, remarks -> note.
Rules: do not skip the last rows, do not compute quantity from box x ea,
leave total_price null when absent, strip commas and currency symbols from
numbers, skip subtotal/total rows.

## Invoice text
{text}"""

_TRAILING_COMMA_OBJECT = re.compile(r",\s*}")
_TRAILING_COMMA_ARRAY = re.compile(r",\s*]")


_MAX_REPAIR_CUTS = 64


def _loads_ok(text: str) -> bool:
    try:
        json.loads(text)
    except ValueError:
        return False
    return True


def repair_json(text: str) -> str:
    """One bounded cleanup pass for truncated or sloppy model output.

    Trailing commas are dropped, then the text is cut back to the last
    structurally-closed object: first as a complete document, then with the
    items array closed after it. The first candidate that parses wins.
    """
    cleaned = _TRAILING_COMMA_OBJECT.sub("}", text)
    cleaned = _TRAILING_COMMA_ARRAY.sub("]", cleaned).strip()
    if _loads_ok(cleaned):
        return cleaned

    end = len(cleaned)
    for _ in range(_MAX_REPAIR_CUTS):
        end = cleaned.rfind("}", 0, end)
        if end <= 0:
            break
        head = cleaned[: end + 1]
        for candidate in (head, head + "]}"):
            if _loads_ok(candidate):
                return candidate
    return cleaned


def parse_model_json(text: Optional[str]) -> dict:
    if not text or not text.strip():
        raise UpstreamExtractionError("malformed_response", "Extraction service returned an empty response.")
    try:
        parsed = json.loads(text)
    except ValueError:
        try:
            parsed = json.loads(repair_json(text))
        except ValueError as e:
            log.error("extraction_unparseable_response error=%s head=%r", e, text[:200])
            raise UpstreamExtractionError("malformed_response", "Extraction response could not be parsed.") from e

    if not isinstance(parsed, dict) or not isinstance(parsed.get("items"), list):
        raise UpstreamExtractionError("malformed_response", "Extraction response has no items list.")
    return parsed


def _is_number(v: object) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool)


def coerce_items(raw_items: list) -> tuple[list[ExtractedItem], int]:
    """Keep only rows that satisfy the item contract; return (items, discarded)."""
    items: list[ExtractedItem] = []
    discarded = 0
    for raw in raw_items:
        if not isinstance(raw, dict):
            discarded += 1
            continue
        name = raw.get("name")
        qty = raw.get("quantity")
        if not isinstance(name, str) or not name.strip() or not _is_number(qty) or qty <= 0:
            discarded += 1
            continue
        if any(raw.get(k) is not None and not _is_number(raw.get(k)) for k in ("box", "ea", "unit_price", "total_price")):
            discarded += 1
            continue
        if any(raw.get(k) is not None and not isinstance(raw.get(k), str) for k in ("unit", "note")):
            discarded += 1
            continue
        items.append(
            ExtractedItem(
                name=name.strip(),
                quantity=float(qty),
                unit=raw.get("unit"),
                box=(float(raw["box"]) if raw.get("box") is not None else None),
                ea=(float(raw["ea"]) if raw.get("ea") is not None else None),
                unit_price=(float(raw["unit_price"]) if raw.get("unit_price") is not None else None),
                total_price=(float(raw["total_price"]) if raw.get("total_price") is not None else None),
                note=raw.get("note"),
            )
        )
    return items, discarded


def _optional_str(v: object) -> Optional[str]:
    if isinstance(v, str) and v.strip():
        return v.strip()
    return None


@dataclass(frozen=True)
class ApiBudget:
    api_name: str
    daily_api_name: str
    daily_limit: int
    monthly_limit: int


class ExtractionClient:
    """Turns an invoice document into structured line items.

    Every outbound call is fronted by the QuotaGateway: both windows are
    checked before the call and both counters are bumped after a successful
    response. No retries.
    """

    def __init__(self, quota: QuotaGateway, settings: ExtractionSettings):
        self.quota = quota
        self.settings = settings
        self.gemini_budget = ApiBudget("gemini", "gemini-daily", settings.gemini_daily_limit, settings.gemini_monthly_limit)
        self.vision_budget = ApiBudget(
            "cloud-vision", "cloud-vision-daily", settings.vision_daily_limit, settings.vision_monthly_limit
        )

    def _post_json(self, url: str, params: dict, body: dict, timeout: float) -> dict:
        try:
            r = requests.post(url, params=params, json=body, timeout=timeout)
            r.raise_for_status()
            return r.json()
        except requests.Timeout as e:
            log.error("extraction_timeout url=%s timeout=%s error=%s", url, timeout, e)
            raise UpstreamExtractionError("timeout", "Extraction service timed out.") from e
        except requests.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            detail = e.response.text[:500] if e.response is not None else ""
            log.error("extraction_upstream_status url=%s status=%s detail=%s", url, status, detail)
            raise UpstreamExtractionError("upstream_status", f"Extraction service returned HTTP {status}.") from e
        except ValueError as e:
            # requests' JSONDecodeError is both a ValueError and a RequestException
            log.error("extraction_invalid_envelope url=%s error=%s", url, e)
            raise UpstreamExtractionError("malformed_response", "Extraction service returned invalid JSON.") from e
        except requests.RequestException as e:
            log.error("extraction_network_error url=%s error=%s", url, e)
            raise UpstreamExtractionError("network", "Extraction service is unreachable.") from e

    def validate_document(self, document_bytes: bytes, mime_type: str) -> None:
        if not document_bytes:
            raise ValidationError("Document is empty.")
        if mime_type not in ACCEPTED_MIME_TYPES:
            raise ValidationError(f"Unsupported document type: {mime_type}. Use JPEG, PNG, WebP or GIF.")
        if len(document_bytes) > MAX_DOCUMENT_BYTES:
            raise ValidationError("Document exceeds the 10 MB limit.")

    def _reserve(self, budget: ApiBudget, api_key: Optional[str]) -> tuple[UsageCheck, UsageCheck]:
        if not api_key:
            raise UpstreamExtractionError("missing_credentials", f"No API key configured for {budget.api_name}.")

        daily = self.quota.check_limit(budget.daily_api_name, budget.daily_limit, "daily")
        monthly = self.quota.check_limit(budget.api_name, budget.monthly_limit, "monthly")
        if not daily.allowed or not monthly.allowed:
            reason = "daily_exceeded" if not daily.allowed else "monthly_exceeded"
            log.warning(
                "quota_exceeded api=%s reason=%s daily=%s/%s monthly=%s/%s",
                budget.api_name, reason, daily.current_count, daily.limit, monthly.current_count, monthly.limit,
            )
            raise QuotaExceededError(reason, daily.current_count, daily.limit, monthly.current_count, monthly.limit)
        return daily, monthly

    def _call(
        self,
        budget: ApiBudget,
        api_key: Optional[str],
        url: str,
        body: dict,
        timeout: Optional[float],
    ) -> tuple[dict, UsageSnapshot]:
        daily, monthly = self._reserve(budget, api_key)
        data = self._post_json(url, {"key": api_key}, body, float(timeout or self.settings.timeout_seconds))

        outcome = self.quota.increment(budget.api_name, budget.daily_api_name)
        if not outcome.success:
            log.warning("quota_increment_failed api=%s error=%s", budget.api_name, outcome.error)
        usage = UsageSnapshot(
            daily_current=daily.current_count + 1,
            daily_limit=daily.limit,
            monthly_current=monthly.current_count + 1,
            monthly_limit=monthly.limit,
        )
        return data, usage

    def _generation_config(self) -> dict:
        return {
            "responseMimeType": "application/json",
            "responseSchema": INVOICE_SCHEMA,
            "temperature": 0.1,
            "maxOutputTokens": 8192,
        }

    def _gemini_text(self, data: dict) -> Optional[str]:
        try:
            return data["candidates"][0]["content"]["parts"][0]["text"]
        except (KeyError, IndexError, TypeError):
            return None

    def _to_result(self, data: dict, usage: UsageSnapshot) -> ExtractionResult:
        parsed = parse_model_json(self._gemini_text(data))
        items, discarded = coerce_items(parsed["items"])
        if discarded:
            log.info("extraction_items_discarded count=%s kept=%s", discarded, len(items))
        return ExtractionResult(
            items=tuple(items),
            supplier=_optional_str(parsed.get("supplier")),
            reference_no=_optional_str(parsed.get("reference_no")),
            usage=usage,
            discarded=discarded,
        )

    def extract(self, document_bytes: bytes, mime_type: str, timeout: Optional[float] = None) -> ExtractionResult:
        """Single multimodal pass: image in, structured items out."""
        self.validate_document(document_bytes, mime_type)
        body = {
            "contents": [
                {
                    "parts": [
                        {"inline_data": {"mime_type": mime_type, "data": base64.b64encode(document_bytes).decode("ascii")}},
                        {"text": IMAGE_PROMPT},
                    ]
                }
            ],
            "generationConfig": self._generation_config(),
        }
        url = GEMINI_URL.format(model=self.settings.gemini_model)
        data, usage = self._call(self.gemini_budget, self.settings.gemini_api_key, url, body, timeout)
        result = self._to_result(data, usage)
        log.info("extraction_completed mode=image items=%s discarded=%s", len(result.items), result.discarded)
        return result

    def extract_text(self, document_bytes: bytes, mime_type: str, timeout: Optional[float] = None) -> str:
        """OCR pass only (Cloud Vision document text detection)."""
        self.validate_document(document_bytes, mime_type)
        body = {
            "requests": [
                {
                    "image": {"content": base64.b64encode(document_bytes).decode("ascii")},
                    "features": [{"type": "DOCUMENT_TEXT_DETECTION"}],
                    "imageContext": {"languageHints": ["ko", "en"]},
                }
            ]
        }
        data, _usage = self._call(self.vision_budget, self.settings.vision_api_key, VISION_URL, body, timeout)

        responses = data.get("responses") if isinstance(data, dict) else None
        if not isinstance(responses, list) or not responses or not isinstance(responses[0], dict):
            raise UpstreamExtractionError("malformed_response", "OCR response has no results.")
        first = responses[0]
        if first.get("error"):
            log.error("ocr_upstream_error detail=%s", first["error"])
            raise UpstreamExtractionError("upstream_status", "OCR service reported an error.")

        full = first.get("fullTextAnnotation") or {}
        text = full.get("text") if isinstance(full, dict) else None
        if not text:
            annotations = first.get("textAnnotations") or []
            text = annotations[0].get("description") if annotations and isinstance(annotations[0], dict) else None
        return text or ""

    def parse_text(self, text: str, timeout: Optional[float] = None) -> ExtractionResult:
        """Text pass: OCR text in, structured items out."""
        if not text or not text.strip():
            raise ValidationError("No text to parse.")
        body = {
            "contents": [{"parts": [{"text": TEXT_PROMPT.format(text=text)}]}],
            "generationConfig": self._generation_config(),
        }
        url = GEMINI_URL.format(model=self.settings.gemini_model)
        data, usage = self._call(self.gemini_budget, self.settings.gemini_api_key, url, body, timeout)
        result = self._to_result(data, usage)
        log.info("extraction_completed mode=text items=%s discarded=%s", len(result.items), result.discarded)
        return result

    def extract_via_ocr(self, document_bytes: bytes, mime_type: str, timeout: Optional[float] = None) -> ExtractionResult:
        text = self.extract_text(document_bytes, mime_type, timeout=timeout)
        return self.parse_text(text, timeout=timeout)
