"""
Row Normalizer - turns one raw spreadsheet row into a NormalizedOrder.

The row is rendered as `key: value` lines and the language model is asked
for strict JSON in the NormalizedOrder shape. The answer is never trusted:
numbers are coerced, phones normalised to E.164, and any malformed output
degrades to a minimal order carrying only the external key.

Normalization never raises for bad model output or a request the provider
rejects. Outages (timeouts, open circuit, provider 429/5xx) propagate as
TransientError so the row is retried on a later tick instead of being
stored half-empty.
"""

import json
import math
import re
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from orderdesk.app.core.exceptions import ModelRequestError
from orderdesk.app.core.logging import get_logger
from orderdesk.app.models.normalized_order import NormalizedCustomer, NormalizedItem, NormalizedOrder
from orderdesk.app.services.llm_adapter import ChatMessage, LLMAdapter

logger = get_logger(__name__)

EXTERNAL_KEY_FIELDS = ("order_id", "id", "reference", "ref")

NORMALIZE_SYSTEM_PROMPT = (
    "You convert one e-commerce order row into JSON. "
    "Reply with a single JSON object and nothing else, using exactly these fields: "
    '{"external_key": string, '
    '"customer": {"name": string|null, "phone": string|null, "email": string|null}|null, '
    '"items": [{"sku": string|null, "title": string|null, "qty": integer, '
    '"price": number|null, "currency": string|null}], '
    '"total": number|null, "currency": string|null, "notes": string|null}. '
    "Use the order reference column as external_key. "
    "Never invent prices; use null when a price is missing or unreadable."
)


def render_row(row: Dict[str, Any]) -> str:
    return "\n".join(f"{k}: {'' if v is None else v}" for k, v in row.items())


def extract_json_object(text: str) -> Optional[Dict[str, Any]]:
    """First {...} block in the model output, tolerating code fences and chatter."""
    if not text:
        return None
    cleaned = re.sub(r"```(?:json)?", "", text, flags=re.IGNORECASE)
    match = re.search(r"\{[\s\S]*\}", cleaned)
    if not match:
        return None
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


def _number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        num = float(value)
    else:
        s = re.sub(r"[^\d,.\-]", "", str(value))
        if s.count(",") == 1 and "." not in s:
            s = s.replace(",", ".")
        else:
            s = s.replace(",", "")
        try:
            num = float(s)
        except ValueError:
            return None
    return num if math.isfinite(num) else None


def coerce_qty(value: Any) -> int:
    """Integer quantity; 1 when missing, non-finite or not positive."""
    num = _number(value)
    if num is None:
        return 1
    qty = int(num)
    return qty if qty > 0 else 1


def coerce_price(value: Any) -> Optional[float]:
    """Float price, or None when unparseable. A missing price is unknown, not free."""
    return _number(value)


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    s = str(value).strip()
    return s or None


def normalize_phone(phone: Any, default_country_code: str = "212") -> Optional[str]:
    """
    E.164 form of a buyer phone.

    "0612345678" -> "+212612345678", "00212..." -> "+212...", "+212..." kept.
    """
    s = _text(phone)
    if not s:
        return None
    has_plus = s.startswith("+")
    digits = re.sub(r"\D", "", s)
    if not digits:
        return None
    if has_plus:
        return f"+{digits}"
    if digits.startswith("00"):
        return f"+{digits[2:]}"
    if digits.startswith("0"):
        return f"+{default_country_code}{digits[1:]}"
    if digits.startswith(default_country_code):
        return f"+{digits}"
    return f"+{default_country_code}{digits}"


def fallback_external_key(row: Dict[str, Any]) -> str:
    lowered = {str(k).strip().lower(): v for k, v in row.items()}
    for field in EXTERNAL_KEY_FIELDS:
        value = _text(lowered.get(field))
        if value:
            return value
    return ""


class RowNormalizer:
    """LLM-backed row normalizer with a deterministic fallback."""

    def __init__(self, llm: LLMAdapter, temperature: float = 0.1, default_country_code: str = "212"):
        self.llm = llm
        self.temperature = temperature
        self.default_country_code = default_country_code

    def build_messages(self, row: Dict[str, Any], store_name: Optional[str] = None) -> List[ChatMessage]:
        store_line = f"Store: {store_name}\n" if store_name else ""
        return [
            ChatMessage(role="system", content=NORMALIZE_SYSTEM_PROMPT),
            ChatMessage(role="user", content=f"{store_line}Row:\n{render_row(row)}"),
        ]

    async def normalize(self, row: Dict[str, Any], store_name: Optional[str] = None) -> NormalizedOrder:
        """
        Normalize one row.

        Raises:
            TransientError: the model was unreachable, throttled or overloaded
        """
        try:
            response = await self.llm.chat(self.build_messages(row, store_name), temperature=self.temperature)
        except ModelRequestError as e:
            # The provider refused this row; retrying it unchanged would be refused again
            logger.warning(f"Normalizer request rejected, using fallback: {e}")
            return self.fallback(row)

        data = extract_json_object(response.text)
        if data is None:
            logger.warning("Normalizer output had no JSON object, using fallback")
            return self.fallback(row)

        try:
            order = self._from_payload(data)
        except (ValidationError, TypeError, ValueError, AttributeError) as e:
            logger.warning(f"Normalizer output did not match the order shape, using fallback: {e}")
            return self.fallback(row)

        if not order.external_key:
            order.external_key = fallback_external_key(row)
        return order

    def fallback(self, row: Dict[str, Any]) -> NormalizedOrder:
        return NormalizedOrder(external_key=fallback_external_key(row))

    def _from_payload(self, data: Dict[str, Any]) -> NormalizedOrder:
        customer = None
        raw_customer = data.get("customer")
        if isinstance(raw_customer, dict):
            email = _text(raw_customer.get("email"))
            customer = NormalizedCustomer(
                name=_text(raw_customer.get("name")),
                phone=normalize_phone(raw_customer.get("phone"), self.default_country_code),
                email=email.lower() if email else None,
            )
            if not (customer.name or customer.has_contact):
                customer = None

        raw_items = data.get("items") or []
        if not isinstance(raw_items, list):
            raise TypeError("items must be a list")
        items = []
        for raw in raw_items:
            if not isinstance(raw, dict):
                raise TypeError("each item must be an object")
            items.append(NormalizedItem(
                sku=_text(raw.get("sku")),
                title=_text(raw.get("title")),
                qty=coerce_qty(raw.get("qty")),
                price=coerce_price(raw.get("price")),
                currency=_text(raw.get("currency")),
            ))

        return NormalizedOrder(
            external_key=_text(data.get("external_key")) or "",
            customer=customer,
            items=items,
            total=coerce_price(data.get("total")),
            currency=_text(data.get("currency")),
            notes=_text(data.get("notes")),
        )
