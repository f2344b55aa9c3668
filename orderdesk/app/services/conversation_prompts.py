"""
Conversation prompts and locale handling.

Buyers are addressed in English, French, Modern Standard Arabic or Moroccan
Darija (`ary`). The store locale is the default; a conversation switches to
whatever language the buyer actually writes in.
"""

import json
import re
from typing import Any, Dict, List, Optional

SUPPORTED_LOCALES = ("en", "fr", "ar", "ary")

_ARABIC_SCRIPT = re.compile(r"[\u0600-\u06FF]")
_DARIJA_ARABIC = re.compile(r"(واش|بغيت|مزيان|شكرا|فين|عافاك)")
_DARIJA_LATIN = re.compile(r"\b(wach|bghit|mzyan|safi|z3ma|choukran|3afak)\b", re.IGNORECASE)
_FRENCH = re.compile(r"\b(bonjour|salut|confirmer|annuler|merci|oui|plus d'?info|fran[çc]ais)\b", re.IGNORECASE)
_ENGLISH = re.compile(r"\b(hi|hello|yes|confirm|cancel|more info|please|english)\b", re.IGNORECASE)


def normalize_locale(value: Optional[str], default: str = "en") -> str:
    """Map a free-form store/customer language tag onto a supported locale."""
    s = (value or "").strip().lower()
    if not s:
        return default
    if re.search(r"\b(ary|darija|moroccan)\b", s) or s in ("ma", "ar-ma", "ar_ma"):
        return "ary"
    if s.startswith("fr"):
        return "fr"
    if s.startswith("ar"):
        return "ar"
    if s.startswith("en"):
        return "en"
    return default


def detect_locale(text: str) -> Optional[str]:
    """Best guess at the buyer's language, or None when nothing is conclusive."""
    t = (text or "").strip()
    if not t:
        return None
    if _ARABIC_SCRIPT.search(t):
        return "ary" if _DARIJA_ARABIC.search(t) else "ar"
    if _DARIJA_LATIN.search(t):
        return "ary"
    if _FRENCH.search(t):
        return "fr"
    if _ENGLISH.search(t):
        return "en"
    return None


def language_hint(locale: str) -> str:
    if locale == "fr":
        return "\n\nRépondez avec votre langue préférée (Français / العربية / English)."
    if locale in ("ar", "ary"):
        return "\n\nجاوبنا باللغة اللي كتفضل (العربية / الدارجة / Français / English)."
    return "\n\nReply with your preferred language (English / Français / العربية)."


def default_choice_prompt(locale: str) -> str:
    if locale == "fr":
        return "Merci de choisir : ✅ Confirmer, ❌ Annuler, ou ❓ Plus d'info."
    if locale in ("ar", "ary"):
        return "اختار من فضلك: ✅ نأكد، ❌ نلغي، ولا ❓ مزيد المعلومات."
    return "Please choose: ✅ Confirm, ❌ Cancel, or ❓ More info."


def greeting(store_name: str, locale: str, external_key: Optional[str] = None) -> str:
    """First outbound message. Order-linked greetings ask for a decision on that order."""
    if external_key:
        if locale == "fr":
            opening = f"Bonjour 👋 c'est {store_name}. Confirmez-vous la commande {external_key} ?"
        elif locale in ("ar", "ary"):
            opening = f"سلام! هادي {store_name}. واش كتأكد الطلب {external_key}؟"
        else:
            opening = f"Hi! This is {store_name}. Do you confirm order {external_key}?"
        return f"{opening}\n{default_choice_prompt(locale)}{language_hint(locale)}"

    if locale == "fr":
        return f"Bonjour ! C'est {store_name}. Comment puis-je vous aider ?"
    if locale in ("ar", "ary"):
        return f"سلام! هادي {store_name}. كيف نقدر نعاونك؟"
    return f"Hi! This is {store_name}. How can I help you today?"


def system_prompt(store_name: str, locale: str) -> str:
    return " ".join([
        f"You are the order assistant for {store_name}.",
        f"Keep messages VERY short (1-2 sentences). Use the user's language ({locale}).",
        "Always drive to a decision: confirm, cancel, or ask for exactly one missing item.",
        "Never discuss policies. If address changes are requested, ask for the live location.",
        "Reply ONLY with a JSON plan: "
        '{"action": "ASK_CHOICE"|"CONFIRM"|"CANCEL"|"ASK_MORE_INFO"|"REQUEST_LOCATION"|"ACK_LOCATION"|"CLOSE", '
        '"message": string, "status": "processing"|"completed"|"cancelled" (optional), '
        '"need": ["address"|"note"|"other"] (optional), "address_text": string|null (optional)}.',
    ])


def context_brief(
    store_name: str,
    order: Optional[Dict[str, Any]] = None,
    similar_rows: Optional[List[Dict[str, Any]]] = None,
    extra: Optional[Dict[str, Any]] = None,
) -> str:
    """Compact context block given to the model next to the system prompt."""
    lines = [f"Store: {store_name}"]
    if order:
        items = " | ".join(
            f"{i.get('qty', 1)} x {i.get('title') or i.get('sku') or 'item'}"
            + (f" @ {i['price']} {i.get('currency') or ''}".rstrip() if i.get("price") is not None else "")
            for i in order.get("items", [])
        )
        lines.append(f"Order {order.get('external_key')}: status={order.get('status')}")
        if items:
            lines.append(f"Items: {items}")
        if order.get("total") is not None:
            lines.append(f"Total: {order['total']} {order.get('currency') or ''}".rstrip())
    if similar_rows:
        lines.append("Similar past rows:")
        lines.extend(f"- {json.dumps(r, ensure_ascii=False)}" for r in similar_rows[:3])
    if extra:
        lines.append(f"Extra: {json.dumps(extra, ensure_ascii=False, default=str)}")
    return "\n".join(lines)
