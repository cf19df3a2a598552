"""
Совместимость со старым форматом: метаданные позиции и fișă, записанные JSON-ом
в текстовые поля notes / details.

Старые записи читаются в типизированные поля только там, где колонка пуста.
Новые записи в этом формате не создаются.
"""
import json
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from preturi.entities import BrandSerialGroup, SerialNumber

# notes-ключ -> поле позиции
_ITEM_NOTE_FIELDS = {
    "item_type": "item_type",
    "price": "price",
    "discount_pct": "discount_pct",
    "urgent": "urgent",
    "name": "name_snapshot",
    "brand": "brand",
    "serial_number": "serial_number",
    "garantie": "garantie",
    "brand_groups": "brand_groups",
}


def _load_object(raw: Optional[str]) -> Optional[dict]:
    if not raw or not isinstance(raw, str):
        return None
    text = raw.strip()
    if not text.startswith("{"):
        return None
    try:
        data = json.loads(text)
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


def _to_decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        number = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return number if number.is_finite() else None


def _to_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "da")
    return bool(value)


def _to_qty(value: Any) -> int:
    try:
        qty = int(str(value).strip())
    except (TypeError, ValueError):
        return 1
    return qty if qty >= 1 else 1


def brand_groups_from_json(data: Any) -> list[BrandSerialGroup]:
    """Принимает и новый (serial_numbers), и старый (serialNumbers, qty строкой) вид."""
    if not isinstance(data, list):
        return []
    groups = []
    for raw in data:
        if not isinstance(raw, dict):
            continue
        serials_raw = raw.get("serial_numbers", raw.get("serialNumbers")) or []
        serials = []
        for s in serials_raw:
            if isinstance(s, dict):
                serial = str(s.get("serial") or "").strip()
                if serial:
                    serials.append(SerialNumber(serial, _to_bool(s.get("garantie"))))
            elif isinstance(s, str) and s.strip():
                serials.append(SerialNumber(s.strip()))
        groups.append(BrandSerialGroup(
            brand=str(raw.get("brand") or "").strip(),
            serial_numbers=serials,
            qty=_to_qty(raw.get("qty", 1)),
        ))
    return groups


def brand_groups_to_json(groups: list[BrandSerialGroup]) -> list[dict]:
    return [
        {
            "brand": g.brand,
            "serial_numbers": [{"serial": s.serial, "garantie": s.garantie} for s in g.serial_numbers],
            "qty": g.qty,
        }
        for g in groups
    ]


def read_item_notes(notes: Optional[str]) -> dict[str, Any]:
    """Разбор notes позиции в поля; нераспознанный текст: пустой результат."""
    data = _load_object(notes)
    if not data:
        return {}
    out: dict[str, Any] = {}
    for key, field_name in _ITEM_NOTE_FIELDS.items():
        if key not in data or data[key] is None:
            continue
        value = data[key]
        if field_name in ("price", "discount_pct"):
            value = _to_decimal(value)
            if value is None:
                continue
        elif field_name in ("urgent", "garantie"):
            value = _to_bool(value)
        elif field_name == "brand_groups":
            value = brand_groups_from_json(value)
        elif field_name == "item_type":
            value = str(value).strip().lower() or None
            if value not in ("service", "part"):
                continue
        else:
            value = str(value)
        out[field_name] = value
    return out


def merge_item_notes(fields: dict[str, Any], notes: Optional[str]) -> dict[str, Any]:
    """Заполнить пустые типизированные поля значениями из старого notes."""
    legacy = read_item_notes(notes)
    if not legacy:
        return fields
    merged = dict(fields)
    for key, value in legacy.items():
        current = merged.get(key)
        if current is None or current == "" or current == []:
            merged[key] = value
    return merged


@dataclass
class ServiceFileDetails:
    text: str = ""
    payment_cash: Optional[bool] = None
    payment_card: Optional[bool] = None
    legacy: bool = False


def read_details(details: Optional[str]) -> ServiceFileDetails:
    """details fișă: простой текст или JSON {text, paymentCash, paymentCard}."""
    data = _load_object(details)
    if data is None:
        return ServiceFileDetails(text=details or "")
    return ServiceFileDetails(
        text=str(data.get("text") or ""),
        payment_cash=_to_bool(data["paymentCash"]) if "paymentCash" in data else None,
        payment_card=_to_bool(data["paymentCard"]) if "paymentCard" in data else None,
        legacy=True,
    )


def compose_details(existing: Optional[str], text: str) -> str:
    """Новый текст инструкций; если прежнее значение несло оплату в JSON: она сохраняется."""
    previous = read_details(existing)
    if not previous.legacy or (previous.payment_cash is None and previous.payment_card is None):
        return text
    data: dict[str, Any] = {"text": text}
    if previous.payment_cash is not None:
        data["paymentCash"] = previous.payment_cash
    if previous.payment_card is not None:
        data["paymentCard"] = previous.payment_card
    return json.dumps(data, ensure_ascii=False)
