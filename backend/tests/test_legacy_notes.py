"""Чтение старых JSON-метаданных из notes / details."""
import json
from decimal import Decimal

from preturi.entities import BrandSerialGroup, SerialNumber
from preturi.services.legacy_notes import (
    brand_groups_from_json,
    brand_groups_to_json,
    compose_details,
    merge_item_notes,
    read_details,
    read_item_notes,
)


def test_old_brand_group_format():
    data = [{"brand": " Kiepe ", "serialNumbers": ["K1", {"serial": "K2", "garantie": "true"}, ""], "qty": "2"}]
    groups = brand_groups_from_json(data)
    assert groups == [BrandSerialGroup("Kiepe", [SerialNumber("K1"), SerialNumber("K2", True)], 2)]


def test_brand_groups_written_in_current_format():
    groups = [BrandSerialGroup("Solingen", [SerialNumber("S1", True)], 1)]
    assert brand_groups_to_json(groups) == [
        {"brand": "Solingen", "serial_numbers": [{"serial": "S1", "garantie": True}], "qty": 1},
    ]
    assert brand_groups_from_json(brand_groups_to_json(groups)) == groups


def test_item_notes_are_typed():
    notes = json.dumps({"item_type": "service", "price": "45.5", "discount_pct": 10, "urgent": 1,
                        "name": "Ascutire", "brand": "Kiepe", "unknown": "x"})
    fields = read_item_notes(notes)
    assert fields == {
        "item_type": "service",
        "price": Decimal("45.5"),
        "discount_pct": Decimal("10"),
        "urgent": True,
        "name_snapshot": "Ascutire",
        "brand": "Kiepe",
    }


def test_free_text_notes_are_ignored():
    assert read_item_notes("clientul vine joi") == {}
    assert read_item_notes("{broken") == {}
    assert read_item_notes(None) == {}


def test_non_finite_numbers_in_notes_are_skipped():
    notes = json.dumps({"item_type": "service", "price": "Infinity", "discount_pct": "NaN", "urgent": True})
    assert read_item_notes(notes) == {"item_type": "service", "urgent": True}


def test_typed_columns_win_over_notes():
    merged = merge_item_notes({"price": Decimal("30"), "brand": None}, '{"price": 99, "brand": "Kiepe"}')
    assert merged == {"price": Decimal("30"), "brand": "Kiepe"}


def test_details_plain_and_legacy():
    assert read_details("Ascutire fina").text == "Ascutire fina"
    legacy = read_details('{"text": "Urgent", "paymentCash": true}')
    assert (legacy.text, legacy.payment_cash, legacy.payment_card, legacy.legacy) == ("Urgent", True, None, True)


def test_compose_details_keeps_legacy_payment():
    assert compose_details("vechi", "nou") == "nou"
    composed = json.loads(compose_details('{"text": "vechi", "paymentCard": true}', "nou"))
    assert composed == {"text": "nou", "paymentCard": True}
