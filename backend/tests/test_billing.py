"""Итоги по fișă и lead."""
from decimal import Decimal

import pytest

from preturi.entities import ServiceFile
from preturi.services.billing import money

from conftest import LEAD_ID, SERVICE_FILE_ID


def test_money_rounds_half_up():
    assert money(Decimal("10.005")) == Decimal("10.01")
    assert money(Decimal("-2.345")) == Decimal("-2.35")
    assert str(money(Decimal("7"))) == "7.00"


@pytest.mark.asyncio
async def test_service_file_total_is_sum_of_rounded_trays(engine):
    """Общая сумма складывается из уже округлённых итогов tăvițe."""
    for number in ("1", "2"):
        tray = await engine.create_tray(SERVICE_FILE_ID, number)
        item = await engine.add_service(tray.id, "srv-ascutire-cutit")
        await engine.update_item(item.id, {"price": "10.005"})
    bill = await engine.bill_service_file(SERVICE_FILE_ID)
    assert [t.total for t in bill.trays] == [Decimal("10.01"), Decimal("10.01")]
    assert bill.all_sheets_total == Decimal("20.02")


@pytest.mark.asyncio
async def test_tray_bill_breakdown(engine):
    tray = await engine.create_tray(SERVICE_FILE_ID, "1")
    await engine.add_service(tray.id, "srv-ascutire-foarfeca", 2, discount_pct=10, urgent=True)
    await engine.add_part(tray.id, "prt-lama", "ins-foarfeca")
    await engine.set_subscription(tray.id, "both")
    await engine.set_payment(tray.id, is_cash=True)
    bill = (await engine.bill_service_file(SERVICE_FILE_ID)).trays[0]
    assert bill.subtotal == Decimal("280.00")
    assert bill.total_discount == Decimal("16.00")
    assert bill.urgent_amount == Decimal("43.20")
    # услуга (144 + 43.2) * 10% + деталь 120 * 5%
    assert bill.subscription_discount == Decimal("24.72")
    assert bill.total == Decimal("282.48")
    assert bill.is_cash and not bill.is_card
    assert bill.item_count == 2
    assert bill.subscription_type == "both"
    assert bill.total_weight == Decimal("0.20")


@pytest.mark.asyncio
async def test_lead_total_over_service_files(engine, store):
    tray = await engine.create_tray(SERVICE_FILE_ID, "1")
    await engine.add_service(tray.id, "srv-ascutire-forfecuta")
    store.add_service_file(ServiceFile(id="sf-2", lead_id=LEAD_ID))
    other = await engine.create_tray("sf-2", "2")
    await engine.add_service(other.id, "srv-ascutire-cutit", 3)
    bill = await engine.bill_lead(LEAD_ID)
    assert [sf.all_sheets_total for sf in bill.service_files] == [Decimal("40.00"), Decimal("90.00")]
    assert bill.total == Decimal("130.00")


@pytest.mark.asyncio
async def test_unknown_lead_has_zero_total(engine):
    bill = await engine.bill_lead("lead-none")
    assert bill.service_files == []
    assert bill.total == 0
