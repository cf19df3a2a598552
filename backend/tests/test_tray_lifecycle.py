"""Tăvițe: номера, блокировка флагами доставки, позиции, удаление."""
import random
from decimal import Decimal

import pytest

from preturi.core.errors import PolicyViolation, ResolutionError, ValidationError
from preturi.core.permissions import ViewContext
from preturi.entities import BrandSerialGroup, InstrumentPlaceholder, PlacementKind, SerialNumber, ServiceLine

from conftest import SERVICE_FILE_ID


@pytest.mark.asyncio
async def test_tray_number_unique_per_size(engine):
    """Пара номер/размер уникальна; тот же номер другого размера допустим."""
    await engine.create_tray(SERVICE_FILE_ID, "12", "m")
    assert await engine.is_tray_available("12", "m") is False
    assert await engine.is_tray_available("12", "l") is True
    result = await engine.execute(engine.create_tray, SERVICE_FILE_ID, " 12 ", "M")
    assert not result.ok
    assert result.code == "tray_number_taken"
    tray = await engine.create_tray(SERVICE_FILE_ID, "12", "l")
    assert tray.size == "l"


@pytest.mark.asyncio
async def test_tray_input_validation(engine):
    with pytest.raises(ValidationError) as e:
        await engine.create_tray(SERVICE_FILE_ID, "   ")
    assert e.value.code == "tray_number_required"
    with pytest.raises(ValidationError) as e:
        await engine.create_tray(SERVICE_FILE_ID, "5", "xxl")
    assert e.value.code == "tray_size_invalid"
    with pytest.raises(ResolutionError):
        await engine.create_tray("sf-missing", "5")


@pytest.mark.asyncio
async def test_edit_tray_keeps_own_number(engine):
    tray = await engine.create_tray(SERVICE_FILE_ID, "7")
    await engine.create_tray(SERVICE_FILE_ID, "8")
    assert (await engine.edit_tray(tray.id, number="7")).number == "7"
    with pytest.raises(ValidationError) as e:
        await engine.edit_tray(tray.id, number="8")
    assert e.value.code == "tray_number_taken"
    assert (await engine.edit_tray(tray.id, size="s")).size == "s"


@pytest.mark.asyncio
async def test_lock_flags_are_exclusive_over_random_toggles(engine):
    """office_direct и curier_trimis никогда не включены одновременно."""
    tray = await engine.create_tray(SERVICE_FILE_ID, "1")
    rnd = random.Random(11)
    for _ in range(60):
        flag = rnd.choice(["office_direct", "curier_trimis"])
        tray = await engine.toggle_lock(tray.id, flag, rnd.random() < 0.6)
        assert not (tray.office_direct and tray.curier_trimis)
        assert tray.locked == (tray.office_direct or tray.curier_trimis)


@pytest.mark.asyncio
async def test_enabling_one_flag_clears_the_other(engine):
    tray = await engine.create_tray(SERVICE_FILE_ID, "1")
    await engine.toggle_lock(tray.id, "office_direct", True)
    tray = await engine.toggle_lock(tray.id, "curier_trimis", True)
    assert tray.curier_trimis and not tray.office_direct


@pytest.mark.asyncio
async def test_lock_places_service_file_in_receptie(engine, store):
    tray = await engine.create_tray(SERVICE_FILE_ID, "1")
    await engine.toggle_lock(tray.id, "curier_trimis", True)
    placement = store.placements[(PlacementKind.SERVICE_FILE, SERVICE_FILE_ID, "pl-receptie")]
    assert placement.stage_id == "pl-receptie-2"


@pytest.mark.asyncio
async def test_unknown_lock_flag_rejected(engine):
    tray = await engine.create_tray(SERVICE_FILE_ID, "1")
    result = await engine.execute(engine.toggle_lock, tray.id, "urgent", True)
    assert result.code == "lock_flag_invalid"


@pytest.mark.asyncio
async def test_locked_tray_editable_only_from_privileged_views(engine):
    """После блокировки продажи не правят tăviță; приёмка и департамент: могут."""
    tray = await engine.create_tray(SERVICE_FILE_ID, "1")
    await engine.toggle_lock(tray.id, "office_direct", True)
    with pytest.raises(PolicyViolation) as e:
        await engine.add_service(tray.id, "srv-ascutire-cutit")
    assert e.value.code == "tray_locked"
    item = await engine.add_service(tray.id, "srv-ascutire-cutit", view=ViewContext.RECEPTIE)
    updated = await engine.update_item(item.id, {"qty": 2}, view=ViewContext.DEPARTMENT)
    assert updated.qty == 2
    with pytest.raises(PolicyViolation):
        await engine.edit_tray(tray.id, number="99")


@pytest.mark.asyncio
async def test_delete_tray_requires_empty(engine):
    tray = await engine.create_tray(SERVICE_FILE_ID, "1")
    item = await engine.add_instrument(tray.id, "ins-cutit")
    result = await engine.execute(engine.delete_tray, tray.id)
    assert result.code == "tray_not_empty"
    await engine.delete_item(item.id)
    await engine.delete_tray(tray.id)
    assert await engine.list_trays(SERVICE_FILE_ID) == []


@pytest.mark.asyncio
async def test_unassigned_tray_is_reused(engine):
    first = await engine.create_unassigned_tray(SERVICE_FILE_ID)
    second = await engine.create_unassigned_tray(SERVICE_FILE_ID)
    assert first.id == second.id
    assert first.unassigned and first.number == ""


@pytest.mark.asyncio
async def test_add_service_snapshots_catalog(engine, store):
    tray = await engine.create_tray(SERVICE_FILE_ID, "1")
    item = await engine.add_service(tray.id, "srv-ascutire-foarfeca", qty=2, discount_pct="15", urgent=True)
    assert isinstance(item, ServiceLine)
    assert item.instrument_id == "ins-foarfeca"
    assert item.department_id == "dep-frizerii"
    assert item.price == Decimal("80")
    assert item.name_snapshot == "Ascutire foarfeca"
    # изменение справочника не меняет уже добавленную позицию
    store.services["srv-ascutire-foarfeca"].price = Decimal("95")
    assert (await store.get_item(item.id)).price == Decimal("80")


@pytest.mark.asyncio
async def test_add_part_needs_instrument(engine):
    tray = await engine.create_tray(SERVICE_FILE_ID, "1")
    result = await engine.execute(engine.add_part, tray.id, "prt-lama", None)
    assert result.code == "instrument_required"
    part = await engine.add_part(tray.id, "prt-lama", "ins-masina", price="99.50")
    assert part.price == Decimal("99.50")
    assert part.instrument_id == "ins-masina"


@pytest.mark.asyncio
async def test_add_instrument_merges_into_existing_placeholder(engine, store):
    tray = await engine.create_tray(SERVICE_FILE_ID, "1")
    first = await engine.add_instrument(tray.id, "ins-cutit", 1, brand_groups=[
        BrandSerialGroup("Victorinox", [SerialNumber("V1")], 1),
    ])
    second = await engine.add_instrument(tray.id, "ins-cutit", 2, brand_groups=[
        BrandSerialGroup("Victorinox", [SerialNumber("V2", True)], 2),
    ])
    assert second.id == first.id
    assert second.qty == 3
    assert [s.serial for s in second.brand_groups[0].serial_numbers] == ["V1", "V2"]
    assert len(await store.list_items(tray.id)) == 1


@pytest.mark.asyncio
async def test_item_validation_codes(engine):
    tray = await engine.create_tray(SERVICE_FILE_ID, "1")
    placeholder = await engine.add_instrument(tray.id, "ins-cutit")
    service = await engine.add_service(tray.id, "srv-ascutire-cutit")
    cases = [
        (engine.add_service, (tray.id, "srv-ascutire-cutit", 0), "qty_invalid"),
        (engine.add_service, (tray.id, "srv-ascutire-cutit", 1, 101), "discount_out_of_range"),
        (engine.add_service, (tray.id, "srv-nu-exista"), "service_not_found"),
        (engine.add_instrument, (tray.id, "ins-nu-exista"), "instrument_not_found"),
        (engine.update_item, (placeholder.id, {"price": 10}), "field_not_applicable"),
        (engine.update_item, (service.id, {"tray_id": "x"}), "field_not_editable"),
        (engine.update_item, (service.id, {"discount_pct": -1}), "discount_out_of_range"),
        (engine.update_item, (service.id, {"price": "-3"}), "price_invalid"),
        (engine.update_item, (service.id, {"discount_pct": "Infinity"}), "discount_out_of_range"),
        (engine.update_item, (service.id, {"price": "NaN"}), "price_invalid"),
        (engine.set_subscription, (tray.id, "gold"), "subscription_invalid"),
    ]
    for operation, args, code in cases:
        result = await engine.execute(operation, *args)
        assert (result.ok, result.code) == (False, code), operation.__name__


@pytest.mark.asyncio
async def test_non_finite_numbers_are_rejected(engine):
    """NaN и бесконечность в скидке или цене дают отказ с кодом, позиция не создаётся."""
    tray = await engine.create_tray(SERVICE_FILE_ID, "1")
    result = await engine.execute(engine.add_service, tray.id, "srv-ascutire-cutit", 1, discount_pct="NaN")
    assert (result.ok, result.code) == (False, "discount_out_of_range")
    result = await engine.execute(engine.add_part, tray.id, "prt-lama", "ins-masina", price="NaN")
    assert (result.ok, result.code) == (False, "price_invalid")
    result = await engine.execute(engine.add_part, tray.id, "prt-lama", "ins-masina", price="-Infinity")
    assert (result.ok, result.code) == (False, "price_invalid")
    assert await engine.store.list_items(tray.id) == []


@pytest.mark.asyncio
async def test_tray_view_shows_rows_groups_totals(engine):
    tray = await engine.create_tray(SERVICE_FILE_ID, "1")
    await engine.add_service(tray.id, "srv-ascutire-forfecuta", 1)
    await engine.add_service(tray.id, "srv-ascutire-forfecuta", 2)
    await engine.add_instrument(tray.id, "ins-cutit", 2)
    await engine.set_subscription(tray.id, "services")
    view = await engine.tray_view(tray.id)
    assert len(view.items) == 3
    assert [r.item.qty for r in view.rows] == [3, 2]
    assert [g.instrument.id for g in view.groups] == ["ins-forfecuta", "ins-cutit"]
    assert view.totals.subtotal == Decimal("120")
    assert view.totals.total == Decimal("108")
    assert view.total_weight == Decimal("0.55")
    assert view.unresolved_item_ids == []


@pytest.mark.asyncio
async def test_payment_and_details(engine, store):
    tray = await engine.create_tray(SERVICE_FILE_ID, "1")
    tray = await engine.set_payment(tray.id, is_card=True)
    assert tray.is_card and not tray.is_cash
    service_file = await engine.update_details(SERVICE_FILE_ID, "Ascutit fin")
    assert service_file.details == "Ascutit fin"


@pytest.mark.asyncio
async def test_placeholder_has_no_price_fields(engine):
    tray = await engine.create_tray(SERVICE_FILE_ID, "1")
    item = await engine.add_instrument(tray.id, "ins-cleste")
    assert isinstance(item, InstrumentPlaceholder)
    assert not hasattr(item, "price")
