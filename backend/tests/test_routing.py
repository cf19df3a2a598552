"""Перенос групп инструментов, отправка в департаменты, переходы техника."""

import pytest

from preturi.core.errors import PersistenceError, PolicyViolation, ResolutionError
from preturi.core.permissions import ViewContext
from preturi.entities import PlacementKind, ServiceFile, Stage, Tray
from preturi.services.routing import NewTray, gate_open
from preturi.services.stage_rules import StageAction

from conftest import SERVICE_FILE_ID


async def _filled_tray(engine, number="1"):
    """Tăviță: forfecuta (услуга, деталь, инструмент) и cutit (услуга)."""
    tray = await engine.create_tray(SERVICE_FILE_ID, number)
    await engine.add_service(tray.id, "srv-ascutire-forfecuta", 2, discount_pct=10)
    await engine.add_part(tray.id, "prt-surub", "ins-forfecuta")
    await engine.add_instrument(tray.id, "ins-forfecuta")
    await engine.add_service(tray.id, "srv-ascutire-cutit", urgent=True)
    return tray


async def _total(engine):
    return (await engine.bill_service_file(SERVICE_FILE_ID)).all_sheets_total


@pytest.mark.asyncio
async def test_dispatch_rejected_when_no_delivery_flag(engine, store, notifier):
    """Без office_direct / curier_trimis отправка отклоняется и позиции не трогаются."""
    tray = await _filled_tray(engine)
    result = await engine.execute(engine.dispatch, SERVICE_FILE_ID)
    assert not result.ok
    assert result.code == "dispatch_gate_closed"
    assert all(it.pipeline_id is None for it in await store.list_items(tray.id))
    assert store.placements == {}
    assert notifier.outcomes[-1].operation == "dispatch"
    assert notifier.outcomes[-1].ok is False


@pytest.mark.asyncio
async def test_dispatch_routes_each_instrument_group(engine, store, notifier):
    tray = await _filled_tray(engine)
    await engine.toggle_lock(tray.id, "office_direct", True)
    result = await engine.dispatch(SERVICE_FILE_ID)

    assert result.tray_numbers == ["1"]
    assert result.item_count == 4
    by_instrument = {it.instrument_id: it for it in await store.list_items(tray.id)}
    assert by_instrument["ins-forfecuta"].pipeline_id == "pl-saloane"
    assert by_instrument["ins-forfecuta"].stage_id == "pl-saloane-0"
    assert by_instrument["ins-cutit"].pipeline_id == "pl-horeca"
    assert by_instrument["ins-cutit"].department_id == "dep-horeca"
    # tăviță идёт в pipeline первой группы при равенстве голосов
    placement = store.placements[(PlacementKind.TRAY, tray.id, "pl-saloane")]
    assert placement.stage_id == "pl-saloane-0"
    assert result.pipelines == ["Saloane"]
    assert notifier.outcomes[-1].ok and notifier.outcomes[-1].ids["tray_numbers"] == ["1"]


@pytest.mark.asyncio
async def test_dispatch_twice_is_rejected(engine):
    tray = await _filled_tray(engine)
    await engine.toggle_lock(tray.id, "curier_trimis", True)
    await engine.dispatch(SERVICE_FILE_ID)
    with pytest.raises(PolicyViolation) as e:
        await engine.dispatch(SERVICE_FILE_ID)
    assert e.value.code == "already_dispatched"
    # флаг доставки отправленной tăviță снять нельзя
    with pytest.raises(PolicyViolation) as e:
        await engine.toggle_lock(tray.id, "curier_trimis", False)
    assert e.value.code == "tray_dispatched"


@pytest.mark.asyncio
async def test_dispatch_checks_every_numbered_tray(engine, store):
    first = await _filled_tray(engine, "1")
    empty = await engine.create_tray(SERVICE_FILE_ID, "2")
    await engine.toggle_lock(first.id, "office_direct", True)
    await engine.toggle_lock(empty.id, "office_direct", True)
    result = await engine.execute(engine.dispatch, SERVICE_FILE_ID)
    assert result.code == "tray_empty"
    assert all(it.pipeline_id is None for it in await store.list_items(first.id))


@pytest.mark.asyncio
async def test_dispatch_without_trays(engine):
    await engine.create_unassigned_tray(SERVICE_FILE_ID)
    assert (await engine.execute(engine.dispatch, SERVICE_FILE_ID)).code == "no_trays"


@pytest.mark.asyncio
async def test_dispatch_not_allowed_for_department_view(engine):
    result = await engine.execute(engine.dispatch, SERVICE_FILE_ID, ViewContext.DEPARTMENT)
    assert result.code == "view_not_allowed"


def test_gate_modes():
    tray = Tray(id="t", service_file_id="sf", number="1", office_direct=True)
    assert gate_open(tray, "any")
    assert not gate_open(tray, "both")
    tray.curier_trimis = True
    assert gate_open(tray, "both")


@pytest.mark.asyncio
async def test_move_group_to_new_tray_keeps_totals(engine, store):
    """3 позиции forfecuta переходят в новую tăviță; общая сумма fișă не меняется."""
    source = await _filled_tray(engine, "A")
    before_total = await _total(engine)
    before_ids = {it.id for it in await store.list_items(source.id)}

    result = await engine.move_instrument(source.id, "ins-forfecuta", new_tray=NewTray("B"))

    source_items = await store.list_items(source.id)
    target_items = await store.list_items(result.target_tray.id)
    assert len(source_items) == 1
    assert len(target_items) == 3
    assert result.target_tray.number == "B"
    assert {it.id for it in source_items} | {it.id for it in target_items} == before_ids
    assert set(result.moved_item_ids) == {it.id for it in target_items}
    assert await _total(engine) == before_total


@pytest.mark.asyncio
async def test_move_to_existing_tray(engine, store):
    source = await _filled_tray(engine, "A")
    target = await engine.create_tray(SERVICE_FILE_ID, "B")
    result = await engine.move_instrument(source.id, "ins-cutit", target_tray_id=target.id)
    assert result.target_tray.id == target.id
    assert [it.instrument_id for it in await store.list_items(target.id)] == ["ins-cutit"]


@pytest.mark.asyncio
async def test_move_rejections(engine, store):
    source = await _filled_tray(engine, "A")
    other_sf = store.add_service_file(ServiceFile(id="sf-2", lead_id="lead-2"))
    foreign = await engine.create_tray(other_sf.id, "Z")
    cases = [
        ((source.id, "ins-forfecuta"), {}, "move_target_missing"),
        ((source.id, "ins-forfecuta"), {"target_tray_id": source.id}, "move_target_same"),
        ((source.id, "ins-forfecuta"), {"target_tray_id": foreign.id}, "move_target_foreign"),
        ((source.id, "ins-masina"), {"new_tray": NewTray("C")}, "instrument_not_in_tray"),
        ((source.id, "ins-forfecuta"), {"new_tray": NewTray("A")}, "tray_number_taken"),
        ((source.id, "ins-forfecuta"), {"new_tray": NewTray("C"), "expected_item_ids": ["x"]}, "stale_group"),
    ]
    for args, kwargs, code in cases:
        result = await engine.execute(engine.move_instrument, *args, **kwargs)
        assert result.code == code
    # ни одна отклонённая попытка не создала tăviță
    assert [t.number for t in await engine.list_trays(SERVICE_FILE_ID)] == ["A"]
    assert len(await store.list_items(source.id)) == 4


@pytest.mark.asyncio
async def test_failed_move_removes_created_tray(engine, store, monkeypatch):
    """Ошибка пакетной записи: новая tăviță удаляется, позиции остаются на месте."""
    source = await _filled_tray(engine, "A")
    before = await store.list_items(source.id)

    async def failing(batch):
        raise PersistenceError("batch_failed", "db down")

    monkeypatch.setattr(store, "apply_batch", failing)
    result = await engine.execute(engine.move_instrument, source.id, "ins-forfecuta", new_tray=NewTray("B"))
    assert result.code == "batch_failed"
    assert [t.number for t in await engine.list_trays(SERVICE_FILE_ID)] == ["A"]
    assert await store.list_items(source.id) == before


@pytest.mark.asyncio
async def test_dispatch_batch_failure_changes_nothing(engine, store, monkeypatch):
    """Хранилище отклоняет один stage: ни одна позиция не переназначена."""
    tray = await _filled_tray(engine)
    await engine.toggle_lock(tray.id, "office_direct", True)
    before = await store.list_items(tray.id)
    real_find_stage = store.find_stage

    async def find_stage(pipeline_id, stage_name):
        if pipeline_id == "pl-horeca":
            return Stage(id="pl-horeca-fantoma", pipeline_id=pipeline_id, name=stage_name)
        return await real_find_stage(pipeline_id, stage_name)

    monkeypatch.setattr(store, "find_stage", find_stage)
    result = await engine.execute(engine.dispatch, SERVICE_FILE_ID)
    assert result.code == "batch_failed"
    assert await store.list_items(tray.id) == before
    assert (PlacementKind.TRAY, tray.id, "pl-saloane") not in store.placements



@pytest.mark.asyncio
async def test_unassigned_source_tray_is_deleted_when_emptied(engine, store):
    unassigned = await engine.create_unassigned_tray(SERVICE_FILE_ID)
    await engine.add_instrument(unassigned.id, "ins-cleste", 2)
    result = await engine.move_instrument(unassigned.id, "ins-cleste", new_tray=NewTray("5"))
    assert result.source_deleted is True
    assert await store.get_tray(unassigned.id) is None
    assert len(await store.list_items(result.target_tray.id)) == 1


async def _dispatched(engine):
    tray = await _filled_tray(engine)
    await engine.toggle_lock(tray.id, "office_direct", True)
    await engine.dispatch(SERVICE_FILE_ID)
    return tray


@pytest.mark.asyncio
async def test_in_lucru_assigns_technician_and_moves_service_file(engine, store):
    tray = await _dispatched(engine)
    assert (PlacementKind.SERVICE_FILE, SERVICE_FILE_ID, "pl-receptie") in store.placements

    result = await engine.mark_in_lucru(tray.id, "ins-forfecuta", "tech-7")

    assert result.stage.name == "IN LUCRU"
    items = [it for it in await store.list_items(tray.id) if it.id in result.item_ids]
    assert len(items) == 3
    assert all(it.technician_id == "tech-7" and it.stage_id == result.stage.id for it in items)
    cutit = [it for it in await store.list_items(tray.id) if it.instrument_id == "ins-cutit"][0]
    assert cutit.technician_id is None
    assert store.placements[(PlacementKind.SERVICE_FILE, SERVICE_FILE_ID, "pl-saloane")].stage_id == result.stage.id
    assert (PlacementKind.SERVICE_FILE, SERVICE_FILE_ID, "pl-receptie") not in store.placements
    assert store.placements[(PlacementKind.TRAY, tray.id, "pl-saloane")].stage_id == result.stage.id


@pytest.mark.asyncio
async def test_stage_transition_rules(engine, store):
    tray = await _dispatched(engine)
    cases = [
        ((tray.id, "ins-forfecuta", StageAction.IN_LUCRU), {}, "technician_required"),
        ((tray.id, "ins-forfecuta", "reparat"), {}, "stage_action_invalid"),
        ((tray.id, "ins-forfecuta", StageAction.ASTEPT_PIESE), {}, "stage_not_allowed"),
        ((tray.id, "ins-masina", StageAction.FINALIZARE), {}, "instrument_not_in_tray"),
        ((tray.id, "ins-forfecuta", StageAction.FINALIZARE), {"view": ViewContext.VANZARI}, "view_not_allowed"),
    ]
    for args, kwargs, code in cases:
        result = await engine.execute(engine.transition_stage, *args, **kwargs)
        assert result.code == code

    done = await engine.mark_finalizare(tray.id, "ins-cutit")
    assert done.stage.name == "FINALIZATA"
    assert done.pipeline_id == "pl-horeca"
    waiting = await engine.mark_in_asteptare(tray.id, "ins-forfecuta")
    assert waiting.stage.name == "IN ASTEPTARE"


@pytest.mark.asyncio
async def test_missing_stage_is_resolution_error(engine, store):
    tray = await _dispatched(engine)
    pipeline = store.pipelines["pl-saloane"]
    pipeline.stages = [s for s in pipeline.stages if s.name != "IN ASTEPTARE"]
    with pytest.raises(ResolutionError) as e:
        await engine.mark_in_asteptare(tray.id, "ins-forfecuta")
    assert e.value.code == "stage_not_found"


@pytest.mark.asyncio
async def test_repair_pipeline_allows_waiting_for_parts(engine, store):
    tray = await engine.create_tray(SERVICE_FILE_ID, "R1")
    await engine.add_service(tray.id, "srv-revizie-masina")
    await engine.toggle_lock(tray.id, "office_direct", True)
    await engine.dispatch(SERVICE_FILE_ID)
    result = await engine.mark_astept_piese(tray.id, "ins-masina")
    assert result.pipeline_id == "pl-reparatii"
    assert result.stage.name == "ASTEPT PIESE"
    assert (await engine.execute(engine.mark_in_asteptare, tray.id, "ins-masina")).code == "stage_not_allowed"


@pytest.mark.asyncio
async def test_delivery_placement_missing_stage_is_not_fatal(engine, store, notifier):
    store.pipelines["pl-receptie"].stages = [s for s in store.pipelines["pl-receptie"].stages
                                             if s.name != "Office Direct"]
    tray = await engine.create_tray(SERVICE_FILE_ID, "1")
    tray = await engine.toggle_lock(tray.id, "office_direct", True)
    assert tray.office_direct
    assert notifier.outcomes[-1].operation == "place_for_delivery"
    assert notifier.outcomes[-1].ok is False
