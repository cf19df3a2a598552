"""SqlStore на SQLite (aiosqlite): пакетная запись в SAVEPOINT и старые notes."""
import json
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy import event, select
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from preturi import models
from preturi.core.database import Base
from preturi.core.errors import PersistenceError
from preturi.entities import Placement, PlacementKind, ServiceLine
from preturi.main import seed_catalog
from preturi.services.engine import PreturiEngine
from preturi.services.notifications import RecordingNotifier
from preturi.store.base import ItemMove, ReassignmentBatch, TrayTarget
from preturi.store.sql import SqlStore

from conftest import LEAD_ID, SERVICE_FILE_ID


@pytest_asyncio.fixture
async def session():
    db = create_async_engine("sqlite+aiosqlite://", poolclass=StaticPool)

    # SAVEPOINT в pysqlite/aiosqlite работает только с явным BEGIN
    @event.listens_for(db.sync_engine, "connect")
    def _connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(db.sync_engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with db.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    maker = async_sessionmaker(db, expire_on_commit=False)
    async with maker() as s:
        assert await seed_catalog(s) is True
        s.add(models.ServiceFile(id=SERVICE_FILE_ID, lead_id=LEAD_ID, number="F-1"))
        await s.commit()
        yield s
    await db.dispose()


@pytest.fixture
def sql_engine(session, rates):
    return PreturiEngine(SqlStore(session), notifier=RecordingNotifier(), rates=rates)


@pytest.mark.asyncio
async def test_seed_runs_once(session):
    assert await seed_catalog(session) is False
    stages = (await session.execute(select(models.Stage).where(models.Stage.pipeline_id == "pl-receptie"))).scalars()
    assert sorted(s.name for s in stages) == ["Curier Trimis", "De Facturat", "Noua", "Office Direct"]


@pytest.mark.asyncio
async def test_dispatch_and_stage_transition(sql_engine):
    tray = await sql_engine.create_tray(SERVICE_FILE_ID, "1")
    await sql_engine.add_service(tray.id, "srv-ascutire-foarfeca", 2, discount_pct=10)
    await sql_engine.add_part(tray.id, "prt-surub", "ins-foarfeca")
    await sql_engine.toggle_lock(tray.id, "office_direct", True)

    result = await sql_engine.dispatch(SERVICE_FILE_ID)
    assert result.item_count == 2
    items = await sql_engine.store.list_items(tray.id)
    assert {(it.pipeline_id, it.stage_id) for it in items} == {("pl-frizerii", "pl-frizerii-0")}

    moved = await sql_engine.mark_in_lucru(tray.id, "ins-foarfeca", "tech-1")
    assert moved.stage.id == "pl-frizerii-1"
    items = await sql_engine.store.list_items(tray.id)
    assert {it.technician_id for it in items} == {"tech-1"}
    placements = await sql_engine.store.list_placements(PlacementKind.SERVICE_FILE, [SERVICE_FILE_ID])
    assert [p.pipeline_id for p in placements] == ["pl-frizerii"]

    bill = await sql_engine.bill_service_file(SERVICE_FILE_ID)
    assert bill.all_sheets_total == Decimal("159.00")


@pytest.mark.asyncio
async def test_failed_batch_rolls_back_savepoint(sql_engine, session):
    """Неверный stage в размещении: перенос позиций из того же пакета откатывается."""
    store = sql_engine.store
    source = await sql_engine.create_tray(SERVICE_FILE_ID, "1")
    target = await sql_engine.create_tray(SERVICE_FILE_ID, "2")
    item = await sql_engine.add_service(source.id, "srv-ascutire-cutit")
    batch = ReassignmentBatch(
        moves=[ItemMove((item.id,), TrayTarget(target.id))],
        placements=[Placement(PlacementKind.TRAY, target.id, "pl-horeca", "pl-saloane-0")],
    )
    with pytest.raises(PersistenceError) as e:
        await store.apply_batch(batch)
    assert e.value.code == "batch_failed"
    assert (await store.get_item(item.id)).tray_id == source.id
    assert await store.list_placements(PlacementKind.TRAY, [target.id]) == []

    # сессия остаётся рабочей после отката
    moved = await sql_engine.move_instrument(source.id, "ins-cutit", target_tray_id=target.id)
    assert moved.moved_item_ids == [item.id]
    assert (await store.get_item(item.id)).tray_id == target.id


@pytest.mark.asyncio
async def test_legacy_notes_are_read_and_replaced(sql_engine, session):
    tray = await sql_engine.create_tray(SERVICE_FILE_ID, "1")
    session.add(models.TrayItem(
        id="legacy-1",
        tray_id=tray.id,
        instrument_id="ins-cutit",
        service_id="srv-ascutire-cutit",
        qty=2,
        notes=json.dumps({"item_type": "service", "price": "30", "discount_pct": "50",
                          "urgent": True, "name": "Ascutire cutit"}),
    ))
    await session.flush()

    item = await sql_engine.store.get_item("legacy-1")
    assert isinstance(item, ServiceLine)
    assert (item.price, item.discount_pct, item.urgent) == (Decimal("30"), Decimal("50"), True)
    assert (await sql_engine.tray_view(tray.id)).totals.total == Decimal("39")

    await sql_engine.update_item("legacy-1", {"qty": 3})
    row = await session.get(models.TrayItem, "legacy-1")
    assert row.notes is None
    assert row.item_type == "service"
    assert row.discount_pct == Decimal("50")


@pytest.mark.asyncio
async def test_legacy_nan_discount_does_not_break_totals(sql_engine, session):
    tray = await sql_engine.create_tray(SERVICE_FILE_ID, "1")
    session.add(models.TrayItem(
        id="legacy-nan",
        tray_id=tray.id,
        instrument_id="ins-cutit",
        service_id="srv-ascutire-cutit",
        qty=2,
        notes=json.dumps({"item_type": "service", "price": "30", "discount_pct": "NaN"}),
    ))
    await session.flush()

    item = await sql_engine.store.get_item("legacy-nan")
    assert item.discount_pct == Decimal("0")
    assert (await sql_engine.tray_view(tray.id)).totals.total == Decimal("60")
    assert (await sql_engine.bill_service_file(SERVICE_FILE_ID)).all_sheets_total == Decimal("60.00")


@pytest.mark.asyncio
async def test_legacy_details_keep_payment(sql_engine, session):
    row = await session.get(models.ServiceFile, SERVICE_FILE_ID)
    row.details = json.dumps({"text": "vechi", "paymentCash": True})
    await session.flush()

    service_file = await sql_engine.update_details(SERVICE_FILE_ID, "nou")
    assert service_file.details == "nou"
    assert service_file.payment_cash is True


@pytest.mark.asyncio
async def test_store_refuses_to_delete_tray_with_items(sql_engine):
    tray = await sql_engine.create_tray(SERVICE_FILE_ID, "1")
    await sql_engine.add_instrument(tray.id, "ins-cleste")
    with pytest.raises(PersistenceError):
        await sql_engine.store.delete_tray(tray.id)
