"""
Хранилище поверх AsyncSession. Пакетные изменения выполняются в SAVEPOINT:
либо применяются целиком, либо откатываются, а ошибка SQLAlchemy превращается
в PersistenceError.
"""
from dataclasses import replace
from decimal import Decimal
from typing import Any, Callable, Optional, Sequence

from sqlalchemy import select, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from preturi import models
from preturi.core.errors import PersistenceError, ResolutionError
from preturi.core.logging_config import get_logger
from preturi.entities import (
    Department,
    Instrument,
    InstrumentPlaceholder,
    Part,
    PartLine,
    Pipeline,
    Placement,
    PlacementKind,
    Service,
    ServiceFile,
    ServiceLine,
    Stage,
    SubscriptionType,
    Tray,
    TrayItem,
    is_priced,
    normalize_name,
)
from preturi.services.legacy_notes import (
    brand_groups_from_json,
    brand_groups_to_json,
    compose_details,
    merge_item_notes,
    read_details,
)
from preturi.store.base import (
    ChangeEvent,
    ChangeListener,
    ItemMove,
    ReassignmentBatch,
    ReassignTarget,
    TrayTarget,
)

logger = get_logger(__name__)


def _decimal(value: Any) -> Decimal:
    return Decimal(str(value)) if value is not None else Decimal("0")


def _service_file_from_row(row: models.ServiceFile) -> ServiceFile:
    details = read_details(row.details)
    return ServiceFile(
        id=row.id,
        lead_id=row.lead_id,
        number=row.number or "",
        stage=row.stage or "",
        details=details.text,
        payment_cash=row.payment_cash or bool(details.payment_cash),
        payment_card=row.payment_card or bool(details.payment_card),
        version=row.version,
        created_at=row.created_at,
    )


def _tray_from_row(row: models.Tray) -> Tray:
    return Tray(
        id=row.id,
        service_file_id=row.service_file_id,
        number=row.number or "",
        size=row.size,
        office_direct=row.office_direct,
        curier_trimis=row.curier_trimis,
        is_cash=row.is_cash,
        is_card=row.is_card,
        subscription_type=SubscriptionType.parse(row.subscription_type),
        version=row.version,
        created_at=row.created_at,
    )


def _item_from_row(row: models.TrayItem) -> TrayItem:
    fields = merge_item_notes(
        {
            "item_type": row.item_type,
            "price": row.price,
            "discount_pct": row.discount_pct,
            "urgent": row.urgent,
            "name_snapshot": row.name_snapshot,
            "brand": row.brand,
            "serial_number": row.serial_number,
            "garantie": row.garantie,
            "brand_groups": brand_groups_from_json(row.brand_groups),
        },
        row.notes,
    )
    common = dict(
        id=row.id,
        tray_id=row.tray_id,
        instrument_id=row.instrument_id,
        qty=row.qty or 1,
        technician_id=row.technician_id,
        department_id=row.department_id,
        pipeline_id=row.pipeline_id,
        stage_id=row.stage_id,
        brand=fields["brand"],
        serial_number=fields["serial_number"],
        garantie=bool(fields["garantie"]),
        brand_groups=fields["brand_groups"],
        version=row.version,
        created_at=row.created_at,
    )
    item_type = fields["item_type"]
    if item_type not in ("service", "part"):
        return InstrumentPlaceholder(**common)
    priced = dict(
        common,
        name_snapshot=fields["name_snapshot"] or "",
        price=_decimal(fields["price"]),
        discount_pct=_decimal(fields["discount_pct"]),
        urgent=bool(fields["urgent"]),
    )
    if item_type == "service":
        return ServiceLine(**priced, service_id=row.service_id)
    return PartLine(**priced, part_id=row.part_id)


def _item_columns(item: TrayItem) -> dict[str, Any]:
    values: dict[str, Any] = {
        "tray_id": item.tray_id,
        "item_type": item.item_type.value if item.item_type else None,
        "instrument_id": item.instrument_id,
        "technician_id": item.technician_id,
        "department_id": item.department_id,
        "pipeline_id": item.pipeline_id,
        "stage_id": item.stage_id,
        "qty": item.qty,
        "brand": item.brand,
        "serial_number": item.serial_number,
        "garantie": item.garantie,
        "brand_groups": brand_groups_to_json(item.brand_groups) if item.brand_groups else None,
        # после записи типизированных полей старый notes больше не читается
        "notes": None,
    }
    if is_priced(item):
        values.update(
            name_snapshot=item.name_snapshot,
            price=item.price,
            discount_pct=item.discount_pct,
            urgent=item.urgent,
        )
    if isinstance(item, ServiceLine):
        values["service_id"] = item.service_id
    if isinstance(item, PartLine):
        values["part_id"] = item.part_id
    return values


def _placement_from_row(row: models.PipelineItem) -> Placement:
    return Placement(
        kind=PlacementKind(row.kind),
        ref_id=row.ref_id,
        pipeline_id=row.pipeline_id,
        stage_id=row.stage_id,
        id=row.id,
        version=row.version,
    )


def _stage_from_row(row: models.Stage) -> Stage:
    return Stage(id=row.id, pipeline_id=row.pipeline_id, name=row.name, position=row.position)


class SqlStore:
    """CatalogReader + StageResolver + TrayStore на одной сессии запроса."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self._listeners: list[ChangeListener] = []

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _emit(self, events: list[ChangeEvent]) -> None:
        if not events:
            return
        for listener in list(self._listeners):
            listener(events)

    async def _flush(self) -> None:
        try:
            await self.session.flush()
        except SQLAlchemyError as e:
            logger.exception("Ошибка записи в БД: %s", e)
            raise PersistenceError("write_failed", "Не удалось сохранить изменения") from e

    async def _service_file_id_of_tray(self, tray_id: str) -> Optional[str]:
        row = await self.session.get(models.Tray, tray_id)
        return row.service_file_id if row else None

    # --- CatalogReader ---

    async def list_instruments(self) -> list[Instrument]:
        result = await self.session.execute(select(models.Instrument).order_by(models.Instrument.name))
        return [
            Instrument(id=r.id, name=r.name, department_id=r.department_id,
                       weight=_decimal(r.weight), pipeline=r.pipeline)
            for r in result.scalars().all()
        ]

    async def list_services(self) -> list[Service]:
        result = await self.session.execute(select(models.Service).order_by(models.Service.name))
        return [
            Service(id=r.id, name=r.name, price=_decimal(r.price), instrument_id=r.instrument_id)
            for r in result.scalars().all()
        ]

    async def list_parts(self) -> list[Part]:
        result = await self.session.execute(select(models.Part).order_by(models.Part.name))
        return [Part(id=r.id, name=r.name, price=_decimal(r.price)) for r in result.scalars().all()]

    async def list_departments_and_pipelines(self) -> tuple[list[Department], list[Pipeline]]:
        deps = await self.session.execute(select(models.Department))
        pipes = await self.session.execute(
            select(models.Pipeline).options(selectinload(models.Pipeline.stages))
        )
        departments = [Department(id=r.id, name=r.name) for r in deps.scalars().all()]
        pipelines = [
            Pipeline(
                id=r.id,
                name=r.name,
                department_id=r.department_id,
                stages=[_stage_from_row(s) for s in sorted(r.stages, key=lambda s: s.position)],
            )
            for r in pipes.scalars().all()
        ]
        return departments, pipelines

    # --- StageResolver ---

    async def list_stages(self, pipeline_id: str) -> list[Stage]:
        result = await self.session.execute(
            select(models.Stage)
            .where(models.Stage.pipeline_id == pipeline_id)
            .order_by(models.Stage.position)
        )
        return [_stage_from_row(r) for r in result.scalars().all()]

    async def find_stage(self, pipeline_id: str, stage_name: str) -> Optional[Stage]:
        key = normalize_name(stage_name)
        for stage in await self.list_stages(pipeline_id):
            if normalize_name(stage.name) == key:
                return stage
        return None

    # --- fișe ---

    async def get_service_file(self, service_file_id: str) -> Optional[ServiceFile]:
        row = await self.session.get(models.ServiceFile, service_file_id)
        return _service_file_from_row(row) if row else None

    async def list_service_files(self, lead_id: str) -> list[ServiceFile]:
        result = await self.session.execute(
            select(models.ServiceFile)
            .where(models.ServiceFile.lead_id == lead_id)
            .order_by(models.ServiceFile.created_at)
        )
        return [_service_file_from_row(r) for r in result.scalars().all()]

    async def create_service_file(self, service_file: ServiceFile) -> ServiceFile:
        row = models.ServiceFile(
            lead_id=service_file.lead_id,
            number=service_file.number,
            stage=service_file.stage,
            details=service_file.details or None,
            payment_cash=service_file.payment_cash,
            payment_card=service_file.payment_card,
        )
        if service_file.id:
            row.id = service_file.id
        self.session.add(row)
        await self._flush()
        await self.session.refresh(row)
        return _service_file_from_row(row)

    async def update_service_file(self, service_file_id: str, **changes: Any) -> ServiceFile:
        row = await self.session.get(models.ServiceFile, service_file_id)
        if row is None:
            raise ResolutionError("service_file_not_found", f"Fișa {service_file_id} не найдена")
        for key, value in changes.items():
            if key == "details":
                value = compose_details(row.details, value or "")
            setattr(row, key, value)
        row.version += 1
        await self._flush()
        return _service_file_from_row(row)

    # --- tăvițe ---

    async def list_trays(self, service_file_id: str) -> list[Tray]:
        result = await self.session.execute(
            select(models.Tray)
            .where(models.Tray.service_file_id == service_file_id)
            .order_by(models.Tray.created_at)
        )
        return [_tray_from_row(r) for r in result.scalars().all()]

    async def get_tray(self, tray_id: str) -> Optional[Tray]:
        row = await self.session.get(models.Tray, tray_id)
        return _tray_from_row(row) if row else None

    async def find_tray(self, number: str, size: str) -> Optional[Tray]:
        result = await self.session.execute(
            select(models.Tray)
            .where(models.Tray.number == (number or "").strip(), models.Tray.size == size)
            .limit(1)
        )
        row = result.scalar_one_or_none()
        return _tray_from_row(row) if row else None

    async def create_tray(self, tray: Tray) -> Tray:
        if await self.session.get(models.ServiceFile, tray.service_file_id) is None:
            raise ResolutionError("service_file_not_found", f"Fișa {tray.service_file_id} не найдена")
        row = models.Tray(
            service_file_id=tray.service_file_id,
            number=tray.number,
            size=tray.size,
            office_direct=tray.office_direct,
            curier_trimis=tray.curier_trimis,
            is_cash=tray.is_cash,
            is_card=tray.is_card,
            subscription_type=tray.subscription_type.value,
        )
        if tray.id:
            row.id = tray.id
        self.session.add(row)
        await self._flush()
        await self.session.refresh(row)
        created = _tray_from_row(row)
        self._emit([ChangeEvent("tray", "upsert", created.id, created.version, created, created.service_file_id)])
        return created

    async def update_tray(self, tray_id: str, **changes: Any) -> Tray:
        row = await self.session.get(models.Tray, tray_id)
        if row is None:
            raise ResolutionError("tray_not_found", f"Tăvița {tray_id} не найдена")
        for key, value in changes.items():
            if isinstance(value, SubscriptionType):
                value = value.value
            setattr(row, key, value)
        row.version += 1
        await self._flush()
        updated = _tray_from_row(row)
        self._emit([ChangeEvent("tray", "upsert", updated.id, updated.version, updated, updated.service_file_id)])
        return updated

    async def delete_tray(self, tray_id: str) -> None:
        row = await self.session.get(models.Tray, tray_id)
        if row is None:
            raise ResolutionError("tray_not_found", f"Tăvița {tray_id} не найдена")
        count = await self.session.scalar(
            select(func.count()).select_from(models.TrayItem).where(models.TrayItem.tray_id == tray_id)
        )
        if count:
            raise PersistenceError("tray_not_empty", f"В tăvița {tray_id} остались позиции")
        placements = await self.session.execute(
            select(models.PipelineItem).where(
                models.PipelineItem.kind == PlacementKind.TRAY.value,
                models.PipelineItem.ref_id == tray_id,
            )
        )
        for placement in placements.scalars().all():
            await self.session.delete(placement)
        service_file_id, version = row.service_file_id, row.version + 1
        await self.session.delete(row)
        await self._flush()
        self._emit([ChangeEvent("tray", "delete", tray_id, version, None, service_file_id)])

    # --- позиции ---

    async def list_items(self, tray_id: str) -> list[TrayItem]:
        result = await self.session.execute(
            select(models.TrayItem)
            .where(models.TrayItem.tray_id == tray_id)
            .order_by(models.TrayItem.created_at, models.TrayItem.id)
        )
        return [_item_from_row(r) for r in result.scalars().all()]

    async def get_item(self, item_id: str) -> Optional[TrayItem]:
        row = await self.session.get(models.TrayItem, item_id)
        return _item_from_row(row) if row else None

    async def create_item(self, item: TrayItem) -> TrayItem:
        service_file_id = await self._service_file_id_of_tray(item.tray_id)
        if service_file_id is None:
            raise ResolutionError("tray_not_found", f"Tăvița {item.tray_id} не найдена")
        row = models.TrayItem(**_item_columns(item))
        if item.id:
            row.id = item.id
        self.session.add(row)
        await self._flush()
        await self.session.refresh(row)
        created = _item_from_row(row)
        self._emit([ChangeEvent("item", "upsert", created.id, created.version, created, service_file_id)])
        return created

    async def update_item(self, item_id: str, **changes: Any) -> TrayItem:
        row = await self.session.get(models.TrayItem, item_id)
        if row is None:
            raise ResolutionError("item_not_found", f"Позиция {item_id} не найдена")
        updated = replace(_item_from_row(row), **changes)
        for key, value in _item_columns(updated).items():
            setattr(row, key, value)
        row.version += 1
        await self._flush()
        result = _item_from_row(row)
        service_file_id = await self._service_file_id_of_tray(result.tray_id)
        self._emit([ChangeEvent("item", "upsert", result.id, result.version, result, service_file_id)])
        return result

    async def delete_item(self, item_id: str) -> None:
        row = await self.session.get(models.TrayItem, item_id)
        if row is None:
            raise ResolutionError("item_not_found", f"Позиция {item_id} не найдена")
        service_file_id = await self._service_file_id_of_tray(row.tray_id)
        version = row.version + 1
        await self.session.delete(row)
        await self._flush()
        self._emit([ChangeEvent("item", "delete", item_id, version, None, service_file_id)])

    # --- пакетная запись ---

    async def batch_reassign_items(self, item_ids: Sequence[str], target: ReassignTarget) -> None:
        await self.apply_batch(ReassignmentBatch(moves=[ItemMove(tuple(item_ids), target)]))

    async def _check_target(self, target: ReassignTarget) -> None:
        if isinstance(target, TrayTarget):
            if await self.session.get(models.Tray, target.tray_id) is None:
                raise PersistenceError("batch_failed", f"Tăvița {target.tray_id} не найдена")
            return
        await self._check_stage(target.pipeline_id, target.stage_id)

    async def _check_stage(self, pipeline_id: str, stage_id: str) -> None:
        stage = await self.session.get(models.Stage, stage_id)
        if stage is None or stage.pipeline_id != pipeline_id:
            raise PersistenceError("batch_failed", f"Stage {stage_id} не найден в pipeline {pipeline_id}")

    async def _apply(self, batch: ReassignmentBatch) -> list[ChangeEvent]:
        ids = sorted(batch.item_ids())
        rows: dict[str, models.TrayItem] = {}
        if ids:
            result = await self.session.execute(select(models.TrayItem).where(models.TrayItem.id.in_(ids)))
            rows = {r.id: r for r in result.scalars().all()}
        missing = [i for i in ids if i not in rows]
        if missing:
            raise PersistenceError("batch_failed", f"Позиции не найдены: {', '.join(missing)}")

        for move in batch.moves:
            await self._check_target(move.target)
            for item_id in move.item_ids:
                row = rows[item_id]
                if isinstance(move.target, TrayTarget):
                    row.tray_id = move.target.tray_id
                else:
                    row.pipeline_id = move.target.pipeline_id
                    row.stage_id = move.target.stage_id
                    if move.target.department_id:
                        row.department_id = move.target.department_id

        for patch in batch.item_patches:
            row = rows[patch.item_id]
            for key, value in patch.changes.items():
                if key == "brand_groups":
                    value = brand_groups_to_json(value) or None
                setattr(row, key, value)

        for row in rows.values():
            row.version += 1
        await self.session.flush()

        events: list[ChangeEvent] = []
        for key in batch.removed_placements:
            result = await self.session.execute(
                select(models.PipelineItem).where(
                    models.PipelineItem.kind == key.kind.value,
                    models.PipelineItem.ref_id == key.ref_id,
                    models.PipelineItem.pipeline_id == key.pipeline_id,
                )
            )
            existing = result.scalar_one_or_none()
            if existing is not None:
                events.append(ChangeEvent("placement", "delete", existing.id, existing.version + 1))
                await self.session.delete(existing)

        for placement in batch.placements:
            await self._check_stage(placement.pipeline_id, placement.stage_id)
            result = await self.session.execute(
                select(models.PipelineItem).where(
                    models.PipelineItem.kind == placement.kind.value,
                    models.PipelineItem.ref_id == placement.ref_id,
                    models.PipelineItem.pipeline_id == placement.pipeline_id,
                )
            )
            existing = result.scalar_one_or_none()
            if existing is None:
                existing = models.PipelineItem(
                    kind=placement.kind.value,
                    ref_id=placement.ref_id,
                    pipeline_id=placement.pipeline_id,
                    stage_id=placement.stage_id,
                )
                if placement.id:
                    existing.id = placement.id
                self.session.add(existing)
            else:
                existing.stage_id = placement.stage_id
                existing.version += 1
            await self.session.flush()
            stored = _placement_from_row(existing)
            events.append(ChangeEvent("placement", "upsert", stored.id, stored.version, stored))

        tray_ids = {row.tray_id for row in rows.values()}
        service_files: dict[str, Optional[str]] = {}
        for tray_id in tray_ids:
            service_files[tray_id] = await self._service_file_id_of_tray(tray_id)
        item_events = []
        for row in rows.values():
            item = _item_from_row(row)
            item_events.append(ChangeEvent("item", "upsert", item.id, item.version, item, service_files[row.tray_id]))
        return item_events + events

    async def apply_batch(self, batch: ReassignmentBatch) -> None:
        try:
            async with self.session.begin_nested():
                events = await self._apply(batch)
        except SQLAlchemyError as e:
            logger.exception("Пакетная запись не выполнена: %s", e)
            raise PersistenceError("batch_failed", "Пакетная запись не выполнена") from e
        self._emit(events)

    # --- размещения в pipeline ---

    async def list_placements(self, kind: PlacementKind, ref_ids: Sequence[str]) -> list[Placement]:
        if not ref_ids:
            return []
        result = await self.session.execute(
            select(models.PipelineItem).where(
                models.PipelineItem.kind == kind.value,
                models.PipelineItem.ref_id.in_(list(ref_ids)),
            )
        )
        return [_placement_from_row(r) for r in result.scalars().all()]

    async def upsert_placement(self, placement: Placement) -> Placement:
        await self.apply_batch(ReassignmentBatch(placements=[placement]))
        found = await self.list_placements(placement.kind, [placement.ref_id])
        return next(p for p in found if p.pipeline_id == placement.pipeline_id)
