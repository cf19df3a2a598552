"""
Маршрутизация групп инструментов.

Перенос: все позиции одного инструмента переходят в другую tăviță той же fișă
(или в новую) одним пакетом. Отправка в департаменты: каждая группа каждой
пронумерованной tăviță закрепляется за stage pipeline своего инструмента, а карточка
tăviță за pipeline большинства её групп. Переходы техника (IN LUCRU, FINALIZATA,
ASTEPT PIESE, IN ASTEPTARE) переводят группу в stage с заданным именем.
Во всех случаях запись выполняется одним пакетом: всё или ничего.
"""
from collections import Counter
from dataclasses import dataclass, field
from typing import Optional, Sequence

from preturi.config import settings
from preturi.core.errors import PersistenceError, PolicyViolation, ResolutionError, ValidationError
from preturi.core.logging_config import get_logger
from preturi.core.permissions import Action, ViewContext
from preturi.entities import (
    Catalog,
    Pipeline,
    Placement,
    PlacementKind,
    Stage,
    Tray,
    normalize_name,
)
from preturi.services import stage_rules
from preturi.services.context import EngineContext, check_tray_editable, require_view
from preturi.services.grouping import InstrumentGroup, find_instrument_group, group_by_instrument, unresolved_items
from preturi.services.tray_service import (
    create_tray,
    ensure_tray_available,
    normalize_number,
    normalize_size,
)
from preturi.store.base import (
    ItemMove,
    ItemPatch,
    PlacementKey,
    ReassignmentBatch,
    StageTarget,
    TrayTarget,
)

logger = get_logger(__name__)

DISPATCH_GATE_ANY = "any"
DISPATCH_GATE_BOTH = "both"


@dataclass
class NewTray:
    number: str
    size: Optional[str] = None


@dataclass
class MoveResult:
    source_tray_id: str
    target_tray: Tray
    moved_item_ids: list[str]
    source_deleted: bool = False


@dataclass
class DispatchResult:
    service_file_id: str
    tray_ids: list[str] = field(default_factory=list)
    tray_numbers: list[str] = field(default_factory=list)
    placements: list[Placement] = field(default_factory=list)
    item_count: int = 0
    pipelines: list[str] = field(default_factory=list)


@dataclass
class StageTransitionResult:
    tray_id: str
    instrument_id: str
    pipeline_id: str
    stage: Stage
    item_ids: list[str]


def gate_open(tray: Tray, gate: Optional[str] = None) -> bool:
    """Условие отправки. По умолчанию достаточно одного флага доставки."""
    gate = (gate or settings.dispatch_gate).strip().lower()
    if gate == DISPATCH_GATE_BOTH:
        return tray.office_direct and tray.curier_trimis
    return tray.office_direct or tray.curier_trimis


def department_pipelines(catalog: Catalog) -> dict[str, Pipeline]:
    names = {normalize_name(n) for n in settings.department_pipeline_list}
    return {p.id: p for p in catalog.pipelines.values() if normalize_name(p.name) in names}


async def landing_stage(ctx: EngineContext, pipeline: Pipeline) -> Stage:
    """Начальный stage pipeline, иначе первый по позиции."""
    stage = await ctx.stages.find_stage(pipeline.id, settings.initial_stage)
    if stage is not None:
        return stage
    stages = await ctx.stages.list_stages(pipeline.id)
    if not stages:
        raise ResolutionError("stage_not_found", f"В pipeline {pipeline.name} нет stage")
    return stages[0]


# --- перенос группы ---

async def _resolve_move_target(ctx: EngineContext, source: Tray, target_tray_id: Optional[str],
                               new_tray: Optional[NewTray], view: ViewContext) -> Optional[Tray]:
    """Существующая tăviță-получатель; None: будет создана новая (номер уже проверен)."""
    if bool(target_tray_id) == bool(new_tray):
        raise ValidationError("move_target_missing", "Укажите tăviță-получатель или данные новой tăvițe")
    if new_tray is not None:
        number, size = normalize_number(new_tray.number), normalize_size(new_tray.size)
        await ensure_tray_available(ctx, number, size)
        new_tray.number, new_tray.size = number, size
        return None
    if target_tray_id == source.id:
        raise ValidationError("move_target_same", "Tăvița-получатель совпадает с исходной")
    target = await ctx.store.get_tray(target_tray_id)
    if target is None:
        raise ResolutionError("tray_not_found", f"Tăvița {target_tray_id} не найдена")
    if target.service_file_id != source.service_file_id:
        raise ValidationError("move_target_foreign", "Tăvița-получатель относится к другой fișă")
    check_tray_editable(target, view)
    return target


async def move_instrument(ctx: EngineContext, source_tray_id: str, instrument_id: str,
                          target_tray_id: Optional[str] = None, new_tray: Optional[NewTray] = None,
                          expected_item_ids: Optional[Sequence[str]] = None,
                          view: ViewContext = ViewContext.VANZARI) -> MoveResult:
    require_view(view, Action.MOVE_INSTRUMENT)
    if not instrument_id:
        raise ValidationError("instrument_required", "Не указан инструмент для переноса")
    source = await ctx.require_tray(source_tray_id)
    check_tray_editable(source, view)
    target = await _resolve_move_target(ctx, source, target_tray_id, new_tray, view)

    catalog = await ctx.load_catalog()
    items = await ctx.store.list_items(source.id)
    group = find_instrument_group(items, instrument_id, catalog)
    if group is None:
        raise ValidationError("instrument_not_in_tray", f"Инструмента {instrument_id} нет в tăvița")
    # повторная проверка: группа не изменилась с момента, когда её показали пользователю
    if expected_item_ids is not None and set(expected_item_ids) != set(group.item_ids):
        raise ValidationError("stale_group", "Состав группы изменился, обновите tăvița")

    created = None
    if target is None:
        created = await create_tray(ctx, source.service_file_id, new_tray.number, new_tray.size)
        target = created
    try:
        await ctx.run_batch(ReassignmentBatch(moves=[ItemMove(tuple(group.item_ids), TrayTarget(target.id))]))
    except PersistenceError:
        if created is not None:
            await ctx.store.delete_tray(created.id)
            logger.warning("Перенос не выполнен, созданная tăviță id=%s удалена", created.id)
        raise

    source_deleted = False
    if source.unassigned and not await ctx.store.list_items(source.id):
        await ctx.store.delete_tray(source.id)
        source_deleted = True
    logger.info(
        "Перенесён инструмент %s: %s позиций из tăviță %s в %s",
        instrument_id, len(group.items), source.id, target.id,
    )
    return MoveResult(
        source_tray_id=source.id,
        target_tray=target,
        moved_item_ids=group.item_ids,
        source_deleted=source_deleted,
    )


# --- отправка в департаменты ---

def _resolve_group_pipeline(group: InstrumentGroup, catalog: Catalog) -> Pipeline:
    pipeline = catalog.resolve_pipeline(group.instrument)
    if pipeline is None:
        raise ResolutionError(
            "pipeline_unresolved",
            f"Для инструмента {group.instrument.name} не определён pipeline департамента",
        )
    return pipeline


async def dispatch(ctx: EngineContext, service_file_id: str,
                   view: ViewContext = ViewContext.VANZARI) -> DispatchResult:
    require_view(view, Action.DISPATCH)
    await ctx.require_service_file(service_file_id)
    trays = [t for t in await ctx.store.list_trays(service_file_id) if not t.unassigned]
    if not trays:
        raise ValidationError("no_trays", "В fișă нет пронумерованных tăvițe")
    closed = [t.number for t in trays if not gate_open(t)]
    if closed:
        raise PolicyViolation(
            "dispatch_gate_closed",
            f"Не выбран способ доставки (Office direct / Curier trimis) для tăvițe: {', '.join(closed)}",
        )

    catalog = await ctx.load_catalog()
    departments = department_pipelines(catalog)
    placed = await ctx.store.list_placements(PlacementKind.TRAY, [t.id for t in trays])
    if any(p.pipeline_id in departments for p in placed):
        raise PolicyViolation("already_dispatched", "Tăvițele уже отправлены в департаменты")

    stage_cache: dict[str, Stage] = {}
    result = DispatchResult(service_file_id=service_file_id)
    batch = ReassignmentBatch()
    for tray in trays:
        items = await ctx.store.list_items(tray.id)
        if not items:
            raise ValidationError("tray_empty", f"Tăvița {tray.number} не содержит позиций")
        if any(it.pipeline_id in departments for it in items):
            raise PolicyViolation("already_dispatched", f"Позиции tăviță {tray.number} уже в департаменте")
        unresolved = unresolved_items(items, catalog)
        if unresolved:
            raise ResolutionError(
                "instrument_unresolved",
                f"Не определён инструмент для позиций: {', '.join(it.id for it in unresolved)}",
            )
        votes: Counter = Counter()
        for group in group_by_instrument(items, catalog):
            pipeline = _resolve_group_pipeline(group, catalog)
            if pipeline.id not in stage_cache:
                stage_cache[pipeline.id] = await landing_stage(ctx, pipeline)
            stage = stage_cache[pipeline.id]
            department_id = pipeline.department_id or group.instrument.department_id
            batch.moves.append(ItemMove(tuple(group.item_ids), StageTarget(pipeline.id, stage.id, department_id)))
            votes[pipeline.id] += 1
            result.item_count += len(group.items)
        tray_pipeline = catalog.pipelines[votes.most_common(1)[0][0]]
        placement = Placement(PlacementKind.TRAY, tray.id, tray_pipeline.id, stage_cache[tray_pipeline.id].id)
        batch.placements.append(placement)
        result.tray_ids.append(tray.id)
        result.tray_numbers.append(tray.number)
        result.placements.append(placement)
        if tray_pipeline.name not in result.pipelines:
            result.pipelines.append(tray_pipeline.name)

    await ctx.run_batch(batch)
    logger.info(
        "Fișă id=%s отправлена в департаменты: tăvițe=%s позиций=%s",
        service_file_id, result.tray_numbers, result.item_count,
    )
    return result


# --- размещение fișă на приёмке ---

def _compact(name: str) -> str:
    return "".join(ch for ch in normalize_name(name) if ch.isalnum())


async def place_for_delivery(ctx: EngineContext, service_file_id: str, flag: str) -> Optional[Placement]:
    """Карточка fișă в stage Receptie по способу доставки; нет pipeline/stage: только предупреждение."""
    catalog = await ctx.load_catalog()
    receptie = catalog.pipeline_by_name(settings.receptie_pipeline)
    if receptie is None:
        logger.warning("Pipeline %s не найден — fișă %s не размещена", settings.receptie_pipeline, service_file_id)
        return None
    wanted = _compact(flag)
    stages = await ctx.stages.list_stages(receptie.id)
    stage = next((s for s in stages if _compact(s.name) == wanted), None)
    if stage is None:
        logger.warning("Stage %s не найден в %s — fișă %s не размещена", flag, receptie.name, service_file_id)
        return None
    placement = Placement(PlacementKind.SERVICE_FILE, service_file_id, receptie.id, stage.id)
    await ctx.run_batch(ReassignmentBatch(placements=[placement]))
    logger.info("Fișă id=%s размещена в %s / %s", service_file_id, receptie.name, stage.name)
    return placement


# --- переходы техника ---

def _group_pipeline(group: InstrumentGroup, catalog: Catalog) -> Pipeline:
    """Pipeline, в котором сейчас находится группа; до отправки: по инструменту."""
    for item in group.items:
        if item.pipeline_id and item.pipeline_id in catalog.pipelines:
            return catalog.pipelines[item.pipeline_id]
    return _resolve_group_pipeline(group, catalog)


async def transition_stage(ctx: EngineContext, tray_id: str, instrument_id: str,
                           action: stage_rules.StageAction, technician_id: Optional[str] = None,
                           view: ViewContext = ViewContext.DEPARTMENT) -> StageTransitionResult:
    require_view(view, Action.STAGE_TRANSITION)
    try:
        action = stage_rules.StageAction(action)
    except ValueError:
        raise ValidationError("stage_action_invalid", f"Неизвестное действие: {action}")
    if action is stage_rules.StageAction.IN_LUCRU and not technician_id:
        raise ValidationError("technician_required", "Для IN LUCRU нужен техник")
    tray = await ctx.require_tray(tray_id)
    catalog = await ctx.load_catalog()
    items = await ctx.store.list_items(tray.id)
    group = find_instrument_group(items, instrument_id, catalog)
    if group is None:
        raise ValidationError("instrument_not_in_tray", f"Инструмента {instrument_id} нет в tăvița")
    pipeline = _group_pipeline(group, catalog)
    if not stage_rules.can_apply(pipeline.name, action):
        raise PolicyViolation("stage_not_allowed", f"{stage_rules.stage_name_for(action)} недоступен для {pipeline.name}")
    stage_name = stage_rules.stage_name_for(action)
    stage = await ctx.stages.find_stage(pipeline.id, stage_name)
    if stage is None:
        raise ResolutionError("stage_not_found", f"Stage {stage_name} не найден в pipeline {pipeline.name}")

    department_id = pipeline.department_id or group.instrument.department_id
    batch = ReassignmentBatch(
        moves=[ItemMove(tuple(group.item_ids), StageTarget(pipeline.id, stage.id, department_id))],
        placements=[Placement(PlacementKind.TRAY, tray.id, pipeline.id, stage.id)],
    )
    if action is stage_rules.StageAction.IN_LUCRU:
        batch.item_patches.extend(ItemPatch(item_id, {"technician_id": technician_id}) for item_id in group.item_ids)
        batch.placements.append(Placement(PlacementKind.SERVICE_FILE, tray.service_file_id, pipeline.id, stage.id))
        receptie = catalog.pipeline_by_name(settings.receptie_pipeline)
        if receptie is not None:
            batch.removed_placements.append(
                PlacementKey(PlacementKind.SERVICE_FILE, tray.service_file_id, receptie.id)
            )
    await ctx.run_batch(batch)
    logger.info(
        "Tăviță id=%s инструмент %s -> %s / %s (%s позиций)",
        tray.id, instrument_id, pipeline.name, stage.name, len(group.items),
    )
    return StageTransitionResult(
        tray_id=tray.id,
        instrument_id=instrument_id,
        pipeline_id=pipeline.id,
        stage=stage,
        item_ids=group.item_ids,
    )
