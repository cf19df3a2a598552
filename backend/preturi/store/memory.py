"""Хранилище в памяти процесса: для тестов и встраивания без БД."""
import copy
import uuid
from datetime import datetime
from dataclasses import replace
from typing import Any, Callable, Optional, Sequence

from preturi.core.errors import PersistenceError, ResolutionError
from preturi.entities import (
    Department,
    Instrument,
    Part,
    Pipeline,
    Placement,
    PlacementKind,
    Service,
    ServiceFile,
    Stage,
    Tray,
    TrayItem,
    normalize_name,
)
from preturi.store.base import (
    ChangeEvent,
    ChangeListener,
    ReassignmentBatch,
    ReassignTarget,
    ItemMove,
    TrayTarget,
)


def _new_id() -> str:
    return str(uuid.uuid4())


class InMemoryStore:
    """Справочники, fișe, tăvițe, позиции и размещения в словарях."""

    def __init__(self) -> None:
        self.instruments: dict[str, Instrument] = {}
        self.services: dict[str, Service] = {}
        self.parts: dict[str, Part] = {}
        self.departments: dict[str, Department] = {}
        self.pipelines: dict[str, Pipeline] = {}
        self.service_files: dict[str, ServiceFile] = {}
        self.trays: dict[str, Tray] = {}
        self.items: dict[str, TrayItem] = {}
        self.placements: dict[tuple[PlacementKind, str, str], Placement] = {}
        self._listeners: list[ChangeListener] = []
        self._version = 0

    def _next_version(self) -> int:
        self._version += 1
        return self._version

    def _emit(self, events: list[ChangeEvent]) -> None:
        if not events:
            return
        for listener in list(self._listeners):
            listener(events)

    def _service_file_of_tray(self, tray_id: str) -> Optional[str]:
        tray = self.trays.get(tray_id)
        return tray.service_file_id if tray else None

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    # --- заполнение справочников ---

    def add_department(self, department: Department) -> Department:
        self.departments[department.id] = department
        return department

    def add_pipeline(self, pipeline: Pipeline) -> Pipeline:
        self.pipelines[pipeline.id] = pipeline
        return pipeline

    def add_instrument(self, instrument: Instrument) -> Instrument:
        self.instruments[instrument.id] = instrument
        return instrument

    def add_service(self, service: Service) -> Service:
        self.services[service.id] = service
        return service

    def add_part(self, part: Part) -> Part:
        self.parts[part.id] = part
        return part

    def load_catalog(self, departments: Sequence[Department] = (), pipelines: Sequence[Pipeline] = (),
                     instruments: Sequence[Instrument] = (), services: Sequence[Service] = (),
                     parts: Sequence[Part] = ()) -> "InMemoryStore":
        for department in departments:
            self.add_department(department)
        for pipeline in pipelines:
            self.add_pipeline(pipeline)
        for instrument in instruments:
            self.add_instrument(instrument)
        for service in services:
            self.add_service(service)
        for part in parts:
            self.add_part(part)
        return self

    def add_service_file(self, service_file: ServiceFile) -> ServiceFile:
        stored = replace(service_file, version=self._next_version(),
                         created_at=service_file.created_at or datetime.utcnow())
        self.service_files[stored.id] = stored
        return copy.deepcopy(stored)

    # --- CatalogReader ---

    async def list_instruments(self) -> list[Instrument]:
        return copy.deepcopy(list(self.instruments.values()))

    async def list_services(self) -> list[Service]:
        return copy.deepcopy(list(self.services.values()))

    async def list_parts(self) -> list[Part]:
        return copy.deepcopy(list(self.parts.values()))

    async def list_departments_and_pipelines(self) -> tuple[list[Department], list[Pipeline]]:
        return copy.deepcopy(list(self.departments.values())), copy.deepcopy(list(self.pipelines.values()))

    # --- StageResolver ---

    async def list_stages(self, pipeline_id: str) -> list[Stage]:
        pipeline = self.pipelines.get(pipeline_id)
        if pipeline is None:
            return []
        return sorted(copy.deepcopy(pipeline.stages), key=lambda s: s.position)

    async def find_stage(self, pipeline_id: str, stage_name: str) -> Optional[Stage]:
        key = normalize_name(stage_name)
        for stage in await self.list_stages(pipeline_id):
            if normalize_name(stage.name) == key:
                return stage
        return None

    # --- fișe ---

    async def get_service_file(self, service_file_id: str) -> Optional[ServiceFile]:
        return copy.deepcopy(self.service_files.get(service_file_id))

    async def list_service_files(self, lead_id: str) -> list[ServiceFile]:
        return copy.deepcopy([sf for sf in self.service_files.values() if sf.lead_id == lead_id])

    async def create_service_file(self, service_file: ServiceFile) -> ServiceFile:
        return self.add_service_file(replace(service_file, id=service_file.id or _new_id()))

    async def update_service_file(self, service_file_id: str, **changes: Any) -> ServiceFile:
        current = self.service_files.get(service_file_id)
        if current is None:
            raise ResolutionError("service_file_not_found", f"Fișa {service_file_id} не найдена")
        updated = replace(current, **changes, version=self._next_version())
        self.service_files[service_file_id] = updated
        return copy.deepcopy(updated)

    # --- tăvițe ---

    async def list_trays(self, service_file_id: str) -> list[Tray]:
        trays = [t for t in self.trays.values() if t.service_file_id == service_file_id]
        return copy.deepcopy(trays)

    async def get_tray(self, tray_id: str) -> Optional[Tray]:
        return copy.deepcopy(self.trays.get(tray_id))

    async def find_tray(self, number: str, size: str) -> Optional[Tray]:
        number = (number or "").strip()
        for tray in self.trays.values():
            if (tray.number or "").strip() == number and tray.size == size:
                return copy.deepcopy(tray)
        return None

    async def create_tray(self, tray: Tray) -> Tray:
        if tray.service_file_id not in self.service_files:
            raise ResolutionError("service_file_not_found", f"Fișa {tray.service_file_id} не найдена")
        created = replace(tray, id=tray.id or _new_id(), version=self._next_version(),
                          created_at=tray.created_at or datetime.utcnow())
        self.trays[created.id] = created
        self._emit([ChangeEvent("tray", "upsert", created.id, created.version,
                                copy.deepcopy(created), created.service_file_id)])
        return copy.deepcopy(created)

    async def update_tray(self, tray_id: str, **changes: Any) -> Tray:
        current = self.trays.get(tray_id)
        if current is None:
            raise ResolutionError("tray_not_found", f"Tăvița {tray_id} не найдена")
        updated = replace(current, **changes, version=self._next_version())
        self.trays[tray_id] = updated
        self._emit([ChangeEvent("tray", "upsert", tray_id, updated.version,
                                copy.deepcopy(updated), updated.service_file_id)])
        return copy.deepcopy(updated)

    async def delete_tray(self, tray_id: str) -> None:
        current = self.trays.get(tray_id)
        if current is None:
            raise ResolutionError("tray_not_found", f"Tăvița {tray_id} не найдена")
        if any(it.tray_id == tray_id for it in self.items.values()):
            raise PersistenceError("tray_not_empty", f"В tăvița {tray_id} остались позиции")
        del self.trays[tray_id]
        for key in [k for k in self.placements if k[0] == PlacementKind.TRAY and k[1] == tray_id]:
            del self.placements[key]
        self._emit([ChangeEvent("tray", "delete", tray_id, self._next_version(),
                                None, current.service_file_id)])

    # --- позиции ---

    async def list_items(self, tray_id: str) -> list[TrayItem]:
        # порядок словаря: порядок создания
        return copy.deepcopy([it for it in self.items.values() if it.tray_id == tray_id])

    async def get_item(self, item_id: str) -> Optional[TrayItem]:
        return copy.deepcopy(self.items.get(item_id))

    async def create_item(self, item: TrayItem) -> TrayItem:
        if item.tray_id not in self.trays:
            raise ResolutionError("tray_not_found", f"Tăvița {item.tray_id} не найдена")
        created = replace(item, id=item.id or _new_id(), version=self._next_version(),
                          created_at=item.created_at or datetime.utcnow())
        self.items[created.id] = created
        self._emit([ChangeEvent("item", "upsert", created.id, created.version,
                                copy.deepcopy(created), self._service_file_of_tray(created.tray_id))])
        return copy.deepcopy(created)

    async def update_item(self, item_id: str, **changes: Any) -> TrayItem:
        current = self.items.get(item_id)
        if current is None:
            raise ResolutionError("item_not_found", f"Позиция {item_id} не найдена")
        updated = replace(current, **changes, version=self._next_version())
        self.items[item_id] = updated
        self._emit([ChangeEvent("item", "upsert", item_id, updated.version,
                                copy.deepcopy(updated), self._service_file_of_tray(updated.tray_id))])
        return copy.deepcopy(updated)

    async def delete_item(self, item_id: str) -> None:
        current = self.items.pop(item_id, None)
        if current is None:
            raise ResolutionError("item_not_found", f"Позиция {item_id} не найдена")
        self._emit([ChangeEvent("item", "delete", item_id, self._next_version(),
                                None, self._service_file_of_tray(current.tray_id))])

    # --- пакетная запись ---

    async def batch_reassign_items(self, item_ids: Sequence[str], target: ReassignTarget) -> None:
        await self.apply_batch(ReassignmentBatch(moves=[ItemMove(tuple(item_ids), target)]))

    def _check_target(self, target: ReassignTarget) -> None:
        if isinstance(target, TrayTarget):
            if target.tray_id not in self.trays:
                raise PersistenceError("batch_failed", f"Tăvița {target.tray_id} не найдена")
            return
        pipeline = self.pipelines.get(target.pipeline_id)
        if pipeline is None or not any(s.id == target.stage_id for s in pipeline.stages):
            raise PersistenceError("batch_failed", f"Stage {target.stage_id} не найден")

    async def apply_batch(self, batch: ReassignmentBatch) -> None:
        """Все изменения применяются к копии; состояние заменяется только при полном успехе."""
        items = dict(self.items)
        placements = dict(self.placements)
        version = self._version
        touched: dict[str, TrayItem] = {}
        placement_events: list[ChangeEvent] = []

        for move in batch.moves:
            self._check_target(move.target)
            for item_id in move.item_ids:
                item = items.get(item_id)
                if item is None:
                    raise PersistenceError("batch_failed", f"Позиция {item_id} не найдена")
                if isinstance(move.target, TrayTarget):
                    item = replace(item, tray_id=move.target.tray_id)
                else:
                    item = replace(
                        item,
                        pipeline_id=move.target.pipeline_id,
                        stage_id=move.target.stage_id,
                        department_id=move.target.department_id or item.department_id,
                    )
                items[item_id] = touched[item_id] = item

        for patch in batch.item_patches:
            item = items.get(patch.item_id)
            if item is None:
                raise PersistenceError("batch_failed", f"Позиция {patch.item_id} не найдена")
            items[patch.item_id] = touched[patch.item_id] = replace(item, **patch.changes)

        for key in batch.removed_placements:
            removed = placements.pop((key.kind, key.ref_id, key.pipeline_id), None)
            if removed is not None:
                version += 1
                placement_events.append(ChangeEvent("placement", "delete", removed.id, version))

        for placement in batch.placements:
            pipeline = self.pipelines.get(placement.pipeline_id)
            if pipeline is None or not any(s.id == placement.stage_id for s in pipeline.stages):
                raise PersistenceError("batch_failed", f"Stage {placement.stage_id} не найден")
            key = (placement.kind, placement.ref_id, placement.pipeline_id)
            existing = placements.get(key)
            version += 1
            stored = replace(placement, id=existing.id if existing else (placement.id or _new_id()),
                             version=version)
            placements[key] = stored
            placement_events.append(ChangeEvent("placement", "upsert", stored.id, version, copy.deepcopy(stored)))

        events = []
        for item_id, item in touched.items():
            version += 1
            item = replace(item, version=version)
            items[item_id] = item
            events.append(ChangeEvent("item", "upsert", item_id, version, copy.deepcopy(item),
                                      self._service_file_of_tray(item.tray_id)))

        self.items = items
        self.placements = placements
        self._version = version
        self._emit(events + placement_events)

    # --- размещения в pipeline ---

    async def list_placements(self, kind: PlacementKind, ref_ids: Sequence[str]) -> list[Placement]:
        wanted = set(ref_ids)
        return copy.deepcopy([p for p in self.placements.values() if p.kind == kind and p.ref_id in wanted])

    async def upsert_placement(self, placement: Placement) -> Placement:
        await self.apply_batch(ReassignmentBatch(placements=[placement]))
        return copy.deepcopy(self.placements[(placement.kind, placement.ref_id, placement.pipeline_id)])
