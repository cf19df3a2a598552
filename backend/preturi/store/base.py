"""
Контракты внешних коллабораторов движка: справочники, хранилище tăvițe/позиций,
поиск stage. Реализации: store.memory (в процессе) и store.sql (SQLAlchemy).
"""
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Protocol, Sequence, Union

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
)


@dataclass(frozen=True)
class TrayTarget:
    tray_id: str


@dataclass(frozen=True)
class StageTarget:
    """Позиции остаются в своей tăviță, но закрепляются за pipeline/stage департамента."""
    pipeline_id: str
    stage_id: str
    department_id: Optional[str] = None


ReassignTarget = Union[TrayTarget, StageTarget]


@dataclass(frozen=True)
class ItemMove:
    item_ids: tuple[str, ...]
    target: ReassignTarget


@dataclass(frozen=True)
class ItemPatch:
    item_id: str
    changes: dict[str, Any]


@dataclass(frozen=True)
class PlacementKey:
    kind: PlacementKind
    ref_id: str
    pipeline_id: str


@dataclass
class ReassignmentBatch:
    """Набор изменений, применяемый хранилищем целиком или не применяемый вовсе."""
    moves: list[ItemMove] = field(default_factory=list)
    item_patches: list[ItemPatch] = field(default_factory=list)
    placements: list[Placement] = field(default_factory=list)
    removed_placements: list[PlacementKey] = field(default_factory=list)

    def item_ids(self) -> set[str]:
        ids = {item_id for move in self.moves for item_id in move.item_ids}
        ids.update(p.item_id for p in self.item_patches)
        return ids

    def is_empty(self) -> bool:
        return not (self.moves or self.item_patches or self.placements or self.removed_placements)


@dataclass(frozen=True)
class ChangeEvent:
    """Событие изменения записи; version растёт монотонно для каждой записи."""
    entity: str          # "tray" | "item" | "placement"
    op: str              # "upsert" | "delete"
    id: str
    version: int
    record: Any = None
    service_file_id: Optional[str] = None


ChangeListener = Callable[[list[ChangeEvent]], None]


class CatalogReader(Protocol):
    async def list_instruments(self) -> list[Instrument]: ...

    async def list_services(self) -> list[Service]: ...

    async def list_parts(self) -> list[Part]: ...

    async def list_departments_and_pipelines(self) -> tuple[list[Department], list[Pipeline]]: ...


class StageResolver(Protocol):
    async def find_stage(self, pipeline_id: str, stage_name: str) -> Optional[Stage]: ...

    async def list_stages(self, pipeline_id: str) -> list[Stage]: ...


class TrayStore(Protocol):
    async def get_service_file(self, service_file_id: str) -> Optional[ServiceFile]: ...

    async def list_service_files(self, lead_id: str) -> list[ServiceFile]: ...

    async def create_service_file(self, service_file: ServiceFile) -> ServiceFile: ...

    async def update_service_file(self, service_file_id: str, **changes: Any) -> ServiceFile: ...

    async def list_trays(self, service_file_id: str) -> list[Tray]: ...

    async def get_tray(self, tray_id: str) -> Optional[Tray]: ...

    async def find_tray(self, number: str, size: str) -> Optional[Tray]: ...

    async def create_tray(self, tray: Tray) -> Tray: ...

    async def update_tray(self, tray_id: str, **changes: Any) -> Tray: ...

    async def delete_tray(self, tray_id: str) -> None: ...

    async def list_items(self, tray_id: str) -> list[TrayItem]: ...

    async def get_item(self, item_id: str) -> Optional[TrayItem]: ...

    async def create_item(self, item: TrayItem) -> TrayItem: ...

    async def update_item(self, item_id: str, **changes: Any) -> TrayItem: ...

    async def delete_item(self, item_id: str) -> None: ...

    async def batch_reassign_items(self, item_ids: Sequence[str], target: ReassignTarget) -> None: ...

    async def apply_batch(self, batch: ReassignmentBatch) -> None: ...

    async def list_placements(self, kind: PlacementKind, ref_ids: Sequence[str]) -> list[Placement]: ...

    async def upsert_placement(self, placement: Placement) -> Placement: ...

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]: ...
