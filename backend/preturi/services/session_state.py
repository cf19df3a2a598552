"""
Состояние одной fișă для интерфейса: tăvițe и позиции, обновляемые потоком событий хранилища.

События применяются по id с правилом «последняя запись побеждает» по version:
дубликаты и устаревшие события игнорируются, удаление оставляет отметку версии,
поэтому запоздавшее старое событие не воскрешает запись. Подписчики получают
неизменяемые снимки.
"""
import copy
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Iterable, Optional

from preturi.core.logging_config import get_logger
from preturi.entities import Catalog, Tray, TrayItem
from preturi.services.context import EngineContext
from preturi.services.grouping import InstrumentGroup, group_by_instrument
from preturi.services.pricing import PricingRates, Totals, compute_totals
from preturi.store.base import ChangeEvent, TrayStore

logger = get_logger(__name__)

_TRACKED = ("tray", "item")


@dataclass(frozen=True)
class TraySnapshot:
    tray: Tray
    items: tuple[TrayItem, ...]
    totals: Totals
    groups: tuple[InstrumentGroup, ...]


@dataclass(frozen=True)
class SessionSnapshot:
    service_file_id: str
    trays: tuple[TraySnapshot, ...]
    total: Decimal
    revision: int

    def tray(self, tray_id: str) -> Optional[TraySnapshot]:
        return next((t for t in self.trays if t.tray.id == tray_id), None)


SnapshotListener = Callable[[SessionSnapshot], None]


class PreturiSession:
    def __init__(self, service_file_id: str, catalog: Catalog, rates: Optional[PricingRates] = None):
        self.service_file_id = service_file_id
        self.catalog = catalog
        self.rates = rates or PricingRates.from_settings()
        self._trays: dict[str, Tray] = {}
        self._items: dict[str, TrayItem] = {}
        self._versions: dict[tuple[str, str], int] = {}
        self._listeners: list[SnapshotListener] = []
        self._revision = 0
        self._detach: Optional[Callable[[], None]] = None

    @classmethod
    async def load(cls, ctx: EngineContext, service_file_id: str) -> "PreturiSession":
        await ctx.require_service_file(service_file_id)
        session = cls(service_file_id, await ctx.load_catalog(), ctx.rates)
        for tray in await ctx.store.list_trays(service_file_id):
            session._put("tray", tray.id, tray.version, tray)
            for item in await ctx.store.list_items(tray.id):
                session._put("item", item.id, item.version, item)
        return session

    def attach(self, store: TrayStore) -> None:
        self.detach()
        self._detach = store.subscribe(self.apply_events)

    def detach(self) -> None:
        if self._detach is not None:
            self._detach()
            self._detach = None

    def subscribe(self, listener: SnapshotListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _put(self, entity: str, record_id: str, version: int, record) -> None:
        self._versions[(entity, record_id)] = version
        target = self._trays if entity == "tray" else self._items
        target[record_id] = copy.deepcopy(record)

    def _is_ours(self, event: ChangeEvent) -> bool:
        if event.service_file_id is not None:
            return event.service_file_id == self.service_file_id
        # событие без fișă: только для уже известных записей
        return (event.entity, event.id) in self._versions

    def apply_event(self, event: ChangeEvent) -> bool:
        """True, если событие изменило состояние."""
        if event.entity not in _TRACKED or not self._is_ours(event):
            return False
        key = (event.entity, event.id)
        if event.version <= self._versions.get(key, -1):
            return False
        if event.op == "delete":
            self._versions[key] = event.version
            target = self._trays if event.entity == "tray" else self._items
            target.pop(event.id, None)
        elif event.record is not None:
            self._put(event.entity, event.id, event.version, event.record)
        else:
            return False
        self._revision += 1
        return True

    def apply_events(self, events: Iterable[ChangeEvent]) -> None:
        changed = False
        for event in events:
            changed = self.apply_event(event) or changed
        if changed:
            self._publish()

    def _publish(self) -> None:
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Ошибка подписчика состояния fișă %s", self.service_file_id)

    def snapshot(self) -> SessionSnapshot:
        trays = []
        for tray in sorted(self._trays.values(), key=lambda t: (t.unassigned, t.number, t.id)):
            items = [it for it in self._items.values() if it.tray_id == tray.id]
            items.sort(key=lambda it: it.created_at.timestamp() if it.created_at else 0.0)
            totals = compute_totals(items, tray.subscription_type, self.rates)
            trays.append(TraySnapshot(
                tray=copy.deepcopy(tray),
                items=tuple(copy.deepcopy(items)),
                totals=totals,
                groups=tuple(group_by_instrument(copy.deepcopy(items), self.catalog)),
            ))
        total = sum((t.totals.total for t in trays), Decimal("0"))
        return SessionSnapshot(
            service_file_id=self.service_file_id,
            trays=tuple(trays),
            total=total,
            revision=self._revision,
        )
