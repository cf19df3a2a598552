"""Коллабораторы одной операции движка и общие проверки."""
import asyncio
from dataclasses import dataclass, field

from preturi.core.errors import PolicyViolation, ResolutionError
from preturi.core.logging_config import get_logger
from preturi.core.permissions import Action, ViewContext, can_bypass_lock, can_perform
from preturi.entities import Catalog, ServiceFile, Tray, TrayItem
from preturi.services.notifications import LoggingNotifier, Notifier
from preturi.services.pricing import PricingRates
from preturi.store.base import CatalogReader, ReassignmentBatch, StageResolver, TrayStore

logger = get_logger(__name__)


@dataclass
class EngineContext:
    store: TrayStore
    catalog_reader: CatalogReader
    stages: StageResolver
    notifier: Notifier = field(default_factory=LoggingNotifier)
    rates: PricingRates = field(default_factory=PricingRates.from_settings)

    async def load_catalog(self) -> Catalog:
        instruments = await self.catalog_reader.list_instruments()
        services = await self.catalog_reader.list_services()
        parts = await self.catalog_reader.list_parts()
        departments, pipelines = await self.catalog_reader.list_departments_and_pipelines()
        return Catalog(
            instruments={i.id: i for i in instruments},
            services={s.id: s for s in services},
            parts={p.id: p for p in parts},
            departments={d.id: d for d in departments},
            pipelines={p.id: p for p in pipelines},
        )

    async def require_service_file(self, service_file_id: str) -> ServiceFile:
        service_file = await self.store.get_service_file(service_file_id)
        if service_file is None:
            raise ResolutionError("service_file_not_found", f"Fișa {service_file_id} не найдена")
        return service_file

    async def require_tray(self, tray_id: str) -> Tray:
        tray = await self.store.get_tray(tray_id)
        if tray is None:
            raise ResolutionError("tray_not_found", f"Tăvița {tray_id} не найдена")
        return tray

    async def require_item(self, item_id: str) -> TrayItem:
        item = await self.store.get_item(item_id)
        if item is None:
            raise ResolutionError("item_not_found", f"Позиция {item_id} не найдена")
        return item

    async def run_batch(self, batch: ReassignmentBatch) -> None:
        """После отправки пакет не отменяется вызывающей стороной."""
        if batch.is_empty():
            return
        await asyncio.shield(self.store.apply_batch(batch))


def require_view(view: ViewContext, action: Action) -> None:
    if not can_perform(view, action):
        raise PolicyViolation("view_not_allowed", f"Действие {action.value} недоступно в представлении {view.value}")


def check_tray_editable(tray: Tray, view: ViewContext) -> None:
    """Заблокированную tăviță правят только приёмка и департамент."""
    if tray.locked and not can_bypass_lock(view):
        raise PolicyViolation("tray_locked", f"Tăvița {tray.number or tray.id} заблокирована после отправки")
