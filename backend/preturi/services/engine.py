"""
Фасад движка: операции над fișe, tăvițe и позициями, маршрутизация и итоги.

Методы бросают PreturiError; execute(): граница операции для вызывающих без HTTP:
возвращает OperationResult с кодом причины и никогда не пропускает ошибку движка наружу.
"""
from typing import Any, Awaitable, Callable, Optional, Sequence

from preturi.core.errors import OperationResult, PreturiError
from preturi.core.logging_config import get_logger
from preturi.core.permissions import ViewContext
from preturi.entities import BrandSerialGroup, Placement, Service, ServiceFile, Tray, TrayItem
from preturi.services import billing, routing, tray_service
from preturi.services.context import EngineContext
from preturi.services.notifications import LoggingNotifier, Notifier, OperationOutcome
from preturi.services.pricing import PricingRates
from preturi.services.session_state import PreturiSession
from preturi.services.stage_rules import StageAction
from preturi.store.base import CatalogReader, StageResolver, TrayStore

logger = get_logger(__name__)


class PreturiEngine:
    def __init__(
        self,
        store: TrayStore,
        catalog: Optional[CatalogReader] = None,
        stages: Optional[StageResolver] = None,
        notifier: Optional[Notifier] = None,
        rates: Optional[PricingRates] = None,
    ):
        self.ctx = EngineContext(
            store=store,
            catalog_reader=catalog or store,
            stages=stages or store,
            notifier=notifier or LoggingNotifier(),
            rates=rates or PricingRates.from_settings(),
        )

    @property
    def store(self) -> TrayStore:
        return self.ctx.store

    async def execute(self, operation: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> OperationResult:
        name = getattr(operation, "__name__", "operation")
        try:
            value = await operation(*args, **kwargs)
        except PreturiError as e:
            logger.warning("Операция %s отклонена: code=%s %s", name, e.code, e.message)
            return OperationResult.failure(e)
        return OperationResult.success(value)

    async def _notify(self, outcome: OperationOutcome) -> None:
        try:
            await self.ctx.notifier.notify(outcome)
        except Exception:
            logger.exception("Уведомление %s не доставлено", outcome.operation)

    async def _reported(self, operation: str, ids: dict[str, Any], call: Awaitable[Any]) -> Any:
        """Выполнить операцию маршрутизации и сообщить уведомителю об исходе."""
        try:
            result = await call
        except PreturiError as e:
            await self._notify(OperationOutcome(operation, False, e.code, e.message, ids))
            raise
        await self._notify(OperationOutcome(operation, True, ids=ids))
        return result

    # --- fișe и tăvițe ---

    async def create_service_file(self, lead_id: str, number: str = "", details: str = "") -> ServiceFile:
        return await tray_service.create_service_file(self.ctx, lead_id, number, details)

    async def update_details(self, service_file_id: str, text: str) -> ServiceFile:
        return await tray_service.update_details(self.ctx, service_file_id, text)

    async def list_trays(self, service_file_id: str) -> list[Tray]:
        return await tray_service.list_trays(self.ctx, service_file_id)

    async def is_tray_available(self, number: str, size: Optional[str] = None) -> bool:
        return await tray_service.is_tray_available(self.ctx, number, size)

    async def create_tray(self, service_file_id: str, number: str, size: Optional[str] = None) -> Tray:
        return await tray_service.create_tray(self.ctx, service_file_id, number, size)

    async def create_unassigned_tray(self, service_file_id: str) -> Tray:
        return await tray_service.create_unassigned_tray(self.ctx, service_file_id)

    async def edit_tray(self, tray_id: str, number: Optional[str] = None, size: Optional[str] = None,
                        view: ViewContext = ViewContext.VANZARI) -> Tray:
        return await tray_service.edit_tray(self.ctx, tray_id, number, size, view)

    async def delete_tray(self, tray_id: str, view: ViewContext = ViewContext.VANZARI) -> None:
        await tray_service.delete_tray(self.ctx, tray_id, view)

    async def toggle_lock(self, tray_id: str, flag: str, value: bool,
                          view: ViewContext = ViewContext.VANZARI) -> Tray:
        tray = await tray_service.toggle_lock(self.ctx, tray_id, flag, value, view)
        if value:
            placement = await routing.place_for_delivery(self.ctx, tray.service_file_id, flag)
            if placement is None:
                await self._notify(OperationOutcome(
                    "place_for_delivery", False, "stage_not_found",
                    "Fișa nu a fost plasată în Receptie", {"service_file_id": tray.service_file_id},
                ))
        return tray

    async def set_payment(self, tray_id: str, is_cash: Optional[bool] = None,
                          is_card: Optional[bool] = None) -> Tray:
        return await tray_service.set_payment(self.ctx, tray_id, is_cash, is_card)

    async def set_subscription(self, tray_id: str, subscription_type: Optional[str],
                               view: ViewContext = ViewContext.VANZARI) -> Tray:
        return await tray_service.set_subscription(self.ctx, tray_id, subscription_type, view)

    # --- позиции ---

    async def add_instrument(self, tray_id: str, instrument_id: str, qty: int = 1,
                             brand: Optional[str] = None, serial_number: Optional[str] = None,
                             garantie: bool = False, brand_groups: Optional[list[BrandSerialGroup]] = None,
                             view: ViewContext = ViewContext.VANZARI) -> TrayItem:
        return await tray_service.add_instrument(self.ctx, tray_id, instrument_id, qty, brand,
                                                 serial_number, garantie, brand_groups, view)

    async def add_service(self, tray_id: str, service_id: str, qty: int = 1, discount_pct: Any = 0,
                          urgent: bool = False, brand: Optional[str] = None,
                          serial_number: Optional[str] = None, garantie: bool = False,
                          brand_groups: Optional[list[BrandSerialGroup]] = None,
                          view: ViewContext = ViewContext.VANZARI) -> TrayItem:
        return await tray_service.add_service(self.ctx, tray_id, service_id, qty, discount_pct, urgent,
                                              brand, serial_number, garantie, brand_groups, view)

    async def add_part(self, tray_id: str, part_id: str, instrument_id: Optional[str], qty: int = 1,
                       discount_pct: Any = 0, urgent: bool = False, price: Any = None,
                       view: ViewContext = ViewContext.VANZARI) -> TrayItem:
        return await tray_service.add_part(self.ctx, tray_id, part_id, instrument_id, qty,
                                           discount_pct, urgent, price, view)

    async def update_item(self, item_id: str, patch: dict[str, Any],
                          view: ViewContext = ViewContext.VANZARI) -> TrayItem:
        return await tray_service.update_item(self.ctx, item_id, patch, view)

    async def delete_item(self, item_id: str, view: ViewContext = ViewContext.VANZARI) -> None:
        await tray_service.delete_item(self.ctx, item_id, view)

    async def tray_view(self, tray_id: str) -> tray_service.TrayView:
        return await tray_service.tray_view(self.ctx, tray_id)

    async def available_services(self, tray_id: str, instrument_id: str) -> list[Service]:
        return await tray_service.available_services_for(self.ctx, tray_id, instrument_id)

    # --- маршрутизация ---

    async def move_instrument(self, source_tray_id: str, instrument_id: str,
                              target_tray_id: Optional[str] = None,
                              new_tray: Optional[routing.NewTray] = None,
                              expected_item_ids: Optional[Sequence[str]] = None,
                              view: ViewContext = ViewContext.VANZARI) -> routing.MoveResult:
        ids = {"tray_id": source_tray_id, "instrument_id": instrument_id, "target_tray_id": target_tray_id}
        return await self._reported("move_instrument", ids, routing.move_instrument(
            self.ctx, source_tray_id, instrument_id, target_tray_id, new_tray, expected_item_ids, view,
        ))

    async def dispatch(self, service_file_id: str, view: ViewContext = ViewContext.VANZARI) -> routing.DispatchResult:
        try:
            result = await routing.dispatch(self.ctx, service_file_id, view)
        except PreturiError as e:
            await self._notify(OperationOutcome("dispatch", False, e.code, e.message,
                                                {"service_file_id": service_file_id}))
            raise
        await self._notify(OperationOutcome("dispatch", True, ids={
            "service_file_id": service_file_id,
            "tray_numbers": result.tray_numbers,
            "pipelines": result.pipelines,
            "item_count": result.item_count,
        }))
        return result

    async def transition_stage(self, tray_id: str, instrument_id: str, action: StageAction,
                               technician_id: Optional[str] = None,
                               view: ViewContext = ViewContext.DEPARTMENT) -> routing.StageTransitionResult:
        ids = {"tray_id": tray_id, "instrument_id": instrument_id, "action": str(getattr(action, "value", action))}
        return await self._reported("transition_stage", ids, routing.transition_stage(
            self.ctx, tray_id, instrument_id, action, technician_id, view,
        ))

    async def mark_in_lucru(self, tray_id: str, instrument_id: str, technician_id: str,
                            view: ViewContext = ViewContext.DEPARTMENT) -> routing.StageTransitionResult:
        return await self.transition_stage(tray_id, instrument_id, StageAction.IN_LUCRU, technician_id, view)

    async def mark_finalizare(self, tray_id: str, instrument_id: str,
                              view: ViewContext = ViewContext.DEPARTMENT) -> routing.StageTransitionResult:
        return await self.transition_stage(tray_id, instrument_id, StageAction.FINALIZARE, view=view)

    async def mark_astept_piese(self, tray_id: str, instrument_id: str,
                                view: ViewContext = ViewContext.DEPARTMENT) -> routing.StageTransitionResult:
        return await self.transition_stage(tray_id, instrument_id, StageAction.ASTEPT_PIESE, view=view)

    async def mark_in_asteptare(self, tray_id: str, instrument_id: str,
                                view: ViewContext = ViewContext.DEPARTMENT) -> routing.StageTransitionResult:
        return await self.transition_stage(tray_id, instrument_id, StageAction.IN_ASTEPTARE, view=view)

    async def place_for_delivery(self, service_file_id: str, flag: str) -> Optional[Placement]:
        return await routing.place_for_delivery(self.ctx, service_file_id, flag)

    # --- итоги и состояние ---

    async def bill_service_file(self, service_file_id: str) -> billing.ServiceFileBill:
        return await billing.bill_service_file(self.ctx, service_file_id)

    async def bill_lead(self, lead_id: str) -> billing.LeadBill:
        return await billing.bill_lead(self.ctx, lead_id)

    async def open_session(self, service_file_id: str, live: bool = True) -> PreturiSession:
        session = await PreturiSession.load(self.ctx, service_file_id)
        if live:
            session.attach(self.ctx.store)
        return session
