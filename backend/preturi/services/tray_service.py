"""
Tăvițe и их позиции: создание, правка, удаление, флаги доставки, оплата, абонемент.

Флаги office_direct и curier_trimis взаимоисключающие: включение одного
сначала выключает другой. Пока хотя бы один включён, tăviță заблокирована.
"""
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from preturi.config import settings
from preturi.core.errors import PolicyViolation, ResolutionError, ValidationError
from preturi.core.logging_config import get_logger
from preturi.core.permissions import Action, ViewContext
from preturi.entities import (
    BrandSerialGroup,
    InstrumentPlaceholder,
    PartLine,
    PlacementKind,
    Service,
    ServiceFile,
    ServiceLine,
    SubscriptionType,
    Tray,
    TrayItem,
    is_priced,
    normalize_name,
)
from preturi.services.context import EngineContext, check_tray_editable, require_view
from preturi.services.grouping import (
    DisplayRow,
    InstrumentGroup,
    available_services,
    group_by_instrument,
    group_display_rows,
    merge_brand_groups,
    unresolved_items,
)
from preturi.services.pricing import Totals, compute_totals, compute_weight

logger = get_logger(__name__)

LOCK_FLAGS = ("office_direct", "curier_trimis")

# Поля позиции, доступные для правки
_COMMON_EDITABLE = {"qty", "technician_id", "brand", "serial_number", "garantie", "brand_groups"}
_PRICED_EDITABLE = {"price", "discount_pct", "urgent", "name_snapshot"}


@dataclass
class TrayView:
    """Содержимое tăviță для отображения: позиции, строки, группы, суммы."""
    tray: Tray
    items: list[TrayItem]
    rows: list[DisplayRow]
    groups: list[InstrumentGroup]
    totals: Totals
    total_weight: Decimal
    unresolved_item_ids: list[str] = field(default_factory=list)


# --- проверки ввода ---

def validate_qty(qty: Any) -> int:
    if isinstance(qty, bool):
        raise ValidationError("qty_invalid", f"Количество должно быть целым числом: {qty}")
    if isinstance(qty, int):
        value = qty
    else:
        try:
            value = int(str(qty).strip())
        except ValueError:
            raise ValidationError("qty_invalid", f"Количество должно быть целым числом: {qty}")
    if value < 1:
        raise ValidationError("qty_invalid", f"Количество должно быть ≥ 1: {qty}")
    return value


def validate_discount(discount_pct: Any) -> Decimal:
    try:
        value = Decimal(str(discount_pct if discount_pct is not None else 0))
    except (InvalidOperation, ValueError):
        raise ValidationError("discount_out_of_range", f"Скидка должна быть числом: {discount_pct}")
    if not value.is_finite():
        raise ValidationError("discount_out_of_range", f"Скидка должна быть числом: {discount_pct}")
    if value < 0 or value > 100:
        raise ValidationError("discount_out_of_range", f"Скидка вне диапазона 0–100: {discount_pct}")
    return value


def validate_price(price: Any) -> Decimal:
    try:
        value = Decimal(str(price))
    except (InvalidOperation, ValueError):
        raise ValidationError("price_invalid", f"Цена должна быть числом: {price}")
    if not value.is_finite():
        raise ValidationError("price_invalid", f"Цена должна быть числом: {price}")
    if value < 0:
        raise ValidationError("price_invalid", f"Цена не может быть отрицательной: {price}")
    return value


def normalize_number(number: Optional[str]) -> str:
    value = (number or "").strip()
    if not value:
        raise ValidationError("tray_number_required", "Номер tăviță обязателен")
    return value


def normalize_size(size: Optional[str]) -> str:
    value = (size or settings.default_tray_size).strip().lower()
    if value not in settings.tray_size_list:
        raise ValidationError("tray_size_invalid", f"Размер tăviță должен быть одним из {settings.tray_size_list}")
    return value


# --- fișe ---

async def create_service_file(ctx: EngineContext, lead_id: str, number: str = "", details: str = "") -> ServiceFile:
    if not (lead_id or "").strip():
        raise ValidationError("lead_required", "Не указан lead")
    created = await ctx.store.create_service_file(ServiceFile(id="", lead_id=lead_id.strip(),
                                                              number=(number or "").strip(), details=details or ""))
    logger.info("Создана fișă id=%s lead=%s", created.id, created.lead_id)
    return created


async def update_details(ctx: EngineContext, service_file_id: str, text: str) -> ServiceFile:
    await ctx.require_service_file(service_file_id)
    updated = await ctx.store.update_service_file(service_file_id, details=text or "")
    logger.info("Обновлены инструкции fișă id=%s", service_file_id)
    return updated


# --- tăvițe ---

async def is_tray_available(ctx: EngineContext, number: str, size: Optional[str] = None,
                            exclude_tray_id: Optional[str] = None) -> bool:
    """Пара (номер, размер) уникальна во всей системе."""
    existing = await ctx.store.find_tray(normalize_number(number), normalize_size(size))
    return existing is None or existing.id == exclude_tray_id


async def ensure_tray_available(ctx: EngineContext, number: str, size: str,
                                exclude_tray_id: Optional[str] = None) -> None:
    if not await is_tray_available(ctx, number, size, exclude_tray_id):
        raise ValidationError("tray_number_taken", f"Tăvița {number} ({size}) уже существует")


async def list_trays(ctx: EngineContext, service_file_id: str) -> list[Tray]:
    await ctx.require_service_file(service_file_id)
    return await ctx.store.list_trays(service_file_id)


async def create_tray(ctx: EngineContext, service_file_id: str, number: str,
                      size: Optional[str] = None) -> Tray:
    await ctx.require_service_file(service_file_id)
    number, size = normalize_number(number), normalize_size(size)
    await ensure_tray_available(ctx, number, size)
    tray = await ctx.store.create_tray(Tray(id="", service_file_id=service_file_id, number=number, size=size))
    logger.info("Создана tăviță id=%s number=%s size=%s fișă=%s", tray.id, number, size, service_file_id)
    return tray


async def create_unassigned_tray(ctx: EngineContext, service_file_id: str) -> Tray:
    """Одна tăviță без номера на fișă: повторный вызов возвращает существующую."""
    await ctx.require_service_file(service_file_id)
    for tray in await ctx.store.list_trays(service_file_id):
        if tray.unassigned:
            return tray
    tray = await ctx.store.create_tray(Tray(id="", service_file_id=service_file_id, number="",
                                            size=settings.default_tray_size))
    logger.info("Создана неназначенная tăviță id=%s fișă=%s", tray.id, service_file_id)
    return tray


async def edit_tray(ctx: EngineContext, tray_id: str, number: Optional[str] = None,
                    size: Optional[str] = None, view: ViewContext = ViewContext.VANZARI) -> Tray:
    tray = await ctx.require_tray(tray_id)
    check_tray_editable(tray, view)
    new_number = normalize_number(number) if number is not None else tray.number
    new_size = normalize_size(size) if size is not None else tray.size
    if not new_number:
        raise ValidationError("tray_number_required", "Номер tăviță обязателен")
    if (new_number, new_size) == (tray.number, tray.size):
        return tray
    await ensure_tray_available(ctx, new_number, new_size, exclude_tray_id=tray.id)
    updated = await ctx.store.update_tray(tray_id, number=new_number, size=new_size)
    logger.info("Tăviță id=%s: number=%s size=%s", tray_id, new_number, new_size)
    return updated


async def delete_tray(ctx: EngineContext, tray_id: str, view: ViewContext = ViewContext.VANZARI) -> None:
    tray = await ctx.require_tray(tray_id)
    check_tray_editable(tray, view)
    if await ctx.store.list_items(tray_id):
        raise PolicyViolation("tray_not_empty", "Сначала перенесите или удалите позиции tăviță")
    await ctx.store.delete_tray(tray_id)
    logger.info("Удалена tăviță id=%s", tray_id)


async def is_dispatched(ctx: EngineContext, tray: Tray) -> bool:
    """Tăviță уже в pipeline департамента (карточка или её позиции)."""
    catalog = await ctx.load_catalog()
    department_ids = {
        p.id for p in catalog.pipelines.values()
        if normalize_name(p.name) in {normalize_name(n) for n in settings.department_pipeline_list}
    }
    placements = await ctx.store.list_placements(PlacementKind.TRAY, [tray.id])
    if any(p.pipeline_id in department_ids for p in placements):
        return True
    return any(it.pipeline_id in department_ids for it in await ctx.store.list_items(tray.id))


async def toggle_lock(ctx: EngineContext, tray_id: str, flag: str, value: bool,
                      view: ViewContext = ViewContext.VANZARI) -> Tray:
    if flag not in LOCK_FLAGS:
        raise ValidationError("lock_flag_invalid", f"Неизвестный флаг доставки: {flag}")
    require_view(view, Action.TOGGLE_LOCK)
    tray = await ctx.require_tray(tray_id)
    other = LOCK_FLAGS[1] if flag == LOCK_FLAGS[0] else LOCK_FLAGS[0]
    if value:
        changes = {other: False, flag: True}
    else:
        changes = {flag: False}
        if not getattr(tray, other) and getattr(tray, flag) and await is_dispatched(ctx, tray):
            raise PolicyViolation("tray_dispatched", "Tăvița уже отправлена: флаг доставки нельзя снять")
    updated = await ctx.store.update_tray(tray_id, **changes)
    logger.info("Tăviță id=%s: %s=%s", tray_id, flag, value)
    return updated


async def set_payment(ctx: EngineContext, tray_id: str, is_cash: Optional[bool] = None,
                      is_card: Optional[bool] = None) -> Tray:
    await ctx.require_tray(tray_id)
    changes = {}
    if is_cash is not None:
        changes["is_cash"] = bool(is_cash)
    if is_card is not None:
        changes["is_card"] = bool(is_card)
    if not changes:
        return await ctx.require_tray(tray_id)
    updated = await ctx.store.update_tray(tray_id, **changes)
    logger.info("Tăviță id=%s: оплата %s", tray_id, changes)
    return updated


async def set_subscription(ctx: EngineContext, tray_id: str, subscription_type: Optional[str],
                           view: ViewContext = ViewContext.VANZARI) -> Tray:
    tray = await ctx.require_tray(tray_id)
    check_tray_editable(tray, view)
    value = SubscriptionType.parse(subscription_type)
    updated = await ctx.store.update_tray(tray_id, subscription_type=value)
    logger.info("Tăviță id=%s: абонемент=%s", tray_id, value.value or "-")
    return updated


# --- позиции ---

async def _editable_tray(ctx: EngineContext, tray_id: str, view: ViewContext) -> Tray:
    require_view(view, Action.EDIT_ITEMS)
    tray = await ctx.require_tray(tray_id)
    check_tray_editable(tray, view)
    return tray


def _brand_groups(brand_groups: Optional[list[BrandSerialGroup]]) -> list[BrandSerialGroup]:
    groups = list(brand_groups or [])
    for group in groups:
        validate_qty(group.qty)
    return groups


async def add_instrument(ctx: EngineContext, tray_id: str, instrument_id: str, qty: int = 1,
                         brand: Optional[str] = None, serial_number: Optional[str] = None,
                         garantie: bool = False, brand_groups: Optional[list[BrandSerialGroup]] = None,
                         view: ViewContext = ViewContext.VANZARI) -> TrayItem:
    """Инструмент без услуги. Если такой уже есть в tăviță: количество и бренды добавляются к нему."""
    tray = await _editable_tray(ctx, tray_id, view)
    qty = validate_qty(qty)
    groups = _brand_groups(brand_groups)
    catalog = await ctx.load_catalog()
    instrument = catalog.instruments.get(instrument_id)
    if instrument is None:
        raise ResolutionError("instrument_not_found", f"Инструмент {instrument_id} не найден")
    for existing in await ctx.store.list_items(tray.id):
        if not is_priced(existing) and existing.instrument_id == instrument.id:
            incoming = InstrumentPlaceholder(brand=brand, serial_number=serial_number, garantie=garantie,
                                             brand_groups=groups, qty=qty)
            updated = await ctx.store.update_item(
                existing.id,
                qty=existing.qty + qty,
                brand_groups=merge_brand_groups([existing, incoming]),
            )
            logger.info("Tăviță id=%s: инструмент %s +%s (позиция %s)", tray.id, instrument.id, qty, existing.id)
            return updated
    item = await ctx.store.create_item(InstrumentPlaceholder(
        tray_id=tray.id,
        instrument_id=instrument.id,
        department_id=instrument.department_id,
        qty=qty,
        brand=brand,
        serial_number=serial_number,
        garantie=garantie,
        brand_groups=groups,
    ))
    logger.info("Tăviță id=%s: добавлен инструмент %s (позиция %s)", tray.id, instrument.id, item.id)
    return item


async def add_service(ctx: EngineContext, tray_id: str, service_id: str, qty: int = 1,
                      discount_pct: Any = 0, urgent: bool = False,
                      brand: Optional[str] = None, serial_number: Optional[str] = None,
                      garantie: bool = False, brand_groups: Optional[list[BrandSerialGroup]] = None,
                      view: ViewContext = ViewContext.VANZARI) -> TrayItem:
    tray = await _editable_tray(ctx, tray_id, view)
    qty = validate_qty(qty)
    discount = validate_discount(discount_pct)
    groups = _brand_groups(brand_groups)
    catalog = await ctx.load_catalog()
    service = catalog.services.get(service_id)
    if service is None:
        raise ResolutionError("service_not_found", f"Услуга {service_id} не найдена")
    instrument = catalog.instruments.get(service.instrument_id) if service.instrument_id else None
    if instrument is None:
        raise ResolutionError("instrument_unresolved", f"Для услуги {service.name} не определён инструмент")
    item = await ctx.store.create_item(ServiceLine(
        tray_id=tray.id,
        instrument_id=instrument.id,
        service_id=service.id,
        department_id=instrument.department_id,
        name_snapshot=service.name,
        price=Decimal(str(service.price)),
        qty=qty,
        discount_pct=discount,
        urgent=bool(urgent),
        brand=brand,
        serial_number=serial_number,
        garantie=garantie,
        brand_groups=groups,
    ))
    logger.info("Tăviță id=%s: добавлена услуга %s (позиция %s)", tray.id, service.id, item.id)
    return item


async def add_part(ctx: EngineContext, tray_id: str, part_id: str, instrument_id: Optional[str],
                   qty: int = 1, discount_pct: Any = 0, urgent: bool = False, price: Any = None,
                   view: ViewContext = ViewContext.VANZARI) -> TrayItem:
    tray = await _editable_tray(ctx, tray_id, view)
    qty = validate_qty(qty)
    discount = validate_discount(discount_pct)
    if not instrument_id:
        raise ValidationError("instrument_required", "Деталь добавляется к инструменту")
    catalog = await ctx.load_catalog()
    part = catalog.parts.get(part_id)
    if part is None:
        raise ResolutionError("part_not_found", f"Деталь {part_id} не найдена")
    instrument = catalog.instruments.get(instrument_id)
    if instrument is None:
        raise ResolutionError("instrument_not_found", f"Инструмент {instrument_id} не найден")
    item = await ctx.store.create_item(PartLine(
        tray_id=tray.id,
        instrument_id=instrument.id,
        part_id=part.id,
        department_id=instrument.department_id,
        name_snapshot=part.name,
        price=validate_price(price) if price is not None else Decimal(str(part.price)),
        qty=qty,
        discount_pct=discount,
        urgent=bool(urgent),
    ))
    logger.info("Tăviță id=%s: добавлена деталь %s (позиция %s)", tray.id, part.id, item.id)
    return item


def _validate_patch(item: TrayItem, patch: dict[str, Any]) -> dict[str, Any]:
    changes: dict[str, Any] = {}
    for key, value in patch.items():
        if key not in _COMMON_EDITABLE | _PRICED_EDITABLE:
            raise ValidationError("field_not_editable", f"Поле {key} не редактируется")
        if key in _PRICED_EDITABLE and not is_priced(item):
            raise ValidationError("field_not_applicable", f"Поле {key} не применимо к инструменту без услуги")
        if key == "qty":
            value = validate_qty(value)
        elif key == "discount_pct":
            value = validate_discount(value)
        elif key == "price":
            value = validate_price(value)
        elif key in ("urgent", "garantie"):
            value = bool(value)
        elif key == "brand_groups":
            value = _brand_groups(value)
        changes[key] = value
    return changes


async def update_item(ctx: EngineContext, item_id: str, patch: dict[str, Any],
                      view: ViewContext = ViewContext.VANZARI) -> TrayItem:
    item = await ctx.require_item(item_id)
    changes = _validate_patch(item, patch)
    await _editable_tray(ctx, item.tray_id, view)
    if not changes:
        return item
    updated = await ctx.store.update_item(item_id, **changes)
    logger.info("Позиция id=%s изменена: %s", item_id, sorted(changes))
    return updated


async def delete_item(ctx: EngineContext, item_id: str, view: ViewContext = ViewContext.VANZARI) -> None:
    item = await ctx.require_item(item_id)
    await _editable_tray(ctx, item.tray_id, view)
    await ctx.store.delete_item(item_id)
    logger.info("Удалена позиция id=%s tăviță=%s", item_id, item.tray_id)


async def tray_view(ctx: EngineContext, tray_id: str) -> TrayView:
    tray = await ctx.require_tray(tray_id)
    items = await ctx.store.list_items(tray_id)
    catalog = await ctx.load_catalog()
    return TrayView(
        tray=tray,
        items=items,
        rows=group_display_rows(items),
        groups=group_by_instrument(items, catalog),
        totals=compute_totals(items, tray.subscription_type, ctx.rates),
        total_weight=compute_weight(items, catalog),
        unresolved_item_ids=[it.id for it in unresolved_items(items, catalog)],
    )


async def available_services_for(ctx: EngineContext, tray_id: str, instrument_id: str) -> list[Service]:
    await ctx.require_tray(tray_id)
    catalog = await ctx.load_catalog()
    if instrument_id not in catalog.instruments:
        raise ResolutionError("instrument_not_found", f"Инструмент {instrument_id} не найден")
    items = await ctx.store.list_items(tray_id)
    return available_services(instrument_id, items, catalog)

