"""
Группировка позиций tăviță.

Строки отображения: услуги с одинаковыми service_id и name_snapshot сливаются в одну
строку (qty суммируется, группы бренд/серийные номера объединяются по бренду).
Группы инструментов: все позиции, относящиеся к одному инструменту. Именно этот
набор переносится между tăvițe и отправляется в департамент.
"""
from dataclasses import dataclass, replace
from typing import Iterable, Optional

from preturi.entities import (
    BrandSerialGroup,
    Catalog,
    Instrument,
    SerialNumber,
    Service,
    ServiceLine,
    TrayItem,
)


@dataclass(frozen=True)
class DisplayRow:
    key: str
    item: TrayItem
    item_ids: tuple[str, ...]


@dataclass(frozen=True)
class InstrumentGroup:
    instrument: Instrument
    items: tuple[TrayItem, ...]

    @property
    def item_ids(self) -> list[str]:
        return [it.id for it in self.items]

    @property
    def representative(self) -> TrayItem:
        return self.items[0]


def resolve_instrument_id(item: TrayItem, catalog: Catalog) -> Optional[str]:
    if item.instrument_id:
        return item.instrument_id
    if isinstance(item, ServiceLine) and item.service_id:
        service = catalog.services.get(item.service_id)
        if service:
            return service.instrument_id
    return None


def _item_brand_groups(item: TrayItem) -> list[BrandSerialGroup]:
    if item.brand_groups:
        return item.brand_groups
    if item.brand:
        serials = [SerialNumber(item.serial_number, item.garantie)] if item.serial_number else []
        return [BrandSerialGroup(brand=item.brand, serial_numbers=serials, qty=item.qty)]
    return []


def merge_brand_groups(items: Iterable[TrayItem]) -> list[BrandSerialGroup]:
    """Объединение по имени бренда; серийные номера склеиваются по порядку, без дедупликации."""
    merged: dict[str, BrandSerialGroup] = {}
    for item in items:
        for group in _item_brand_groups(item):
            key = group.brand or ""
            target = merged.get(key)
            if target is None:
                merged[key] = BrandSerialGroup(
                    brand=key,
                    serial_numbers=list(group.serial_numbers),
                    qty=group.qty,
                )
            else:
                target.serial_numbers.extend(group.serial_numbers)
                target.qty += group.qty
    return list(merged.values())


def display_key(item: TrayItem) -> str:
    if isinstance(item, ServiceLine) and item.service_id:
        return f"service:{item.service_id}:{item.name_snapshot or ''}"
    return f"item:{item.id}"


def group_display_rows(items: Iterable[TrayItem]) -> list[DisplayRow]:
    buckets: dict[str, list[TrayItem]] = {}
    for item in items:
        buckets.setdefault(display_key(item), []).append(item)
    rows = []
    for key, members in buckets.items():
        first = members[0]
        combined = replace(
            first,
            qty=sum(m.qty for m in members),
            brand_groups=merge_brand_groups(members),
        )
        rows.append(DisplayRow(key=key, item=combined, item_ids=tuple(m.id for m in members)))
    return rows


def group_by_instrument(items: Iterable[TrayItem], catalog: Catalog) -> list[InstrumentGroup]:
    """Группы в порядке первого появления инструмента; позиции без инструмента не входят."""
    members: dict[str, list[TrayItem]] = {}
    instruments: dict[str, Instrument] = {}
    for item in items:
        instrument_id = resolve_instrument_id(item, catalog)
        if not instrument_id:
            continue
        instrument = catalog.instruments.get(instrument_id)
        if instrument is None:
            continue
        instruments.setdefault(instrument.id, instrument)
        members.setdefault(instrument.id, []).append(item)
    return [
        InstrumentGroup(instrument=instruments[key], items=tuple(found))
        for key, found in members.items()
    ]


def find_instrument_group(items: Iterable[TrayItem], instrument_id: str,
                          catalog: Catalog) -> Optional[InstrumentGroup]:
    for group in group_by_instrument(items, catalog):
        if group.instrument.id == instrument_id:
            return group
    return None


def first_item_of_instrument(items: Iterable[TrayItem], instrument_id: str,
                             catalog: Catalog) -> Optional[TrayItem]:
    group = find_instrument_group(items, instrument_id, catalog)
    return group.representative if group is not None else None


def unresolved_items(items: Iterable[TrayItem], catalog: Catalog) -> list[TrayItem]:
    """Позиции, для которых инструмент не определяется (или отсутствует в справочнике)."""
    out = []
    for item in items:
        instrument_id = resolve_instrument_id(item, catalog)
        if not instrument_id or instrument_id not in catalog.instruments:
            out.append(item)
    return out


def available_services(instrument_id: str, items: Iterable[TrayItem], catalog: Catalog) -> list[Service]:
    """Услуги инструмента из справочника, ещё не добавленные в tăviță."""
    assigned = {
        it.service_id
        for it in items
        if isinstance(it, ServiceLine) and it.service_id and resolve_instrument_id(it, catalog) == instrument_id
    }
    candidates = [s for s in catalog.services.values() if s.instrument_id == instrument_id]
    return sorted((s for s in candidates if s.id not in assigned), key=lambda s: s.name)
