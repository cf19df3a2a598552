"""
Итоги по fișă и lead для печати/фактурирования.
Пересчитываются из текущих позиций при каждом запросе, без кэша.
"""
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal

from preturi.core.logging_config import get_logger
from preturi.entities import Tray
from preturi.services.context import EngineContext
from preturi.services.pricing import Totals, compute_totals, compute_weight

logger = get_logger(__name__)

CENT = Decimal("0.01")


def money(value: Decimal) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass
class TrayBill:
    tray_id: str
    number: str
    size: str
    subscription_type: str
    subtotal: Decimal
    total_discount: Decimal
    urgent_amount: Decimal
    subscription_discount: Decimal
    total: Decimal
    is_cash: bool
    is_card: bool
    item_count: int
    total_weight: Decimal

    @classmethod
    def build(cls, tray: Tray, totals: Totals, item_count: int, weight: Decimal) -> "TrayBill":
        return cls(
            tray_id=tray.id,
            number=tray.number,
            size=tray.size,
            subscription_type=tray.subscription_type.value,
            subtotal=money(totals.subtotal),
            total_discount=money(totals.total_discount),
            urgent_amount=money(totals.urgent_amount),
            subscription_discount=money(totals.subscription_discount),
            total=money(totals.total),
            is_cash=tray.is_cash,
            is_card=tray.is_card,
            item_count=item_count,
            total_weight=weight,
        )


@dataclass
class ServiceFileBill:
    service_file_id: str
    lead_id: str
    trays: list[TrayBill] = field(default_factory=list)
    # сумма округлённых итогов tăvițe, чтобы печатная разбивка сходилась с общей суммой
    all_sheets_total: Decimal = Decimal("0.00")
    payment_cash: bool = False
    payment_card: bool = False


@dataclass
class LeadBill:
    lead_id: str
    service_files: list[ServiceFileBill] = field(default_factory=list)
    total: Decimal = Decimal("0.00")


async def bill_service_file(ctx: EngineContext, service_file_id: str) -> ServiceFileBill:
    service_file = await ctx.require_service_file(service_file_id)
    catalog = await ctx.load_catalog()
    bill = ServiceFileBill(
        service_file_id=service_file.id,
        lead_id=service_file.lead_id,
        payment_cash=service_file.payment_cash,
        payment_card=service_file.payment_card,
    )
    for tray in await ctx.store.list_trays(service_file.id):
        items = await ctx.store.list_items(tray.id)
        totals = compute_totals(items, tray.subscription_type, ctx.rates)
        bill.trays.append(TrayBill.build(tray, totals, len(items), compute_weight(items, catalog)))
    bill.all_sheets_total = money(sum((t.total for t in bill.trays), Decimal("0")))
    logger.debug("Итог fișă id=%s: %s", service_file.id, bill.all_sheets_total)
    return bill


async def bill_lead(ctx: EngineContext, lead_id: str) -> LeadBill:
    bill = LeadBill(lead_id=lead_id)
    for service_file in await ctx.store.list_service_files(lead_id):
        bill.service_files.append(await bill_service_file(ctx, service_file.id))
    bill.total = money(sum((sf.all_sheets_total for sf in bill.service_files), Decimal("0")))
    return bill
