"""
Расчёт сумм по позициям tăviță.

Для каждой видимой позиции (услуга или деталь):
  base = qty * price
  discount = base * clamp(discount_pct, 0, 100) / 100
  urgent = (base - discount) * urgent_rate, если позиция срочная
Абонемент считается отдельно по тем же позициям. Для услуг от суммы после скидки
и надбавки, для деталей только от суммы после скидки.
Итог: total = subtotal - total_discount + urgent_amount - subscription_discount.
Отрицательные итоги не обрезаются.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Optional

from preturi.config import settings
from preturi.entities import (
    Catalog,
    PartLine,
    PricedLine,
    ServiceLine,
    SubscriptionType,
    TrayItem,
    is_priced,
)
from preturi.services.grouping import resolve_instrument_id

ZERO = Decimal("0")
HUNDRED = Decimal("100")


@dataclass(frozen=True)
class PricingRates:
    urgent_rate: Decimal
    services_rate: Decimal
    parts_rate: Decimal

    @classmethod
    def from_settings(cls) -> "PricingRates":
        return cls(
            urgent_rate=Decimal(str(settings.urgent_rate)),
            services_rate=Decimal(str(settings.subscription_services_rate)),
            parts_rate=Decimal(str(settings.subscription_parts_rate)),
        )


@dataclass(frozen=True)
class LineAmounts:
    base: Decimal
    discount: Decimal
    after_discount: Decimal
    urgent: Decimal

    @property
    def line_total(self) -> Decimal:
        return self.after_discount + self.urgent


@dataclass(frozen=True)
class Totals:
    subtotal: Decimal = ZERO
    total_discount: Decimal = ZERO
    urgent_amount: Decimal = ZERO
    subscription_discount: Decimal = ZERO
    total: Decimal = ZERO

    def __add__(self, other: "Totals") -> "Totals":
        return Totals(
            subtotal=self.subtotal + other.subtotal,
            total_discount=self.total_discount + other.total_discount,
            urgent_amount=self.urgent_amount + other.urgent_amount,
            subscription_discount=self.subscription_discount + other.subscription_discount,
            total=self.total + other.total,
        )


def clamp_discount(discount_pct) -> Decimal:
    value = Decimal(str(discount_pct or 0))
    if value.is_nan():
        return ZERO
    return min(HUNDRED, max(ZERO, value))


def compute_line(item: PricedLine, rates: PricingRates) -> LineAmounts:
    base = Decimal(item.qty) * Decimal(str(item.price))
    discount = base * clamp_discount(item.discount_pct) / HUNDRED
    after_discount = base - discount
    urgent = after_discount * rates.urgent_rate if item.urgent else ZERO
    return LineAmounts(base=base, discount=discount, after_discount=after_discount, urgent=urgent)


def subscription_discount_for(line: LineAmounts, item: PricedLine, subscription: SubscriptionType,
                              rates: PricingRates) -> Decimal:
    if isinstance(item, ServiceLine) and subscription.covers_services:
        return (line.after_discount + line.urgent) * rates.services_rate
    if isinstance(item, PartLine) and subscription.covers_parts:
        # надбавка за срочность на детали не уменьшается абонементом
        return line.after_discount * rates.parts_rate
    return ZERO


def compute_totals(
    items: Iterable[TrayItem],
    subscription_type=SubscriptionType.NONE,
    rates: Optional[PricingRates] = None,
) -> Totals:
    """Суммы по набору позиций; инструменты без услуги пропускаются."""
    rates = rates or PricingRates.from_settings()
    if not isinstance(subscription_type, SubscriptionType):
        subscription_type = SubscriptionType.parse(subscription_type)
    subtotal = total_discount = urgent_amount = ZERO
    visible = [it for it in items if is_priced(it)]
    lines = [(it, compute_line(it, rates)) for it in visible]
    for _, line in lines:
        subtotal += line.base
        total_discount += line.discount
        urgent_amount += line.urgent
    subscription_discount = ZERO
    if subscription_type is not SubscriptionType.NONE:
        for item, line in lines:
            subscription_discount += subscription_discount_for(line, item, subscription_type, rates)
    total = subtotal - total_discount + urgent_amount - subscription_discount
    return Totals(
        subtotal=subtotal,
        total_discount=total_discount,
        urgent_amount=urgent_amount,
        subscription_discount=subscription_discount,
        total=total,
    )


def line_total(item: TrayItem, rates: Optional[PricingRates] = None) -> Decimal:
    """Сумма строки без абонемента (после скидки, с надбавкой)."""
    if not is_priced(item):
        return ZERO
    return compute_line(item, rates or PricingRates.from_settings()).line_total


def compute_weight(items: Iterable[TrayItem], catalog: Catalog) -> Decimal:
    """Вес для доставки: вес инструмента × qty по инструментам и услугам."""
    total = ZERO
    for item in items:
        if isinstance(item, PartLine):
            continue
        instrument_id = resolve_instrument_id(item, catalog)
        instrument = catalog.instruments.get(instrument_id) if instrument_id else None
        if instrument and instrument.weight:
            total += Decimal(str(instrument.weight)) * item.qty
    return total
