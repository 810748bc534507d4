# Overview: Pure totals calculation for quotes and invoices; no database access.

"""
Totals Calculator

WHY: Totals are never stored on documents. Every read recomputes them from
line items, pricing configuration and (for invoices) the payment ledger, so
the numbers can't drift from the rows they summarize.

ORDER OF OPERATIONS (fixed):
1. subtotal        = sum of per-line round(quantity * unit_price)
2. markup_amount   = percent of subtotal, or fixed value
3. discount_amount = percent of (subtotal + markup), or fixed value,
                     clamped so the running total never goes negative
4. taxable_base    = subtotal + markup - discount
5. vat_amount      = quotes: taxable_base * document rate
                     invoices: per line, each line's share of taxable_base
                     at the line's own rate (document rate when unset)
6. total           = taxable_base + vat_amount
7. deposit_amount  = percent of total, or fixed value capped at total;
                     None when no deposit is configured
8. balance_due     = invoices: total - payments, floored at zero
                     quotes: total - deposit_amount

Every rounded step is Decimal with ROUND_HALF_UP to the penny.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable, Mapping, Optional

from ..money import ZERO, HUNDRED, format_money, percent_of, quantize_money
from ..validation import parse_adjustment_type


ADJUSTMENT_NONE = "none"
ADJUSTMENT_PERCENT = "percent"
ADJUSTMENT_FIXED = "fixed"


def _dec(value) -> Decimal:
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


@dataclass(frozen=True)
class LineItem:
    description: str
    quantity: Decimal
    unit_price: Decimal
    vat_rate: Optional[Decimal] = None
    item_type: str = "material"

    @property
    def subtotal(self) -> Decimal:
        return quantize_money(self.quantity * self.unit_price)

    @classmethod
    def from_model(cls, item) -> "LineItem":
        """Build from a QuoteItem / InvoiceItem row."""
        return cls(
            description=item.description,
            quantity=_dec(item.quantity),
            unit_price=_dec(item.unit_price),
            vat_rate=None if item.vat_rate is None else _dec(item.vat_rate),
            item_type=item.item_type or "material",
        )


@dataclass(frozen=True)
class Adjustment:
    type: str = ADJUSTMENT_NONE
    value: Decimal = ZERO

    @property
    def is_set(self) -> bool:
        return self.type != ADJUSTMENT_NONE

    def amount_of(self, base: Decimal) -> Decimal:
        if self.type == ADJUSTMENT_PERCENT:
            return percent_of(base, self.value)
        if self.type == ADJUSTMENT_FIXED:
            return quantize_money(self.value)
        return ZERO


@dataclass(frozen=True)
class PricingConfig:
    vat_rate: Decimal = ZERO
    discount: Adjustment = field(default_factory=Adjustment)
    markup: Adjustment = field(default_factory=Adjustment)
    deposit: Adjustment = field(default_factory=Adjustment)

    @classmethod
    def from_model(cls, document) -> "PricingConfig":
        """Read the pricing columns shared by Quote and Invoice."""
        return cls.from_mapping(document.pricing_values())

    @classmethod
    def from_mapping(cls, data: Mapping) -> "PricingConfig":
        """
        Accepts the flat column layout (discount_type / discount_value) or
        the nested snapshot layout ({"discount": {"type", "value"}}).
        """
        def _adjustment(prefix: str) -> Adjustment:
            nested = data.get(prefix)
            if isinstance(nested, Mapping):
                adj_type, value = nested.get("type"), nested.get("value")
            else:
                adj_type, value = data.get(f"{prefix}_type"), data.get(f"{prefix}_value")
            adj_type = parse_adjustment_type(adj_type or ADJUSTMENT_NONE, f"{prefix}_type")
            return Adjustment(type=adj_type, value=_dec(value))

        return cls(
            vat_rate=_dec(data.get("vat_rate")),
            discount=_adjustment("discount"),
            markup=_adjustment("markup"),
            deposit=_adjustment("deposit"),
        )


@dataclass(frozen=True)
class Totals:
    subtotal: Decimal
    markup_amount: Decimal
    discount_amount: Decimal
    taxable_base: Decimal
    vat_amount: Decimal
    total: Decimal
    deposit_amount: Optional[Decimal]
    balance_due: Decimal
    amount_paid: Optional[Decimal] = None
    unfloored_balance: Optional[Decimal] = None

    def to_dict(self) -> dict:
        data = {
            "subtotal": format_money(self.subtotal),
            "markup_amount": format_money(self.markup_amount),
            "discount_amount": format_money(self.discount_amount),
            "taxable_base": format_money(self.taxable_base),
            "vat_amount": format_money(self.vat_amount),
            "total": format_money(self.total),
            "deposit_amount": format_money(self.deposit_amount),
            "balance_due": format_money(self.balance_due),
        }
        if self.amount_paid is not None:
            data["amount_paid"] = format_money(self.amount_paid)
        return data


def _per_line_vat(items: list[LineItem], pricing: PricingConfig, subtotal: Decimal, taxable_base: Decimal) -> Decimal:
    # Each line carries its share of markup/discount into its own VAT rate
    if subtotal == ZERO:
        # No line shares to split on; a fixed markup still carries document VAT
        return percent_of(taxable_base, pricing.vat_rate)
    vat = ZERO
    for item in items:
        rate = pricing.vat_rate if item.vat_rate is None else item.vat_rate
        share = item.subtotal * taxable_base / subtotal
        vat += quantize_money(share * rate / HUNDRED)
    return vat


def compute(
    items: Iterable[LineItem],
    pricing: PricingConfig,
    *,
    per_line_vat: bool = False,
    payments: Optional[Iterable] = None,
) -> Totals:
    """
    Compute document totals. Pure and deterministic.

    payments=None selects the quote balance (total - deposit); an iterable
    of payment amounts selects the invoice balance (total - paid).
    """
    items = list(items)

    subtotal = sum((item.subtotal for item in items), ZERO)
    markup_amount = pricing.markup.amount_of(subtotal)

    pre_discount = subtotal + markup_amount
    discount_amount = min(pricing.discount.amount_of(pre_discount), pre_discount)

    taxable_base = pre_discount - discount_amount

    if per_line_vat:
        vat_amount = _per_line_vat(items, pricing, subtotal, taxable_base)
    else:
        vat_amount = percent_of(taxable_base, pricing.vat_rate)

    total = taxable_base + vat_amount

    deposit_amount = None
    if pricing.deposit.is_set:
        deposit_amount = min(pricing.deposit.amount_of(total), total)

    if payments is None:
        balance_due = total - (deposit_amount or ZERO)
        return Totals(
            subtotal=subtotal,
            markup_amount=markup_amount,
            discount_amount=discount_amount,
            taxable_base=taxable_base,
            vat_amount=vat_amount,
            total=total,
            deposit_amount=deposit_amount,
            balance_due=balance_due,
        )

    amount_paid = quantize_money(sum((_dec(p) for p in payments), ZERO))
    unfloored = total - amount_paid
    return Totals(
        subtotal=subtotal,
        markup_amount=markup_amount,
        discount_amount=discount_amount,
        taxable_base=taxable_base,
        vat_amount=vat_amount,
        total=total,
        deposit_amount=deposit_amount,
        balance_due=max(unfloored, ZERO),
        amount_paid=amount_paid,
        unfloored_balance=unfloored,
    )


def compute_quote_totals(items: Iterable, pricing) -> Totals:
    """Quote path: single document-level VAT rate."""
    return compute(_line_items(items), _pricing(pricing))


def compute_invoice_totals(items: Iterable, pricing, payments: Iterable = ()) -> Totals:
    """Invoice path: per-line VAT, balance reconciled against payments."""
    return compute(_line_items(items), _pricing(pricing), per_line_vat=True, payments=payments)


def _line_items(items: Iterable) -> list[LineItem]:
    return [item if isinstance(item, LineItem) else LineItem.from_model(item) for item in items]


def _pricing(pricing) -> PricingConfig:
    if isinstance(pricing, PricingConfig):
        return pricing
    if isinstance(pricing, Mapping):
        return PricingConfig.from_mapping(pricing)
    return PricingConfig.from_model(pricing)
