from __future__ import annotations

from ..extensions import db
from ..money import format_money


class PricingColumnsMixin:
    """
    Document-level pricing configuration shared by quotes and invoices.

    WHY: An invoice derived from a quote copies these columns verbatim,
    so both tables carry the identical shape.
    """

    vat_rate = db.Column(db.Numeric(5, 2), nullable=False, default=0)

    # Adjustment types: none | percent | fixed
    discount_type = db.Column(db.String(16), nullable=False, default="none")
    discount_value = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    markup_type = db.Column(db.String(16), nullable=False, default="none")
    markup_value = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    deposit_type = db.Column(db.String(16), nullable=False, default="none")
    deposit_value = db.Column(db.Numeric(12, 2), nullable=False, default=0)

    PRICING_FIELDS = (
        "vat_rate",
        "discount_type",
        "discount_value",
        "markup_type",
        "markup_value",
        "deposit_type",
        "deposit_value",
    )

    def pricing_values(self) -> dict:
        return {name: getattr(self, name) for name in self.PRICING_FIELDS}

    def pricing_snapshot(self) -> dict:
        """JSON-safe copy of the pricing configuration."""
        return {
            "vat_rate": format_money(self.vat_rate),
            "discount": {"type": self.discount_type, "value": format_money(self.discount_value)},
            "markup": {"type": self.markup_type, "value": format_money(self.markup_value)},
            "deposit": {"type": self.deposit_type, "value": format_money(self.deposit_value)},
        }
