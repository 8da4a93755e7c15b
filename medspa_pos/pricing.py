"""
POS cart pricing.

Totals are derived from the cart lines on every access, never cached:

    subtotal        = sum(price * quantity)
    discount_amount = percentage of subtotal, flat amount, or 0
    tax_amount      = (subtotal - discount_amount) * TAX_RATE
    total           = subtotal - discount_amount + tax_amount + tip

Figures are kept at full Decimal precision on the cart. ``quote()`` rounds
subtotal, discount and tip to cents, derives tax from the rounded net and
adds the rounded parts, so a quote always satisfies the formula above.
"""

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional

from medspa_pos.config import TAX_RATE

CENT = Decimal("0.01")
DISCOUNT_MODES = ("none", "percentage", "amount")
TIP_PRESETS = (Decimal("0.18"), Decimal("0.20"))


def to_decimal(value) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    # str() keeps floats like 0.1 from dragging binary noise along
    return Decimal(str(value))


def money(value) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass
class CartLine:
    item_id: int
    item_type: str
    name: str
    price: Decimal
    quantity: int = 1

    @property
    def line_total(self) -> Decimal:
        return self.price * self.quantity


@dataclass
class Quote:
    subtotal: Decimal
    discount_amount: Decimal
    tax_amount: Decimal
    tip: Decimal
    total: Decimal
    suggested_tips: List[Decimal] = field(default_factory=list)

    def as_dict(self):
        return {
            "subtotal": float(self.subtotal),
            "discount_amount": float(self.discount_amount),
            "tax_amount": float(self.tax_amount),
            "tip": float(self.tip),
            "total": float(self.total),
            "suggested_tips": [float(t) for t in self.suggested_tips],
        }


class Cart:
    def __init__(self, discount_type: str = "none", discount_value=0, tip=0):
        if discount_type not in DISCOUNT_MODES:
            raise ValueError(f"Unknown discount type: {discount_type}")
        self.lines: List[CartLine] = []
        self.discount_type = discount_type
        self.discount_value = to_decimal(discount_value)
        self.tip = to_decimal(tip)

    def _find(self, item_id: int, item_type: str) -> Optional[CartLine]:
        for line in self.lines:
            if line.item_id == item_id and line.item_type == item_type:
                return line
        return None

    def add(self, item_id: int, item_type: str, name: str, price) -> CartLine:
        line = self._find(item_id, item_type)
        if line is not None:
            line.quantity += 1
            return line
        line = CartLine(item_id=item_id, item_type=item_type, name=name, price=to_decimal(price))
        self.lines.append(line)
        return line

    def update_quantity(self, item_id: int, item_type: str, delta: int):
        line = self._find(item_id, item_type)
        if line is None:
            return
        line.quantity = max(0, line.quantity + delta)
        if line.quantity == 0:
            self.lines.remove(line)

    def remove(self, item_id: int, item_type: str):
        self.lines = [
            line for line in self.lines
            if not (line.item_id == item_id and line.item_type == item_type)
        ]

    def __len__(self):
        return len(self.lines)

    @property
    def subtotal(self) -> Decimal:
        return sum((line.line_total for line in self.lines), Decimal("0"))

    @property
    def discount_amount(self) -> Decimal:
        if self.discount_type == "percentage":
            return self.subtotal * self.discount_value / 100
        if self.discount_type == "amount":
            return self.discount_value
        return Decimal("0")

    @property
    def tax_amount(self) -> Decimal:
        return (self.subtotal - self.discount_amount) * TAX_RATE

    @property
    def total(self) -> Decimal:
        return self.subtotal - self.discount_amount + self.tax_amount + self.tip

    def suggested_tips(self) -> List[Decimal]:
        return [money(self.subtotal * rate) for rate in TIP_PRESETS]

    def quote(self) -> Quote:
        subtotal = money(self.subtotal)
        discount_amount = money(self.discount_amount)
        tax_amount = money((subtotal - discount_amount) * TAX_RATE)
        tip = money(self.tip)
        return Quote(
            subtotal=subtotal,
            discount_amount=discount_amount,
            tax_amount=tax_amount,
            tip=tip,
            total=subtotal - discount_amount + tax_amount + tip,
            suggested_tips=self.suggested_tips(),
        )
