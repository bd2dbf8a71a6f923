from dataclasses import dataclass
from typing import Iterable, Tuple

FREE_SHIPPING_THRESHOLD = 500
FLAT_SHIPPING_PRICE = 50
TAX_RATE = 0.18  # GST


@dataclass(frozen=True)
class Prices:
    items_price: float
    shipping_price: float
    tax_price: float
    total_price: float


def calculate_prices(lines: Iterable[Tuple[float, int]]) -> Prices:
    """Price a list of (unit price, quantity) pairs. Nothing is rounded here."""
    items_price = sum(price * quantity for price, quantity in lines)
    shipping_price = 0 if items_price > FREE_SHIPPING_THRESHOLD else FLAT_SHIPPING_PRICE
    tax_price = items_price * TAX_RATE
    return Prices(
        items_price=items_price,
        shipping_price=shipping_price,
        tax_price=tax_price,
        total_price=items_price + shipping_price + tax_price,
    )


def gateway_amount(total_price: float) -> float:
    return round(total_price, 2)
