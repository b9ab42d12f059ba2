"""
Credit packages - server-side price/credit catalog.

Clients only ever send a package id; price and credit amounts are
resolved here. PayPal and Polar were launched with different credit
amounts for the same price points, so each provider has its own table.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from config.settings import PAYMENT_AMOUNT_TOLERANCE


@dataclass(frozen=True)
class CreditPackage:
    """A purchasable bundle of story credits."""
    id: int
    price: Decimal
    credits: int
    name: str

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "price": str(self.price),
            "credits": self.credits,
            "name": self.name,
        }


PAYPAL_PACKAGES: dict[int, CreditPackage] = {
    1: CreditPackage(1, Decimal("3.99"), 3, "Starter Pack"),
    2: CreditPackage(2, Decimal("4.99"), 7, "Popular Pack"),
    3: CreditPackage(3, Decimal("8.99"), 12, "Value Pack"),
    4: CreditPackage(4, Decimal("9.99"), 16, "Premium Pack"),
}

POLAR_PACKAGES: dict[int, CreditPackage] = {
    1: CreditPackage(1, Decimal("3.99"), 3, "Starter Pack"),
    2: CreditPackage(2, Decimal("4.99"), 5, "Popular Pack"),
    3: CreditPackage(3, Decimal("8.99"), 8, "Value Pack"),
    4: CreditPackage(4, Decimal("9.99"), 12, "Premium Pack"),
}

CATALOGS: dict[str, dict[int, CreditPackage]] = {
    "paypal": PAYPAL_PACKAGES,
    "polar": POLAR_PACKAGES,
}


def get_package(package_id, provider: str = "paypal") -> Optional[CreditPackage]:
    """
    Look up a package by id for a provider.

    Accepts ints or numeric strings; anything else returns None.
    """
    catalog = CATALOGS.get(provider)
    if catalog is None:
        return None
    if isinstance(package_id, bool):
        return None
    try:
        key = int(package_id)
    except (TypeError, ValueError):
        return None
    if isinstance(package_id, float) and package_id != key:
        return None
    return catalog.get(key)


def amount_matches(amount: Decimal, expected: Decimal, tolerance: Decimal = PAYMENT_AMOUNT_TOLERANCE) -> bool:
    """True if a captured amount is within tolerance of the package price."""
    return abs(Decimal(str(amount)) - expected) <= tolerance


def list_packages(provider: str = "paypal") -> list[dict]:
    """Public catalog for a provider, ordered by id."""
    catalog = CATALOGS.get(provider, {})
    return [catalog[key].to_dict() for key in sorted(catalog)]
