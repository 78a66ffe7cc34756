"""
Recharge package catalog.

Single source of truth for package pricing. Changing a price here only affects
new orders; existing orders carry their own amount and credits.
"""

from decimal import Decimal

from qc_billing.exceptions import InvalidPackageError
from qc_billing.models.domain import Package

PACKAGES: dict[str, Package] = {
    "pkg_12": Package(id="pkg_12", price=Decimal("9.90"), credits=12, label="¥9.9 / 12 analyses"),
    "pkg_30": Package(id="pkg_30", price=Decimal("19.90"), credits=30, label="¥19.9 / 30 analyses"),
}


def get_package(package_id: str) -> Package:
    """
    Look up a package by id.

    Raises:
        InvalidPackageError: If the id is not in the catalog
    """
    package = PACKAGES.get(package_id)
    if package is None:
        raise InvalidPackageError(package_id)
    return package


def list_packages() -> list[Package]:
    """All packages in display order (cheapest first)."""
    return sorted(PACKAGES.values(), key=lambda p: p.price)
