"""Warranty expiry and next-service-due calculation for assets."""

import logging
from dataclasses import dataclass

from dateutil.relativedelta import relativedelta
from sqlalchemy.orm import Session

from models.models import Asset, Product

logger = logging.getLogger(__name__)

CATEGORIES = ("labor", "parts", "compressor")


@dataclass(frozen=True)
class WarrantyTerms:
    """Term length in years per warranty category."""
    labor: int = 1
    parts: int = 10
    compressor: int = 10

    @classmethod
    def from_product(cls, product) -> "WarrantyTerms":
        if isinstance(product, WarrantyTerms):
            return product
        return cls(
            labor=product.labor_warranty_years or 0,
            parts=product.parts_warranty_years or 0,
            compressor=product.compressor_warranty_years or 0,
        )


# Used when no product is linked
DEFAULT_TERMS = WarrantyTerms()


def effective_terms(asset: Asset, product=None) -> WarrantyTerms:
    """
    Resolve the term for each category independently.

    A category with an explicit (positive) term on the asset keeps it; a
    category left at zero takes the product's term, or the defaults when
    no product is linked.
    """
    fallback = WarrantyTerms.from_product(product) if product is not None else DEFAULT_TERMS
    resolved = {}
    for category in CATEGORIES:
        own = getattr(asset, f"{category}_warranty_term_years") or 0
        resolved[category] = own if own > 0 else getattr(fallback, category)
    return WarrantyTerms(**resolved)


def compute_warranty_expiries(asset: Asset, product=None) -> Asset:
    """
    Write per-category warranty expiries, the overall expiry and the
    next-service-due date onto the asset. Returns the same asset.

    Expiry is (warranty start or install date) + term years. Categories with
    a zero term get no expiry and are left out of the overall maximum. With
    neither date present the expiry fields are left untouched.
    """
    base = asset.warranty_start_date or asset.install_date
    if base is not None:
        terms = effective_terms(asset, product)
        expiries = []
        for category in CATEGORIES:
            years = getattr(terms, category)
            expiry = base + relativedelta(years=years) if years > 0 else None
            setattr(asset, f"{category}_warranty_expiry", expiry)
            if expiry is not None:
                expiries.append(expiry)
        asset.warranty_expiry = max(expiries) if expiries else None
        logger.info(f"Asset {asset.id}: warranty expiry {asset.warranty_expiry} (terms {terms})")
    else:
        logger.info(f"Asset {asset.id}: no install or warranty start date, expiries unchanged")

    # Never overwrite an existing service due date
    if asset.next_service_due is None and asset.install_date is not None:
        asset.next_service_due = asset.install_date + relativedelta(years=1)

    return asset


class ProductTermsCache:
    """
    Lazily loaded product warranty terms.

    Owned by whoever writes products: call invalidate() on every product
    write so the next lookup reloads.
    """

    def __init__(self):
        self._terms: dict[int, WarrantyTerms | None] = {}

    def get(self, db: Session, product_id: int | None) -> WarrantyTerms | None:
        if product_id is None:
            return None
        if product_id not in self._terms:
            product = db.get(Product, product_id)
            self._terms[product_id] = WarrantyTerms.from_product(product) if product is not None else None
        return self._terms[product_id]

    def invalidate(self, product_id: int | None = None) -> None:
        if product_id is None:
            self._terms.clear()
        else:
            self._terms.pop(product_id, None)

    def __len__(self):
        return len(self._terms)
