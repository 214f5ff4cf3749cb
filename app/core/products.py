"""
Product Catalog
===============

Maps App Store product identifiers to their billing period and trial
eligibility. The table is configuration (``PRODUCT_CATALOG``), so new
product ids are classified by adding an entry, never by guessing from
the identifier text.
"""

import logging
from typing import Mapping, Optional

from app.config import ProductInfo, settings
from app.models.subscription import SubscriptionType

logger = logging.getLogger(__name__)


class ProductCatalog:
    """Lookup table of known subscription products."""

    def __init__(
        self,
        products: Mapping[str, ProductInfo],
        trial_offer_types: Optional[set[int]] = None,
    ):
        self._products = dict(products)
        self.trial_offer_types = {1} if trial_offer_types is None else set(trial_offer_types)

    def lookup(self, product_id: Optional[str]) -> Optional[ProductInfo]:
        if not product_id:
            return None
        info = self._products.get(product_id)
        if info is None:
            logger.warning("Product %s is not in the product catalog", product_id)
        return info

    def subscription_type(self, product_id: Optional[str]) -> Optional[SubscriptionType]:
        """Billing period for *product_id*, or None when unknown."""
        info = self.lookup(product_id)
        if info is None or info.period is None:
            return None
        return SubscriptionType(info.period)

    def is_trial_offer(self, product_id: Optional[str], offer_type: Optional[int]) -> bool:
        """
        Whether a transaction with this product and offer type is a free trial.

        Unknown products are treated as trial eligible so trial evidence is
        never dropped for a product missing from the catalog.
        """
        if offer_type is None or offer_type not in self.trial_offer_types:
            return False
        info = self.lookup(product_id)
        return info is None or info.trial_eligible


def get_product_catalog() -> ProductCatalog:
    """Catalog built from application settings."""
    return ProductCatalog(
        settings.PRODUCT_CATALOG,
        trial_offer_types=set(settings.TRIAL_OFFER_TYPES),
    )
