"""
Internal Accounts
=================

Canned subscription records for QA and App Store review identities.
``TEST_ACCOUNTS`` maps an e-mail address to one of the profiles below;
matching users bypass the App Store entirely.
"""

import logging
from typing import Callable, Mapping, Optional

from app.config import settings
from app.models.subscription import Entitlement, SubscriptionStatus, SubscriptionType
from app.schemas.subscription import SubscriptionRecord
from app.utils.helpers import now_ms

logger = logging.getLogger(__name__)

DAY_MS = 24 * 60 * 60 * 1000

MONTHLY_PRODUCT = "com.entitlements.premium.monthly"
YEARLY_PRODUCT = "com.entitlements.premium.yearly"


def _profile(
    entitlement: Entitlement,
    status: SubscriptionStatus,
    expires_in_days: int,
    *,
    auto_renew: bool,
    subscription_type: Optional[SubscriptionType],
    product_id: Optional[str],
    grace_days: Optional[int] = None,
) -> Callable[[int], dict]:
    def build(now: int) -> dict:
        return {
            "entitlement": entitlement,
            "subscription_status": status,
            "has_used_trial": True,
            "auto_renew_enabled": auto_renew,
            "subscription_type": subscription_type,
            "expiration_date": now + expires_in_days * DAY_MS,
            "grace_period_expires_date": now + grace_days * DAY_MS if grace_days else None,
            "product_id": product_id,
        }
    return build


TEST_ACCOUNT_PROFILES: Mapping[str, Callable[[int], dict]] = {
    "premium": _profile(
        Entitlement.PREMIUM, SubscriptionStatus.ACTIVE, 365,
        auto_renew=True, subscription_type=SubscriptionType.YEARLY, product_id=YEARLY_PRODUCT,
    ),
    "trial": _profile(
        Entitlement.TRIAL, SubscriptionStatus.ACTIVE, 7,
        auto_renew=True, subscription_type=SubscriptionType.MONTHLY, product_id=MONTHLY_PRODUCT,
    ),
    "trial_cancelling": _profile(
        Entitlement.TRIAL, SubscriptionStatus.CANCELLING, 3,
        auto_renew=False, subscription_type=SubscriptionType.MONTHLY, product_id=MONTHLY_PRODUCT,
    ),
    "trial_converted": _profile(
        Entitlement.PREMIUM, SubscriptionStatus.ACTIVE, 29,
        auto_renew=True, subscription_type=SubscriptionType.MONTHLY, product_id=MONTHLY_PRODUCT,
    ),
    "premium_cancelling": _profile(
        Entitlement.PREMIUM, SubscriptionStatus.CANCELLING, 15,
        auto_renew=False, subscription_type=SubscriptionType.MONTHLY, product_id=MONTHLY_PRODUCT,
    ),
    "premium_expired": _profile(
        Entitlement.FREE, SubscriptionStatus.EXPIRED, -3,
        auto_renew=False, subscription_type=None, product_id=None,
    ),
    "premium_grace": _profile(
        Entitlement.PREMIUM, SubscriptionStatus.ACTIVE, -5,
        auto_renew=False, subscription_type=SubscriptionType.MONTHLY, product_id=MONTHLY_PRODUCT,
        grace_days=11,
    ),
    "refunded": _profile(
        Entitlement.FREE, SubscriptionStatus.REFUNDED, -1,
        auto_renew=False, subscription_type=None, product_id=None,
    ),
}


def find_test_account(
    email: Optional[str],
    accounts: Optional[Mapping[str, str]] = None,
) -> Optional[str]:
    """Return the profile name configured for *email*, if any."""
    if not email:
        return None
    accounts = settings.TEST_ACCOUNTS if accounts is None else accounts
    profile = accounts.get(email.strip().lower())
    if profile is None:
        return None
    if profile not in TEST_ACCOUNT_PROFILES:
        logger.warning("Test account %s uses unknown profile %s", email, profile)
        return None
    return profile


def canned_record(profile: str, now: Optional[int] = None) -> SubscriptionRecord:
    """Build the canned record for *profile*, with dates relative to *now*."""
    now = now_ms() if now is None else now
    record = SubscriptionRecord(
        **TEST_ACCOUNT_PROFILES[profile](now),
        original_transaction_id=f"test_{profile}_transaction_001",
    )
    logger.info(
        "Serving test account profile %s: %s/%s",
        profile,
        record.entitlement.value,
        record.subscription_status.value,
    )
    return record
