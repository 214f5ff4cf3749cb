"""
Entitlement Resolver
====================

Turns App Store transactions into the canonical subscription state.

Two modes:
- single-transaction: one record, used right after a purchase and for
  notifications that only need the latest transaction
- full-history: every transaction of one lineage; the one with the latest
  ``expiresDate`` is authoritative

Precedence:
1. any revoked transaction       -> FREE / REFUNDED
2. expired (outside grace)       -> FREE / EXPIRED
3. otherwise TRIAL or PREMIUM, ACTIVE, or CANCELLING when auto-renew is off

Some notification types force an outcome over the raw fields. ``has_used_trial``
only ever moves from False to True.
"""

import logging
from dataclasses import asdict, dataclass
from typing import Callable, Iterable, Optional, Sequence

from app.core.products import ProductCatalog
from app.models.subscription import Entitlement, SubscriptionStatus, SubscriptionType
from app.schemas.subscription import RenewalInfo, StatusGroupItem, TransactionRecord
from app.utils.helpers import now_ms

logger = logging.getLogger(__name__)


# Notification types resolved from the latest transaction alone.
SINGLE_TRANSACTION_NOTIFICATIONS = frozenset({
    "SUBSCRIBED",
    "DID_RENEW",
    "DID_CHANGE_RENEWAL_STATUS",
    "PRICE_INCREASE",
})

FORCED_EXPIRED_NOTIFICATIONS = frozenset({"EXPIRED", "GRACE_PERIOD_EXPIRED"})
FORCED_REFUNDED_NOTIFICATIONS = frozenset({"REVOKE", "REFUND"})

# App Store subscription status codes
STATUS_ACTIVE = 1
STATUS_EXPIRED = 2
STATUS_BILLING_RETRY = 3
STATUS_BILLING_GRACE_PERIOD = 4
STATUS_REVOKED = 5


def requires_full_history(notification_type: Optional[str]) -> bool:
    """Whether a notification type needs the whole lineage to classify."""
    return notification_type not in SINGLE_TRANSACTION_NOTIFICATIONS


@dataclass
class ResolvedSubscription:
    """Resolver output, shaped as a partial subscription record."""

    entitlement: Entitlement
    subscription_status: SubscriptionStatus
    has_used_trial: bool
    auto_renew_enabled: bool
    subscription_type: Optional[SubscriptionType]
    expiration_date: Optional[int]
    original_transaction_id: str
    last_transaction_id: str
    product_id: str
    offer_type: Optional[int] = None
    purchase_date: Optional[int] = None
    app_account_token: Optional[str] = None
    environment: Optional[str] = None
    grace_period_expires_date: Optional[int] = None

    def to_update(self) -> dict:
        """Fields to merge into the stored record."""
        return asdict(self)


class EntitlementResolver:
    """Computes entitlement from transactions; pure apart from the clock."""

    def __init__(
        self,
        catalog: ProductCatalog,
        clock: Callable[[], int] = now_ms,
    ):
        self.catalog = catalog
        self.clock = clock

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def resolve(
        self,
        transactions: Sequence[TransactionRecord],
        prior_has_used_trial: bool = False,
        *,
        full_history: bool = False,
        notification_type: Optional[str] = None,
        auto_renew: Optional[bool] = None,
        grace_period_expires_date: Optional[int] = None,
        now: Optional[int] = None,
    ) -> ResolvedSubscription:
        """
        Resolve subscription state from one transaction or a full lineage.

        Args:
            transactions: exactly one record in single mode, the lineage in
                full-history mode
            prior_has_used_trial: previously stored flag, OR-ed with new evidence
            full_history: select full-history mode
            notification_type: App Store notification type, when resolving a webhook
            auto_renew: external auto-renew signal (renewal info or subtype)
            grace_period_expires_date: end of the billing grace period, epoch ms
            now: evaluation time in epoch ms (defaults to the clock)
        """
        if not transactions:
            raise ValueError("At least one transaction is required")
        if not full_history and len(transactions) != 1:
            raise ValueError("Single-transaction mode takes exactly one transaction")

        now = self.clock() if now is None else now
        authoritative = self._authoritative(transactions)

        trial_seen = any(
            self.catalog.is_trial_offer(tx.product_id, tx.offer_type)
            for tx in transactions
        )
        has_used_trial = bool(prior_has_used_trial) or trial_seen

        return self._decide(
            authoritative,
            transactions,
            has_used_trial=has_used_trial,
            notification_type=notification_type,
            auto_renew=auto_renew,
            grace_period_expires_date=grace_period_expires_date,
            now=now,
        )

    def resolve_status_groups(
        self,
        items: Iterable[StatusGroupItem],
        prior_has_used_trial: bool = False,
        *,
        now: Optional[int] = None,
    ) -> Optional[ResolvedSubscription]:
        """
        Resolve from the subscription status endpoint's latest transactions.

        Returns None when the response carries no transactions.
        """
        items = list(items)
        if not items:
            return None

        now = self.clock() if now is None else now
        current = max(items, key=lambda item: _expiry_key(item.transaction))
        renewal: Optional[RenewalInfo] = current.renewal

        forced = None
        if current.status == STATUS_REVOKED:
            forced = "REVOKE"
        elif current.status in (STATUS_EXPIRED, STATUS_BILLING_RETRY):
            forced = "EXPIRED"

        grace = renewal.grace_period_expires_date if renewal else None
        if current.status != STATUS_BILLING_GRACE_PERIOD:
            grace = None

        trial_seen = any(
            self.catalog.is_trial_offer(item.transaction.product_id, item.transaction.offer_type)
            for item in items
        )
        return self._decide(
            current.transaction,
            [item.transaction for item in items],
            has_used_trial=bool(prior_has_used_trial) or trial_seen,
            notification_type=forced,
            auto_renew=renewal.auto_renew_enabled if renewal else None,
            grace_period_expires_date=grace,
            now=now,
        )

    # -------------------------------------------------------------------------
    # Decision
    # -------------------------------------------------------------------------

    @staticmethod
    def _authoritative(transactions: Sequence[TransactionRecord]) -> TransactionRecord:
        return max(transactions, key=_expiry_key)

    @staticmethod
    def _is_revoked(transactions: Sequence[TransactionRecord]) -> bool:
        """Any revoked transaction in the set refunds the whole lineage."""
        return any(tx.is_revoked for tx in transactions)

    def _decide(
        self,
        authoritative: TransactionRecord,
        transactions: Sequence[TransactionRecord],
        *,
        has_used_trial: bool,
        notification_type: Optional[str],
        auto_renew: Optional[bool],
        grace_period_expires_date: Optional[int],
        now: int,
    ) -> ResolvedSubscription:
        expires = authoritative.expires_date
        expired = bool(expires) and now >= expires
        in_grace = expired and bool(grace_period_expires_date) and now < grace_period_expires_date

        if self._is_revoked(transactions) or notification_type in FORCED_REFUNDED_NOTIFICATIONS:
            entitlement, status, renewing = Entitlement.FREE, SubscriptionStatus.REFUNDED, False
        elif notification_type in FORCED_EXPIRED_NOTIFICATIONS or (expired and not in_grace):
            entitlement, status, renewing = Entitlement.FREE, SubscriptionStatus.EXPIRED, False
        else:
            if self.catalog.is_trial_offer(authoritative.product_id, authoritative.offer_type):
                entitlement = Entitlement.TRIAL
            else:
                entitlement = Entitlement.PREMIUM

            if notification_type == "SUBSCRIBED" or auto_renew is None:
                renewing = True
            else:
                renewing = auto_renew
            status = SubscriptionStatus.ACTIVE if renewing else SubscriptionStatus.CANCELLING

        logger.debug(
            "Resolved %s: %s/%s (notification=%s, expires=%s, now=%s)",
            authoritative.original_transaction_id,
            entitlement.value,
            status.value,
            notification_type,
            expires,
            now,
        )

        return ResolvedSubscription(
            entitlement=entitlement,
            subscription_status=status,
            has_used_trial=has_used_trial,
            auto_renew_enabled=renewing,
            subscription_type=self.catalog.subscription_type(authoritative.product_id),
            expiration_date=expires,
            original_transaction_id=authoritative.original_transaction_id,
            last_transaction_id=authoritative.transaction_id,
            product_id=authoritative.product_id,
            offer_type=authoritative.offer_type,
            purchase_date=authoritative.purchase_date,
            app_account_token=authoritative.app_account_token,
            environment=authoritative.environment,
            grace_period_expires_date=grace_period_expires_date if in_grace else None,
        )


def _expiry_key(tx: TransactionRecord) -> tuple[int, int]:
    return (tx.expires_date or 0, tx.purchase_date or 0)
