"""
Shared Test Fixtures
====================

In-memory stand-ins for the subscription store, the App Store gateway
and the notification registry, plus an HTTP client wired to the app
through dependency overrides.
"""

import base64
import json
import uuid
from typing import Any, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from app.core.products import ProductCatalog
from app.config import ProductInfo
from app.models.subscription import Subscription, UpdateSource
from app.models.user import User
from app.schemas.subscription import TransactionRecord
from app.services.app_store import AppStoreGateway, GatewayErrorKind, GatewayResult
from app.services.call_guard import DuplicateCallGuard
from app.services.entitlement import EntitlementResolver
from app.services.subscription_store import SubscriptionStore, clean_update
from app.utils.helpers import ms_to_datetime

USER_ID = uuid.UUID("00000000-0000-0000-0000-000000000001")
OTHER_USER_ID = uuid.UUID("00000000-0000-0000-0000-000000000002")
USER_EMAIL = "user@example.com"

NOW = 1_760_000_000_000  # fixed epoch ms
DAY_MS = 24 * 60 * 60 * 1000

MONTHLY = "com.entitlements.premium.monthly"
YEARLY = "com.entitlements.premium.yearly"


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------

def make_jws(payload: dict[str, Any]) -> str:
    """Unsigned three-part envelope carrying *payload*."""
    def segment(data: dict) -> str:
        raw = json.dumps(data).encode("utf-8")
        return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")

    return f"{segment({'alg': 'ES256'})}.{segment(payload)}.c2lnbmF0dXJl"


def transaction_payload(**overrides) -> dict[str, Any]:
    payload = {
        "transactionId": "2000000000000001",
        "originalTransactionId": "1000000000000001",
        "productId": MONTHLY,
        "purchaseDate": NOW - DAY_MS,
        "expiresDate": NOW + 29 * DAY_MS,
        "environment": "Sandbox",
        "bundleId": "com.entitlements.app",
    }
    payload.update(overrides)
    return {key: value for key, value in payload.items() if value is not None}


def make_transaction(**overrides) -> TransactionRecord:
    return TransactionRecord.model_validate(transaction_payload(**overrides))


def make_catalog() -> ProductCatalog:
    return ProductCatalog(
        {
            MONTHLY: ProductInfo(period="monthly", trial_eligible=True),
            YEARLY: ProductInfo(period="yearly", trial_eligible=True),
        },
        trial_offer_types={1},
    )


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeSubscriptionStore(SubscriptionStore):
    """Dict-backed store that reuses the real merge rules."""

    def __init__(self, now_ms: int = NOW):
        super().__init__(db=None, clock=lambda: ms_to_datetime(self.now_ms), legacy_lookup=False)
        self.now_ms = now_ms
        self.rows: dict[uuid.UUID, Subscription] = {}
        self.events: list[dict[str, Any]] = []
        self.updates: list[tuple[uuid.UUID, dict, UpdateSource]] = []
        self.fail_reads = False
        self.fail_writes = False

    def seed(self, user_id: uuid.UUID = USER_ID, updated_at_ms: Optional[int] = None, **fields) -> Subscription:
        row = Subscription(user_id=user_id, has_used_trial=fields.pop("has_used_trial", False), **fields)
        if updated_at_ms is not None:
            row.last_updated_at = ms_to_datetime(updated_at_ms)
        self.rows[user_id] = row
        return row

    async def get(self, user_id):
        self._maybe_fail(self.fail_reads)
        return self.rows.get(user_id)

    async def find_user_by_original_transaction_id(self, original_transaction_id):
        self._maybe_fail(self.fail_reads)
        for user_id, row in self.rows.items():
            if row.original_transaction_id == original_transaction_id:
                return user_id
        return None

    async def update(self, user_id, partial, source, *, touch=True):
        self._maybe_fail(self.fail_writes)
        fields = clean_update(partial)
        row = self.rows.get(user_id)
        if row is None:
            row = Subscription(user_id=user_id, has_used_trial=False)
            self.rows[user_id] = row
        self._apply(row, fields, source, touch)
        self.updates.append((user_id, fields, source))
        return row

    async def unlink_lineage(self, original_transaction_id, keep_user_id, source):
        self._maybe_fail(self.fail_writes)
        detached = []
        for user_id, row in self.rows.items():
            if user_id != keep_user_id and row.original_transaction_id == original_transaction_id:
                self._detach(row)
                self._apply(row, {}, source)
                detached.append(user_id)
        return detached

    async def record_event(self, user_id, **kwargs):
        self._maybe_fail(self.fail_writes)
        self.events.append({"user_id": user_id, **kwargs})

    @staticmethod
    def _maybe_fail(flag: bool) -> None:
        from app.core.errors import SubscriptionStoreError

        if flag:
            raise SubscriptionStoreError("Subscription store unavailable")


class FakeNotificationRegistry:
    def __init__(self):
        self.processed: set[str] = set()

    async def is_processed(self, notification_uuid):
        return notification_uuid in self.processed

    async def mark_processed(self, notification_uuid):
        if notification_uuid:
            self.processed.add(notification_uuid)


def make_gateway() -> MagicMock:
    """Gateway double whose calls fail unless a test configures them."""
    gateway = MagicMock(spec=AppStoreGateway)
    not_configured = GatewayResult.fail(GatewayErrorKind.NOT_CONFIGURED, "not configured in test")
    for name in (
        "verify_signed_payload",
        "verify_transaction",
        "verify_renewal_info",
        "get_transaction_info",
        "get_transaction_history",
        "get_subscription_status",
    ):
        setattr(gateway, name, AsyncMock(return_value=not_configured))
    gateway.close = AsyncMock()
    return gateway


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def store() -> FakeSubscriptionStore:
    return FakeSubscriptionStore()


@pytest.fixture
def gateway() -> MagicMock:
    return make_gateway()


@pytest.fixture
def resolver() -> EntitlementResolver:
    return EntitlementResolver(make_catalog(), clock=lambda: NOW)


@pytest.fixture
def call_guard() -> DuplicateCallGuard:
    return DuplicateCallGuard(window_seconds=300)


@pytest.fixture
def registry() -> FakeNotificationRegistry:
    return FakeNotificationRegistry()


@pytest.fixture
def current_user() -> User:
    return User(user_id=USER_ID, email=USER_EMAIL)


@pytest.fixture
def db_session() -> AsyncMock:
    return AsyncMock()


@pytest_asyncio.fixture
async def client(store, gateway, resolver, call_guard, registry, current_user, db_session):
    """HTTP client with the database, App Store and auth replaced by fakes."""
    from app.db.session import get_db
    from app.dependencies import (
        get_app_store_gateway,
        get_current_user,
        get_duplicate_call_guard,
        get_entitlement_resolver,
        get_notification_service,
        get_status_controller,
        get_subscription_store,
    )
    from app.main import app
    from app.services.notifications import NotificationService
    from app.services.subscription_status import SubscriptionStatusController

    async def override_db():
        yield db_session

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_subscription_store] = lambda: store
    app.dependency_overrides[get_app_store_gateway] = lambda: gateway
    app.dependency_overrides[get_entitlement_resolver] = lambda: resolver
    app.dependency_overrides[get_duplicate_call_guard] = lambda: call_guard
    app.dependency_overrides[get_current_user] = lambda: current_user
    app.dependency_overrides[get_notification_service] = (
        lambda: NotificationService(store, gateway, resolver, registry)
    )
    app.dependency_overrides[get_status_controller] = lambda: SubscriptionStatusController(
        store,
        gateway,
        resolver,
        call_guard,
        cache_ttl_seconds=600,
        clock=lambda: NOW,
        test_accounts={},
    )

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
