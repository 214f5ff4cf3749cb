"""
Common Dependencies
===================

Shared dependencies used across the application: database session,
authenticated user and the subscription services.
"""

import logging
from datetime import datetime, timezone
from functools import lru_cache
from typing import Annotated
import uuid

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.errors import AuthenticationError, ErrorCodes
from app.core.products import get_product_catalog
from app.core.security import decode_token
from app.db.session import get_db
from app.models.user import User
from app.services.app_store import AppStoreGateway
from app.services.cache import NotificationRegistry
from app.services.call_guard import DuplicateCallGuard
from app.services.entitlement import EntitlementResolver
from app.services.notifications import NotificationService
from app.services.purchase_sync import PurchaseSyncService
from app.services.subscription_status import SubscriptionStatusController
from app.services.subscription_store import SubscriptionStore

logger = logging.getLogger(__name__)

# Database session dependency
DBSession = Annotated[AsyncSession, Depends(get_db)]

# Security scheme for JWT authentication
security = HTTPBearer(auto_error=False)

# Development test user ID (consistent UUID for testing)
DEV_USER_ID = uuid.UUID("00000000-0000-0000-0000-000000000001")
DEV_USER_EMAIL = "dev@test.local"


# =============================================================================
# User resolution
# =============================================================================

async def get_or_create_dev_user(db: AsyncSession) -> User:
    """
    Get or create a development test user.
    Only used when DEV_AUTH_DISABLED is True.
    """
    result = await db.execute(
        select(User).where(User.user_id == DEV_USER_ID)
    )
    user = result.scalar_one_or_none()

    if user is None:
        user = User(
            user_id=DEV_USER_ID,
            email=DEV_USER_EMAIL,
            created_at=datetime.now(timezone.utc),
            updated_at=datetime.now(timezone.utc),
        )
        db.add(user)
        await db.commit()
        await db.refresh(user)

    return user


async def _resolve_user_from_token(
    credentials: HTTPAuthorizationCredentials,
    db: AsyncSession,
) -> User | None:
    """Decode the JWT, then load the User it names."""
    payload = decode_token(credentials.credentials)
    if payload is None or payload.get("type") != "access":
        return None

    user_id_str = payload.get("sub")
    if user_id_str is None:
        return None

    try:
        user_id = uuid.UUID(user_id_str)
    except ValueError:
        return None

    result = await db.execute(select(User).where(User.user_id == user_id))
    return result.scalar_one_or_none()


async def get_current_user(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
    db: DBSession,
) -> User:
    """
    Get current authenticated user.

    Raises 401 if not authenticated or token is invalid.
    In development with DEV_AUTH_DISABLED=True, returns the dev user.
    """
    if settings.auth_disabled:
        user = await get_or_create_dev_user(db)
    elif credentials is None:
        raise AuthenticationError(
            code=ErrorCodes.AUTH_NOT_AUTHENTICATED,
            message="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    else:
        user = await _resolve_user_from_token(credentials, db)

    if user is None:
        raise AuthenticationError(
            code=ErrorCodes.AUTH_INVALID_TOKEN,
            message="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    # Picked up by the New Relic middleware
    request.state.user_id = user.user_id
    return user


# Type alias for authenticated user dependency
CurrentUser = Annotated[User, Depends(get_current_user)]


# =============================================================================
# Subscription services
# =============================================================================

@lru_cache
def get_app_store_gateway() -> AppStoreGateway:
    """Process-wide App Store gateway (holds the HTTP client)."""
    return AppStoreGateway.from_settings(settings)


@lru_cache
def get_duplicate_call_guard() -> DuplicateCallGuard:
    """Process-local duplicate status-check guard."""
    return DuplicateCallGuard(settings.SUBSCRIPTION_DUPLICATE_WINDOW_SECONDS)


def get_entitlement_resolver() -> EntitlementResolver:
    return EntitlementResolver(get_product_catalog())


def get_subscription_store(db: DBSession) -> SubscriptionStore:
    return SubscriptionStore(db)


Gateway = Annotated[AppStoreGateway, Depends(get_app_store_gateway)]
Resolver = Annotated[EntitlementResolver, Depends(get_entitlement_resolver)]
Store = Annotated[SubscriptionStore, Depends(get_subscription_store)]


def get_status_controller(
    store: Store,
    gateway: Gateway,
    resolver: Resolver,
    call_guard: Annotated[DuplicateCallGuard, Depends(get_duplicate_call_guard)],
) -> SubscriptionStatusController:
    return SubscriptionStatusController(
        store,
        gateway,
        resolver,
        call_guard,
        cache_ttl_seconds=settings.SUBSCRIPTION_CACHE_TTL_SECONDS,
    )


def get_purchase_sync_service(
    store: Store,
    gateway: Gateway,
    resolver: Resolver,
) -> PurchaseSyncService:
    return PurchaseSyncService(store, gateway, resolver)


def get_notification_service(
    store: Store,
    gateway: Gateway,
    resolver: Resolver,
) -> NotificationService:
    return NotificationService(store, gateway, resolver, NotificationRegistry())
