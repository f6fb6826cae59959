"""
Common Dependencies
===================

Shared dependencies used across the application.
"""

import logging
from typing import Annotated, Awaitable, Callable
import uuid

from fastapi import Depends, Header, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from entitlement_core.core.errors import (
    AuthenticationError,
    ErrorCodes,
    ForbiddenError,
    NotFoundError,
)
from entitlement_core.core.security import decode_token, verify_internal_key
from entitlement_core.db.session import get_db
from entitlement_core.models.profile import Profile
from entitlement_core.services.device_service import DeviceStore, SQLDeviceStore
from entitlement_core.services.dispatcher import NotificationDispatcher, build_dispatcher
from entitlement_core.services.entitlement_service import EntitlementService, SQLEntitlementStore
from entitlement_core.services.push import PushClient, PushMessage
from entitlement_core.services.receipt_verifier import ReceiptVerifier
from entitlement_core.services.user_notifier import UserNotifier, deliver_lifecycle_notice

logger = logging.getLogger(__name__)

# Database session dependency
DBSession = Annotated[AsyncSession, Depends(get_db)]

# Security scheme for JWT authentication
security = HTTPBearer(auto_error=False)


# =============================================================================
# Caller identity
# =============================================================================

def _user_id_from_credentials(credentials: HTTPAuthorizationCredentials | None) -> uuid.UUID:
    if credentials is None:
        raise AuthenticationError(
            code=ErrorCodes.AUTH_NOT_AUTHENTICATED,
            message="Not authenticated",
        )

    payload = decode_token(credentials.credentials)
    if payload is None or payload.get("sub") is None:
        raise AuthenticationError(message="Invalid or expired token")

    try:
        return uuid.UUID(str(payload["sub"]))
    except ValueError:
        raise AuthenticationError(message="Invalid token subject") from None


async def get_current_user_id(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
) -> uuid.UUID:
    """
    Resolve the caller's user id from the bearer token.

    Raises 401 if the token is missing, invalid or expired.
    """
    user_id = _user_id_from_credentials(credentials)
    # Picked up by the New Relic middleware
    request.state.user_id = user_id
    return user_id


CurrentUserId = Annotated[uuid.UUID, Depends(get_current_user_id)]


async def get_current_profile(user_id: CurrentUserId, db: DBSession) -> Profile:
    """Load the caller's profile row; 404 if the user has none."""
    result = await db.execute(select(Profile).where(Profile.user_id == user_id))
    profile = result.scalar_one_or_none()
    if profile is None:
        raise NotFoundError(
            code=ErrorCodes.SUB_PROFILE_NOT_FOUND,
            message="Profile not found",
        )
    return profile


CurrentProfile = Annotated[Profile, Depends(get_current_profile)]


async def require_internal_key(
    x_internal_key: Annotated[str, Header(alias="X-Internal-Key")] = "",
) -> None:
    """Guard for service-to-service endpoints."""
    if not verify_internal_key(x_internal_key):
        logger.warning("Rejected internal call with missing or wrong key")
        raise ForbiddenError(message="Invalid internal API key")


InternalCaller = Depends(require_internal_key)


# =============================================================================
# Service wiring (overridden in tests)
# =============================================================================

def get_receipt_verifier() -> ReceiptVerifier:
    return ReceiptVerifier()


def get_push_client() -> PushClient:
    return PushClient()


def get_entitlement_service(db: DBSession) -> EntitlementService:
    return EntitlementService(SQLEntitlementStore(db))


def get_device_store(db: DBSession) -> DeviceStore:
    return SQLDeviceStore(db)


def get_user_notifier(
    devices: Annotated[DeviceStore, Depends(get_device_store)],
    push: Annotated[PushClient, Depends(get_push_client)],
) -> UserNotifier:
    return UserNotifier(devices, push)


NoticeSender = Callable[[uuid.UUID, PushMessage], Awaitable[None]]


def get_notice_sender() -> NoticeSender:
    return deliver_lifecycle_notice


def get_dispatcher(db: DBSession) -> NotificationDispatcher:
    return build_dispatcher(db)
