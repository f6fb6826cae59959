"""
Notifications API Endpoints
===========================

Internal transactional push to a single user.
"""

import logging
from typing import Annotated
import uuid

from fastapi import APIRouter, Depends

from entitlement_core.dependencies import InternalCaller, get_user_notifier
from entitlement_core.schemas.campaign import UserPushRequest, UserPushResponse
from entitlement_core.services.push import PushMessage
from entitlement_core.services.user_notifier import UserNotifier

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[InternalCaller])


@router.post("/users/{user_id}", response_model=UserPushResponse)
async def push_to_user(
    user_id: uuid.UUID,
    body: UserPushRequest,
    notifier: Annotated[UserNotifier, Depends(get_user_notifier)],
) -> UserPushResponse:
    """Send a push to every active device of ``user_id``."""
    counts = await notifier.notify(
        user_id,
        PushMessage(
            title=body.title,
            body=body.body,
            image_url=body.image_url,
            data=body.data,
            channel_id="default",
        ),
    )
    return UserPushResponse(**counts)
