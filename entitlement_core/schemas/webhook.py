"""
Webhook Schemas
===============
"""

from typing import Optional

from pydantic import BaseModel


class WebhookAck(BaseModel):
    """Acknowledgment returned to the push subscription."""

    received: bool = True
    action: Optional[str] = None
    duplicate: Optional[bool] = None
