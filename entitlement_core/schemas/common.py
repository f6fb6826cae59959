"""
Common Schemas
==============

Error envelope written by the handlers in ``core.errors``; used to
document error responses in OpenAPI.
"""

from typing import Optional

from pydantic import BaseModel


class ErrorDetail(BaseModel):
    code: str
    message: str
    field: Optional[str] = None


class ErrorResponse(BaseModel):
    """``{"success": false, "error": {...}}``"""

    success: bool = False
    error: ErrorDetail
