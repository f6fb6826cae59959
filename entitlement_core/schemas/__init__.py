"""
Pydantic Schemas
================

Request/response schemas for API validation.
"""

from entitlement_core.schemas.common import ErrorDetail, ErrorResponse

__all__ = [
    "ErrorDetail",
    "ErrorResponse",
]
