"""
Entitlement Core
================

Storefront purchase verification, entitlement reconciliation,
lifecycle webhook ingestion and push campaign dispatch.
"""

__version__ = "1.0.0"
