"""
Model import hook.

Importing this module ensures all SQLAlchemy models are registered on Base.metadata.
"""

from __future__ import annotations

# Import User first - receipts reference identity_user
from receipt_tracker.modules.identity.models import User  # noqa: F401

from receipt_tracker.modules.receipts.models import Receipt  # noqa: F401
