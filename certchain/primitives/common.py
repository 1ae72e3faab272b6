"""
CertChain — Common Primitives

Shared base model and utilities used across all systems.
"""

from __future__ import annotations

import time
from datetime import datetime, timezone

from pydantic import BaseModel
from ulid import ULID


def new_id() -> str:
    """Generate a new ULID string. Time-sortable, globally unique."""
    return str(ULID())


def utc_now() -> datetime:
    """Current UTC time, timezone-aware."""
    return datetime.now(timezone.utc)


def unix_now() -> int:
    """Current time as whole unix seconds (the ledger's timestamp unit)."""
    return int(time.time())


class CertChainBaseModel(BaseModel):
    """Base model for all CertChain records and results."""

    model_config = {"populate_by_name": True, "from_attributes": True}
