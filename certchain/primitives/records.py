"""
CertChain — Ledger Records

Typed views of the state held by the two ledger contracts. These are
read-only snapshots: the ledger owns the state, the core only reads it
and submits writes through the LedgerGateway.
"""

from __future__ import annotations

import enum

from pydantic import Field, field_validator

from certchain.errors import LedgerInconsistency
from certchain.primitives.common import CertChainBaseModel
from certchain.primitives.identity import Identity, normalize_identity

# ─── Roles ────────────────────────────────────────────────────────


class Role(enum.StrEnum):
    """The role string stored on the user registry."""

    UNSET = ""
    STUDENT = "student"
    PROVIDER = "provider"

    @classmethod
    def parse(cls, raw: str | None) -> Role:
        """
        Parse a ledger role string.

        The registry stores free-form strings; matching is case-insensitive.
        This is the only place in the package where role strings are read.
        """
        value = (raw or "").strip().lower()
        try:
            return cls(value)
        except ValueError:
            raise LedgerInconsistency(f"Unknown role on ledger: {raw!r}") from None


class RoleKind(enum.StrEnum):
    """What an identity is, as far as the workflows are concerned."""

    UNREGISTERED = "unregistered"
    STUDENT = "student"
    PROVIDER = "provider"
    ADMINISTRATOR = "administrator"


class RequestStatus(enum.StrEnum):
    PENDING = "pending"
    APPROVED = "approved"


# ─── Records ──────────────────────────────────────────────────────


class UserRecord(CertChainBaseModel):
    """One identity's entry on the user registry."""

    identity: Identity
    role: Role = Role.UNSET
    registered: bool = False
    metadata_ref: str = ""

    @field_validator("identity", mode="before")
    @classmethod
    def _normalize(cls, value: str) -> str:
        return normalize_identity(value)


class CertificateRequest(CertChainBaseModel):
    """A student's request for a certificate from one institute."""

    id: int = Field(ge=1)
    student: Identity
    institute: Identity
    requested_name: str
    message: str = ""
    student_metadata_ref: str = ""
    approved: bool = False

    @field_validator("student", "institute", mode="before")
    @classmethod
    def _normalize(cls, value: str) -> str:
        return normalize_identity(value)

    @property
    def status(self) -> RequestStatus:
        return RequestStatus.APPROVED if self.approved else RequestStatus.PENDING

    @property
    def is_pending(self) -> bool:
        return not self.approved


class Certificate(CertChainBaseModel):
    """A minted certificate. Immutable once on the ledger."""

    id: int
    name: str
    institute: Identity
    issue_date: int  # unix seconds
    certificate_type: str
    holder: Identity
    metadata_ref: str = ""

    @field_validator("institute", "holder", mode="before")
    @classmethod
    def _normalize(cls, value: str) -> str:
        return normalize_identity(value)


class LedgerReceipt(CertChainBaseModel):
    """Confirmation of a ledger write."""

    operation: str
    tx_hash: str
    block_number: int | None = None
    # Set by writes that allocate an id (request submission, minting)
    assigned_id: int | None = None
