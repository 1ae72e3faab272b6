"""
CertChain — Primitives

Identity context and the typed ledger records shared by every system.
"""

from certchain.primitives.common import CertChainBaseModel, new_id, unix_now, utc_now
from certchain.primitives.identity import (
    ZERO_IDENTITY,
    Identity,
    LocalAccountSigner,
    Session,
    Signer,
    is_vacant,
    normalize_identity,
    same_identity,
)
from certchain.primitives.records import (
    Certificate,
    CertificateRequest,
    LedgerReceipt,
    RequestStatus,
    Role,
    RoleKind,
    UserRecord,
)

__all__ = [
    "CertChainBaseModel",
    "new_id",
    "unix_now",
    "utc_now",
    "ZERO_IDENTITY",
    "Identity",
    "LocalAccountSigner",
    "Session",
    "Signer",
    "is_vacant",
    "normalize_identity",
    "same_identity",
    "Certificate",
    "CertificateRequest",
    "LedgerReceipt",
    "RequestStatus",
    "Role",
    "RoleKind",
    "UserRecord",
]
