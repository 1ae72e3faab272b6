"""
CertChain — Catalog Types

Display-ready views of minted certificates: the ledger record joined with
its dereferenced metadata blob.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import Field

from certchain.primitives.common import CertChainBaseModel, utc_now
from certchain.primitives.identity import Identity
from certchain.primitives.records import Certificate


class CatalogEntry(CertChainBaseModel):
    """
    One certificate plus whatever of its metadata could be resolved.

    ``metadata`` is None when the blob could not be fetched; the ledger
    fields are still authoritative and the entry stays in listings.
    """

    certificate: Certificate
    metadata: dict[str, Any] | None = None
    metadata_error: str | None = None
    image_url: str = ""

    @property
    def id(self) -> int:
        return self.certificate.id

    @property
    def degraded(self) -> bool:
        return self.metadata is None

    @property
    def institution(self) -> dict[str, Any]:
        if not self.metadata:
            return {}
        institution = self.metadata.get("institution")
        return institution if isinstance(institution, dict) else {}


class CatalogListing(CertChainBaseModel):
    holder: Identity
    entries: list[CatalogEntry] = Field(default_factory=list)
    # Certificate ids whose ledger details could not be read
    skipped: list[int] = Field(default_factory=list)

    def __len__(self) -> int:
        return len(self.entries)

    @property
    def ids(self) -> list[int]:
        return [e.id for e in self.entries]


class VerificationReport(CertChainBaseModel):
    """
    Verification of one certificate against current ledger state.

    Issuer authorization is evaluated live: a certificate that verified
    yesterday reports ``issuer_authorized=False`` once its institute is
    revoked, with the ledger record itself unchanged.
    """

    certificate: Certificate
    issuer_authorized: bool
    metadata_available: bool = False
    # Address the metadata blob names as issuer, if any
    claimed_institution: Identity | None = None
    # None when the metadata does not name an issuer
    institution_matches: bool | None = None
    checked_at: datetime = Field(default_factory=utc_now)

    @property
    def verified(self) -> bool:
        return self.issuer_authorized and self.institution_matches is not False
