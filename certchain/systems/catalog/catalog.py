"""
CertChain — Credential Catalog

Enumerates and resolves minted certificates for a holder, joining ledger
records with their off-ledger metadata for display and verification.

Each certificate is resolved independently and concurrently (bounded by
``catalog.max_concurrent_fetches``):
  - ledger details fail  -> the id is reported in ``skipped``
  - metadata fetch fails -> the entry is kept, degraded (metadata=None)

Issuer verification always reads the live authorized set.
"""

from __future__ import annotations

import asyncio

import structlog

from certchain.config import CatalogConfig
from certchain.errors import CertChainError, InvalidInput
from certchain.primitives.identity import Identity, Session, is_vacant, normalize_identity
from certchain.primitives.records import Certificate
from certchain.systems.authorization.gate import AuthorizationGate
from certchain.systems.catalog.types import CatalogEntry, CatalogListing, VerificationReport
from certchain.systems.ledger.gateway import LedgerGateway
from certchain.systems.metadata.resolver import MetadataResolver

logger = structlog.get_logger("certchain.systems.catalog")


class CredentialCatalog:
    """Read-side view of issued certificates."""

    def __init__(
        self,
        ledger: LedgerGateway,
        metadata: MetadataResolver,
        gate: AuthorizationGate,
        config: CatalogConfig | None = None,
    ) -> None:
        self._ledger = ledger
        self._metadata = metadata
        self._gate = gate
        self._config = config or CatalogConfig()
        self._logger = logger.bind(component="credential_catalog")

    # ── Listing ───────────────────────────────────────────────

    async def list_for(self, holder: Identity) -> CatalogListing:
        holder = normalize_identity(holder)
        certificate_ids = await self._ledger.get_student_certificates(holder)
        semaphore = asyncio.Semaphore(max(1, self._config.max_concurrent_fetches))

        async def _bounded(certificate_id: int) -> CatalogEntry:
            async with semaphore:
                return await self.get(certificate_id)

        results = await asyncio.gather(
            *(_bounded(i) for i in certificate_ids),
            return_exceptions=True,
        )

        listing = CatalogListing(holder=holder)
        for certificate_id, result in zip(certificate_ids, results, strict=True):
            if isinstance(result, CertChainError):
                listing.skipped.append(certificate_id)
                self._logger.warning(
                    "certificate_read_failed",
                    holder=holder,
                    certificate_id=certificate_id,
                    error=str(result),
                )
            elif isinstance(result, BaseException):
                raise result
            else:
                listing.entries.append(result)

        self._logger.debug(
            "catalog_listed",
            holder=holder,
            entries=len(listing.entries),
            skipped=len(listing.skipped),
            degraded=sum(1 for e in listing.entries if e.degraded),
        )
        return listing

    async def get(self, certificate_id: int) -> CatalogEntry:
        """
        One certificate with its metadata.

        Ledger failures propagate; metadata failures degrade the entry.
        """
        details, metadata_ref = await asyncio.gather(
            self._ledger.get_certificate_details(certificate_id),
            self._ledger.token_uri(certificate_id),
            return_exceptions=True,
        )
        if isinstance(details, BaseException):
            raise details
        if isinstance(metadata_ref, BaseException):
            raise metadata_ref
        certificate = details.model_copy(update={"metadata_ref": metadata_ref})

        document, error = await self._metadata.try_get_json(metadata_ref)
        image_url = ""
        if document and isinstance(document.get("image"), str):
            image_url = self._metadata.gateway_url(document["image"])

        return CatalogEntry(
            certificate=certificate,
            metadata=document,
            metadata_error=error,
            image_url=image_url,
        )

    async def search_as_institute(self, session: Session, holder: Identity) -> CatalogListing:
        """Look up a holder's certificates. Only authorized institutes may search."""
        if is_vacant(holder):
            raise InvalidInput("Holder identity is required")
        await self._gate.require_authorized(session.identity)
        self._logger.info("certificate_search", institute=session.identity, holder=normalize_identity(holder))
        return await self.list_for(holder)

    # ── Verification ──────────────────────────────────────────

    async def verify_issuer(self, certificate: Certificate) -> bool:
        """Whether the recorded issuing institute is authorized right now."""
        return await self._gate.is_authorized(certificate.institute)

    async def verify(self, certificate_id: int) -> VerificationReport:
        """
        Live issuer check plus a consistency check between the ledger's
        issuing institute and the issuer named in the metadata blob.
        """
        entry = await self.get(certificate_id)
        issuer_authorized = await self.verify_issuer(entry.certificate)

        claimed = entry.institution.get("address")
        claimed_institution = normalize_identity(claimed) if isinstance(claimed, str) and claimed else None
        institution_matches = (
            None if claimed_institution is None else claimed_institution == entry.certificate.institute
        )
        if institution_matches is False:
            self._logger.warning(
                "certificate_issuer_mismatch",
                certificate_id=certificate_id,
                ledger_institute=entry.certificate.institute,
                claimed_institution=claimed_institution,
            )

        report = VerificationReport(
            certificate=entry.certificate,
            issuer_authorized=issuer_authorized,
            metadata_available=not entry.degraded,
            claimed_institution=claimed_institution,
            institution_matches=institution_matches,
        )
        self._logger.info(
            "certificate_verified",
            certificate_id=certificate_id,
            issuer=entry.certificate.institute,
            issuer_authorized=issuer_authorized,
            verified=report.verified,
        )
        return report

    def gateway_url(self, ref: str) -> str:
        return self._metadata.gateway_url(ref)
