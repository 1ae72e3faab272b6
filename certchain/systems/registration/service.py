"""
CertChain — Registration & Institute Directory

Registration writes an identity's role and profile reference to the user
registry, once. The profile itself lives in the content store:

  student   {"name", "email", "studentId"}
  provider  {"institutionName", "accreditationNumber", "documentCid"}

A provider's accreditation document is uploaded first and referenced from
its profile. All uploads finish before the ledger write.

The InstituteDirectory lists every registered provider with its live
authorization flag, for verifiers choosing whom to trust and for students
choosing whom to ask.
"""

from __future__ import annotations

import asyncio
from typing import Any

import structlog
from pydantic import Field

from certchain.errors import AlreadyRegistered, CertChainError, InvalidInput, LedgerRejected
from certchain.primitives.common import CertChainBaseModel
from certchain.primitives.identity import Identity, Session, normalize_identity
from certchain.primitives.records import LedgerReceipt, Role, UserRecord
from certchain.systems.authorization.gate import AuthorizationGate
from certchain.systems.ledger.gateway import LedgerGateway
from certchain.systems.metadata.resolver import MetadataResolver
from certchain.systems.roles.resolver import RoleResolver

logger = structlog.get_logger("certchain.systems.registration")


class InstituteListing(CertChainBaseModel):
    identity: Identity
    authorized: bool
    profile: dict[str, Any] | None = None
    profile_error: str | None = None

    @property
    def institution_name(self) -> str:
        return str((self.profile or {}).get("institutionName", ""))

    @property
    def accreditation_number(self) -> str:
        return str((self.profile or {}).get("accreditationNumber", ""))

    def matches(self, query: str) -> bool:
        needle = query.strip().lower()
        if not needle:
            return True
        return any(
            needle in value.lower()
            for value in (self.institution_name, self.accreditation_number, self.identity)
        )


class RegistrationResult(CertChainBaseModel):
    user: UserRecord
    receipt: LedgerReceipt
    # Content refs uploaded during registration, profile last
    uploaded: list[str] = Field(default_factory=list)


class RegistrationService:
    """Registers students and providers on the user registry."""

    def __init__(
        self,
        ledger: LedgerGateway,
        metadata: MetadataResolver,
        roles: RoleResolver | None = None,
    ) -> None:
        self._ledger = ledger
        self._metadata = metadata
        self._roles = roles
        self._logger = logger.bind(component="registration_service")

    # ── Registration ──────────────────────────────────────────

    async def register_student(
        self,
        session: Session,
        name: str,
        email: str,
        student_id: str,
    ) -> RegistrationResult:
        name, email, student_id = (v.strip() if v else "" for v in (name, email, student_id))
        if not name or not student_id:
            raise InvalidInput("Student name and student id are required")
        if "@" not in email:
            raise InvalidInput(f"Invalid email address: {email!r}")

        await self._ensure_unregistered(session)
        profile_ref = await self._metadata.put_json(
            {"name": name, "email": email, "studentId": student_id},
            name=f"student-{session.identity}.json",
        )
        return await self._register(session, Role.STUDENT, profile_ref, [profile_ref])

    async def register_provider(
        self,
        session: Session,
        institution_name: str,
        accreditation_number: str,
        document: bytes,
        *,
        document_filename: str = "accreditation.pdf",
        document_content_type: str = "application/pdf",
    ) -> RegistrationResult:
        institution_name = (institution_name or "").strip()
        accreditation_number = (accreditation_number or "").strip()
        if not institution_name or not accreditation_number:
            raise InvalidInput("Institution name and accreditation number are required")
        if not document:
            raise InvalidInput("Accreditation document is required")

        await self._ensure_unregistered(session)
        document_ref = await self._metadata.put_bytes(
            document, filename=document_filename, content_type=document_content_type
        )
        profile_ref = await self._metadata.put_json(
            {
                "institutionName": institution_name,
                "accreditationNumber": accreditation_number,
                "documentCid": document_ref,
            },
            name=f"provider-{session.identity}.json",
        )
        return await self._register(session, Role.PROVIDER, profile_ref, [document_ref, profile_ref])

    # ── Reads ─────────────────────────────────────────────────

    async def profile(self, identity: Identity) -> dict[str, Any] | None:
        """The dereferenced profile of a registered identity, None if unavailable."""
        user = await self._ledger.get_user(identity)
        if not user.registered or not user.metadata_ref:
            return None
        document, _ = await self._metadata.try_get_json(user.metadata_ref)
        return document

    async def list_users(self) -> list[UserRecord]:
        """Every registered user. Records that cannot be read are skipped."""
        identities = await self._ledger.get_all_users()
        return await read_users(self._ledger, identities)

    # ── Internal helpers ──────────────────────────────────────

    async def _ensure_unregistered(self, session: Session) -> None:
        user = await self._ledger.get_user(session.identity)
        if user.registered:
            raise AlreadyRegistered(f"{session.identity} is already registered as {user.role.value}")

    async def _register(
        self,
        session: Session,
        role: Role,
        profile_ref: str,
        uploaded: list[str],
    ) -> RegistrationResult:
        try:
            receipt = await self._ledger.register_user(session, role, profile_ref)
        except LedgerRejected:
            if await self._ledger.is_user_registered(session.identity):
                raise AlreadyRegistered(f"{session.identity} registered concurrently") from None
            raise

        if self._roles is not None:
            self._roles.invalidate(session.identity)
        self._logger.info(
            "user_registered",
            identity=session.identity,
            role=role.value,
            metadata_ref=profile_ref,
            tx_hash=receipt.tx_hash,
        )
        user = UserRecord(identity=session.identity, role=role, registered=True, metadata_ref=profile_ref)
        return RegistrationResult(user=user, receipt=receipt, uploaded=uploaded)


class InstituteDirectory:
    """Registered providers with their live authorization state."""

    def __init__(
        self,
        ledger: LedgerGateway,
        metadata: MetadataResolver,
        gate: AuthorizationGate,
    ) -> None:
        self._ledger = ledger
        self._metadata = metadata
        self._gate = gate
        self._logger = logger.bind(component="institute_directory")

    async def list_institutes(self, query: str | None = None) -> list[InstituteListing]:
        """
        All registered providers, optionally filtered by a case-insensitive
        substring of institution name, accreditation number or address.
        """
        users = await read_users(self._ledger, await self._ledger.get_all_users())
        providers = [u for u in users if u.role is Role.PROVIDER]
        listings = await asyncio.gather(*(self._describe(p) for p in providers))

        if query:
            listings = [entry for entry in listings if entry.matches(query)]
        self._logger.debug("institutes_listed", providers=len(providers), returned=len(listings))
        return list(listings)

    async def _describe(self, provider: UserRecord) -> InstituteListing:
        authorized, (profile, error) = await asyncio.gather(
            self._gate.is_authorized(provider.identity),
            self._metadata.try_get_json(provider.metadata_ref),
        )
        return InstituteListing(
            identity=provider.identity,
            authorized=authorized,
            profile=profile,
            profile_error=error,
        )


async def read_users(ledger: LedgerGateway, identities: list[Identity]) -> list[UserRecord]:
    """Read user records concurrently, skipping unreadable or unregistered ones."""
    results = await asyncio.gather(
        *(ledger.get_user(normalize_identity(i)) for i in identities),
        return_exceptions=True,
    )
    users: list[UserRecord] = []
    for identity, result in zip(identities, results, strict=True):
        if isinstance(result, CertChainError):
            logger.warning("user_read_failed", identity=identity, error=str(result))
        elif isinstance(result, BaseException):
            raise result
        elif result.registered:
            users.append(result)
    return users
