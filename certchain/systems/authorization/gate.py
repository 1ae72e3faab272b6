"""
CertChain — Authorization Gate

The administrator-controlled set of institutes allowed to issue
certificates. The ledger is the source of truth; the gate adds fail-fast
client-side checks on top of it.

Every mutation re-reads the ledger's owner immediately before writing.
The caller's belief that it is the administrator (e.g. a role resolved
when a screen rendered) is never trusted for a write, because ownership
and the authorized set can change in between. The ledger rejects
unauthorized writes independently; the gate's job is to turn that into a
clean NotAdministrator before any write is spent.

Idempotency policy: authorizing an authorized institute or revoking an
unauthorized one is a local precondition failure, not a silent no-op.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from certchain.errors import AlreadyAuthorized, InvalidInput, NotAdministrator, NotAuthorized
from certchain.primitives.identity import Identity, Session, is_vacant, normalize_identity
from certchain.primitives.records import LedgerReceipt
from certchain.systems.ledger.gateway import LedgerGateway

if TYPE_CHECKING:
    from certchain.systems.roles.resolver import RoleResolver

logger = structlog.get_logger("certchain.systems.authorization")


class AuthorizationGate:
    """authorize / revoke / check against the ledger's authorized set."""

    def __init__(self, ledger: LedgerGateway, roles: RoleResolver | None = None) -> None:
        self._ledger = ledger
        self._roles = roles
        self._logger = logger.bind(component="authorization_gate")

    # ── Checks ────────────────────────────────────────────────

    async def is_authorized(self, institute: Identity) -> bool:
        """Live ledger read. Always authoritative, never cached."""
        return await self._ledger.authorized_institutes(normalize_identity(institute))

    async def require_authorized(self, institute: Identity) -> None:
        institute = normalize_identity(institute)
        if not await self.is_authorized(institute):
            self._logger.info("institute_not_authorized", institute=institute)
            raise NotAuthorized(f"{institute} is not an authorized institute")

    async def require_administrator(self, session: Session) -> None:
        """Re-verify the caller against the ledger's current owner."""
        owner = await self._ledger.owner()
        if owner != session.identity:
            self._logger.warning(
                "administrator_check_failed",
                caller=session.identity,
                owner=owner,
            )
            raise NotAdministrator(f"{session.identity} is not the ledger administrator")

    # ── Mutations ─────────────────────────────────────────────

    async def authorize(self, session: Session, institute: Identity) -> LedgerReceipt:
        institute = self._validate(institute)
        await self.require_administrator(session)
        if await self.is_authorized(institute):
            raise AlreadyAuthorized(f"{institute} is already authorized")

        receipt = await self._ledger.authorize_institute(session, institute)
        self._invalidate(institute)
        self._logger.info("institute_authorized", institute=institute, tx_hash=receipt.tx_hash)
        return receipt

    async def revoke(self, session: Session, institute: Identity) -> LedgerReceipt:
        institute = self._validate(institute)
        await self.require_administrator(session)
        if not await self.is_authorized(institute):
            raise NotAuthorized(f"{institute} is not authorized; nothing to revoke")

        receipt = await self._ledger.revoke_institute(session, institute)
        self._invalidate(institute)
        self._logger.info("institute_revoked", institute=institute, tx_hash=receipt.tx_hash)
        return receipt

    # ── Internal helpers ──────────────────────────────────────

    @staticmethod
    def _validate(institute: Identity) -> Identity:
        if is_vacant(institute):
            raise InvalidInput("Institute identity is required")
        return normalize_identity(institute)

    def _invalidate(self, institute: Identity) -> None:
        if self._roles is not None:
            self._roles.invalidate(institute)
