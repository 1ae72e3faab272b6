"""
CertChain — Role Resolver

Determines what an identity is: unregistered, student, provider
(authorized or pending) or the administrator. The answer is produced once,
as a closed RoleKind variant, so no workflow downstream ever compares role
strings.

Resolution reads the user registry and the certificate registry's owner.
If the ledger cannot be reached the GatewayUnavailable propagates: an
unreachable registry means "unknown", never "unregistered".

Caching is opt-in (RolesConfig.cache_enabled). Cached entries live until a
caller invalidates them; every write this package performs on behalf of an
identity invalidates that identity's entry.
"""

from __future__ import annotations

import asyncio

import structlog

from certchain.errors import RoleRequired
from certchain.primitives.common import CertChainBaseModel
from certchain.primitives.identity import Identity, normalize_identity
from certchain.primitives.records import Role, RoleKind
from certchain.systems.ledger.gateway import LedgerGateway

logger = structlog.get_logger("certchain.systems.roles")


class ResolvedRole(CertChainBaseModel):
    """The resolved standing of one identity."""

    identity: Identity
    kind: RoleKind
    role: Role = Role.UNSET
    registered: bool = False
    is_administrator: bool = False
    # Providers only: authorized vs pending. None for everyone else.
    authorized: bool | None = None
    metadata_ref: str = ""

    def holds(self, kind: RoleKind) -> bool:
        """
        Whether the identity qualifies as ``kind``.

        The administrator may also be a registered student or provider;
        ``kind`` reports the administrator, ``holds`` answers each question.
        """
        if kind is RoleKind.ADMINISTRATOR:
            return self.is_administrator
        if kind is RoleKind.UNREGISTERED:
            return not self.registered
        return self.registered and self.role.value == kind.value

    @property
    def is_pending_provider(self) -> bool:
        return self.holds(RoleKind.PROVIDER) and self.authorized is False


class RoleResolver:
    """Resolves identities into RoleKind variants."""

    def __init__(self, ledger: LedgerGateway, *, cache_enabled: bool = False) -> None:
        self._ledger = ledger
        self._cache_enabled = cache_enabled
        self._cache: dict[Identity, ResolvedRole] = {}
        self._logger = logger.bind(component="role_resolver")

    async def resolve(self, identity: Identity) -> ResolvedRole:
        identity = normalize_identity(identity)
        if self._cache_enabled and identity in self._cache:
            return self._cache[identity]

        user, registered_flag, owner = await asyncio.gather(
            self._ledger.get_user(identity),
            self._ledger.is_user_registered(identity),
            self._ledger.owner(),
        )

        registered = user.role is not Role.UNSET
        if registered_flag != registered:
            self._logger.warning(
                "registration_flag_mismatch",
                identity=identity,
                role=user.role.value,
                registered_flag=registered_flag,
            )

        is_administrator = owner == identity
        authorized: bool | None = None
        if registered and user.role is Role.PROVIDER:
            authorized = await self._ledger.authorized_institutes(identity)

        if is_administrator:
            kind = RoleKind.ADMINISTRATOR
        elif not registered:
            kind = RoleKind.UNREGISTERED
        elif user.role is Role.PROVIDER:
            kind = RoleKind.PROVIDER
        else:
            kind = RoleKind.STUDENT

        resolved = ResolvedRole(
            identity=identity,
            kind=kind,
            role=user.role if registered else Role.UNSET,
            registered=registered,
            is_administrator=is_administrator,
            authorized=authorized,
            metadata_ref=user.metadata_ref if registered else "",
        )
        if self._cache_enabled:
            self._cache[identity] = resolved

        self._logger.debug("role_resolved", identity=identity, kind=kind.value)
        return resolved

    async def require(self, identity: Identity, *kinds: RoleKind) -> ResolvedRole:
        """Resolve and insist on one of ``kinds``; raises RoleRequired otherwise."""
        resolved = await self.resolve(identity)
        if not any(resolved.holds(kind) for kind in kinds):
            wanted = " or ".join(k.value for k in kinds)
            raise RoleRequired(f"{resolved.identity} is {resolved.kind.value}, needs {wanted}")
        return resolved

    def invalidate(self, identity: Identity | None = None) -> None:
        """Drop one cached entry, or all of them."""
        if identity is None:
            self._cache.clear()
        else:
            self._cache.pop(normalize_identity(identity), None)

    async def refresh(self, identity: Identity) -> ResolvedRole:
        self.invalidate(identity)
        return await self.resolve(identity)
