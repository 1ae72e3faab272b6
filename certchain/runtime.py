"""
CertChain — Runtime Wiring

Builds the gateways and systems from configuration and owns their
connection lifecycle.

Startup order:
  1. ledger gateway + content store (connect)
  2. metadata resolver, role resolver, authorization gate
  3. read-side systems (catalog, directory, registration)

Per-session systems (the request lifecycle manager and the institute
inbox) are created on demand with ``for_session``.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path

import structlog

from certchain.clients.content_store import ContentStore, InMemoryContentStore, PinataContentStore
from certchain.config import CertChainConfig, ContentStoreConfig, LedgerConfig, load_config
from certchain.errors import InvalidInput
from certchain.primitives.identity import LocalAccountSigner, Session, normalize_identity
from certchain.systems.authorization.gate import AuthorizationGate
from certchain.systems.catalog.catalog import CredentialCatalog
from certchain.systems.ledger.gateway import LedgerGateway, Web3LedgerGateway
from certchain.systems.ledger.memory import InMemoryLedger
from certchain.systems.lifecycle.inbox import InstituteInbox
from certchain.systems.lifecycle.manager import RequestLifecycleManager
from certchain.systems.metadata.resolver import MetadataResolver
from certchain.systems.registration.service import InstituteDirectory, RegistrationService
from certchain.systems.roles.resolver import RoleResolver

logger = structlog.get_logger("certchain.runtime")


# ─── Factories ────────────────────────────────────────────────────


def create_ledger(config: LedgerConfig) -> LedgerGateway:
    """Instantiate the configured ledger backend."""
    if config.backend == "web3":
        return Web3LedgerGateway(config)
    if config.backend == "memory":
        return InMemoryLedger(owner=normalize_identity(config.owner))
    raise InvalidInput(f"Unknown ledger backend: {config.backend!r}")


def create_content_store(config: ContentStoreConfig) -> ContentStore:
    """Instantiate the configured content-store backend."""
    if config.backend == "pinata":
        return PinataContentStore(config)
    if config.backend == "memory":
        return InMemoryContentStore(scheme=config.scheme)
    raise InvalidInput(f"Unknown content store backend: {config.backend!r}")


def create_session(config: CertChainConfig, identity: str | None = None) -> Session:
    """
    The session for this process.

    With a configured signer key the session can write; otherwise it is a
    read-only session for ``identity``.
    """
    if config.ledger.signer_key:
        session = Session.for_signer(LocalAccountSigner(config.ledger.signer_key))
        if identity and normalize_identity(identity) != session.identity:
            raise InvalidInput(f"Signer key belongs to {session.identity}, not {identity}")
        return session
    return Session.read_only(identity or "")


# ─── Runtime ──────────────────────────────────────────────────────


@dataclass
class CertChainRuntime:
    """Shared gateways and session-independent systems."""

    config: CertChainConfig
    ledger: LedgerGateway
    store: ContentStore
    metadata: MetadataResolver
    roles: RoleResolver
    gate: AuthorizationGate
    catalog: CredentialCatalog
    directory: InstituteDirectory
    registration: RegistrationService

    @classmethod
    def build(
        cls,
        config: CertChainConfig,
        *,
        ledger: LedgerGateway | None = None,
        store: ContentStore | None = None,
    ) -> CertChainRuntime:
        ledger = ledger or create_ledger(config.ledger)
        store = store or create_content_store(config.content_store)
        metadata = MetadataResolver(store)
        roles = RoleResolver(ledger, cache_enabled=config.roles.cache_enabled)
        gate = AuthorizationGate(ledger, roles)
        return cls(
            config=config,
            ledger=ledger,
            store=store,
            metadata=metadata,
            roles=roles,
            gate=gate,
            catalog=CredentialCatalog(ledger, metadata, gate, config.catalog),
            directory=InstituteDirectory(ledger, metadata, gate),
            registration=RegistrationService(ledger, metadata, roles),
        )

    async def connect(self) -> None:
        await self.ledger.connect()
        try:
            await self.store.connect()
        except Exception:
            await self.ledger.close()
            raise
        logger.info(
            "runtime_connected",
            ledger_backend=self.config.ledger.backend,
            content_store_backend=self.config.content_store.backend,
        )

    async def close(self) -> None:
        await self.store.close()
        await self.ledger.close()
        logger.info("runtime_closed")

    def lifecycle(self, session: Session) -> RequestLifecycleManager:
        return RequestLifecycleManager(
            session,
            self.ledger,
            self.metadata,
            self.gate,
            self.roles,
            self.config.lifecycle,
        )

    def inbox(self, session: Session) -> InstituteInbox:
        return InstituteInbox(
            self.lifecycle(session),
            min_refresh_interval_s=self.config.lifecycle.inbox_min_refresh_interval_s,
        )


@asynccontextmanager
async def open_runtime(
    config: CertChainConfig | None = None,
    *,
    config_path: str | Path | None = None,
) -> AsyncIterator[CertChainRuntime]:
    """Build, connect, and on exit close a runtime."""
    runtime = CertChainRuntime.build(config or load_config(config_path))
    await runtime.connect()
    try:
        yield runtime
    finally:
        await runtime.close()
