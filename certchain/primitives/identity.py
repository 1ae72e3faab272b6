"""
CertChain — Identity & Session Context

Identities are ledger addresses supplied by the Identity Provider. The core
never creates or destroys them; it only compares them. Addresses are
compared case-insensitively, so every identity crossing a component boundary
goes through ``normalize_identity``.

A Session is the explicit "who is acting" context handed to components:
the acting identity plus a capability to sign ledger transactions. There is
no ambient wallet state anywhere in the package.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from eth_account import Account

Identity = str

ZERO_IDENTITY: Identity = "0x" + "0" * 40


def normalize_identity(identity: str | None) -> Identity:
    """Lower-case and strip an address. ``None`` and "" map to the zero identity."""
    if not identity:
        return ZERO_IDENTITY
    return identity.strip().lower()


def same_identity(a: str | None, b: str | None) -> bool:
    return normalize_identity(a) == normalize_identity(b)


def is_vacant(identity: str | None) -> bool:
    """True for the zero address, which the ledger uses for empty slots."""
    return normalize_identity(identity) == ZERO_IDENTITY


# ─── Signing capability ───────────────────────────────────────────


@runtime_checkable
class Signer(Protocol):
    """Anything that can sign a ledger transaction on behalf of an identity."""

    @property
    def address(self) -> str: ...

    async def sign_transaction(self, transaction: dict[str, Any]) -> bytes: ...


class LocalAccountSigner:
    """
    Signs with a locally held private key via eth-account.

    Intended for scripts and service accounts. Browser wallets plug in
    through their own Signer implementation.
    """

    def __init__(self, private_key: str) -> None:
        self._account = Account.from_key(private_key)

    @property
    def address(self) -> str:
        return str(self._account.address)

    async def sign_transaction(self, transaction: dict[str, Any]) -> bytes:
        signed = self._account.sign_transaction(transaction)
        return bytes(signed.raw_transaction)

    def __repr__(self) -> str:
        return f"LocalAccountSigner({self.address})"


@dataclass(frozen=True)
class Session:
    """The acting identity and, when it may write, its signer."""

    identity: Identity
    signer: Signer | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "identity", normalize_identity(self.identity))

    @classmethod
    def for_signer(cls, signer: Signer) -> Session:
        return cls(identity=signer.address, signer=signer)

    @classmethod
    def read_only(cls, identity: str) -> Session:
        return cls(identity=identity)

    @property
    def can_sign(self) -> bool:
        return self.signer is not None
