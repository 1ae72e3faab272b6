"""
CertChain — Ledger Gateway

Typed façade over the user registry and certificate registry contracts.
This is the only component allowed to issue ledger calls; every other
system goes through a LedgerGateway.

Reads return typed records. Writes take the acting Session, wait for
confirmation, and return a LedgerReceipt. Transport failures surface as
GatewayUnavailable, reverts as LedgerRejected, and transactions that never
confirm as Unconfirmed. Nothing is retried here: the caller decides.
"""

from __future__ import annotations

import abc
from typing import TYPE_CHECKING, Any

import structlog
from web3 import AsyncWeb3
from web3.exceptions import ContractLogicError, TimeExhausted

from certchain.errors import (
    CertChainError,
    GatewayUnavailable,
    LedgerRejected,
    PreconditionFailed,
    Unconfirmed,
)
from certchain.primitives.identity import Identity, Session, is_vacant, normalize_identity
from certchain.primitives.records import (
    Certificate,
    CertificateRequest,
    LedgerReceipt,
    Role,
    UserRecord,
)
from certchain.systems.ledger.abi import CERTIFICATE_REGISTRY_ABI, USER_REGISTRY_ABI

if TYPE_CHECKING:
    from web3.contract import AsyncContract

    from certchain.config import LedgerConfig

logger = structlog.get_logger("certchain.systems.ledger")


class LedgerGateway(abc.ABC):
    """The fixed set of ledger operations the core depends on."""

    async def connect(self) -> None:  # noqa: B027
        """Open connections. No-op by default."""

    async def close(self) -> None:  # noqa: B027
        """Release connections. No-op by default."""

    # ── User registry ─────────────────────────────────────────

    @abc.abstractmethod
    async def get_user(self, identity: Identity) -> UserRecord:
        """Role and profile reference. ``registered`` mirrors ``role != UNSET``."""

    @abc.abstractmethod
    async def is_user_registered(self, identity: Identity) -> bool: ...

    @abc.abstractmethod
    async def get_all_users(self) -> list[Identity]: ...

    @abc.abstractmethod
    async def register_user(self, session: Session, role: Role, metadata_ref: str) -> LedgerReceipt: ...

    # ── Institute authorization ───────────────────────────────

    @abc.abstractmethod
    async def owner(self) -> Identity: ...

    @abc.abstractmethod
    async def authorized_institutes(self, institute: Identity) -> bool: ...

    @abc.abstractmethod
    async def authorize_institute(self, session: Session, institute: Identity) -> LedgerReceipt: ...

    @abc.abstractmethod
    async def revoke_institute(self, session: Session, institute: Identity) -> LedgerReceipt: ...

    # ── Certificate requests ──────────────────────────────────

    @abc.abstractmethod
    async def request_counter(self) -> int: ...

    @abc.abstractmethod
    async def certificate_requests(self, request_id: int) -> CertificateRequest | None:
        """The request at ``request_id``, or None if the slot is vacant."""

    @abc.abstractmethod
    async def request_certificate(
        self,
        session: Session,
        institute: Identity,
        name: str,
        message: str,
        student_metadata_ref: str,
    ) -> LedgerReceipt: ...

    @abc.abstractmethod
    async def approve_certificate_request(
        self,
        session: Session,
        request_id: int,
        certificate_type: str,
        metadata_ref: str,
        institution_name: str,
    ) -> LedgerReceipt: ...

    @abc.abstractmethod
    async def cancel_certificate_request(self, session: Session, request_id: int) -> LedgerReceipt: ...

    # ── Certificates ──────────────────────────────────────────

    @abc.abstractmethod
    async def get_student_certificates(self, holder: Identity) -> list[int]: ...

    @abc.abstractmethod
    async def get_certificate_details(self, certificate_id: int) -> Certificate:
        """Ledger fields of a certificate. ``metadata_ref`` is left empty; see token_uri."""

    @abc.abstractmethod
    async def token_uri(self, certificate_id: int) -> str: ...


# ─── Web3 implementation ──────────────────────────────────────────


class Web3LedgerGateway(LedgerGateway):
    """
    LedgerGateway over JSON-RPC using web3's AsyncWeb3.

    Transactions are built locally, signed by the session's Signer and
    submitted raw, so the node never needs to hold keys.
    """

    def __init__(self, config: LedgerConfig, w3: AsyncWeb3 | None = None) -> None:
        self._config = config
        self._w3 = w3
        self._users: AsyncContract | None = None
        self._certificates: AsyncContract | None = None
        self._chain_id: int | None = config.chain_id
        self._logger = logger.bind(component="web3_ledger_gateway")

    # ── Lifecycle ─────────────────────────────────────────────

    async def connect(self) -> None:
        if not self._config.user_registry_address or not self._config.certificate_registry_address:
            raise GatewayUnavailable(
                "Ledger contract addresses are not configured",
                gateway="ledger",
                operation="connect",
            )
        if self._w3 is None:
            self._w3 = AsyncWeb3(
                AsyncWeb3.AsyncHTTPProvider(
                    self._config.rpc_url,
                    request_kwargs={"timeout": self._config.request_timeout_s},
                )
            )
        self._users = self._w3.eth.contract(
            address=AsyncWeb3.to_checksum_address(self._config.user_registry_address),
            abi=USER_REGISTRY_ABI,
        )
        self._certificates = self._w3.eth.contract(
            address=AsyncWeb3.to_checksum_address(self._config.certificate_registry_address),
            abi=CERTIFICATE_REGISTRY_ABI,
        )
        if self._chain_id is None:
            self._chain_id = await self._guard("chain_id", self._w3.eth.chain_id)
        self._logger.info(
            "ledger_connected",
            rpc_url=self._config.rpc_url,
            chain_id=self._chain_id,
        )

    async def close(self) -> None:
        if self._w3 is not None:
            provider: Any = self._w3.provider
            disconnect = getattr(provider, "disconnect", None)
            if disconnect is not None:
                try:
                    await disconnect()
                except Exception as e:
                    self._logger.warning("ledger_close_error", error=str(e))
            self._w3 = None
        self._users = None
        self._certificates = None
        self._logger.info("ledger_disconnected")

    # ── User registry ─────────────────────────────────────────

    async def get_user(self, identity: Identity) -> UserRecord:
        raw_role, metadata_ref = await self._call(self._user_registry(), "getUser", _addr(identity))
        role = Role.parse(raw_role)
        return UserRecord(
            identity=identity,
            role=role,
            registered=role is not Role.UNSET,
            metadata_ref=metadata_ref or "",
        )

    async def is_user_registered(self, identity: Identity) -> bool:
        return bool(await self._call(self._user_registry(), "isUserRegistered", _addr(identity)))

    async def get_all_users(self) -> list[Identity]:
        users = await self._call(self._user_registry(), "getAllUsers")
        return [normalize_identity(u) for u in users]

    async def register_user(self, session: Session, role: Role, metadata_ref: str) -> LedgerReceipt:
        return await self._transact(
            session, self._user_registry(), "registerUser", role.value, metadata_ref
        )

    # ── Institute authorization ───────────────────────────────

    async def owner(self) -> Identity:
        return normalize_identity(await self._call(self._certificate_registry(), "owner"))

    async def authorized_institutes(self, institute: Identity) -> bool:
        return bool(
            await self._call(self._certificate_registry(), "authorizedInstitutes", _addr(institute))
        )

    async def authorize_institute(self, session: Session, institute: Identity) -> LedgerReceipt:
        return await self._transact(
            session, self._certificate_registry(), "authorizeInstitute", _addr(institute)
        )

    async def revoke_institute(self, session: Session, institute: Identity) -> LedgerReceipt:
        return await self._transact(
            session, self._certificate_registry(), "revokeInstitute", _addr(institute)
        )

    # ── Certificate requests ──────────────────────────────────

    async def request_counter(self) -> int:
        return int(await self._call(self._certificate_registry(), "requestCounter"))

    async def certificate_requests(self, request_id: int) -> CertificateRequest | None:
        student, institute, name, message, student_ref, approved = await self._call(
            self._certificate_registry(), "certificateRequests", request_id
        )
        if is_vacant(student):
            return None
        return CertificateRequest(
            id=request_id,
            student=student,
            institute=institute,
            requested_name=name,
            message=message,
            student_metadata_ref=student_ref,
            approved=bool(approved),
        )

    async def request_certificate(
        self,
        session: Session,
        institute: Identity,
        name: str,
        message: str,
        student_metadata_ref: str,
    ) -> LedgerReceipt:
        return await self._transact(
            session,
            self._certificate_registry(),
            "requestCertificate",
            _addr(institute),
            name,
            message,
            student_metadata_ref,
        )

    async def approve_certificate_request(
        self,
        session: Session,
        request_id: int,
        certificate_type: str,
        metadata_ref: str,
        institution_name: str,
    ) -> LedgerReceipt:
        return await self._transact(
            session,
            self._certificate_registry(),
            "approveCertificateRequest",
            request_id,
            certificate_type,
            metadata_ref,
            institution_name,
        )

    async def cancel_certificate_request(self, session: Session, request_id: int) -> LedgerReceipt:
        return await self._transact(
            session, self._certificate_registry(), "cancelCertificateRequest", request_id
        )

    # ── Certificates ──────────────────────────────────────────

    async def get_student_certificates(self, holder: Identity) -> list[int]:
        ids = await self._call(self._certificate_registry(), "getStudentCertificates", _addr(holder))
        return [int(i) for i in ids]

    async def get_certificate_details(self, certificate_id: int) -> Certificate:
        name, institute, issue_date, certificate_type, holder = await self._call(
            self._certificate_registry(), "getCertificateDetails", certificate_id
        )
        return Certificate(
            id=certificate_id,
            name=name,
            institute=institute,
            issue_date=int(issue_date),
            certificate_type=certificate_type,
            holder=holder,
        )

    async def token_uri(self, certificate_id: int) -> str:
        return str(await self._call(self._certificate_registry(), "tokenURI", certificate_id))

    # ── Internal helpers ──────────────────────────────────────

    async def _call(self, contract: AsyncContract, fn_name: str, *args: Any) -> Any:
        fn = getattr(contract.functions, fn_name)(*args)
        return await self._guard(fn_name, fn.call())

    async def _transact(
        self,
        session: Session,
        contract: AsyncContract,
        fn_name: str,
        *args: Any,
    ) -> LedgerReceipt:
        if session.signer is None:
            raise PreconditionFailed(f"Session {session.identity} cannot sign transactions")

        w3 = self._require_w3()
        sender = AsyncWeb3.to_checksum_address(session.signer.address)
        fn = getattr(contract.functions, fn_name)(*args)

        nonce = await self._guard(fn_name, w3.eth.get_transaction_count(sender, "pending"))
        tx = await self._guard(
            fn_name,
            fn.build_transaction({"from": sender, "nonce": nonce, "chainId": self._chain_id}),
        )
        raw = await session.signer.sign_transaction(dict(tx))
        tx_hash = await self._guard(fn_name, w3.eth.send_raw_transaction(raw))
        tx_hex = AsyncWeb3.to_hex(tx_hash)
        self._logger.info("ledger_tx_submitted", operation=fn_name, tx_hash=tx_hex)

        try:
            receipt = await w3.eth.wait_for_transaction_receipt(
                tx_hash,
                timeout=self._config.confirmation_timeout_s,
                poll_latency=self._config.poll_latency_s,
            )
        except TimeExhausted as exc:
            self._logger.error("ledger_tx_unconfirmed", operation=fn_name, tx_hash=tx_hex)
            raise Unconfirmed(
                f"{fn_name} not confirmed within {self._config.confirmation_timeout_s}s",
                tx_hash=tx_hex,
                operation=fn_name,
            ) from exc
        except Exception as exc:
            raise GatewayUnavailable(
                f"Lost contact with ledger while awaiting {fn_name}: {exc}",
                gateway="ledger",
                operation=fn_name,
            ) from exc

        if receipt["status"] != 1:
            self._logger.warning("ledger_tx_reverted", operation=fn_name, tx_hash=tx_hex)
            raise LedgerRejected(f"{fn_name} reverted", operation=fn_name, tx_hash=tx_hex)

        self._logger.info(
            "ledger_tx_confirmed",
            operation=fn_name,
            tx_hash=tx_hex,
            block=receipt["blockNumber"],
        )
        return LedgerReceipt(
            operation=fn_name,
            tx_hash=tx_hex,
            block_number=int(receipt["blockNumber"]),
        )

    async def _guard(self, operation: str, awaitable: Any) -> Any:
        """Await a web3 coroutine, translating failures into the error taxonomy."""
        try:
            return await awaitable
        except ContractLogicError as exc:
            self._logger.warning("ledger_call_reverted", operation=operation, error=str(exc))
            raise LedgerRejected(f"{operation} reverted: {exc}", operation=operation) from exc
        except CertChainError:
            raise
        except Exception as exc:
            self._logger.error("ledger_unreachable", operation=operation, error=str(exc))
            raise GatewayUnavailable(
                f"Ledger call {operation} failed: {exc}",
                gateway="ledger",
                operation=operation,
            ) from exc

    def _require_w3(self) -> AsyncWeb3:
        if self._w3 is None:
            raise RuntimeError("Web3LedgerGateway not connected. Call connect() first.")
        return self._w3

    def _user_registry(self) -> AsyncContract:
        if self._users is None:
            raise RuntimeError("Web3LedgerGateway not connected. Call connect() first.")
        return self._users

    def _certificate_registry(self) -> AsyncContract:
        if self._certificates is None:
            raise RuntimeError("Web3LedgerGateway not connected. Call connect() first.")
        return self._certificates


def _addr(identity: Identity) -> str:
    return AsyncWeb3.to_checksum_address(identity)
