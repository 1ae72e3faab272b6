"""
CertChain — In-Process Ledger

A LedgerGateway that holds both contracts' state in memory and enforces
the same rules the deployed contracts do: only the owner edits the
authorized set, only an authorized institute approves its own pending
requests, cancelled requests are deleted outright.

Used in "memory" ledger mode for local development, and by the tests.
Every write yields to the event loop before applying, so concurrent
sessions interleave the way they would against a real ledger; the apply
step itself is atomic, which gives the ledger's write ordering.
"""

from __future__ import annotations

import asyncio
import hashlib
import itertools
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import NoReturn

import structlog

from certchain.errors import LedgerRejected
from certchain.primitives.common import unix_now
from certchain.primitives.identity import Identity, Session, is_vacant, normalize_identity
from certchain.primitives.records import (
    Certificate,
    CertificateRequest,
    LedgerReceipt,
    Role,
    UserRecord,
)
from certchain.systems.ledger.gateway import LedgerGateway

logger = structlog.get_logger("certchain.systems.ledger.memory")


@dataclass
class _StoredCertificate:
    certificate: Certificate
    institution_name: str


@dataclass
class _State:
    owner: Identity
    users: dict[Identity, tuple[str, str]] = field(default_factory=dict)
    user_order: list[Identity] = field(default_factory=list)
    authorized: set[Identity] = field(default_factory=set)
    request_counter: int = 0
    requests: dict[int, CertificateRequest] = field(default_factory=dict)
    certificates: dict[int, _StoredCertificate] = field(default_factory=dict)
    holdings: dict[Identity, list[int]] = field(default_factory=dict)
    next_token_id: int = 1
    block_number: int = 0


class InMemoryLedger(LedgerGateway):
    """Both ledger contracts, in process."""

    def __init__(self, owner: Identity, *, clock: Callable[[], int] | None = None) -> None:
        self._state = _State(owner=normalize_identity(owner))
        self._clock = clock or unix_now
        self._tx_seq = itertools.count(1)
        self._logger = logger.bind(component="in_memory_ledger")

    # ── User registry ─────────────────────────────────────────

    async def get_user(self, identity: Identity) -> UserRecord:
        await asyncio.sleep(0)
        identity = normalize_identity(identity)
        raw_role, metadata_ref = self._state.users.get(identity, ("", ""))
        role = Role.parse(raw_role)
        return UserRecord(
            identity=identity,
            role=role,
            registered=role is not Role.UNSET,
            metadata_ref=metadata_ref,
        )

    async def is_user_registered(self, identity: Identity) -> bool:
        await asyncio.sleep(0)
        return normalize_identity(identity) in self._state.users

    async def get_all_users(self) -> list[Identity]:
        await asyncio.sleep(0)
        return list(self._state.user_order)

    async def register_user(self, session: Session, role: Role, metadata_ref: str) -> LedgerReceipt:
        await asyncio.sleep(0)
        sender = session.identity
        if role is Role.UNSET:
            self._revert("registerUser", "Role required")
        if sender in self._state.users:
            self._revert("registerUser", "User already registered")
        self._state.users[sender] = (role.value, metadata_ref)
        self._state.user_order.append(sender)
        return self._receipt("registerUser")

    # ── Institute authorization ───────────────────────────────

    async def owner(self) -> Identity:
        await asyncio.sleep(0)
        return self._state.owner

    async def authorized_institutes(self, institute: Identity) -> bool:
        await asyncio.sleep(0)
        return normalize_identity(institute) in self._state.authorized

    async def authorize_institute(self, session: Session, institute: Identity) -> LedgerReceipt:
        await asyncio.sleep(0)
        self._only_owner(session, "authorizeInstitute")
        self._state.authorized.add(normalize_identity(institute))
        return self._receipt("authorizeInstitute")

    async def revoke_institute(self, session: Session, institute: Identity) -> LedgerReceipt:
        await asyncio.sleep(0)
        self._only_owner(session, "revokeInstitute")
        self._state.authorized.discard(normalize_identity(institute))
        return self._receipt("revokeInstitute")

    # ── Certificate requests ──────────────────────────────────

    async def request_counter(self) -> int:
        await asyncio.sleep(0)
        return self._state.request_counter

    async def certificate_requests(self, request_id: int) -> CertificateRequest | None:
        await asyncio.sleep(0)
        request = self._state.requests.get(request_id)
        return request.model_copy() if request is not None else None

    async def request_certificate(
        self,
        session: Session,
        institute: Identity,
        name: str,
        message: str,
        student_metadata_ref: str,
    ) -> LedgerReceipt:
        await asyncio.sleep(0)
        if is_vacant(institute):
            self._revert("requestCertificate", "Invalid institute")
        self._state.request_counter += 1
        request_id = self._state.request_counter
        self._state.requests[request_id] = CertificateRequest(
            id=request_id,
            student=session.identity,
            institute=institute,
            requested_name=name,
            message=message,
            student_metadata_ref=student_metadata_ref,
        )
        return self._receipt("requestCertificate", assigned_id=request_id)

    async def approve_certificate_request(
        self,
        session: Session,
        request_id: int,
        certificate_type: str,
        metadata_ref: str,
        institution_name: str,
    ) -> LedgerReceipt:
        await asyncio.sleep(0)
        sender = session.identity
        if sender not in self._state.authorized:
            self._revert("approveCertificateRequest", "Not an authorized institute")
        request = self._state.requests.get(request_id)
        if request is None:
            self._revert("approveCertificateRequest", "Request does not exist")
        if request.approved:
            self._revert("approveCertificateRequest", "Request already approved")
        if request.institute != sender:
            self._revert("approveCertificateRequest", "Request addressed to another institute")

        token_id = self._state.next_token_id
        self._state.next_token_id += 1
        certificate = Certificate(
            id=token_id,
            name=request.requested_name,
            institute=sender,
            issue_date=int(self._clock()),
            certificate_type=certificate_type,
            holder=request.student,
            metadata_ref=metadata_ref,
        )
        self._state.certificates[token_id] = _StoredCertificate(certificate, institution_name)
        self._state.holdings.setdefault(request.student, []).append(token_id)
        self._state.requests[request_id] = request.model_copy(update={"approved": True})
        return self._receipt("approveCertificateRequest", assigned_id=token_id)

    async def cancel_certificate_request(self, session: Session, request_id: int) -> LedgerReceipt:
        await asyncio.sleep(0)
        request = self._state.requests.get(request_id)
        if request is None:
            self._revert("cancelCertificateRequest", "Request does not exist")
        if request.approved:
            self._revert("cancelCertificateRequest", "Request already approved")
        if session.identity not in (request.student, request.institute):
            self._revert("cancelCertificateRequest", "Not a party to the request")
        del self._state.requests[request_id]
        return self._receipt("cancelCertificateRequest")

    # ── Certificates ──────────────────────────────────────────

    async def get_student_certificates(self, holder: Identity) -> list[int]:
        await asyncio.sleep(0)
        return list(self._state.holdings.get(normalize_identity(holder), []))

    async def get_certificate_details(self, certificate_id: int) -> Certificate:
        await asyncio.sleep(0)
        stored = self._certificate(certificate_id, "getCertificateDetails")
        return stored.certificate.model_copy(update={"metadata_ref": ""})

    async def token_uri(self, certificate_id: int) -> str:
        await asyncio.sleep(0)
        return self._certificate(certificate_id, "tokenURI").certificate.metadata_ref

    # ── Inspection ────────────────────────────────────────────

    def institution_name_of(self, certificate_id: int) -> str:
        """The institution name recorded at mint time (not part of the gateway surface)."""
        return self._certificate(certificate_id, "institutionName").institution_name

    # ── Internal helpers ──────────────────────────────────────

    def _certificate(self, certificate_id: int, operation: str) -> _StoredCertificate:
        stored = self._state.certificates.get(certificate_id)
        if stored is None:
            self._revert(operation, "Nonexistent token")
        return stored

    def _only_owner(self, session: Session, operation: str) -> None:
        if session.identity != self._state.owner:
            self._revert(operation, "Caller is not the owner")

    def _revert(self, operation: str, reason: str) -> NoReturn:
        self._logger.debug("ledger_revert", operation=operation, reason=reason)
        raise LedgerRejected(f"{operation} reverted: {reason}", operation=operation)

    def _receipt(self, operation: str, assigned_id: int | None = None) -> LedgerReceipt:
        seq = next(self._tx_seq)
        self._state.block_number += 1
        tx_hash = "0x" + hashlib.sha256(f"{operation}:{seq}".encode()).hexdigest()
        return LedgerReceipt(
            operation=operation,
            tx_hash=tx_hash,
            block_number=self._state.block_number,
            assigned_id=assigned_id,
        )
