"""
CertChain — Request Lifecycle Manager

Owns the certificate-request state machine for one Session:

  submit    student asks an institute for a certificate
  approve   the addressed institute mints it (with composed metadata)
  withdraw  the student takes an open request back
  reject    the addressed institute declines an open request

Approval is two sequential side effects with different failure domains.
Every content-store upload (image, then metadata) completes before the
ledger write that records its reference is submitted, so the ledger
never points at a blob that does not exist. Progress is carried in an
ApprovalCheckpoint; a failed ledger write hands the checkpoint back
inside PartialApprovalFailure and a retry resumes from it.

Listing is a full [1, counter] scan of the request table, read in
concurrent batches. It costs O(counter) ledger reads per call; callers
that refresh often should debounce (see InstituteInbox).
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

import structlog

from certchain.config import LifecycleConfig
from certchain.errors import (
    CertChainError,
    GatewayUnavailable,
    InvalidInput,
    LedgerInconsistency,
    LedgerRejected,
    MetadataUnresolvable,
    NotRequestParty,
    PartialApprovalFailure,
    StaleRequest,
    Unconfirmed,
)
from certchain.primitives.identity import Identity, Session, is_vacant, normalize_identity
from certchain.primitives.records import Certificate, CertificateRequest, LedgerReceipt, RoleKind
from certchain.systems.authorization.gate import AuthorizationGate
from certchain.systems.ledger.gateway import LedgerGateway
from certchain.systems.lifecycle.types import ApprovalCheckpoint, ApprovalResult, RequestScan
from certchain.systems.metadata.resolver import MetadataResolver
from certchain.systems.roles.resolver import RoleResolver

logger = structlog.get_logger("certchain.systems.lifecycle")


class RequestLifecycleManager:
    """Submission, enumeration, approval and cancellation of certificate requests."""

    def __init__(
        self,
        session: Session,
        ledger: LedgerGateway,
        metadata: MetadataResolver,
        gate: AuthorizationGate,
        roles: RoleResolver,
        config: LifecycleConfig | None = None,
    ) -> None:
        self._session = session
        self._ledger = ledger
        self._metadata = metadata
        self._gate = gate
        self._roles = roles
        self._config = config or LifecycleConfig()
        self._logger = logger.bind(component="request_lifecycle", session=session.identity)

    @property
    def session(self) -> Session:
        return self._session

    # ── Submission ────────────────────────────────────────────

    async def submit(self, institute: Identity, name: str, message: str = "") -> CertificateRequest:
        """
        Open a request addressed to ``institute``.

        The caller must be a registered student. Their profile reference is
        read now and stored on the request; later profile edits do not
        reach requests already in flight.
        """
        if is_vacant(institute):
            raise InvalidInput("Institute identity is required")
        if not name or not name.strip():
            raise InvalidInput("Requested certificate name is required")
        institute = normalize_identity(institute)
        name = name.strip()

        student = await self._roles.require(self._session.identity, RoleKind.STUDENT)
        receipt = await self._ledger.request_certificate(
            self._session, institute, name, message, student.metadata_ref
        )
        request = await self._locate_submitted(receipt, institute, name, message)

        self._logger.info(
            "request_submitted",
            request_id=request.id,
            institute=institute,
            requested_name=name,
            tx_hash=receipt.tx_hash,
        )
        return request

    # ── Enumeration ───────────────────────────────────────────

    async def get(self, request_id: int) -> CertificateRequest | None:
        """The request at ``request_id``, or None if it was cancelled or never existed."""
        _check_request_id(request_id)
        return await self._ledger.certificate_requests(request_id)

    async def list_pending_for(self, institute: Identity) -> RequestScan:
        """Unapproved requests addressed to ``institute``."""
        institute = normalize_identity(institute)
        return await self._scan(lambda r: r.is_pending and r.institute == institute)

    async def list_submitted_by(self, student: Identity) -> RequestScan:
        """A student's own outstanding requests."""
        student = normalize_identity(student)
        return await self._scan(lambda r: r.is_pending and r.student == student)

    # ── Approval ──────────────────────────────────────────────

    async def approve(
        self,
        request_id: int,
        certificate_type: str,
        name: str,
        description: str,
        image: bytes | None,
        *,
        image_filename: str = "certificate.png",
        image_content_type: str = "image/png",
        checkpoint: ApprovalCheckpoint | None = None,
    ) -> ApprovalResult:
        """
        Approve a pending request and mint its certificate.

        Order of effects:
          1. live authorization check of the caller (NotAuthorized)
          2. request must be pending (StaleRequest) and addressed to the
             caller (NotRequestParty)
          3. the caller's registered institute profile is loaded
          4. image upload, metadata composition and upload
          5. approveCertificateRequest with the metadata reference

        Failures after step 4 has recorded anything raise
        PartialApprovalFailure carrying the checkpoint. Pass it back as
        ``checkpoint`` to resume without re-uploading. Unconfirmed is
        re-raised with the checkpoint attached: the write may still land,
        so the caller must re-read the request before resuming.
        """
        caller = self._session.identity
        await self._gate.require_authorized(caller)

        _check_request_id(request_id)
        if not certificate_type or not certificate_type.strip():
            raise InvalidInput("Certificate type is required")
        if not name or not name.strip():
            raise InvalidInput("Certificate name is required")

        request = await self._require_pending(request_id)
        if request.institute != caller:
            raise NotRequestParty(f"Request {request_id} is addressed to {request.institute}, not {caller}")

        checkpoint = self._start_checkpoint(checkpoint, request, certificate_type, name, description)
        if not checkpoint.image_ref and not image:
            raise InvalidInput("Certificate image is required")

        profile: dict[str, Any] = {}
        if not checkpoint.metadata_ref:
            profile = await self._institute_profile(caller)
            checkpoint.institution_name = str(profile.get("institutionName", ""))

        try:
            if not checkpoint.image_ref:
                checkpoint.image_ref = await self._metadata.put_bytes(
                    image or b"", filename=image_filename, content_type=image_content_type
                )
                self._logger.debug(
                    "approval_image_uploaded",
                    request_id=request_id,
                    attempt_id=checkpoint.attempt_id,
                    ref=checkpoint.image_ref,
                )

            if not checkpoint.metadata_ref:
                document = compose_certificate_metadata(checkpoint, request, profile)
                checkpoint.metadata_ref = await self._metadata.put_json(
                    document, name=f"certificate-request-{request_id}.json"
                )
                self._logger.debug(
                    "approval_metadata_uploaded",
                    request_id=request_id,
                    attempt_id=checkpoint.attempt_id,
                    ref=checkpoint.metadata_ref,
                )
        except GatewayUnavailable as exc:
            if checkpoint.image_ref:
                raise self._partial_failure(checkpoint, exc) from exc
            raise

        receipt = await self._write_approval(request, checkpoint)
        certificate = await self._locate_minted(receipt, request, checkpoint.metadata_ref)

        self._logger.info(
            "request_approved",
            request_id=request_id,
            student=request.student,
            certificate_id=certificate.id if certificate else None,
            certificate_type=checkpoint.certificate_type,
            metadata_ref=checkpoint.metadata_ref,
            attempt_id=checkpoint.attempt_id,
            tx_hash=receipt.tx_hash,
        )
        return ApprovalResult(
            request_id=request_id,
            receipt=receipt,
            checkpoint=checkpoint,
            certificate=certificate,
        )

    # ── Cancellation ──────────────────────────────────────────

    async def withdraw(self, request_id: int) -> LedgerReceipt:
        """The requesting student takes back a pending request."""
        request = await self._require_pending(request_id)
        if request.student != self._session.identity:
            raise NotRequestParty(f"Only the requesting student may withdraw request {request_id}")
        return await self._withdraw(request)

    async def reject(self, request_id: int, reason: str = "") -> LedgerReceipt:
        """The addressed institute declines a pending request."""
        request = await self._require_pending(request_id)
        if request.institute != self._session.identity:
            raise NotRequestParty(f"Only the addressed institute may reject request {request_id}")
        await self._gate.require_authorized(self._session.identity)
        return await self._reject(request, reason)

    async def cancel(self, request_id: int, reason: str = "") -> LedgerReceipt:
        """Withdraw or reject, whichever applies to the caller."""
        request = await self._require_pending(request_id)
        caller = self._session.identity
        if request.student == caller:
            return await self._withdraw(request)
        if request.institute == caller:
            await self._gate.require_authorized(caller)
            return await self._reject(request, reason)
        raise NotRequestParty(f"{caller} is not a party to request {request_id}")

    # ── Internal helpers ──────────────────────────────────────

    async def _withdraw(self, request: CertificateRequest) -> LedgerReceipt:
        receipt = await self._cancel_on_ledger(request)
        self._logger.info(
            "request_withdrawn",
            request_id=request.id,
            student=request.student,
            institute=request.institute,
            tx_hash=receipt.tx_hash,
        )
        return receipt

    async def _reject(self, request: CertificateRequest, reason: str) -> LedgerReceipt:
        receipt = await self._cancel_on_ledger(request)
        self._logger.info(
            "request_rejected",
            request_id=request.id,
            student=request.student,
            institute=request.institute,
            reason=reason,
            tx_hash=receipt.tx_hash,
        )
        return receipt

    async def _cancel_on_ledger(self, request: CertificateRequest) -> LedgerReceipt:
        try:
            return await self._ledger.cancel_certificate_request(self._session, request.id)
        except LedgerRejected:
            await self._raise_if_stale(request.id)
            raise

    async def _write_approval(
        self, request: CertificateRequest, checkpoint: ApprovalCheckpoint
    ) -> LedgerReceipt:
        try:
            return await self._ledger.approve_certificate_request(
                self._session,
                request.id,
                checkpoint.certificate_type,
                checkpoint.metadata_ref,
                checkpoint.institution_name,
            )
        except LedgerRejected as exc:
            try:
                await self._raise_if_stale(request.id)
            except GatewayUnavailable:
                raise self._partial_failure(checkpoint, exc) from exc
            raise self._partial_failure(checkpoint, exc) from exc
        except GatewayUnavailable as exc:
            raise self._partial_failure(checkpoint, exc) from exc
        except Unconfirmed as exc:
            exc.checkpoint = checkpoint
            self._logger.warning(
                "approval_unconfirmed",
                request_id=request.id,
                attempt_id=checkpoint.attempt_id,
                tx_hash=exc.tx_hash,
            )
            raise

    async def _raise_if_stale(self, request_id: int) -> None:
        """After a rejected write: StaleRequest if the request is no longer pending."""
        current = await self._ledger.certificate_requests(request_id)
        if current is None or current.approved:
            state = "removed" if current is None else "approved"
            self._logger.info("request_lost_race", request_id=request_id, state=state)
            raise StaleRequest(f"Request {request_id} was {state} concurrently", request_id=request_id)

    async def _require_pending(self, request_id: int) -> CertificateRequest:
        _check_request_id(request_id)
        request = await self._ledger.certificate_requests(request_id)
        if request is None:
            raise StaleRequest(f"Request {request_id} does not exist", request_id=request_id)
        if request.approved:
            raise StaleRequest(f"Request {request_id} is already approved", request_id=request_id)
        return request

    def _start_checkpoint(
        self,
        checkpoint: ApprovalCheckpoint | None,
        request: CertificateRequest,
        certificate_type: str,
        name: str,
        description: str,
    ) -> ApprovalCheckpoint:
        if checkpoint is None:
            return ApprovalCheckpoint(
                request_id=request.id,
                institute=request.institute,
                certificate_type=certificate_type.strip(),
                name=name.strip(),
                description=description,
            )
        if checkpoint.request_id != request.id or checkpoint.institute != request.institute:
            raise InvalidInput(
                f"Checkpoint {checkpoint.attempt_id} belongs to request {checkpoint.request_id}"
            )
        if (checkpoint.certificate_type, checkpoint.name, checkpoint.description) != (
            certificate_type.strip(),
            name.strip(),
            description,
        ):
            raise InvalidInput(f"Checkpoint {checkpoint.attempt_id} was started with different details")
        self._logger.info(
            "approval_resumed",
            request_id=request.id,
            attempt_id=checkpoint.attempt_id,
            stage=checkpoint.stage.value,
        )
        return checkpoint

    async def _institute_profile(self, institute: Identity) -> dict[str, Any]:
        user = await self._ledger.get_user(institute)
        if not user.metadata_ref:
            raise MetadataUnresolvable(f"Institute {institute} has no registered profile")
        return await self._metadata.get_json(user.metadata_ref)

    def _partial_failure(
        self, checkpoint: ApprovalCheckpoint, cause: BaseException
    ) -> PartialApprovalFailure:
        self._logger.error(
            "approval_partially_applied",
            request_id=checkpoint.request_id,
            attempt_id=checkpoint.attempt_id,
            stage=checkpoint.stage.value,
            error=str(cause),
        )
        return PartialApprovalFailure(
            f"Approval of request {checkpoint.request_id} stopped after {checkpoint.stage.value}",
            checkpoint=checkpoint,
            cause=cause,
        )

    async def _locate_submitted(
        self, receipt: LedgerReceipt, institute: Identity, name: str, message: str
    ) -> CertificateRequest:
        if receipt.assigned_id is not None:
            request = await self._ledger.certificate_requests(receipt.assigned_id)
            if request is not None:
                return request

        # The ledger does not report the new id: walk back from the counter.
        counter = await self._ledger.request_counter()
        floor = max(0, counter - self._config.submit_locate_window)
        for request_id in range(counter, floor, -1):
            request = await self._ledger.certificate_requests(request_id)
            if (
                request is not None
                and request.is_pending
                and request.student == self._session.identity
                and request.institute == institute
                and request.requested_name == name
                and request.message == message
            ):
                return request
        raise LedgerInconsistency(
            f"Submitted request not found in the last {self._config.submit_locate_window} ids"
        )

    async def _locate_minted(
        self, receipt: LedgerReceipt, request: CertificateRequest, metadata_ref: str
    ) -> Certificate | None:
        """Best-effort lookup of the certificate an approval just minted."""
        try:
            certificate_id = receipt.assigned_id
            if certificate_id is None:
                held = await self._ledger.get_student_certificates(request.student)
                for candidate in reversed(held):
                    if await self._ledger.token_uri(candidate) == metadata_ref:
                        certificate_id = candidate
                        break
            if certificate_id is None:
                self._logger.warning("minted_certificate_not_found", request_id=request.id)
                return None
            details = await self._ledger.get_certificate_details(certificate_id)
            return details.model_copy(update={"metadata_ref": metadata_ref})
        except (GatewayUnavailable, LedgerRejected) as exc:
            self._logger.warning("minted_certificate_lookup_failed", request_id=request.id, error=str(exc))
            return None

    async def _scan(self, keep: Callable[[CertificateRequest], bool]) -> RequestScan:
        counter = await self._ledger.request_counter()
        batch_size = max(1, self._config.scan_batch_size)
        scan = RequestScan(counter=counter)

        for start in range(1, counter + 1, batch_size):
            ids = list(range(start, min(start + batch_size, counter + 1)))
            results = await asyncio.gather(
                *(self._ledger.certificate_requests(i) for i in ids),
                return_exceptions=True,
            )
            for request_id, result in zip(ids, results, strict=True):
                if isinstance(result, CertChainError):
                    scan.skipped.append(request_id)
                    self._logger.warning("request_read_failed", request_id=request_id, error=str(result))
                elif isinstance(result, BaseException):
                    raise result
                elif result is not None and keep(result):
                    scan.requests.append(result)

        self._logger.debug(
            "requests_scanned",
            counter=counter,
            matched=len(scan.requests),
            skipped=len(scan.skipped),
        )
        return scan


def _check_request_id(request_id: int) -> None:
    if request_id < 1:
        raise InvalidInput(f"Request ids start at 1, got {request_id}")


def compose_certificate_metadata(
    checkpoint: ApprovalCheckpoint,
    request: CertificateRequest,
    institute_profile: dict[str, Any],
) -> dict[str, Any]:
    """
    The metadata blob a minted certificate points at.

    Certificate fields from the approval, the uploaded image, and the
    approving institute's registered profile (name, accreditation number,
    accreditation document) plus its ledger address.
    """
    return {
        "name": checkpoint.name,
        "description": checkpoint.description,
        "certificateType": checkpoint.certificate_type,
        "image": checkpoint.image_ref,
        "requestId": request.id,
        "recipient": request.student,
        "institution": {
            "name": institute_profile.get("institutionName", ""),
            "accreditationNumber": institute_profile.get("accreditationNumber", ""),
            "documentCid": institute_profile.get("documentCid", ""),
            "address": request.institute,
        },
    }
