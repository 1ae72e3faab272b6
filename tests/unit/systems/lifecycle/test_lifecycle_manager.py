"""
Unit tests for the Request Lifecycle Manager.

Runs against the in-process ledger and content store. Failure injection
replaces single gateway methods with AsyncMocks.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from unittest.mock import AsyncMock

import pytest

from certchain.clients.content_store import InMemoryContentStore
from certchain.errors import (
    GatewayUnavailable,
    InvalidInput,
    LedgerRejected,
    MetadataUnresolvable,
    NotAuthorized,
    NotRequestParty,
    PartialApprovalFailure,
    RoleRequired,
    StaleRequest,
    Unconfirmed,
)
from certchain.primitives.identity import Session
from certchain.primitives.records import Role
from certchain.systems.authorization.gate import AuthorizationGate
from certchain.systems.ledger.memory import InMemoryLedger
from certchain.systems.lifecycle.manager import RequestLifecycleManager
from certchain.systems.lifecycle.types import ApprovalResult, ApprovalStage
from certchain.systems.metadata.resolver import MetadataResolver
from certchain.systems.roles.resolver import RoleResolver

ADMIN = "0x" + "a" * 40
INSTITUTE = "0x" + "1" * 40
OTHER_INSTITUTE = "0x" + "2" * 40
STUDENT = "0x" + "5" * 40
OTHER_STUDENT = "0x" + "6" * 40
STRANGER = "0x" + "9" * 40

IMAGE = b"\x89PNG certificate image"


# ─── Fixtures ────────────────────────────────────────────────────


@dataclass
class World:
    ledger: InMemoryLedger
    store: InMemoryContentStore
    metadata: MetadataResolver
    roles: RoleResolver
    gate: AuthorizationGate
    student_profile_ref: str

    def manager(self, identity: str) -> RequestLifecycleManager:
        return RequestLifecycleManager(
            Session(identity), self.ledger, self.metadata, self.gate, self.roles
        )


async def make_world(*, authorize: bool = True) -> World:
    ledger = InMemoryLedger(owner=ADMIN, clock=lambda: 1_700_000_000)
    store = InMemoryContentStore()
    metadata = MetadataResolver(store)
    roles = RoleResolver(ledger)
    gate = AuthorizationGate(ledger, roles)

    student_ref = await metadata.put_json({"name": "Ada", "email": "ada@example.org", "studentId": "S-1"})
    await ledger.register_user(Session(STUDENT), Role.STUDENT, student_ref)
    other_ref = await metadata.put_json({"name": "Bob", "email": "bob@example.org", "studentId": "S-2"})
    await ledger.register_user(Session(OTHER_STUDENT), Role.STUDENT, other_ref)

    for identity, name, number in (
        (INSTITUTE, "State University", "ACC-001"),
        (OTHER_INSTITUTE, "Tech College", "ACC-002"),
    ):
        profile_ref = await metadata.put_json(
            {"institutionName": name, "accreditationNumber": number, "documentCid": f"ipfs://doc-{number}"}
        )
        await ledger.register_user(Session(identity), Role.PROVIDER, profile_ref)
        if authorize:
            await gate.authorize(Session(ADMIN), identity)

    return World(ledger, store, metadata, roles, gate, student_ref)


def count_uploads(store: InMemoryContentStore) -> list[str]:
    """Record the filename of every blob written to ``store`` from now on."""
    calls: list[str] = []
    original_put = store.put

    async def counting_put(data: bytes, **kwargs) -> str:
        calls.append(kwargs.get("filename", ""))
        return await original_put(data, **kwargs)

    store.put = counting_put  # type: ignore[method-assign]
    return calls


async def approve(world: World, request_id: int, **overrides) -> ApprovalResult:
    kwargs = {
        "certificate_type": "Degree",
        "name": "BSc Computer Science",
        "description": "Awarded with honours",
        "image": IMAGE,
    }
    kwargs.update(overrides)
    return await world.manager(INSTITUTE).approve(request_id, **kwargs)


# ─── Submission ─────────────────────────────────────────────────


class TestSubmit:
    @pytest.mark.asyncio
    async def test_submit_creates_pending_request(self):
        world = await make_world()
        request = await world.manager(STUDENT).submit(INSTITUTE, "BSc", "Graduated 2024")

        assert request.id == 1
        assert request.student == STUDENT
        assert request.institute == INSTITUTE
        assert request.requested_name == "BSc"
        assert request.message == "Graduated 2024"
        assert request.is_pending

    @pytest.mark.asyncio
    async def test_submit_attaches_current_profile(self):
        world = await make_world()
        request = await world.manager(STUDENT).submit(INSTITUTE, "BSc")
        assert request.student_metadata_ref == world.student_profile_ref

    @pytest.mark.asyncio
    async def test_unregistered_cannot_submit(self):
        world = await make_world()
        with pytest.raises(RoleRequired):
            await world.manager(STRANGER).submit(INSTITUTE, "BSc")
        assert await world.ledger.request_counter() == 0

    @pytest.mark.asyncio
    async def test_provider_cannot_submit(self):
        world = await make_world()
        with pytest.raises(RoleRequired):
            await world.manager(OTHER_INSTITUTE).submit(INSTITUTE, "BSc")

    @pytest.mark.asyncio
    async def test_invalid_input(self):
        world = await make_world()
        with pytest.raises(InvalidInput):
            await world.manager(STUDENT).submit("", "BSc")
        with pytest.raises(InvalidInput):
            await world.manager(STUDENT).submit(INSTITUTE, "   ")

    @pytest.mark.asyncio
    async def test_locates_request_without_assigned_id(self):
        world = await make_world()
        original = world.ledger.request_certificate

        async def without_id(*args, **kwargs):
            receipt = await original(*args, **kwargs)
            return receipt.model_copy(update={"assigned_id": None})

        world.ledger.request_certificate = without_id  # type: ignore[method-assign]
        await world.manager(OTHER_STUDENT).submit(INSTITUTE, "MSc")
        request = await world.manager(STUDENT).submit(INSTITUTE, "BSc")

        assert request.id == 2
        assert request.student == STUDENT


# ─── Enumeration ────────────────────────────────────────────────


class TestListing:
    @pytest.mark.asyncio
    async def test_pending_for_institute(self):
        world = await make_world()
        first = await world.manager(STUDENT).submit(INSTITUTE, "BSc")
        await world.manager(STUDENT).submit(OTHER_INSTITUTE, "Diploma")
        third = await world.manager(OTHER_STUDENT).submit(INSTITUTE, "MSc")
        await approve(world, first.id)

        scan = await world.manager(INSTITUTE).list_pending_for(INSTITUTE)

        assert scan.ids == [third.id]
        assert scan.counter == 3
        assert scan.skipped == []

    @pytest.mark.asyncio
    async def test_submitted_by_student(self):
        world = await make_world()
        await world.manager(STUDENT).submit(INSTITUTE, "BSc")
        await world.manager(OTHER_STUDENT).submit(INSTITUTE, "MSc")
        await world.manager(STUDENT).submit(OTHER_INSTITUTE, "Diploma")

        scan = await world.manager(STUDENT).list_submitted_by(STUDENT)
        assert scan.ids == [1, 3]

    @pytest.mark.asyncio
    async def test_scan_covers_every_batch(self):
        world = await make_world()
        student = world.manager(STUDENT)
        for i in range(40):
            await student.submit(INSTITUTE, f"Course {i}")

        scan = await world.manager(INSTITUTE).list_pending_for(INSTITUTE)
        assert scan.ids == list(range(1, 41))

    @pytest.mark.asyncio
    async def test_unreadable_records_are_skipped(self):
        world = await make_world()
        for _ in range(3):
            await world.manager(STUDENT).submit(INSTITUTE, "BSc")

        original = world.ledger.certificate_requests

        async def flaky(request_id: int):
            if request_id == 2:
                raise GatewayUnavailable("timeout")
            return await original(request_id)

        world.ledger.certificate_requests = flaky  # type: ignore[method-assign]
        scan = await world.manager(INSTITUTE).list_pending_for(INSTITUTE)

        assert scan.ids == [1, 3]
        assert scan.skipped == [2]

    @pytest.mark.asyncio
    async def test_counter_failure_propagates(self):
        world = await make_world()
        world.ledger.request_counter = AsyncMock(side_effect=GatewayUnavailable("down"))  # type: ignore[method-assign]
        with pytest.raises(GatewayUnavailable):
            await world.manager(INSTITUTE).list_pending_for(INSTITUTE)

    @pytest.mark.asyncio
    async def test_get(self):
        world = await make_world()
        request = await world.manager(STUDENT).submit(INSTITUTE, "BSc")
        manager = world.manager(STRANGER)
        assert (await manager.get(request.id)) == request
        assert await manager.get(99) is None
        with pytest.raises(InvalidInput):
            await manager.get(0)


# ─── Approval ───────────────────────────────────────────────────


class TestApprove:
    @pytest.mark.asyncio
    async def test_approve_mints_with_composed_metadata(self):
        world = await make_world()
        request = await world.manager(STUDENT).submit(INSTITUTE, "BSc")

        result = await approve(world, request.id)

        assert result.certificate is not None
        assert result.certificate.holder == STUDENT
        assert result.certificate.institute == INSTITUTE
        assert result.certificate.certificate_type == "Degree"
        assert result.certificate.metadata_ref == result.metadata_ref
        assert result.checkpoint.stage is ApprovalStage.METADATA_UPLOADED

        document = await world.metadata.get_json(result.metadata_ref)
        assert document["certificateType"] == "Degree"
        assert document["name"] == "BSc Computer Science"
        assert document["description"] == "Awarded with honours"
        assert document["image"] == result.image_ref
        assert document["institution"] == {
            "name": "State University",
            "accreditationNumber": "ACC-001",
            "documentCid": "ipfs://doc-ACC-001",
            "address": INSTITUTE,
        }
        assert await world.metadata.get_bytes(result.image_ref) == IMAGE

        stored = await world.ledger.certificate_requests(request.id)
        assert stored is not None and stored.approved
        assert world.ledger.institution_name_of(result.certificate.id) == "State University"

    @pytest.mark.asyncio
    async def test_unauthorized_institute_leaves_request_pending(self):
        world = await make_world(authorize=False)
        request = await world.manager(STUDENT).submit(INSTITUTE, "BSc")
        uploads = count_uploads(world.store)

        with pytest.raises(NotAuthorized):
            await approve(world, request.id)

        assert uploads == []
        stored = await world.ledger.certificate_requests(request.id)
        assert stored is not None and stored.is_pending
        assert await world.ledger.get_student_certificates(STUDENT) == []

        # Retryable once authorized
        await world.gate.authorize(Session(ADMIN), INSTITUTE)
        result = await approve(world, request.id)
        assert result.certificate is not None

    @pytest.mark.asyncio
    async def test_revoked_institute_cannot_approve(self):
        world = await make_world()
        request = await world.manager(STUDENT).submit(INSTITUTE, "BSc")
        await world.gate.revoke(Session(ADMIN), INSTITUTE)
        with pytest.raises(NotAuthorized):
            await approve(world, request.id)

    @pytest.mark.asyncio
    async def test_cannot_approve_another_institutes_request(self):
        world = await make_world()
        request = await world.manager(STUDENT).submit(OTHER_INSTITUTE, "BSc")
        with pytest.raises(NotRequestParty):
            await approve(world, request.id)

    @pytest.mark.asyncio
    async def test_already_approved_is_stale(self):
        world = await make_world()
        request = await world.manager(STUDENT).submit(INSTITUTE, "BSc")
        await approve(world, request.id)
        with pytest.raises(StaleRequest) as exc_info:
            await approve(world, request.id)
        assert exc_info.value.request_id == request.id

    @pytest.mark.asyncio
    async def test_vacant_request_is_stale(self):
        world = await make_world()
        with pytest.raises(StaleRequest):
            await approve(world, 5)

    @pytest.mark.asyncio
    async def test_missing_inputs(self):
        world = await make_world()
        request = await world.manager(STUDENT).submit(INSTITUTE, "BSc")
        with pytest.raises(InvalidInput):
            await approve(world, request.id, certificate_type="")
        with pytest.raises(InvalidInput):
            await approve(world, request.id, image=b"")

    @pytest.mark.asyncio
    async def test_unresolvable_institute_profile_uploads_nothing(self):
        world = await make_world()
        request = await world.manager(STUDENT).submit(INSTITUTE, "BSc")
        world.store._blobs.clear()
        uploads = count_uploads(world.store)

        with pytest.raises(MetadataUnresolvable):
            await approve(world, request.id)
        assert uploads == []

    @pytest.mark.asyncio
    async def test_locates_certificate_without_assigned_id(self):
        world = await make_world()
        first = await world.manager(STUDENT).submit(INSTITUTE, "BSc")
        second = await world.manager(STUDENT).submit(INSTITUTE, "MSc")
        await approve(world, first.id)

        original = world.ledger.approve_certificate_request

        async def without_id(*args, **kwargs):
            receipt = await original(*args, **kwargs)
            return receipt.model_copy(update={"assigned_id": None})

        world.ledger.approve_certificate_request = without_id  # type: ignore[method-assign]
        result = await approve(world, second.id, name="MSc Data")

        assert result.certificate is not None
        assert result.certificate.id == 2
        assert result.certificate.metadata_ref == result.metadata_ref


# ─── Partial failures & resume ──────────────────────────────────


class TestApprovalCheckpoint:
    @pytest.mark.asyncio
    async def test_ledger_failure_carries_checkpoint_and_resumes(self):
        world = await make_world()
        request = await world.manager(STUDENT).submit(INSTITUTE, "BSc")
        world.ledger.approve_certificate_request = AsyncMock(  # type: ignore[method-assign]
            side_effect=GatewayUnavailable("rpc down")
        )

        with pytest.raises(PartialApprovalFailure) as exc_info:
            await approve(world, request.id)

        checkpoint = exc_info.value.checkpoint
        assert checkpoint.stage is ApprovalStage.METADATA_UPLOADED
        assert checkpoint.request_id == request.id
        assert isinstance(exc_info.value.cause, GatewayUnavailable)
        # The referenced blob exists before any ledger write is attempted
        assert checkpoint.metadata_ref in world.store

        del world.ledger.approve_certificate_request
        uploads = count_uploads(world.store)
        result = await approve(world, request.id, checkpoint=checkpoint)

        assert uploads == []
        assert result.metadata_ref == checkpoint.metadata_ref
        assert result.checkpoint.attempt_id == checkpoint.attempt_id
        assert result.certificate is not None

    @pytest.mark.asyncio
    async def test_unconfirmed_write_carries_checkpoint(self):
        world = await make_world()
        request = await world.manager(STUDENT).submit(INSTITUTE, "BSc")
        world.ledger.approve_certificate_request = AsyncMock(  # type: ignore[method-assign]
            side_effect=Unconfirmed("timed out", tx_hash="0xabc")
        )

        with pytest.raises(Unconfirmed) as exc_info:
            await approve(world, request.id)

        checkpoint = exc_info.value.checkpoint
        assert checkpoint is not None
        assert checkpoint.stage is ApprovalStage.METADATA_UPLOADED
        assert exc_info.value.tx_hash == "0xabc"

        # The transaction never landed: the request is still pending
        assert (await world.ledger.certificate_requests(request.id)).is_pending
        del world.ledger.approve_certificate_request
        uploads = count_uploads(world.store)
        result = await approve(world, request.id, checkpoint=checkpoint)

        assert uploads == []
        assert result.metadata_ref == checkpoint.metadata_ref

    @pytest.mark.asyncio
    async def test_metadata_upload_failure_resumes_after_image(self):
        world = await make_world()
        request = await world.manager(STUDENT).submit(INSTITUTE, "BSc")
        world.store.put_json = AsyncMock(side_effect=GatewayUnavailable("pinning down"))  # type: ignore[method-assign]

        with pytest.raises(PartialApprovalFailure) as exc_info:
            await approve(world, request.id)
        checkpoint = exc_info.value.checkpoint
        assert checkpoint.stage is ApprovalStage.IMAGE_UPLOADED
        assert checkpoint.metadata_ref == ""

        del world.store.put_json
        uploads = count_uploads(world.store)
        result = await approve(world, request.id, image=None, checkpoint=checkpoint)

        # Only the metadata document was uploaded on resume
        assert uploads == [f"certificate-request-{request.id}.json"]
        assert result.image_ref == checkpoint.image_ref

    @pytest.mark.asyncio
    async def test_image_upload_failure_is_plain_outage(self):
        world = await make_world()
        request = await world.manager(STUDENT).submit(INSTITUTE, "BSc")
        world.store.put = AsyncMock(side_effect=GatewayUnavailable("pinning down"))  # type: ignore[method-assign]

        with pytest.raises(GatewayUnavailable) as exc_info:
            await approve(world, request.id)
        assert not isinstance(exc_info.value, PartialApprovalFailure)

    @pytest.mark.asyncio
    async def test_checkpoint_for_other_request_is_refused(self):
        world = await make_world()
        first = await world.manager(STUDENT).submit(INSTITUTE, "BSc")
        second = await world.manager(STUDENT).submit(INSTITUTE, "MSc")
        world.ledger.approve_certificate_request = AsyncMock(  # type: ignore[method-assign]
            side_effect=GatewayUnavailable("rpc down")
        )
        with pytest.raises(PartialApprovalFailure) as exc_info:
            await approve(world, first.id)
        del world.ledger.approve_certificate_request

        with pytest.raises(InvalidInput):
            await approve(world, second.id, checkpoint=exc_info.value.checkpoint)

    @pytest.mark.asyncio
    async def test_checkpoint_with_changed_details_is_refused(self):
        world = await make_world()
        request = await world.manager(STUDENT).submit(INSTITUTE, "BSc")
        world.ledger.approve_certificate_request = AsyncMock(  # type: ignore[method-assign]
            side_effect=GatewayUnavailable("rpc down")
        )
        with pytest.raises(PartialApprovalFailure) as exc_info:
            await approve(world, request.id)
        del world.ledger.approve_certificate_request

        with pytest.raises(InvalidInput):
            await approve(world, request.id, certificate_type="Diploma", checkpoint=exc_info.value.checkpoint)


# ─── Concurrency ────────────────────────────────────────────────


class TestConcurrentApproval:
    @pytest.mark.asyncio
    async def test_exactly_one_of_two_approvals_wins(self):
        world = await make_world()
        request = await world.manager(STUDENT).submit(INSTITUTE, "BSc")

        results = await asyncio.gather(
            approve(world, request.id),
            approve(world, request.id),
            return_exceptions=True,
        )

        successes = [r for r in results if isinstance(r, ApprovalResult)]
        stale = [r for r in results if isinstance(r, StaleRequest)]
        assert len(successes) == 1
        assert len(stale) == 1
        assert await world.ledger.get_student_certificates(STUDENT) == [1]

    @pytest.mark.asyncio
    async def test_revert_with_request_still_pending_is_partial_failure(self):
        world = await make_world()
        request = await world.manager(STUDENT).submit(INSTITUTE, "BSc")
        world.ledger.approve_certificate_request = AsyncMock(  # type: ignore[method-assign]
            side_effect=LedgerRejected("reverted", operation="approveCertificateRequest")
        )
        with pytest.raises(PartialApprovalFailure):
            await approve(world, request.id)


# ─── Cancellation ───────────────────────────────────────────────


class TestCancellation:
    @pytest.mark.asyncio
    async def test_student_withdraws(self):
        world = await make_world()
        request = await world.manager(STUDENT).submit(INSTITUTE, "BSc")

        await world.manager(STUDENT).withdraw(request.id)

        assert await world.ledger.certificate_requests(request.id) is None
        assert (await world.manager(INSTITUTE).list_pending_for(INSTITUTE)).ids == []

    @pytest.mark.asyncio
    async def test_institute_cannot_withdraw(self):
        world = await make_world()
        request = await world.manager(STUDENT).submit(INSTITUTE, "BSc")
        with pytest.raises(NotRequestParty):
            await world.manager(INSTITUTE).withdraw(request.id)

    @pytest.mark.asyncio
    async def test_institute_rejects(self):
        world = await make_world()
        request = await world.manager(STUDENT).submit(INSTITUTE, "BSc")
        await world.manager(INSTITUTE).reject(request.id, "No record of enrolment")
        assert await world.ledger.certificate_requests(request.id) is None

    @pytest.mark.asyncio
    async def test_student_cannot_reject(self):
        world = await make_world()
        request = await world.manager(STUDENT).submit(INSTITUTE, "BSc")
        with pytest.raises(NotRequestParty):
            await world.manager(STUDENT).reject(request.id)

    @pytest.mark.asyncio
    async def test_cancel_dispatches_by_caller(self):
        world = await make_world()
        first = await world.manager(STUDENT).submit(INSTITUTE, "BSc")
        second = await world.manager(STUDENT).submit(INSTITUTE, "MSc")

        await world.manager(STUDENT).cancel(first.id)
        await world.manager(INSTITUTE).cancel(second.id, "duplicate")

        assert await world.ledger.certificate_requests(first.id) is None
        assert await world.ledger.certificate_requests(second.id) is None

    @pytest.mark.asyncio
    async def test_cancel_by_stranger(self):
        world = await make_world()
        request = await world.manager(STUDENT).submit(INSTITUTE, "BSc")
        with pytest.raises(NotRequestParty):
            await world.manager(STRANGER).cancel(request.id)

    @pytest.mark.asyncio
    async def test_cancel_approved_is_stale(self):
        world = await make_world()
        request = await world.manager(STUDENT).submit(INSTITUTE, "BSc")
        await approve(world, request.id)
        with pytest.raises(StaleRequest):
            await world.manager(STUDENT).cancel(request.id)

    @pytest.mark.asyncio
    async def test_withdraw_losing_race_is_stale(self):
        world = await make_world()
        request = await world.manager(STUDENT).submit(INSTITUTE, "BSc")
        world.ledger.certificate_requests = AsyncMock(side_effect=[request, None])  # type: ignore[method-assign]
        world.ledger.cancel_certificate_request = AsyncMock(  # type: ignore[method-assign]
            side_effect=LedgerRejected("reverted", operation="cancelCertificateRequest")
        )
        with pytest.raises(StaleRequest):
            await world.manager(STUDENT).withdraw(request.id)
