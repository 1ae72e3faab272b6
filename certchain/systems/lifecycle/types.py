"""
CertChain — Request Lifecycle Types

Result and progress types for the certificate-request state machine:

  Pending --approve--> Issued(Certificate)
  Pending --withdraw/reject--> Removed
"""

from __future__ import annotations

import enum
from datetime import datetime

from pydantic import Field

from certchain.primitives.common import CertChainBaseModel, new_id, utc_now
from certchain.primitives.identity import Identity
from certchain.primitives.records import Certificate, CertificateRequest, LedgerReceipt


class ApprovalStage(enum.StrEnum):
    """The last approval step that completed."""

    STARTED = "started"
    IMAGE_UPLOADED = "image_uploaded"
    METADATA_UPLOADED = "metadata_uploaded"


class ApprovalCheckpoint(CertChainBaseModel):
    """
    Progress of one approval attempt.

    Filled in as each content-store step completes. When the ledger write
    fails the checkpoint travels inside PartialApprovalFailure; passing it
    back to ``approve`` skips every step already recorded here.
    """

    attempt_id: str = Field(default_factory=new_id)
    request_id: int
    institute: Identity
    certificate_type: str
    name: str
    description: str = ""
    institution_name: str = ""
    image_ref: str = ""
    metadata_ref: str = ""
    started_at: datetime = Field(default_factory=utc_now)

    @property
    def stage(self) -> ApprovalStage:
        if self.metadata_ref:
            return ApprovalStage.METADATA_UPLOADED
        if self.image_ref:
            return ApprovalStage.IMAGE_UPLOADED
        return ApprovalStage.STARTED


class ApprovalResult(CertChainBaseModel):
    """Outcome of a successful approval."""

    request_id: int
    receipt: LedgerReceipt
    checkpoint: ApprovalCheckpoint
    # None when the minted certificate could not be located after the write
    certificate: Certificate | None = None

    @property
    def metadata_ref(self) -> str:
        return self.checkpoint.metadata_ref

    @property
    def image_ref(self) -> str:
        return self.checkpoint.image_ref


class RequestScan(CertChainBaseModel):
    """
    Result of a [1, counter] scan.

    Ids whose records could not be read are listed in ``skipped`` rather
    than failing the whole listing.
    """

    requests: list[CertificateRequest] = Field(default_factory=list)
    skipped: list[int] = Field(default_factory=list)
    counter: int = 0

    def __len__(self) -> int:
        return len(self.requests)

    @property
    def ids(self) -> list[int]:
        return [r.id for r in self.requests]
