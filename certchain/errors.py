"""
CertChain — Error Hierarchy

All exceptions raised by the issuance core.

Precondition failures are raised before any ledger or content-store write
and are never retried. Gateway failures carry enough context for the caller
to retry the specific step that failed.

Severity guide:
  GatewayUnavailable      RECOVERABLE -- ledger or content store unreachable
  Unconfirmed             RECOVERABLE -- transaction submitted, never confirmed
  LedgerRejected          TERMINAL    -- the ledger reverted the write
  PreconditionFailed      TERMINAL    -- surfaced verbatim to the caller
  StaleRequest            NOTICE      -- request already approved or removed
  MetadataUnresolvable    DEGRADED    -- blob fetch failed
  PartialApprovalFailure  RECOVERABLE -- resume from the attached checkpoint
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from certchain.systems.lifecycle.types import ApprovalCheckpoint


class CertChainError(RuntimeError):
    """Base for all issuance-core errors."""


# ─── Gateway failures ─────────────────────────────────────────────


class GatewayUnavailable(CertChainError):
    """
    The ledger or the content store could not be reached.

    Callers must treat this as "unknown", never as a negative answer
    (an unreachable registry does not mean an unregistered identity).
    """

    def __init__(self, message: str, *, gateway: str = "", operation: str = "") -> None:
        super().__init__(message)
        self.gateway = gateway
        self.operation = operation


class Unconfirmed(CertChainError):
    """
    A transaction was submitted but never confirmed within the timeout.

    When raised from an approval, ``checkpoint`` holds the completed upload
    steps so a retry can resume once the transaction's fate is known.
    """

    def __init__(
        self,
        message: str,
        *,
        tx_hash: str = "",
        operation: str = "",
        checkpoint: ApprovalCheckpoint | None = None,
    ) -> None:
        super().__init__(message)
        self.tx_hash = tx_hash
        self.operation = operation
        self.checkpoint = checkpoint


class LedgerRejected(CertChainError):
    """The ledger refused a write (contract revert)."""

    def __init__(self, message: str, *, operation: str = "", tx_hash: str = "") -> None:
        super().__init__(message)
        self.operation = operation
        self.tx_hash = tx_hash


class LedgerInconsistency(CertChainError):
    """The ledger returned data that cannot be interpreted."""


# ─── Precondition failures ────────────────────────────────────────


class PreconditionFailed(CertChainError):
    """A locally checked precondition does not hold. No write was attempted."""


class NotAuthorized(PreconditionFailed):
    """The institute is not in the ledger's authorized set."""


class NotAdministrator(PreconditionFailed):
    """The caller is not the ledger's current owner."""


class AlreadyAuthorized(PreconditionFailed):
    """The institute is already authorized."""


class RoleRequired(PreconditionFailed):
    """The caller does not hold the role the operation needs."""


class AlreadyRegistered(PreconditionFailed):
    """The identity already has a role on the user registry."""


class NotRequestParty(PreconditionFailed):
    """The caller is neither the student nor the institute of the request."""


class InvalidInput(PreconditionFailed):
    """Caller-supplied arguments are missing or malformed."""


# ─── Lifecycle outcomes ───────────────────────────────────────────


class StaleRequest(CertChainError):
    """
    The request id is already approved or no longer exists.

    Reported as an explicit no-op, never as a silent success.
    """

    def __init__(self, message: str, *, request_id: int) -> None:
        super().__init__(message)
        self.request_id = request_id


class MetadataUnresolvable(CertChainError):
    """A content reference could not be dereferenced into the expected blob."""

    def __init__(self, message: str, *, ref: str = "") -> None:
        super().__init__(message)
        self.ref = ref


class PartialApprovalFailure(CertChainError):
    """
    An approval stopped between its content-store and ledger steps.

    The checkpoint records every step that completed; pass it back to
    ``RequestLifecycleManager.approve`` to resume without re-uploading.
    """

    def __init__(
        self,
        message: str,
        *,
        checkpoint: ApprovalCheckpoint,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.checkpoint = checkpoint
        self.cause = cause
