from certchain.systems.lifecycle.inbox import InstituteInbox
from certchain.systems.lifecycle.manager import RequestLifecycleManager, compose_certificate_metadata
from certchain.systems.lifecycle.types import (
    ApprovalCheckpoint,
    ApprovalResult,
    ApprovalStage,
    RequestScan,
)

__all__ = [
    "ApprovalCheckpoint",
    "ApprovalResult",
    "ApprovalStage",
    "InstituteInbox",
    "RequestLifecycleManager",
    "RequestScan",
    "compose_certificate_metadata",
]
