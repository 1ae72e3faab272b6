"""
CertChain — Institute Inbox

A debounced, optimistic view of one institute's pending requests.

Listing pending requests is a full scan of the request table, so the
inbox refreshes at most once per ``inbox_min_refresh_interval_s`` unless
forced. Approve and reject drop the entry from the view straight away;
if the ledger operation fails the inbox refetches from the ledger before
re-raising, so the view never keeps a removal that did not happen.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Any

import structlog

from certchain.errors import CertChainError
from certchain.primitives.identity import Identity, normalize_identity
from certchain.primitives.records import CertificateRequest, LedgerReceipt
from certchain.systems.lifecycle.manager import RequestLifecycleManager
from certchain.systems.lifecycle.types import ApprovalResult

logger = structlog.get_logger("certchain.systems.lifecycle.inbox")


class InstituteInbox:
    """Pending requests addressed to one institute, refreshed on demand."""

    def __init__(
        self,
        manager: RequestLifecycleManager,
        *,
        institute: Identity | None = None,
        min_refresh_interval_s: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._manager = manager
        self._institute = normalize_identity(institute or manager.session.identity)
        self._min_interval = min_refresh_interval_s
        self._clock = clock
        self._entries: dict[int, CertificateRequest] = {}
        self._skipped: list[int] = []
        self._refreshed_at: float | None = None
        self._logger = logger.bind(component="institute_inbox", institute=self._institute)

    @property
    def institute(self) -> Identity:
        return self._institute

    @property
    def entries(self) -> list[CertificateRequest]:
        return sorted(self._entries.values(), key=lambda r: r.id)

    @property
    def skipped(self) -> list[int]:
        return list(self._skipped)

    @property
    def is_stale(self) -> bool:
        if self._refreshed_at is None:
            return True
        return self._clock() - self._refreshed_at >= self._min_interval

    async def refresh(self, force: bool = False) -> list[CertificateRequest]:
        """Re-scan the ledger, unless the last scan is recent enough."""
        if not force and not self.is_stale:
            return self.entries

        scan = await self._manager.list_pending_for(self._institute)
        self._entries = {r.id: r for r in scan.requests}
        self._skipped = list(scan.skipped)
        self._refreshed_at = self._clock()
        self._logger.debug("inbox_refreshed", pending=len(self._entries), skipped=len(self._skipped))
        return self.entries

    async def approve(self, request_id: int, *args: Any, **kwargs: Any) -> ApprovalResult:
        """Optimistic RequestLifecycleManager.approve."""
        removed = self._entries.pop(request_id, None)
        try:
            return await self._manager.approve(request_id, *args, **kwargs)
        except CertChainError as exc:
            await self._compensate(request_id, removed, exc)
            raise

    async def reject(self, request_id: int, reason: str = "") -> LedgerReceipt:
        """Optimistic RequestLifecycleManager.reject."""
        removed = self._entries.pop(request_id, None)
        try:
            return await self._manager.reject(request_id, reason)
        except CertChainError as exc:
            await self._compensate(request_id, removed, exc)
            raise

    async def _compensate(
        self,
        request_id: int,
        removed: CertificateRequest | None,
        cause: CertChainError,
    ) -> None:
        self._logger.info("inbox_compensating", request_id=request_id, error=str(cause))
        try:
            await self.refresh(force=True)
        except CertChainError as exc:
            # Could not reach the ledger: put the entry back and mark the view stale.
            if removed is not None:
                self._entries[request_id] = removed
            self._refreshed_at = None
            self._logger.warning("inbox_refetch_failed", request_id=request_id, error=str(exc))
