"""
CertChain — Metadata Resolver

Uploads and fetches opaque blobs by content reference. Pure I/O: no
business rules live here, only encoding, decoding and error mapping.

Profile metadata, institute accreditation records and certificate
metadata are all JSON objects; images and accreditation documents are
raw bytes. Ledger records only ever hold the reference.
"""

from __future__ import annotations

from typing import Any

import orjson
import structlog

from certchain.clients.content_store import ContentStore, split_ref
from certchain.errors import GatewayUnavailable, MetadataUnresolvable

logger = structlog.get_logger("certchain.systems.metadata")


class MetadataResolver:
    """Typed access to the content-addressed store."""

    def __init__(self, store: ContentStore) -> None:
        self._store = store
        self._logger = logger.bind(component="metadata_resolver")

    # ── Writes ────────────────────────────────────────────────

    async def put_json(self, document: dict[str, Any], *, name: str = "metadata.json") -> str:
        ref = await self._store.put_json(document, name=name)
        self._logger.debug("metadata_uploaded", ref=ref, name=name)
        return ref

    async def put_bytes(
        self,
        data: bytes,
        *,
        filename: str = "blob",
        content_type: str = "application/octet-stream",
    ) -> str:
        ref = await self._store.put(data, filename=filename, content_type=content_type)
        self._logger.debug("blob_uploaded", ref=ref, filename=filename, size=len(data))
        return ref

    # ── Reads ─────────────────────────────────────────────────

    async def get_bytes(self, ref: str) -> bytes:
        if not ref or not split_ref(ref)[1]:
            raise MetadataUnresolvable("Empty content reference", ref=ref)
        return await self._store.get(ref)

    async def get_json(self, ref: str) -> dict[str, Any]:
        """
        Fetch and decode a JSON object.

        Raises:
            MetadataUnresolvable: missing content, or content that is not a JSON object.
            GatewayUnavailable: the store could not be reached.
        """
        raw = await self.get_bytes(ref)
        try:
            document = orjson.loads(raw)
        except orjson.JSONDecodeError as exc:
            raise MetadataUnresolvable(f"Content at {ref} is not JSON", ref=ref) from exc
        if not isinstance(document, dict):
            raise MetadataUnresolvable(f"Content at {ref} is not a JSON object", ref=ref)
        return document

    async def try_get_json(self, ref: str) -> tuple[dict[str, Any] | None, str | None]:
        """
        Display-only dereference: never raises for fetch failures.

        Returns (document, None) on success and (None, reason) otherwise.
        """
        try:
            return await self.get_json(ref), None
        except (MetadataUnresolvable, GatewayUnavailable) as exc:
            self._logger.warning("metadata_fetch_failed", ref=ref, error=str(exc))
            return None, str(exc)

    def gateway_url(self, ref: str) -> str:
        """A browser-openable URL for a reference."""
        return self._store.gateway_url(ref) if ref else ""
