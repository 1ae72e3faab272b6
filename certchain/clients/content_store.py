"""
CertChain — Content-Addressed Store Clients

Upload-by-content and fetch-by-reference. References are self-describing
``scheme://hash`` strings; bare hashes (as stored on the user registry)
are accepted wherever a reference is.

Two backends:
  - PinataContentStore: pins through the Pinata API and reads back through
    an ordered list of public IPFS gateways.
  - InMemoryContentStore: sha256-addressed dict, for local development and
    tests. Same reference semantics, no network.

Lifecycle: construct → connect() → use → close().
"""

from __future__ import annotations

import abc
import hashlib
from typing import TYPE_CHECKING, Any

import httpx
import orjson
import structlog

from certchain.errors import GatewayUnavailable, MetadataUnresolvable

if TYPE_CHECKING:
    from certchain.config import ContentStoreConfig

logger = structlog.get_logger("certchain.clients.content_store")


# ─── Reference helpers ────────────────────────────────────────────


def split_ref(ref: str) -> tuple[str, str]:
    """Split ``scheme://hash`` into (scheme, hash). Bare hashes get scheme ""."""
    ref = ref.strip()
    if "://" in ref:
        scheme, _, content_hash = ref.partition("://")
        return scheme.lower(), content_hash.strip("/")
    return "", ref


def make_ref(scheme: str, content_hash: str) -> str:
    return f"{scheme}://{content_hash}"


def encode_json(document: Any) -> bytes:
    """Deterministic JSON bytes: sorted keys, compact."""
    return orjson.dumps(document, option=orjson.OPT_SORT_KEYS)


# ─── Interface ────────────────────────────────────────────────────


class ContentStore(abc.ABC):
    """A content-addressed blob store."""

    scheme: str = "ipfs"

    async def connect(self) -> None:  # noqa: B027
        """Open network resources. No-op by default."""

    async def close(self) -> None:  # noqa: B027
        """Release network resources. No-op by default."""

    @abc.abstractmethod
    async def put(
        self,
        data: bytes,
        *,
        filename: str = "blob",
        content_type: str = "application/octet-stream",
    ) -> str:
        """Store bytes and return their content reference."""

    async def put_json(self, document: Any, *, name: str = "metadata.json") -> str:
        """Store a JSON document and return its content reference."""
        return await self.put(encode_json(document), filename=name, content_type="application/json")

    @abc.abstractmethod
    async def get(self, ref: str) -> bytes:
        """
        Fetch the bytes behind a reference.

        Raises:
            MetadataUnresolvable: the store answered but has no such content.
            GatewayUnavailable: the store could not be reached at all.
        """

    def gateway_url(self, ref: str) -> str:
        """A URL a browser can open for this reference."""
        return ref


# ─── Pinata / IPFS ────────────────────────────────────────────────


class PinataContentStore(ContentStore):
    """
    Pinata pinning API for writes, public IPFS gateways for reads.

    Gateways are tried in configured order; the first 200 wins.
    """

    def __init__(
        self,
        config: ContentStoreConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self.scheme = config.scheme
        self._logger = logger.bind(component="pinata_content_store")

    # ── Lifecycle ─────────────────────────────────────────────

    async def connect(self) -> None:
        if not self._config.jwt:
            self._logger.warning(
                "pinata_jwt_not_set",
                hint="CERTCHAIN_PINATA_JWT is required for uploads; reads still work.",
            )
        self._client = httpx.AsyncClient(
            timeout=self._config.request_timeout_s,
            transport=self._transport,
        )
        self._logger.info("content_store_connected", api_url=self._config.api_url)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            self._logger.info("content_store_disconnected")

    # ── Writes ────────────────────────────────────────────────

    async def put(
        self,
        data: bytes,
        *,
        filename: str = "blob",
        content_type: str = "application/octet-stream",
    ) -> str:
        files = {"file": (filename, data, content_type)}
        payload = await self._post("/pinning/pinFileToIPFS", operation="put", files=files)
        return self._ref_from(payload, "put")

    async def put_json(self, document: Any, *, name: str = "metadata.json") -> str:
        body = {"pinataContent": document, "pinataMetadata": {"name": name}}
        payload = await self._post(
            "/pinning/pinJSONToIPFS",
            operation="put_json",
            content=encode_json(body),
            headers={"Content-Type": "application/json"},
        )
        return self._ref_from(payload, "put_json")

    async def _post(self, path: str, *, operation: str, **kwargs: Any) -> dict[str, Any]:
        client = self._require_client()
        if not self._config.jwt:
            raise GatewayUnavailable(
                "Content store credentials not configured",
                gateway="content_store",
                operation=operation,
            )
        headers = {"Authorization": self._auth_header(), **kwargs.pop("headers", {})}
        url = f"{self._config.api_url.rstrip('/')}{path}"
        try:
            response = await client.post(url, headers=headers, **kwargs)
        except httpx.HTTPError as exc:
            self._logger.error("content_upload_error", operation=operation, error=str(exc))
            raise GatewayUnavailable(
                f"Content store upload failed: {exc}",
                gateway="content_store",
                operation=operation,
            ) from exc

        if response.status_code != 200:
            self._logger.error(
                "content_upload_rejected",
                operation=operation,
                status=response.status_code,
                body=response.text[:200],
            )
            raise GatewayUnavailable(
                f"Content store upload failed with HTTP {response.status_code}",
                gateway="content_store",
                operation=operation,
            )
        try:
            result = orjson.loads(response.content)
        except orjson.JSONDecodeError:
            result = None
        if not isinstance(result, dict):
            self._logger.error(
                "content_upload_malformed",
                operation=operation,
                body=response.text[:200],
            )
            raise GatewayUnavailable(
                "Content store returned a malformed upload response",
                gateway="content_store",
                operation=operation,
            )
        return result

    def _ref_from(self, payload: dict[str, Any], operation: str) -> str:
        content_hash = payload.get("IpfsHash")
        if not content_hash:
            raise GatewayUnavailable(
                "Content store response carried no content hash",
                gateway="content_store",
                operation=operation,
            )
        ref = make_ref(self.scheme, str(content_hash))
        self._logger.debug("content_pinned", ref=ref, operation=operation)
        return ref

    def _auth_header(self) -> str:
        jwt = self._config.jwt
        return jwt if jwt.lower().startswith("bearer ") else f"Bearer {jwt}"

    # ── Reads ─────────────────────────────────────────────────

    async def get(self, ref: str) -> bytes:
        client = self._require_client()
        _, content_hash = split_ref(ref)
        if not content_hash:
            raise MetadataUnresolvable("Empty content reference", ref=ref)

        answered = False
        for template in self._config.gateways:
            url = template.format(hash=content_hash)
            try:
                response = await client.get(url)
            except httpx.HTTPError as exc:
                self._logger.debug("content_gateway_unreachable", url=url, error=str(exc))
                continue
            if response.status_code == 200:
                return response.content
            answered = True
            self._logger.debug("content_gateway_miss", url=url, status=response.status_code)

        if answered:
            raise MetadataUnresolvable(f"No gateway could resolve {ref}", ref=ref)
        raise GatewayUnavailable(
            f"All content gateways unreachable for {ref}",
            gateway="content_store",
            operation="get",
        )

    def gateway_url(self, ref: str) -> str:
        scheme, content_hash = split_ref(ref)
        if scheme in ("http", "https"):
            return ref
        return self._config.display_gateway.format(hash=content_hash)

    def _require_client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("PinataContentStore not connected. Call connect() first.")
        return self._client


# ─── In-memory ────────────────────────────────────────────────────


class InMemoryContentStore(ContentStore):
    """sha256-addressed store held in a dict. References: ``<scheme>://<sha256>``."""

    def __init__(self, scheme: str = "ipfs") -> None:
        self.scheme = scheme
        self._blobs: dict[str, bytes] = {}

    async def put(
        self,
        data: bytes,
        *,
        filename: str = "blob",
        content_type: str = "application/octet-stream",
    ) -> str:
        content_hash = hashlib.sha256(data).hexdigest()
        self._blobs[content_hash] = bytes(data)
        return make_ref(self.scheme, content_hash)

    async def get(self, ref: str) -> bytes:
        _, content_hash = split_ref(ref)
        data = self._blobs.get(content_hash)
        if data is None:
            raise MetadataUnresolvable(f"Unknown content reference {ref}", ref=ref)
        return data

    def gateway_url(self, ref: str) -> str:
        _, content_hash = split_ref(ref)
        return f"memory://{content_hash}"

    def __contains__(self, ref: object) -> bool:
        return isinstance(ref, str) and split_ref(ref)[1] in self._blobs

    def __len__(self) -> int:
        return len(self._blobs)
