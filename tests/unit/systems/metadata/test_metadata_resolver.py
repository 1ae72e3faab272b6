"""
Unit tests for the Metadata Resolver.
"""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from certchain.clients.content_store import InMemoryContentStore
from certchain.errors import GatewayUnavailable, MetadataUnresolvable
from certchain.systems.metadata.resolver import MetadataResolver


def make_resolver() -> tuple[MetadataResolver, InMemoryContentStore]:
    store = InMemoryContentStore()
    return MetadataResolver(store), store


class TestJson:
    @pytest.mark.asyncio
    async def test_put_and_get_json(self):
        resolver, store = make_resolver()
        ref = await resolver.put_json({"name": "BSc", "nested": {"a": 1}})

        assert ref.startswith("ipfs://")
        assert ref in store
        assert await resolver.get_json(ref) == {"name": "BSc", "nested": {"a": 1}}

    @pytest.mark.asyncio
    async def test_equal_documents_share_a_reference(self):
        resolver, store = make_resolver()
        first = await resolver.put_json({"b": 2, "a": 1})
        second = await resolver.put_json({"a": 1, "b": 2})
        assert first == second
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_bare_hash_resolves(self):
        resolver, _ = make_resolver()
        ref = await resolver.put_json({"k": "v"})
        bare = ref.split("://", 1)[1]
        assert await resolver.get_json(bare) == {"k": "v"}

    @pytest.mark.asyncio
    async def test_non_json_content(self):
        resolver, _ = make_resolver()
        ref = await resolver.put_bytes(b"\x89PNG not json", filename="img.png")
        with pytest.raises(MetadataUnresolvable):
            await resolver.get_json(ref)

    @pytest.mark.asyncio
    async def test_json_array_is_not_metadata(self):
        resolver, _ = make_resolver()
        ref = await resolver.put_bytes(b"[1, 2]")
        with pytest.raises(MetadataUnresolvable):
            await resolver.get_json(ref)

    @pytest.mark.asyncio
    async def test_empty_ref(self):
        resolver, _ = make_resolver()
        with pytest.raises(MetadataUnresolvable):
            await resolver.get_bytes("")
        with pytest.raises(MetadataUnresolvable):
            await resolver.get_bytes("ipfs://")


class TestDisplayReads:
    @pytest.mark.asyncio
    async def test_try_get_json_degrades_on_missing(self):
        resolver, _ = make_resolver()
        document, error = await resolver.try_get_json("ipfs://nothing-here")
        assert document is None
        assert error is not None

    @pytest.mark.asyncio
    async def test_try_get_json_degrades_on_outage(self):
        store = InMemoryContentStore()
        store.get = AsyncMock(side_effect=GatewayUnavailable("down"))  # type: ignore[method-assign]
        resolver = MetadataResolver(store)

        document, error = await resolver.try_get_json("ipfs://abc")

        assert document is None
        assert error == "down"

    @pytest.mark.asyncio
    async def test_try_get_json_success(self):
        resolver, _ = make_resolver()
        ref = await resolver.put_json({"x": 1})
        assert await resolver.try_get_json(ref) == ({"x": 1}, None)

    def test_gateway_url(self):
        resolver, _ = make_resolver()
        assert resolver.gateway_url("ipfs://abc") == "memory://abc"
        assert resolver.gateway_url("") == ""
