"""
CertChain — External Service Clients

Connection management for the content-addressed store.
"""

from certchain.clients.content_store import (
    ContentStore,
    InMemoryContentStore,
    PinataContentStore,
    encode_json,
    make_ref,
    split_ref,
)

__all__ = [
    "ContentStore",
    "InMemoryContentStore",
    "PinataContentStore",
    "encode_json",
    "make_ref",
    "split_ref",
]
