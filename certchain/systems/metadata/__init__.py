from certchain.systems.metadata.resolver import MetadataResolver

__all__ = ["MetadataResolver"]
