from certchain.systems.catalog.catalog import CredentialCatalog
from certchain.systems.catalog.types import CatalogEntry, CatalogListing, VerificationReport

__all__ = ["CatalogEntry", "CatalogListing", "CredentialCatalog", "VerificationReport"]
