"""
CertChain — Systems

One subpackage per component of the issuance core, leaves first:
ledger, metadata, roles, authorization, lifecycle, catalog, registration.
"""
