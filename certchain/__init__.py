"""
CertChain — Certificate Issuance Workflow & Role Resolution Engine

Orchestrates certificate requests between students, authorized institutes
and a single administrator on top of a ledger and a content-addressed store.
"""

__version__ = "0.1.0"
