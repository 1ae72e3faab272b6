"""
CertChain — Ledger Contract ABIs

Only the functions the core consumes. The user registry holds roles and
profile references; the certificate registry holds the authorized
institute set, the request table and the minted certificates.
"""

from __future__ import annotations

from typing import Any


def _fn(
    name: str,
    inputs: list[tuple[str, str]],
    outputs: list[tuple[str, str]],
    mutability: str = "view",
) -> dict[str, Any]:
    return {
        "type": "function",
        "name": name,
        "stateMutability": mutability,
        "inputs": [{"name": n, "type": t} for n, t in inputs],
        "outputs": [{"name": n, "type": t} for n, t in outputs],
    }


USER_REGISTRY_ABI: list[dict[str, Any]] = [
    _fn("getUser", [("user", "address")], [("role", "string"), ("metadataHash", "string")]),
    _fn("isUserRegistered", [("user", "address")], [("", "bool")]),
    _fn("getAllUsers", [], [("", "address[]")]),
    _fn(
        "registerUser",
        [("role", "string"), ("metadataHash", "string")],
        [],
        mutability="nonpayable",
    ),
]

CERTIFICATE_REGISTRY_ABI: list[dict[str, Any]] = [
    _fn("owner", [], [("", "address")]),
    _fn("authorizedInstitutes", [("institute", "address")], [("", "bool")]),
    _fn("authorizeInstitute", [("institute", "address")], [], mutability="nonpayable"),
    _fn("revokeInstitute", [("institute", "address")], [], mutability="nonpayable"),
    _fn("requestCounter", [], [("", "uint256")]),
    _fn(
        "certificateRequests",
        [("requestId", "uint256")],
        [
            ("student", "address"),
            ("institute", "address"),
            ("name", "string"),
            ("message", "string"),
            ("studentMetadataHash", "string"),
            ("approved", "bool"),
        ],
    ),
    _fn(
        "requestCertificate",
        [
            ("institute", "address"),
            ("name", "string"),
            ("message", "string"),
            ("studentMetadataHash", "string"),
        ],
        [],
        mutability="nonpayable",
    ),
    _fn(
        "approveCertificateRequest",
        [
            ("requestId", "uint256"),
            ("certificateType", "string"),
            ("tokenURI", "string"),
            ("institutionName", "string"),
        ],
        [],
        mutability="nonpayable",
    ),
    _fn("cancelCertificateRequest", [("requestId", "uint256")], [], mutability="nonpayable"),
    _fn("getStudentCertificates", [("student", "address")], [("", "uint256[]")]),
    _fn(
        "getCertificateDetails",
        [("tokenId", "uint256")],
        [
            ("name", "string"),
            ("institute", "address"),
            ("issueDate", "uint256"),
            ("certificateType", "string"),
            ("student", "address"),
        ],
    ),
    _fn("tokenURI", [("tokenId", "uint256")], [("", "string")]),
]
