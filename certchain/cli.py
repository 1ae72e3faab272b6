"""
CertChain — Command Line

Read-only inspection of the ledger and content store.

Usage:
    python -m certchain role 0xIdentity
    python -m certchain certificates 0xHolder
    python -m certchain pending 0xInstitute
    python -m certchain verify 42
    python -m certchain institutes --query "state university"

Configuration is read from --config (default: $CERTCHAIN_CONFIG_PATH or
config/default.yaml) with secrets taken from the environment / .env.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys

from dotenv import load_dotenv

from certchain.config import load_config
from certchain.errors import CertChainError
from certchain.primitives.identity import Session
from certchain.runtime import CertChainRuntime, open_runtime
from certchain.telemetry import setup_logging

DEFAULT_CONFIG_PATH = "config/default.yaml"


# ── Argument parsing ──────────────────────────────────────────────────────────


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="certchain",
        description="Inspect certificate issuance state on the ledger.",
    )
    parser.add_argument(
        "--config",
        metavar="PATH",
        default=os.getenv("CERTCHAIN_CONFIG_PATH", DEFAULT_CONFIG_PATH),
        help="YAML configuration file.",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    role = commands.add_parser("role", help="Resolve the role of an identity.")
    role.add_argument("identity")

    certificates = commands.add_parser("certificates", help="List a holder's certificates.")
    certificates.add_argument("holder")

    pending = commands.add_parser("pending", help="List requests pending at an institute.")
    pending.add_argument("institute")

    verify = commands.add_parser("verify", help="Verify a certificate's issuer.")
    verify.add_argument("certificate_id", type=int)

    institutes = commands.add_parser("institutes", help="List registered institutes.")
    institutes.add_argument("--query", default=None, help="Filter by name or accreditation number.")

    return parser


# ── Commands ──────────────────────────────────────────────────────────────────


async def _role(runtime: CertChainRuntime, args: argparse.Namespace) -> int:
    resolved = await runtime.roles.resolve(args.identity)
    print(f"[*] Identity      : {resolved.identity}")
    print(f"[*] Kind          : {resolved.kind.value}")
    print(f"[*] Registered    : {resolved.registered}")
    if resolved.authorized is not None:
        print(f"[*] Authorized    : {resolved.authorized}")
    if resolved.metadata_ref:
        print(f"[*] Profile       : {runtime.metadata.gateway_url(resolved.metadata_ref)}")
    return 0


async def _certificates(runtime: CertChainRuntime, args: argparse.Namespace) -> int:
    listing = await runtime.catalog.list_for(args.holder)
    print(f"[*] {len(listing)} certificate(s) held by {listing.holder}")
    for entry in listing.entries:
        cert = entry.certificate
        print("=" * 60)
        print(f"  #{cert.id}  {cert.name} ({cert.certificate_type})")
        print(f"  Issuer      : {cert.institute}")
        print(f"  Issued at   : {cert.issue_date}")
        if entry.degraded:
            print(f"  Metadata    : unavailable ({entry.metadata_error})")
        else:
            print(f"  Institution : {entry.institution.get('name', 'n/a')}")
            if entry.image_url:
                print(f"  Image       : {entry.image_url}")
    if listing.skipped:
        print(f"[!] Unreadable certificate ids: {listing.skipped}")
    return 0


async def _pending(runtime: CertChainRuntime, args: argparse.Namespace) -> int:
    manager = runtime.lifecycle(Session.read_only(args.institute))
    scan = await manager.list_pending_for(args.institute)
    print(f"[*] {len(scan)} pending request(s) out of {scan.counter} ids scanned")
    for request in scan.requests:
        print(f"  #{request.id}  {request.requested_name!r} from {request.student}")
        if request.message:
            print(f"        {request.message}")
    if scan.skipped:
        print(f"[!] Unreadable request ids: {scan.skipped}")
    return 0


async def _verify(runtime: CertChainRuntime, args: argparse.Namespace) -> int:
    report = await runtime.catalog.verify(args.certificate_id)
    cert = report.certificate
    print(f"[*] Certificate   : #{cert.id} {cert.name} ({cert.certificate_type})")
    print(f"[*] Holder        : {cert.holder}")
    print(f"[*] Issuer        : {cert.institute}")
    print(f"[*] Authorized    : {report.issuer_authorized}")
    if report.institution_matches is False:
        print(f"[!] Metadata names a different issuer: {report.claimed_institution}")
    if report.verified:
        print("\n[OK] Issuer verified.")
        return 0
    print("\n[FAIL] Issuer not verified.")
    return 1


async def _institutes(runtime: CertChainRuntime, args: argparse.Namespace) -> int:
    listings = await runtime.directory.list_institutes(args.query)
    print(f"[*] {len(listings)} institute(s)")
    for entry in listings:
        status = "authorized" if entry.authorized else "pending"
        name = entry.institution_name or "(profile unavailable)"
        print(f"  {entry.identity}  [{status}]  {name}  {entry.accreditation_number}")
    return 0


_COMMANDS = {
    "role": _role,
    "certificates": _certificates,
    "pending": _pending,
    "verify": _verify,
    "institutes": _institutes,
}


# ── Main ──────────────────────────────────────────────────────────────────────


async def run(args: argparse.Namespace) -> int:
    config = load_config(args.config)
    setup_logging(config.logging)
    async with open_runtime(config) as runtime:
        return await _COMMANDS[args.command](runtime, args)


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    args = _build_parser().parse_args(argv)
    try:
        return asyncio.run(run(args))
    except CertChainError as exc:
        print(f"[!] {type(exc).__name__}: {exc}", file=sys.stderr)
        return 1
