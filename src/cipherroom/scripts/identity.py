"""Command-line management of this device's identity key.

Usage:
    cipherroom-identity show
    cipherroom-identity publish --user-id <id>
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from collections.abc import Sequence
from pathlib import Path

from cipherroom.core.settings import settings
from cipherroom.services.directory import (
    SqlChannelGrantStore,
    SqlChannelRegistry,
    SqlIdentityDirectory,
)
from cipherroom.services.e2e_messages import E2EMessageService, IdentityStatus
from cipherroom.services.identity import IdentityKeyStore


async def show_identity(key_store: IdentityKeyStore) -> int:
    """Print the public JWK of the local identity key."""
    handle = await key_store.get_local_private_key()
    if handle is None:
        print(f"No identity key at {key_store.key_path}", file=sys.stderr)
        return 1
    print(handle.public_jwk().to_json())
    return 0


async def publish_identity(key_store: IdentityKeyStore, user_id: str) -> int:
    """Run the session-start identity step against the configured database."""
    from cipherroom.db.session import create_tables

    create_tables()
    service = E2EMessageService(
        user_id,
        directory=SqlIdentityDirectory(),
        grants=SqlChannelGrantStore(),
        channels=SqlChannelRegistry(),
        key_store=key_store,
    )
    status = await service.ensure_identity_published()
    print(f"{user_id}: {status.value}")
    return 1 if status is IdentityStatus.UNAVAILABLE else 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="cipherroom-identity", description=__doc__.splitlines()[0])
    parser.add_argument("--key-file", default=None, help="Override the identity key path")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("show", help="Print the local public key as JWK")
    publish = sub.add_parser("publish", help="Publish (or create) the identity key for a user")
    publish.add_argument("--user-id", required=True)
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    key_path = Path(args.key_file) if args.key_file else None
    key_store = IdentityKeyStore(key_path=key_path)
    if args.command == "show":
        return asyncio.run(show_identity(key_store))
    return asyncio.run(publish_identity(key_store, args.user_id))


if __name__ == "__main__":
    raise SystemExit(main())
