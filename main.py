#!/usr/bin/env python3
"""
SecurePower -- operator command line.

Usage:
  python main.py create-api-key --name "ops laptop"
  python main.py create-api-key --name "pixel-7" --device device-123
  python main.py list-api-keys
  python main.py revoke-api-key 4
  python main.py expire-sessions
  python main.py serve --host 0.0.0.0 --port 8000

Environment variables:
  SECRET_KEY    Required unless DEBUG=true. API key hashes depend on it, so
                keys issued under one SECRET_KEY do not work under another.
  DATABASE_URL  Optional. Shared database for all stores; by default each
                store keeps a SQLite file beside its module.
"""

import argparse
import sys

from auth.hashing import generate_api_key, hash_api_key
from auth.models import ApiKey
from auth.store import CredentialStore
from core.config import get_settings

_KEY_PREFIX_LEN = 12


def _credential_store() -> CredentialStore:
    settings = get_settings()
    if settings.database_url:
        return CredentialStore(db_url=settings.database_url, iterations=settings.pbkdf2_iterations)
    return CredentialStore(iterations=settings.pbkdf2_iterations)


def create_api_key(name: str, device_id: str | None) -> int:
    store = _credential_store()
    try:
        raw_key = generate_api_key()
        key_id = store.create_api_key(
            ApiKey(
                name=name,
                key_hash=hash_api_key(raw_key),
                key_prefix=raw_key[:_KEY_PREFIX_LEN],
                device_id=device_id,
            )
        )
    finally:
        store.close()
    scope = f"device {device_id}" if device_id else "operator"
    print(f"\nCreated {scope} API key #{key_id} ({name}).")
    print("Store it now -- it cannot be shown again:\n")
    print(f"  {raw_key}\n")
    return 0


def list_api_keys() -> int:
    store = _credential_store()
    try:
        keys = store.list_api_keys()
    finally:
        store.close()
    if not keys:
        print("  No active API keys.")
        return 0
    print(f"{'ID':>4}  {'PREFIX':<12}  {'SCOPE':<24}  {'LAST USED':<32}  NAME")
    for key in keys:
        scope = key.device_id or "operator"
        print(f"{key.id:>4}  {key.key_prefix:<12}  {scope:<24}  {key.last_used or '-':<32}  {key.name}")
    return 0


def revoke_api_key(key_id: int) -> int:
    store = _credential_store()
    try:
        revoked = store.revoke_api_key(key_id)
    finally:
        store.close()
    if not revoked:
        print(f"  [!] No API key with id {key_id}.")
        return 1
    print(f"  Revoked API key #{key_id}.")
    return 0


def expire_sessions() -> int:
    # Imported here: the full service graph builds notification channels,
    # which the key-management commands do not need.
    from api.services import build_services

    services = build_services(get_settings())
    try:
        expired = services.tracking.expire_stale()
    finally:
        services.close()
    print(f"  Expired {len(expired)} tracking session(s).")
    for session_id in expired:
        print(f"    {session_id}")
    return 0


def serve(host: str, port: int, reload: bool) -> int:
    import uvicorn

    uvicorn.run("api.main:app", host=host, port=port, reload=reload)
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="securepower",
        description="SecurePower operator tools: API keys, session maintenance and the HTTP server.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create-api-key --name "ops laptop"
  python main.py create-api-key --name "pixel-7" --device device-123
  python main.py expire-sessions
  DEBUG=true python main.py serve --reload
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    p_create = sub.add_parser("create-api-key", help="Issue a new API key (printed once)")
    p_create.add_argument("--name", required=True, help="Label shown in list-api-keys")
    p_create.add_argument(
        "--device",
        metavar="DEVICE_ID",
        default=None,
        help="Scope the key to one device. Omit for an operator key.",
    )

    sub.add_parser("list-api-keys", help="List active API keys")

    p_revoke = sub.add_parser("revoke-api-key", help="Deactivate an API key")
    p_revoke.add_argument("key_id", type=int, metavar="ID")

    sub.add_parser("expire-sessions", help="Close tracking sessions past the age limit")

    p_serve = sub.add_parser("serve", help="Run the HTTP API with uvicorn")
    p_serve.add_argument("--host", default="127.0.0.1")
    p_serve.add_argument("--port", type=int, default=8000)
    p_serve.add_argument("--reload", action="store_true", help="Restart on code changes (development)")

    args = parser.parse_args()

    if args.command == "create-api-key":
        code = create_api_key(args.name, args.device)
    elif args.command == "list-api-keys":
        code = list_api_keys()
    elif args.command == "revoke-api-key":
        code = revoke_api_key(args.key_id)
    elif args.command == "expire-sessions":
        code = expire_sessions()
    elif args.command == "serve":
        code = serve(args.host, args.port, args.reload)
    else:
        parser.print_help()
        code = 0
    sys.exit(code)


if __name__ == "__main__":
    main()
