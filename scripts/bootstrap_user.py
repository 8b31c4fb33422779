#!/usr/bin/env python3
"""Create a chat user and print a bearer token for it.

Usage:
    # Using environment variables:
    DATABASE_URL=postgresql://... JWT_SECRET=... python scripts/bootstrap_user.py --email ops@example.com --role admin

    # Optionally register an upstream key for every configured model:
    python scripts/bootstrap_user.py --email ops@example.com --key sk-... --key-role user --key-role admin

Environment Variables:
    DATABASE_URL: PostgreSQL connection string (in-memory store when unset, useful only for a dry look)
    JWT_SECRET: Secret shared with the server; tokens signed with another secret are rejected
    CHAT_MODELS: Models a --key credential is registered for
"""
from __future__ import annotations

import argparse
import os
import sys
from datetime import timedelta
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_user(
    email: str,
    roles: list[str],
    *,
    user_id: str | None = None,
    key: str | None = None,
    key_roles: list[str] | None = None,
    ttl_hours: int = 12,
) -> dict:
    """Create the user (or update its roles) and mint a token.

    Returns:
        dict with user_id, email, status ('created' or 'updated') and token
    """
    # Import here to avoid loading config before env vars are set
    from chatrelay.service.runtime import get_runtime
    from chatrelay.storage.errors import ConstraintViolation

    runtime = get_runtime()
    existing = runtime.store.get_user(user_id) if user_id else None
    if existing:
        user = runtime.store.update_user_roles(existing.id, roles)
        status = "updated"
    else:
        try:
            user = runtime.store.create_user(email, roles=roles, user_id=user_id)
        except ConstraintViolation as exc:
            raise SystemExit(f"Error: {exc.message} (pass --user-id to update an existing user)")
        status = "created"

    result = {
        "user_id": user.id,
        "email": user.email,
        "status": status,
        "token": runtime.tokens.issue(user.id, ttl=timedelta(hours=ttl_hours)),
    }
    if key:
        credential = runtime.credentials.upsert(
            secret=key,
            models=runtime.settings.chat_models,
            roles=key_roles or roles,
            remark=f"bootstrap:{email}",
        )
        result["credential_id"] = credential.id
    return result


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a chatrelay user",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("CHATRELAY_EMAIL"), help="User email")
    parser.add_argument("--user-id", default=None, help="Explicit user id; updates roles if it exists")
    parser.add_argument(
        "--role",
        action="append",
        dest="roles",
        help="Role to grant (repeatable, default: user)",
    )
    parser.add_argument("--key", default=None, help="Upstream API key to register")
    parser.add_argument("--key-role", action="append", dest="key_roles", help="Roles allowed to use --key")
    parser.add_argument("--ttl-hours", type=int, default=12, help="Token lifetime")
    args = parser.parse_args()

    if not args.email:
        print("Error: --email or CHATRELAY_EMAIL environment variable required")
        sys.exit(1)
    if not os.environ.get("JWT_SECRET"):
        print("Error: JWT_SECRET must match the server's secret")
        sys.exit(1)
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store; the user will not outlive this process")

    result = bootstrap_user(
        args.email,
        args.roles or ["user"],
        user_id=args.user_id,
        key=args.key,
        key_roles=args.key_roles,
        ttl_hours=args.ttl_hours,
    )
    print(f"User {result['status']}: {result['email']} (id: {result['user_id']})")
    if result.get("credential_id"):
        print(f"  Credential: {result['credential_id']}")
    print(f"  Token: {result['token']}")


if __name__ == "__main__":
    main()
