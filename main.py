#!/usr/bin/env python3
"""
TokenGate -- operator commands for the token service.

Usage:
  python main.py create-user alice
  python main.py create-user alice@example.com --channel GOOGLE
  python main.py logout-all 42
  python main.py inspect eyJhbGciOiJIUzI1NiIs...

Environment variables:
  SECRET_KEY    Signing secret (same value the API runs with). Required unless DEBUG=true.
  REDIS_URL     Revocation store. Default redis://localhost:6379/0.
  DATABASE_URL  Credential store. Default: tokengate_users.db next to this file.

inspect verifies the signature and expiry only; it does not consult the
revocation store, so a revoked but unexpired token still shows as valid.
"""

import argparse
import getpass
import sys
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.exc import IntegrityError

from auth.errors import ConfigurationError, StoreUnavailable
from auth.issuer import TokenIssuer
from auth.models import Channel, User, Valid
from auth.passwords import hash_password
from auth.store import UserStore
from auth.tokens import TokenCodec
from core.config import Settings, load_settings
from revocation.store import RedisRevocationStore


def _fmt_ts(value: float) -> str:
    return datetime.fromtimestamp(value, tz=timezone.utc).isoformat(timespec="milliseconds")


def create_user(settings: Settings, username: str, channel: Channel, password: Optional[str]) -> int:
    """Create a credential record. Provider-channel accounts get no password."""
    store = UserStore(settings.database_url)
    try:
        hashed = hash_password(password) if password else None
        try:
            user_id = store.create_user(User(username=username, user_uuid="", channel=channel, hashed_password=hashed))
        except IntegrityError:
            print(f"  [!] A user named '{username}' already exists.")
            return 1
        user = store.get_by_id(user_id)
        print(f"  Created user {username} (id={user_id}, uuid={user.user_uuid}, channel={channel.value})")
        return 0
    finally:
        store.close()


def logout_all(settings: Settings, user_id: int) -> int:
    if settings.redis_url.startswith("memory://"):
        # The in-process store lives inside the API worker; this process cannot reach it.
        print("  [!] logout-all needs a shared Redis; REDIS_URL is memory://")
        return 1
    try:
        store = RedisRevocationStore.from_url(
            settings.redis_url,
            timeout=settings.revocation_store_timeout_seconds,
            scan_batch_size=settings.revocation_scan_batch_size,
        )
    except ValueError as exc:
        print(f"  [!] Invalid REDIS_URL: {exc}")
        return 1
    config = settings.to_auth_config()
    issuer = TokenIssuer(TokenCodec.from_config(config), store, config)
    try:
        removed = issuer.logout_all(user_id)
    except StoreUnavailable as exc:
        print(f"  [!] {exc}")
        return 1
    finally:
        store.close()
    print(f"  Revoked {removed} session(s) for user {user_id}.")
    print("  Access tokens already issued stay valid until they expire.")
    return 0


def inspect_token(settings: Settings, token: str) -> int:
    """Print the codec's classification of token and, when valid, its claims."""
    codec = TokenCodec.from_config(settings.to_auth_config())
    result = codec.decode(token.strip())
    if not isinstance(result, Valid):
        print(f"  {result.value}")
        return 1
    claims = result.claims
    print("  valid")
    print(f"  type       {claims.token_type.value}")
    print(f"  user_id    {claims.user_id}")
    print(f"  user_uuid  {claims.user_uuid}")
    print(f"  channel    {claims.channel.value}")
    print(f"  token_id   {claims.token_id}")
    print(f"  issued_at  {_fmt_ts(claims.issued_at)}")
    print(f"  expires_at {_fmt_ts(claims.expires_at)}")
    print(f"  issuer     {claims.issuer}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tokengate",
        description="Operator commands for TokenGate.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create-user alice
  python main.py create-user bob@example.com --channel KAKAO
  python main.py logout-all 42
  python main.py inspect "$TOKEN"
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    p_create = sub.add_parser("create-user", help="Create a credential record")
    p_create.add_argument("username", metavar="USERNAME")
    p_create.add_argument(
        "--channel",
        choices=[c.value for c in Channel],
        default=Channel.EMAIL.value,
        help="Login channel (default: EMAIL). Only EMAIL accounts are prompted for a password.",
    )

    p_logout = sub.add_parser("logout-all", help="Revoke every refresh token of a user")
    p_logout.add_argument("user_id", type=int, metavar="USER_ID")

    p_inspect = sub.add_parser("inspect", help="Verify a token and print its claims")
    p_inspect.add_argument("token", metavar="TOKEN")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 0

    try:
        settings = load_settings()
    except ConfigurationError as exc:
        print(f"  [!] Configuration error: {exc}")
        return 2

    if args.command == "create-user":
        channel = Channel(args.channel)
        password = None
        if channel is Channel.EMAIL:
            password = getpass.getpass("Password: ")
            if password != getpass.getpass("Repeat password: "):
                print("  [!] Passwords do not match.")
                return 1
        return create_user(settings, args.username, channel, password)
    if args.command == "logout-all":
        return logout_all(settings, args.user_id)
    return inspect_token(settings, args.token)


if __name__ == "__main__":
    sys.exit(main())
