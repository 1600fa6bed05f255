#!/usr/bin/env python3
"""
Generate secrets for a Tripod deployment.

Usage:
    python scripts/generate_token.py              # One admin token (32 random bytes)
    python scripts/generate_token.py 48           # 48 random bytes
    python scripts/generate_token.py --env        # ADMIN_TOKEN and OPERATOR_WEBHOOK_SECRET lines for .env

Tokens that would trigger a startup warning are regenerated.
"""
import secrets
import sys

from tripod.transport.security import validate_token_strength

ENV_NAMES = ("ADMIN_TOKEN", "OPERATOR_WEBHOOK_SECRET")


def generate_token(length: int = 32) -> str:
    """URL-safe random token that passes the startup strength check."""
    while True:
        token = secrets.token_urlsafe(length)
        if not validate_token_strength(token):
            return token


def main(argv: list[str] | None = None) -> int:
    length = 32
    env_format = False

    for arg in sys.argv[1:] if argv is None else argv:
        if arg == "--env":
            env_format = True
        elif arg.isdigit():
            length = int(arg)
        elif arg in ("--help", "-h"):
            print(__doc__)
            return 0
        else:
            print(f"Unknown argument: {arg}", file=sys.stderr)
            return 2

    if env_format:
        for name in ENV_NAMES:
            print(f"{name}={generate_token(length)}")
    else:
        print(generate_token(length))
    return 0


if __name__ == "__main__":
    sys.exit(main())
