#!/usr/bin/env python3
"""Produce a hashed ADMIN_PASSWORD value for the admin principal.

Usage:
    # Prompt for the password and print an argon2id hash:
    python scripts/hash_admin_secret.py

    # bcrypt instead, password from the command line:
    python scripts/hash_admin_secret.py --scheme bcrypt --password 'SecurePassword123!'

    # Check that an existing hash accepts a password:
    python scripts/hash_admin_secret.py --check '$argon2id$...' --password 'SecurePassword123!'

Paste the printed line into the service environment or `.env`. Plaintext
values are still accepted by the service, but a hash keeps the secret out of
process listings and config dumps.
"""
from __future__ import annotations

import argparse
import getpass
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def validate_password(password: str) -> bool:
    """Check password meets complexity requirements."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(c in "!@#$%^&*()_+-=[]{}|;':\",./<>?" for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Hash the admin secret for AuthCore",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Admin password (or set ADMIN_PASSWORD env var; prompts when absent)",
    )
    parser.add_argument(
        "--scheme",
        choices=("argon2", "bcrypt"),
        default="argon2",
        help="Hash scheme (default: argon2)",
    )
    parser.add_argument(
        "--check",
        metavar="HASH",
        help="Verify --password against an existing hash instead of creating one",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    password = args.password
    if not password:
        password = getpass.getpass("Admin password: ")
    if not password:
        print("Error: --password, ADMIN_PASSWORD or an interactive password is required")
        return 1

    # Import here so a bare `--help` does not need the runtime stack
    from authcore.config import Settings
    from authcore.service.credentials import CredentialVerifier, hash_secret, secret_scheme

    if args.check:
        if secret_scheme(args.check) == "plaintext":
            print("Error: --check expects a bcrypt or argon2 hash")
            return 1
        settings = Settings(
            admin_email="check@localhost",
            admin_password=args.check,
            jwt_access_secret="unused-for-hash-check",
            jwt_refresh_secret="unused-for-hash-check",
        )
        if CredentialVerifier(settings).verify("check@localhost", password):
            print("OK: password matches hash")
            return 0
        print("Mismatch: password does not match hash")
        return 2

    if not validate_password(password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        return 1

    print(f"ADMIN_PASSWORD={hash_secret(password, args.scheme)}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
