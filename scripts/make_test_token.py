#!/usr/bin/env python3
"""Print a long-lived test access token, or inspect an existing token.

Usage:
    DEV_MODE=true JWT_SECRET=... python scripts/make_test_token.py
    DEV_MODE=true python scripts/make_test_token.py --subject alice
    python scripts/make_test_token.py --inspect <token>

Environment Variables:
    JWT_SECRET: Signing key (at least 64 bytes), also read from .env
    DEV_MODE: Must be true to mint a token
"""
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Mint or inspect BlubbAI access tokens",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--subject", default="tester", help="Value of the sub claim")
    parser.add_argument(
        "--inspect",
        metavar="TOKEN",
        help="Verify TOKEN and print its claims instead of minting one",
    )
    args = parser.parse_args()

    # Import here so a bad environment reports cleanly instead of a traceback
    from pydantic import ValidationError

    from blubbai.config import Settings
    from blubbai.service.token_codec import TokenCodec, TokenError

    try:
        settings = Settings.from_env()
    except ValidationError as e:
        print(f"Error: invalid configuration: {e}")
        sys.exit(1)

    codec = TokenCodec(settings.jwt_secret, dev_mode=settings.dev_mode)

    if args.inspect:
        try:
            claims = codec.decode(args.inspect)
        except TokenError as e:
            print(f"Error: {e}")
            sys.exit(1)
        print(json.dumps(claims, indent=2, sort_keys=True))
        print(f"expired: {codec.is_expired(claims)}")
        return

    if not settings.dev_mode:
        print("Error: test tokens are only issued with DEV_MODE=true")
        sys.exit(1)

    print(codec.make_test_token(args.subject))


if __name__ == "__main__":
    main()
