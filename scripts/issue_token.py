from __future__ import annotations

import argparse
import json
from pathlib import Path
import sys
import time
from uuid import uuid4

from keyforge.core.config import get_settings
from keyforge.services.auth.tokens import ROOT_SUBJECT, TokenClaims, generate_jti, issue_token


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Sign a bearer token with a private key")
    parser.add_argument("--private-key", type=Path, required=True, help="PKCS8 PEM file")
    parser.add_argument(
        "--instance-id",
        default=None,
        help="Instance to scope the token to; omit for a root token",
    )
    parser.add_argument("--admin", action="store_true", help="Set isAdmin (root tokens only)")
    parser.add_argument("--ttl", type=int, default=None, help="Lifetime in seconds")
    parser.add_argument("--metadata", default="{}", help="JSON object stored in the metadata claim")
    return parser


def main() -> int:
    args = _build_parser().parse_args()
    settings = get_settings()
    now = int(time.time())
    ttl = args.ttl if args.ttl is not None else settings.token_default_ttl_s
    subject = args.instance_id or ROOT_SUBJECT
    try:
        metadata = json.loads(args.metadata)
        claims = TokenClaims(
            sub=subject,
            iat=now,
            exp=now + ttl,
            jti=generate_jti(),
            tenant_id=args.instance_id or ROOT_SUBJECT,
            request_id=str(uuid4()),
            metadata=metadata,
            is_admin=bool(args.admin),
        )
        token = issue_token(claims, args.private_key.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        # Bad key files, JSON and claim values are reported without a traceback.
        print(f"issue_token failed: {exc}", file=sys.stderr)
        return 1
    print(token)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
