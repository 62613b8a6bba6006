from __future__ import annotations

import argparse
import base64
from pathlib import Path
import sys

from keyforge.services.auth.tokens import generate_key_pair


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Generate an ECDSA P-256 signing key pair")
    parser.add_argument("--out-dir", type=Path, default=None, help="Write private.pem/public.pem here")
    parser.add_argument(
        "--print-root-env",
        action="store_true",
        help="Print a ROOT_JWT_PUBLIC_KEY line with the base64-encoded public key",
    )
    return parser


def main() -> int:
    args = _build_parser().parse_args()
    private_pem, public_pem = generate_key_pair()
    if args.out_dir is not None:
        args.out_dir.mkdir(parents=True, exist_ok=True)
        private_path = args.out_dir / "private.pem"
        private_path.write_text(private_pem, encoding="utf-8")
        # Owner-only: this file signs tokens.
        private_path.chmod(0o600)
        (args.out_dir / "public.pem").write_text(public_pem, encoding="utf-8")
        print(f"Wrote {private_path} and {args.out_dir / 'public.pem'}", file=sys.stderr)
    else:
        print(private_pem, end="")
        print(public_pem, end="")
    if args.print_root_env:
        encoded = base64.b64encode(public_pem.encode("utf-8")).decode("ascii")
        print(f"ROOT_JWT_PUBLIC_KEY={encoded}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
