#!/usr/bin/env python3
"""Print a fresh MASTER_ENCRYPTION_KEY (64 hex characters).

Usage:
    python -m scripts.generate_master_key
    python -m scripts.generate_master_key --check "$MASTER_ENCRYPTION_KEY"
"""

from __future__ import annotations

import argparse
import os
import sys
from typing import Sequence

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.security.secret_box import SecretBox, SecretBoxKeyError  # noqa: E402


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Generate or validate the custody master key")
    parser.add_argument("--check", metavar="HEX", help="Validate an existing key instead of generating one")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = build_arg_parser().parse_args(argv)

    if args.check is not None:
        try:
            SecretBox.from_hex(args.check)
        except SecretBoxKeyError as exc:
            print(f"Invalid key: {exc}", file=sys.stderr)
            return 1
        print("Key is valid")
        return 0

    print(SecretBox.generate_key_hex())
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
