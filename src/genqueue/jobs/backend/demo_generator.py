"""Local demo generator for CLI backend integration tests.

Writes a 1x1 PNG to ``--output`` instead of running a real model.
"""

from __future__ import annotations

import argparse
import base64
import sys
import time
from pathlib import Path

_PIXEL_PNG = base64.b64decode(
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNkYPhfDwAChwGA"
    "60e6kgAAAABJRU5ErkJggg=="
)


def main(argv: list[str] | None = None) -> int:
    """Run local deterministic demo generation."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--prompt", required=True)
    parser.add_argument("--output", required=True)
    parser.add_argument("--delay", type=float, default=0.0, help="Seconds to sleep first.")
    args = parser.parse_args(argv)

    if args.delay > 0:
        time.sleep(args.delay)
    output_path = Path(args.output)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_bytes(_PIXEL_PNG)
    print(f"demo image for {args.prompt!r} written to {output_path}")
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
