"""Local demo member CLI for worker and coordinator integration tests."""

from __future__ import annotations

import argparse
import sys
import time


def main(argv: list[str] | None = None) -> int:
    """Echo the prompt, optionally sleeping, writing stderr and failing."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--exit-code", type=int, default=0)
    parser.add_argument("--stdout", default=None, help="Text printed instead of the prompt.")
    parser.add_argument("--stderr", default=None)
    parser.add_argument("--sleep", type=float, default=0.0)
    parser.add_argument("prompt", nargs="*")
    args = parser.parse_args(argv)

    if args.sleep > 0:
        time.sleep(args.sleep)

    text = args.stdout if args.stdout is not None else " ".join(args.prompt)
    if text:
        sys.stdout.write(f"{text}\n")
        sys.stdout.flush()
    if args.stderr:
        sys.stderr.write(f"{args.stderr}\n")
        sys.stderr.flush()
    return args.exit_code


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
