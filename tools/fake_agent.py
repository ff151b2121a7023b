#!/usr/bin/env python3
from __future__ import annotations

import argparse
import sys
import time
from pathlib import Path


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Fake completion CLI for gsdrun integration tests")
    parser.add_argument("prompt")
    parser.add_argument("--sleep", type=float, default=0.0)
    parser.add_argument("--fail-always", action="store_true")
    parser.add_argument("--fail-on", default=None, help="fail when the prompt contains this text")
    parser.add_argument("--calls-log", type=Path, default=None)
    parser.add_argument("--pad", type=int, default=0, help="append N characters to the response")
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    if args.calls_log is not None:
        with args.calls_log.open("a", encoding="utf-8") as f:
            f.write(args.prompt.replace("\n", " ") + "\n")
    if args.sleep > 0:
        time.sleep(args.sleep)

    if args.fail_always or (args.fail_on and args.fail_on in args.prompt):
        print("forced failure", file=sys.stderr, flush=True)
        return 1

    print(f"# Response\n\nhandled: {args.prompt}" + "x" * args.pad, flush=True)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
