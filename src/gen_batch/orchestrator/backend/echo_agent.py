"""Local demo agent for command backend integration tests."""

from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path


def main(argv: list[str] | None = None) -> int:
    """Write a deterministic result file, or simulate a failure for chosen items."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--index", type=int, required=True)
    parser.add_argument("--output-dir", required=True)
    parser.add_argument("--prompt", default="")
    parser.add_argument("--rate-limit-index", type=int, action="append", default=[])
    parser.add_argument("--moderate-index", type=int, action="append", default=[])
    parser.add_argument("--fail-index", type=int, action="append", default=[])
    args = parser.parse_args(argv)

    if args.index in args.rate_limit_index:
        print("Rate limit reached, try again later", file=sys.stderr)
        return 1
    if args.index in args.moderate_index:
        print("Content moderated: try a different idea", file=sys.stderr)
        return 1
    if args.index in args.fail_index:
        print("Generation failed: something went wrong", file=sys.stderr)
        return 1

    output_path = Path(args.output_dir) / "result.json"
    output_path.parent.mkdir(parents=True, exist_ok=True)
    payload = {
        "index": args.index,
        "prompt": args.prompt,
        "attempt": int(os.getenv("GEN_BATCH_ITEM_ATTEMPT", "0")),
    }
    output_path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), "utf-8")
    print(f"Generated item {args.index}")
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
