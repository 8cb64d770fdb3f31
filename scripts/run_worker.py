#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

from dotenv import load_dotenv

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from cvtailor.logging_setup import configure_logging  # noqa: E402
from cvtailor.runtime import build_runtime  # noqa: E402
from cvtailor.settings import Settings  # noqa: E402


def main() -> int:
    parser = argparse.ArgumentParser(description="Run the resident worker loop for queued tailoring jobs.")
    parser.add_argument(
        "--iterations",
        type=int,
        default=0,
        help="Stop after N iterations (0 means run forever).",
    )
    parser.add_argument(
        "--env-file",
        default=str(ROOT / ".env"),
        help="Environment file loaded before reading settings.",
    )
    args = parser.parse_args()

    load_dotenv(args.env_file, override=False)
    settings = Settings.from_env()
    configure_logging(settings)
    runtime = build_runtime(settings)
    try:
        if args.iterations > 0:
            stats = runtime.worker.run_forever(stop_after_iterations=args.iterations)
        else:
            stats = runtime.worker.run_forever(stop_after_iterations=None)
    finally:
        runtime.stop()
    print(json.dumps({"success": True, "stats": stats}, ensure_ascii=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
