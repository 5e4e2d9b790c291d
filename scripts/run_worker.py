#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from docpipe.pipeline import pipeline
from docpipe.worker_runtime import create_worker_pool_from_env, create_worker_runtime_from_env


def main() -> int:
    parser = argparse.ArgumentParser(description="Run resident workers for queued document jobs.")
    parser.add_argument(
        "--iterations",
        type=int,
        default=0,
        help="Stop after N iterations of a single worker (0 means run a worker pool forever).",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=os.getenv("DOCPIPE_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    if args.iterations > 0:
        runtime = create_worker_runtime_from_env(pipeline=pipeline)
        stats = runtime.run_forever(stop_after_iterations=args.iterations)
    else:
        pool = create_worker_pool_from_env(pipeline=pipeline)
        pool.start()
        try:
            pool.stop_event.wait()
        except KeyboardInterrupt:
            pass
        stats = pool.stop(timeout=30)
    print(json.dumps({"success": True, "stats": stats}, ensure_ascii=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
