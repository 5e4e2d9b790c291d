#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from docpipe.pipeline import pipeline
from docpipe.worker_runtime import WorkerSettings


def main() -> int:
    parser = argparse.ArgumentParser(description="Requeue processing jobs whose worker stopped reporting.")
    parser.add_argument(
        "--stale-after-seconds",
        type=int,
        default=None,
        help="Age threshold; defaults to WORKER_STALE_AFTER_SECONDS.",
    )
    parser.add_argument(
        "--reconcile",
        action="append",
        default=[],
        metavar="DOCUMENT_ID",
        help="Also reconcile the given document after releasing jobs (repeatable).",
    )
    args = parser.parse_args()

    stale_after = args.stale_after_seconds
    if stale_after is None:
        stale_after = WorkerSettings.from_env().stale_after_seconds
    released = pipeline.release_stale_jobs(stale_after_seconds=stale_after)
    reconciled = [pipeline.reconcile_document(document_id) for document_id in args.reconcile]
    print(
        json.dumps(
            {
                "released": [job["job_id"] for job in released],
                "count": len(released),
                "reconciled": reconciled,
            },
            ensure_ascii=True,
            sort_keys=True,
            indent=2,
        )
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
