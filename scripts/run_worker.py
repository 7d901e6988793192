#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import time
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from thesis_validator.models import WORK_KINDS
from thesis_validator.services import build_services_from_env
from thesis_validator.worker_runtime import create_worker_pool_from_env, create_worker_runtime


def main() -> int:
    parser = argparse.ArgumentParser(description="Run resident worker loops for queued work items.")
    parser.add_argument(
        "--kind",
        action="append",
        choices=list(WORK_KINDS),
        help="Work kind to consume; repeat for several. Default consumes every kind.",
    )
    parser.add_argument(
        "--iterations",
        type=int,
        default=0,
        help="Run a single runtime per kind for N iterations and exit (0 means run the pool forever).",
    )
    args = parser.parse_args()
    logging.basicConfig(level=os.environ.get("TV_LOG_LEVEL", "INFO").upper())

    services = build_services_from_env()
    kinds = args.kind or list(WORK_KINDS)
    if args.iterations > 0:
        stats = {
            kind: create_worker_runtime(services, kind=kind).run_forever(stop_after_iterations=args.iterations)
            for kind in kinds
        }
        print(json.dumps({"success": True, "stats": stats}, ensure_ascii=True))
        return 0

    pool = create_worker_pool_from_env(services, kinds=kinds)
    pool.start()
    try:
        while pool.running:
            time.sleep(1.0)
    except KeyboardInterrupt:
        pass
    finally:
        pool.stop()
    print(json.dumps({"success": True, "workers": len(pool.runtimes)}, ensure_ascii=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
