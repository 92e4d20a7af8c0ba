"""
Start an RQ worker that processes the package parse chain.

Usage:
    REDIS_URL=redis://localhost:6379/0 python3 run_worker.py [--burst]
"""

import argparse
import os

from docs_parser.logging_config import setup_logging
from docs_parser.packages import RQJobQueue, WorkerConfig


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--burst", action="store_true", help="Exit once the queue is empty")
    args = parser.parse_args()

    setup_logging()
    queue = RQJobQueue(
        WorkerConfig.from_env(),
        redis_url=os.getenv("REDIS_URL", "redis://localhost:6379/0"),
        queue_name=os.getenv("PARSE_QUEUE", "parse-jobs"),
    )
    queue.work(burst=args.burst)


if __name__ == "__main__":
    main()
