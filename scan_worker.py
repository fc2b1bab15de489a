"""
Start an RQ worker that runs page recognition jobs.

Usage:
    python3 scan_worker.py --redis-url redis://localhost:6379/0 --queue page-scans

Recognition settings (engine, model, API key, callback URL) travel with each
queued job; see api/dependencies.py:get_worker_config.
"""

import argparse
import logging
import os

from notebook_scanner.scanning import RQRecognitionQueue


def main():
    parser = argparse.ArgumentParser(description="Run the page recognition worker")
    parser.add_argument("--redis-url", default=os.getenv("REDIS_URL", "redis://localhost:6379/0"))
    parser.add_argument("--queue", default=os.getenv("RECOGNITION_QUEUE", "page-scans"))
    args = parser.parse_args()

    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    RQRecognitionQueue(args.redis_url, queue_name=args.queue).work()


if __name__ == "__main__":
    main()
