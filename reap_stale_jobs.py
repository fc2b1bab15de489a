"""
Fail scan jobs that have been pending or processing for too long.

Usage:
    python3 reap_stale_jobs.py --timeout 600            # one sweep
    python3 reap_stale_jobs.py --timeout 600 --every 60 # sweep forever

Run it from cron or as a sidecar; the service itself never waits on jobs.
"""

import argparse
import logging
import os
import time
from datetime import timedelta

from notebook_scanner.scanning import ScanJobService, SqlAlchemyScanRepository

logger = logging.getLogger("reap_stale_jobs")


def sweep(service: ScanJobService, timeout_seconds: int) -> int:
    reaped = service.reap_stale(timedelta(seconds=timeout_seconds))
    for job in reaped:
        logger.info("Timed out scan job %s for page %s", job.id, job.page_id)
    return len(reaped)


def main():
    parser = argparse.ArgumentParser(description="Time out stuck scan jobs")
    parser.add_argument("--database-url", default=os.getenv("DATABASE_URL", "sqlite+pysqlite:///./data/notebook_scanner.db"))
    parser.add_argument("--timeout", type=int, default=int(os.getenv("SCAN_TIMEOUT_SECONDS", "600")), help="Seconds without progress")
    parser.add_argument("--every", type=int, default=0, help="Repeat every N seconds (0 = run once)")
    args = parser.parse_args()

    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    service = ScanJobService(SqlAlchemyScanRepository(args.database_url))
    while True:
        count = sweep(service, args.timeout)
        logger.info("Reaped %s stale scan job(s)", count)
        if args.every <= 0:
            break
        time.sleep(args.every)


if __name__ == "__main__":
    main()
