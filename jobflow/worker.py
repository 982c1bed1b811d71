"""
Automation worker process entrypoint.
"""

from __future__ import annotations

import datetime
import logging
import os
import time
from typing import Callable, Optional

from sqlalchemy.orm import Session

from .core.config import settings
from .core.db import SessionLocal
from .services.event_ingest import emit_daily_time_events, process_pending_events

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("worker")


def run_once(
    *,
    session_factory: Optional[Callable[[], Session]] = None,
    now: Optional[datetime.datetime] = None,
    max_workers: Optional[int] = None,
) -> int:
    """One worker tick. Returns the number of events handed to the engine."""
    session_factory = session_factory or SessionLocal
    with session_factory() as db:
        emit_daily_time_events(db, now=now)
    results = process_pending_events(
        session_factory=session_factory,
        limit=settings.worker_event_batch_size,
        now=now,
        max_workers=max_workers,
    )
    if results:
        runs = sum(1 for outcomes in results.values() for o in outcomes if o.created)
        logger.info("Processed %s event(s), %s new rule run(s)", len(results), runs)
    return len(results)


def main() -> int:
    interval = settings.worker_interval_sec
    logger.info("Automation worker started pid=%s interval=%ss", os.getpid(), interval)

    while True:
        try:
            run_once()
            time.sleep(interval)
        except KeyboardInterrupt:
            return 0
        except Exception:
            logger.exception("Worker loop error")
            time.sleep(interval)


if __name__ == "__main__":
    raise SystemExit(main())
