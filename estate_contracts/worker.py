"""
Standalone sweep worker.

    python -m estate_contracts.worker            # loop forever
    python -m estate_contracts.worker --once     # single tick, then exit
    python -m estate_contracts.worker --once --dry-run
"""
from __future__ import annotations

import argparse
import logging
import signal
import sys

from estate_contracts.core.config import get_settings
from estate_contracts.core.logging import configure_logging
from estate_contracts.db.session import SessionLocal
from estate_contracts.services.scheduler import build_scheduler

logger = logging.getLogger("estate_contracts.worker")


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Run contract / escrow sweeps.")
    parser.add_argument("--once", action="store_true", help="run a single tick and exit")
    parser.add_argument("--dry-run", action="store_true", help="report candidates without transitioning them")
    args = parser.parse_args(argv)

    settings = get_settings()
    configure_logging(settings)
    scheduler = build_scheduler(settings, SessionLocal)

    if args.once or args.dry_run:
        result = scheduler.run_once(dry_run=args.dry_run)
        for report in result["sweeps"].values():
            logger.info("sweep report", extra=report.summary())
        failed = sum(r.failed for r in result["sweeps"].values())
        return 1 if failed else 0

    def _shutdown(signum, frame):
        logger.info("shutdown requested", extra={"signal": signum})
        scheduler.stop()

    signal.signal(signal.SIGTERM, _shutdown)
    signal.signal(signal.SIGINT, _shutdown)

    scheduler.start()
    scheduler.wait()
    return 0


if __name__ == "__main__":
    sys.exit(main())
