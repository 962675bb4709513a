"""
OVERWATCH SCHEDULER
Long-running alternative to cron / CI

Schedule (UTC):
- Fetch cycle: every 4 hours (00, 04, 08, 12, 16, 20)
- Thesis analysis: 07:00 and 19:00

Applying an analysis always stays manual (overwatch.analyst.apply_analysis).

Can be run as:
- Standalone process with APScheduler
- One-shot fetch (--once), e.g. from cron
"""

import time
import logging
from typing import Optional

from overwatch.config import OverwatchPaths

logger = logging.getLogger(__name__)

FETCH_HOURS = "0,4,8,12,16,20"
ANALYSIS_HOURS = "7,19"


# =============================================================================
# JOBS
# =============================================================================

def run_fetch_job(paths: OverwatchPaths, push: bool = True) -> Optional[dict]:
    """One fetch cycle; errors are logged so the scheduler keeps running"""
    from overwatch.terminal.fetch_cycle import FetchCycle

    try:
        report = FetchCycle(paths).run(push=push)
    except Exception as e:
        logger.exception(f"Fetch cycle failed: {e}")
        return None
    logger.info(f"Fetch cycle complete: {report.to_dict()}")
    return report.to_dict()


def run_analysis_job(paths: OverwatchPaths) -> int:
    from overwatch.analyst.thesis_analyst import run_analysis

    try:
        code = run_analysis(paths)
    except Exception as e:
        logger.exception(f"Analysis failed: {e}")
        return 1
    logger.info(f"Analysis finished with exit code {code}")
    return code


# =============================================================================
# APSCHEDULER IMPLEMENTATION
# =============================================================================

def start_scheduler(paths: OverwatchPaths, push: bool = True):
    """Start the background scheduler and return it"""
    from apscheduler.schedulers.background import BackgroundScheduler
    from apscheduler.triggers.cron import CronTrigger

    scheduler = BackgroundScheduler(timezone="UTC")

    scheduler.add_job(
        run_fetch_job,
        CronTrigger(hour=FETCH_HOURS, minute=0, timezone="UTC"),
        kwargs={"paths": paths, "push": push},
        id="fetch_cycle",
        name="Fetch cycle every 4h",
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        run_analysis_job,
        CronTrigger(hour=ANALYSIS_HOURS, minute=0, timezone="UTC"),
        kwargs={"paths": paths},
        id="thesis_analysis",
        name="Thesis analysis at 07:00 and 19:00",
        max_instances=1,
        coalesce=True,
    )

    scheduler.start()
    logger.info("Scheduler started")
    logger.info(f"Jobs: {[job.name for job in scheduler.get_jobs()]}")
    return scheduler


# =============================================================================
# COMMAND LINE INTERFACE
# =============================================================================

def main():
    import argparse
    from dotenv import load_dotenv

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    load_dotenv()

    parser = argparse.ArgumentParser(description="Run the Overwatch jobs on a schedule")
    parser.add_argument("--root", help="Repository root (default: OVERWATCH_ROOT or cwd)")
    parser.add_argument("--once", action="store_true", help="Run one fetch cycle and exit")
    parser.add_argument("--no-push", action="store_true", help="Skip git commit/push")
    args = parser.parse_args()

    paths = OverwatchPaths.from_env(args.root)

    if args.once:
        result = run_fetch_job(paths, push=not args.no_push)
        exit(0 if result is not None else 1)

    scheduler = start_scheduler(paths, push=not args.no_push)
    try:
        while True:
            time.sleep(60)
    except KeyboardInterrupt:
        scheduler.shutdown()
        print("Scheduler stopped")


if __name__ == "__main__":
    main()
