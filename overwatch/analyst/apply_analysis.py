"""
OVERWATCH APPLY ANALYSIS
Apply an approved analysis-output.json to dashboard-data.json and index.html

Run only after the drafted analysis has been reviewed. Steps:
1. Back up dashboard-data.json and index.html
2. Apply the opinion (overwatch.analyst.patch_engine)
3. Write both files; on failure restore both from backup and exit 1
4. Persist the event dedup history and append a changelog block

Usage:
    python -m overwatch.analyst.apply_analysis
"""

import logging
from datetime import datetime, timezone
from typing import Optional, List

from overwatch.config import OverwatchPaths
from overwatch.terminal.models import utc_timestamp
from overwatch.terminal.state_store import (
    read_json,
    write_json,
    atomic_write_text,
    backup_file,
    restore_file,
)
from overwatch.analyst.patch_engine import apply_opinion, PatchResult

logger = logging.getLogger(__name__)


class PatchWriteError(Exception):
    """Writing the patched files failed; originals were restored from backup"""
    pass


# =============================================================================
# SIDE FILES
# =============================================================================

def load_events_history(paths: OverwatchPaths) -> List[str]:
    if not paths.events_history.exists():
        return []
    try:
        data = read_json(paths.events_history)
    except (OSError, ValueError) as e:
        logger.warning(f"Could not read events-history.json: {e}")
        return []
    return [str(k) for k in data] if isinstance(data, list) else []


def save_events_history(paths: OverwatchPaths, history: List[str]) -> None:
    try:
        write_json(paths.events_history, history)
    except OSError as e:
        logger.warning(f"Could not write events-history.json: {e}")


def append_changelog(paths: OverwatchPaths, entries: List[str], now: Optional[datetime] = None) -> None:
    """One '--- <timestamp> ---' block per invocation"""
    if not entries:
        logger.info("No changes to log")
        return
    block = f"\n--- {utc_timestamp(now)} ---\n" + "\n".join(entries) + "\n"
    try:
        paths.changelog.parent.mkdir(parents=True, exist_ok=True)
        with open(paths.changelog, "a", encoding="utf-8") as f:
            f.write(block)
    except OSError as e:
        logger.warning(f"Could not write changelog: {e}")
        return
    logger.info(f"{len(entries)} changelog entr{'y' if len(entries) == 1 else 'ies'} written")


# =============================================================================
# APPLY
# =============================================================================

def _restore_all(paths: OverwatchPaths, html_backed_up: bool) -> None:
    restore_file(paths.state_backup, paths.state)
    if html_backed_up:
        restore_file(paths.html_backup, paths.html)


def apply_analysis(paths: OverwatchPaths, now: Optional[datetime] = None) -> Optional[PatchResult]:
    """
    Apply the pending opinion. Returns None when an input is missing or
    unreadable; raises PatchWriteError when writing failed and the
    originals were restored.
    """
    now = now or datetime.now(timezone.utc)

    for required in (paths.analysis, paths.state):
        if not required.exists():
            logger.error(f"{required.name} not found")
            return None
    try:
        opinion = read_json(paths.analysis)
        state = read_json(paths.state)
    except (OSError, ValueError) as e:
        logger.error(f"Could not parse input: {e}")
        return None
    if not isinstance(opinion, dict) or not isinstance(state, dict):
        logger.error("analysis-output.json and dashboard-data.json must hold JSON objects")
        return None

    page = paths.html.read_text(encoding="utf-8") if paths.html.exists() else None

    backup_file(paths.state, paths.state_backup)
    html_backed_up = backup_file(paths.html, paths.html_backup)

    result = apply_opinion(opinion, state, page, load_events_history(paths), now)

    try:
        write_json(paths.state, result.state)
        logger.info(f"Wrote {paths.state.name} ({result.change_count} change(s))")
        if result.html_changed:
            atomic_write_text(paths.html, result.html)
            logger.info(f"Wrote {paths.html.name} ({result.events_inserted} event(s), "
                        f"{result.html_changes} text region(s))")
    except (OSError, TypeError, ValueError) as e:
        logger.error(f"Write failed, restoring backups: {e}")
        _restore_all(paths, html_backed_up)
        raise PatchWriteError(str(e)) from e

    if result.events_inserted:
        save_events_history(paths, result.history)
    append_changelog(paths, result.changelog, now)
    return result


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

    parser = argparse.ArgumentParser(description="Apply an approved analysis to the dashboard")
    parser.add_argument("--root", help="Repository root (default: OVERWATCH_ROOT or cwd)")
    args = parser.parse_args()

    try:
        result = apply_analysis(OverwatchPaths.from_env(args.root))
    except PatchWriteError as e:
        logger.error(f"FATAL: {e}")
        exit(1)
    if result is None:
        exit(1)

    print(f"\n{'-'*60}")
    print(f"Scorecard:       {result.scorecard_changes} change(s)")
    print(f"Kill switches:   {result.kill_switch_changes} change(s)")
    print(f"Probability:     {'updated' if result.probability_changed else 'unchanged'}")
    print(f"Events inserted: {result.events_inserted}")
    print(f"HTML regions:    {result.html_changes}")
    print(f"Total changes:   {result.change_count}")
    print(f"{'-'*60}")


if __name__ == "__main__":
    main()
