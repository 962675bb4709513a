"""
OVERWATCH FETCH CYCLE
Fetch every source, reconcile with the previous state, persist, escalate

Execution order within one cycle:
1. CoinGecko adapters run one after another (shared free-tier limit, fixed
   delay between calls) while every other adapter runs concurrently.
2. The three yield series run sequentially once the fan-out has settled.
3. reconcile() builds the new state; it is written whole.
4. If SYSTEMIC_FAILURE_THRESHOLD or more sources failed, exactly one
   operator notification is sent.
5. The state file is committed and pushed (never fatal).

Partial source failure is normal operation: the process exits 0.

Usage:
    python -m overwatch.terminal.fetch_cycle
    python -m overwatch.terminal.fetch_cycle --no-push
"""

import time
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Any, Optional, List

from overwatch import config
from overwatch.config import OverwatchPaths
from overwatch.notifier import TelegramNotifier
from overwatch.shared.resilience import get_system_status
from overwatch.terminal.models import FetchResult, get_path, failed_sources, utc_timestamp
from overwatch.terminal.reconcile import reconcile, summarize
from overwatch.terminal.state_store import StateStore
from overwatch.terminal.publish import GitPublisher, commit_stamp
from overwatch.terminal.sources import (
    SourceAdapter,
    XRPPriceAdapter,
    RLUSDAdapter,
    FearGreedAdapter,
    USDJPYAdapter,
    JapanTenYearAdapter,
    NewsAdapter,
    brent_adapter,
    us_ten_year_adapter,
)
from overwatch.terminal.fund_flows import ISharesETFAdapter, XRPETFAdapter, SupplyAdapter
from overwatch.terminal.ledger_metrics import XRPLMetricsAdapter

logger = logging.getLogger(__name__)


# =============================================================================
# ADAPTER PLAN
# =============================================================================

@dataclass
class AdapterPlan:
    """Which adapters run how"""
    rate_limited: List[SourceAdapter] = field(default_factory=list)   # sequential, delayed
    concurrent: List[SourceAdapter] = field(default_factory=list)     # fan-out
    sequential: List[SourceAdapter] = field(default_factory=list)     # after fan-out

    def all(self) -> List[SourceAdapter]:
        return self.rate_limited + self.concurrent + self.sequential


def default_plan(session=None) -> AdapterPlan:
    return AdapterPlan(
        rate_limited=[XRPPriceAdapter(session), RLUSDAdapter(session)],
        concurrent=[
            FearGreedAdapter(session),
            USDJPYAdapter(session),
            NewsAdapter(session),
            XRPETFAdapter(session),
            SupplyAdapter(session),
            ISharesETFAdapter("IBIT", session),
            ISharesETFAdapter("ETHA", session),
            XRPLMetricsAdapter(session),
        ],
        sequential=[
            JapanTenYearAdapter(session),
            brent_adapter(session),
            us_ten_year_adapter(session),
        ],
    )


# =============================================================================
# CYCLE
# =============================================================================

@dataclass
class CycleReport:
    """Outcome of one fetch cycle"""
    state: Dict[str, Any]
    results: List[FetchResult]
    failed: List[str]
    escalated: bool = False
    pushed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "updated": self.state.get("updated"),
            "sources": len(self.results),
            "failed": self.failed,
            "escalated": self.escalated,
            "pushed": self.pushed,
        }


def format_escalation(failed: List[str], now: Optional[datetime] = None) -> str:
    return (
        f"⚠️ <b>OVERWATCH: {len(failed)} data sources failed</b>\n\n"
        f"Failed: {', '.join(failed)}\n"
        f"Cycle: {utc_timestamp(now)}"
    )


class FetchCycle:
    """One pass of fetch -> reconcile -> persist -> escalate -> publish"""

    def __init__(
        self,
        paths: OverwatchPaths,
        plan: Optional[AdapterPlan] = None,
        notifier: Optional[TelegramNotifier] = None,
        publisher: Optional[GitPublisher] = None,
        failure_threshold: Optional[int] = None,
        rate_limit_delay: Optional[float] = None,
        max_workers: int = 10,
    ):
        self.paths = paths
        self.store = StateStore(paths.state)
        self.plan = plan or default_plan()
        self.notifier = notifier or TelegramNotifier()
        self.publisher = publisher or GitPublisher(paths.root)
        self.failure_threshold = (
            config.SYSTEMIC_FAILURE_THRESHOLD if failure_threshold is None else failure_threshold
        )
        self.rate_limit_delay = (
            config.COINGECKO_DELAY_SECONDS if rate_limit_delay is None else rate_limit_delay
        )
        self.max_workers = max_workers

    def _run_rate_limited(self, previous_state: Dict[str, Any]) -> List[FetchResult]:
        results = []
        for i, adapter in enumerate(self.plan.rate_limited):
            if i > 0:
                time.sleep(self.rate_limit_delay)
            results.append(adapter.fetch(get_path(previous_state, adapter.slot)))
        return results

    def collect(self, previous_state: Dict[str, Any]) -> List[FetchResult]:
        """Run every adapter; results come back in plan order"""
        by_adapter: Dict[int, FetchResult] = {}

        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures = {}
            if self.plan.rate_limited:
                futures[executor.submit(self._run_rate_limited, previous_state)] = None
            for adapter in self.plan.concurrent:
                future = executor.submit(adapter.fetch, get_path(previous_state, adapter.slot))
                futures[future] = adapter

            for future in as_completed(futures):
                adapter = futures[future]
                if adapter is None:
                    for limited, result in zip(self.plan.rate_limited, future.result()):
                        by_adapter[id(limited)] = result
                else:
                    by_adapter[id(adapter)] = future.result()

        for adapter in self.plan.sequential:
            by_adapter[id(adapter)] = adapter.fetch(get_path(previous_state, adapter.slot))

        return [by_adapter[id(a)] for a in self.plan.all()]

    def escalate(self, failed: List[str], now: Optional[datetime] = None) -> bool:
        """Notify the operator once when too many sources failed"""
        if len(failed) < self.failure_threshold:
            return False
        logger.warning(f"{len(failed)} sources failed this cycle: {', '.join(failed)}")
        self.notifier.send(format_escalation(failed, now))
        return True

    def run(self, push: bool = True, now: Optional[datetime] = None) -> CycleReport:
        previous = self.store.load()
        results = self.collect(previous)

        now = now or datetime.now(timezone.utc)
        state = reconcile(previous, results, now=now)
        self.store.save(state)

        failed = failed_sources(results)
        report = CycleReport(state=state, results=results, failed=failed)
        report.escalated = self.escalate(failed, now)

        if push:
            report.pushed = self.publisher.publish(
                [self.paths.state.name], f"auto: data update {commit_stamp(now)}"
            )
        return report


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

    parser = argparse.ArgumentParser(description="Fetch live data into dashboard-data.json")
    parser.add_argument("--root", help="Repository root (default: OVERWATCH_ROOT or cwd)")
    parser.add_argument("--no-push", action="store_true", help="Skip git commit/push")
    args = parser.parse_args()

    print(f"\n{'='*60}")
    print("OVERWATCH TERMINAL - DATA FETCH")
    print(f"Started: {utc_timestamp()}")
    print(f"{'='*60}")

    try:
        report = FetchCycle(OverwatchPaths.from_env(args.root)).run(push=not args.no_push)
    except Exception as e:
        logger.exception(f"FATAL: {e}")
        exit(1)

    print(f"\n{'-'*60}")
    for line in summarize(report.state):
        print(line)
    print(f"Failed sources:  {', '.join(report.failed) or 'none'}")
    circuits = get_system_status()["circuit_breakers"]
    tripped = [name for name, cb in circuits.items() if cb["state"] != "closed"]
    print(f"Open circuits:   {', '.join(tripped) or 'none'}")
    print(f"{'-'*60}")
    print(f"Done: {utc_timestamp()}")


if __name__ == "__main__":
    main()
