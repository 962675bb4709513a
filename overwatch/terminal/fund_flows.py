"""
OVERWATCH FUND FLOW ADAPTERS
iShares spot ETF holdings (IBIT / ETHA), XRP ETF flows and XRP supply split

iShares publishes a holdings CSV per fund. Net flow is not in the file, so
it is derived from the day-over-day change in shares outstanding times NAV
and kept in a rolling daily_flow_history.

xrp-insights.com exposes the XRP ETF complex (per-fund flows) and the
supply distribution (escrow, exchanges, DeFi, treasuries).
"""

import re
import logging
from datetime import datetime
from typing import Dict, Any, Optional, List, Tuple

from overwatch import config
from overwatch.shared.resilience import resilient_call
from overwatch.shared.validation import SchemaValidator, ETF_FLOW_DAY_SCHEMA
from overwatch.terminal.models import utc_timestamp
from overwatch.terminal.sources import SourceAdapter, SourceShapeError

logger = logging.getLogger(__name__)


ISHARES_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
                  "(KHTML, like Gecko) Chrome/121.0.0.0 Safari/537.36",
    "Accept": "text/plain,text/csv,*/*",
}

XRP_INSIGHTS_HEADERS = {
    "Accept": "application/json",
    "Referer": "https://xrp-insights.com/",
}

AS_OF_PATTERN = re.compile(r'Fund Holdings as of[^"]*"([^"]+)"', re.IGNORECASE)
SHARES_PATTERN = re.compile(r'Shares Outstanding[,"\s]+"?([0-9,.]+)"?', re.IGNORECASE)


def _parse_number(text: str) -> float:
    return float(text.replace(",", ""))


def _parse_as_of(text: str) -> Optional[str]:
    """'Feb 20, 2026' -> '2026-02-20'"""
    text = text.strip()
    for fmt in ("%b %d, %Y", "%B %d, %Y", "%m/%d/%Y", "%Y-%m-%d"):
        try:
            return datetime.strptime(text, fmt).strftime("%Y-%m-%d")
        except ValueError:
            continue
    logger.warning(f"Unrecognized iShares as-of date: {text!r}")
    return None


def _sum(rows: List[Dict[str, Any]], key: str) -> float:
    return sum(row.get(key) or 0 for row in rows)


# =============================================================================
# ISHARES SPOT ETFs
# =============================================================================

class ISharesETFAdapter(SourceAdapter):
    """One iShares fund: AUM, shares outstanding and derived daily flow"""

    provider = "ishares"

    def __init__(self, ticker: str, session=None):
        super().__init__(session)
        fund = config.ISHARES_FUNDS[ticker]
        self.ticker = ticker
        self.source_id = ticker.lower()
        self.slot = fund["slot"]
        self.csv_url = fund["csv_url"]
        self.asset_pattern = re.compile(fund["asset_pattern"], re.IGNORECASE)

    def default_record(self) -> Dict[str, Any]:
        return {
            "last_fetched": None,
            "source": "none",
            "ticker": self.ticker,
            "as_of_date": None,
            "total_aum": None,
            "shares_outstanding": None,
            "nav_per_share": None,
            "daily_flow": None,
            "weekly_net_flow": None,
            "daily_flow_history": [],
        }

    @resilient_call("ishares")
    def _fetch_csv(self) -> str:
        return self._get_text(self.csv_url, headers=ISHARES_HEADERS, timeout=15)

    def parse_holdings(self, csv_text: str) -> Tuple[Optional[str], float, float]:
        """Extract (as_of_date, shares_outstanding, total_aum) from the CSV"""
        as_of = AS_OF_PATTERN.search(csv_text)
        shares = SHARES_PATTERN.search(csv_text)
        asset = self.asset_pattern.search(csv_text)
        if not shares or not asset:
            raise SourceShapeError(f"Could not parse {self.ticker} CSV")

        shares_outstanding = _parse_number(shares.group(1))
        if shares_outstanding <= 0:
            raise SourceShapeError(f"{self.ticker} shares outstanding is zero")
        return (
            _parse_as_of(as_of.group(1)) if as_of else None,
            shares_outstanding,
            _parse_number(asset.group(1)),
        )

    def _fetch(self, previous: Any) -> Tuple[Dict[str, Any], str]:
        as_of_date, shares_outstanding, total_aum = self.parse_holdings(self._fetch_csv())
        nav_per_share = total_aum / shares_outstanding

        prev = previous if isinstance(previous, dict) else {}
        history = list(prev.get("daily_flow_history") or [])
        daily_flow = None

        if as_of_date and as_of_date != prev.get("as_of_date") and prev.get("shares_outstanding") is not None:
            daily_flow = (shares_outstanding - prev["shares_outstanding"]) * nav_per_share
            history.append({"date": as_of_date, "flow": daily_flow})
            history = history[-config.ISHARES_HISTORY_LENGTH:]
        elif history:
            # Same as-of date: re-use the last known flow
            daily_flow = history[-1].get("flow")

        last5 = history[-5:]
        weekly_net_flow = sum(h.get("flow") or 0 for h in last5) if last5 else None

        record = {
            "last_fetched": utc_timestamp(),
            "source": f"ishares-{self.source_id}",
            "ticker": self.ticker,
            "as_of_date": as_of_date,
            "total_aum": total_aum,
            "shares_outstanding": shares_outstanding,
            "nav_per_share": nav_per_share,
            "daily_flow": daily_flow,
            "weekly_net_flow": weekly_net_flow,
            "daily_flow_history": history,
        }

        flow_text = f"{daily_flow / 1e6:+.0f}M" if daily_flow is not None else "N/A (first run)"
        logger.info(
            f"[{self.source_id}] AUM=${total_aum / 1e9:.2f}B | "
            f"shares={shares_outstanding / 1e6:.0f}M | daily_flow={flow_text}"
        )
        return record, record["source"]


# =============================================================================
# XRP ETF COMPLEX
# =============================================================================

class XRPETFAdapter(SourceAdapter):
    """XRP spot ETF flows from xrp-insights (14 days, per-fund breakdown)"""

    source_id = "etf"
    slot = "etf"
    provider = "xrp_insights"

    def default_record(self) -> Dict[str, Any]:
        return {
            "last_fetched": None,
            "source": "none",
            "total_aum": None,
            "total_xrp_locked": None,
            "daily_net_flow": None,
            "daily_inflow": None,
            "daily_outflow": None,
            "funds": [],
        }

    @resilient_call("xrp_insights")
    def _fetch_flows(self) -> Dict[str, Any]:
        return self._get_json(
            f"{config.XRP_INSIGHTS_BASE}/flows",
            params={"days": 14},
            headers=XRP_INSIGHTS_HEADERS,
            timeout=15,
        )

    def _fetch(self, previous: Any) -> Tuple[Dict[str, Any], str]:
        data = self._fetch_flows()
        if not isinstance(data, dict) or not data.get("success"):
            raise SourceShapeError("Unexpected response shape from xrp-insights API")
        daily = data.get("daily")
        if not isinstance(daily, list) or not daily:
            raise SourceShapeError("Unexpected response shape from xrp-insights API")
        for day in daily:
            check = SchemaValidator.validate_schema(day, ETF_FLOW_DAY_SCHEMA, "etf.daily", strict_types=True)
            if not check.valid:
                raise SourceShapeError(check.first_error())

        all_days = sorted(daily, key=lambda d: d["date"], reverse=True)
        trading_days = [d for d in all_days if not d.get("isWeekend")]
        if not trading_days:
            raise SourceShapeError("No trading days in xrp-insights response")

        latest = trading_days[0]
        latest_with_flow = next(
            (d for d in trading_days if (d.get("inflow") or 0) != 0 or (d.get("outflow") or 0) != 0),
            latest,
        )
        week5 = trading_days[:5]

        funds = [
            {
                "ticker": f.get("ticker"),
                "issuer": f.get("issuer"),
                "aum": f.get("aum"),
                "xrp_locked": f.get("xrpHoldings"),
                "daily_flow": f.get("flow"),
            }
            for f in latest.get("etfFlows") or []
        ]

        record = {
            "last_fetched": utc_timestamp(),
            "source": "xrp-insights",
            "as_of_date": latest["date"],
            "total_aum": latest.get("totalAUM"),
            "total_xrp_locked": latest.get("totalXRP"),
            "daily_net_flow": latest_with_flow.get("netFlow"),
            "daily_inflow": latest_with_flow.get("inflow"),
            "daily_outflow": latest_with_flow.get("outflow"),
            "flow_date": latest_with_flow.get("date"),
            "weekly_net_flow": _sum(week5, "netFlow"),
            "weekly_inflow": _sum(week5, "inflow"),
            "weekly_outflow": _sum(week5, "outflow"),
            "weekly_start_date": week5[-1]["date"],
            "cum_net_flow": _sum(all_days, "netFlow"),
            "cum_inflow": _sum(all_days, "inflow"),
            "funds": funds,
        }

        aum = record["total_aum"]
        logger.info(
            f"[etf] AUM={'$%.1fM' % (aum / 1e6) if aum is not None else 'N/A'} | "
            f"5D flow={record['weekly_net_flow'] / 1e6:.2f}M | funds={len(funds)}"
        )
        return record, "xrp-insights"


# =============================================================================
# XRP SUPPLY DISTRIBUTION
# =============================================================================

DEFAULT_TOTAL_SUPPLY = 100_000_000_000


class SupplyAdapter(SourceAdapter):
    """Escrow, exchange, DeFi and treasury holdings from xrp-insights"""

    source_id = "supply"
    slot = "supply"
    provider = "xrp_insights"

    def default_record(self) -> Dict[str, Any]:
        return {
            "last_fetched": None,
            "source": "none",
            "total_supply": DEFAULT_TOTAL_SUPPLY,
            "circ_supply": None,
            "escrow": None,
            "exchanges": None,
            "defi_total": None,
            "corp_treasuries": None,
            "amm_locked": None,
            "xrp_burned": None,
        }

    @resilient_call("xrp_insights")
    def _fetch_allocations(self) -> Dict[str, Any]:
        return self._get_json(
            f"{config.XRP_INSIGHTS_BASE}/allocations",
            headers={**XRP_INSIGHTS_HEADERS, "Referer": "https://xrp-insights.com/xrp-radar"},
            timeout=15,
        )

    def _fetch(self, previous: Any) -> Tuple[Dict[str, Any], str]:
        payload = self._fetch_allocations()
        if not isinstance(payload, dict) or not payload.get("success") or not isinstance(payload.get("data"), dict):
            raise SourceShapeError("Unexpected response shape")
        d = payload["data"]

        def nested(*keys):
            node = d
            for key in keys:
                if not isinstance(node, dict):
                    return None
                node = node.get(key)
            return node

        total_supply = d.get("totalSupply")
        record = {
            "last_fetched": utc_timestamp(),
            "source": "xrp-insights",
            "total_supply": total_supply if total_supply is not None else DEFAULT_TOTAL_SUPPLY,
            "circ_supply": d.get("circulatingSupply"),
            "escrow": nested("supplyBreakdown", "escrow", "amount"),
            "exchanges": nested("exchanges", "totalXrp"),
            "defi_total": nested("defi", "totalXrp"),
            "corp_treasuries": nested("treasuries", "totalXrp"),
            "amm_locked": nested("infrastructureDemand", "ammXrpLocked"),
            "xrp_burned": d.get("xrpBurned"),
        }

        escrow = record["escrow"]
        exchanges = record["exchanges"]
        logger.info(
            f"[supply] Escrow={f'{escrow / 1e9:.2f}B' if escrow else 'N/A'} | "
            f"Exchanges={f'{exchanges / 1e9:.1f}B' if exchanges else 'N/A'}"
        )
        return record, "xrp-insights"
