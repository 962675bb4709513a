"""
OVERWATCH RECONCILIATION ENGINE
Merges one cycle of adapter results with the previously persisted state

reconcile(previous_state, results) -> new_state

Field ownership:
- Live metrics   : owned by adapters, replaced by whatever the adapter
                   returned (fresh value, or its previous-value fallback)
- Manual fields  : owned by the operator, carried forward; documented
                   defaults only fill a field that is absent or null
- Editorial      : owned by the approval/patch engine, carried forward
- Derived        : recomputed every cycle, divisions guarded (null, never
                   NaN or Infinity)
- health_check   : replaced wholesale from this cycle's results

Every top-level key of the previous state survives into the new one.
The function is pure apart from reading the clock when `now` is omitted.
"""

import copy
import math
import logging
from datetime import datetime
from typing import Dict, Any, Optional, List

from overwatch import config
from overwatch.terminal.models import FetchResult, set_path, get_path, utc_timestamp

logger = logging.getLogger(__name__)


# =============================================================================
# DEFAULTS
# =============================================================================

# Order of the documented top-level keys in the written file
STATE_KEY_ORDER = [
    "updated", "auto_fetched", "xrp", "rlusd", "etf", "btc_etf", "eth_etf",
    "supply", "xrpl_metrics", "macro", "news", "manual", "kill_switches",
    "thesis_scores", "health_check", "bear_case", "probability", "last_analysis",
]

MACRO_KEYS = ["usd_jpy", "jpn_10y", "us_10y_yield", "brent_crude", "fear_greed"]

MANUAL_DEFAULTS = {
    "odl_volume_annualized": None,
    "xrp_etf_aum": None,
    "rlusd_circulation": None,
    "permissioned_dex_institutions": None,
    "clarity_act_status": "Pending",
    "_last_manual_update": None,
}

DEFAULT_THESIS_SCORES = {
    "regulatory": {"status": "CONFIRMED", "confidence": "high"},
    "institutional_custody": {"status": "STRONG", "confidence": "high"},
    "etf_adoption": {"status": "CONFIRMED", "confidence": "high"},
    "xrpl_infrastructure": {"status": "ACCELERATING", "confidence": "high"},
    "stablecoin_adoption": {"status": "GROWING", "confidence": "medium"},
    "odl_volume": {"status": "NEEDS_DATA", "confidence": "low"},
    "japan_adoption": {"status": "FAVORABLE", "confidence": "medium"},
    "macro_environment": {"status": "STRESSED", "confidence": "medium"},
}

EDITORIAL_KEYS = ["bear_case", "probability", "last_analysis"]

# Statuses the engine computes; anything else on a kill switch was set editorially
COMPUTED_KILL_SWITCH_STATUSES = {"NEEDS_DATA", "HIT", "TRACKING", "PENDING"}


# =============================================================================
# GUARDED ARITHMETIC
# =============================================================================

def _number(value: Any) -> Optional[float]:
    """Finite numeric value or None"""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    return value


def safe_divide(numerator: Any, denominator: Any) -> Optional[float]:
    """numerator / denominator, or None when either side is missing or zero"""
    n, d = _number(numerator), _number(denominator)
    if n is None or d is None or d == 0:
        return None
    result = n / d
    return result if math.isfinite(result) else None


def pct_of_target(current: Any, target: Any) -> Optional[int]:
    ratio = safe_divide(current, target)
    return round(ratio * 100) if ratio is not None else None


def _dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _first_present(*values: Any) -> Any:
    for value in values:
        if value is not None:
            return value
    return None


# =============================================================================
# DERIVED FIELDS
# =============================================================================

def derive_dex_volume(xrpl_metrics: Any, xrp: Any) -> None:
    if isinstance(xrpl_metrics, dict):
        volume = safe_divide(xrpl_metrics.get("dex_volume_24h_usd"), _dict(xrp).get("price"))
        xrpl_metrics["dex_volume_24h_xrp"] = round(volume) if volume is not None else None


def derive_etf_supply(etf: Any, xrp: Any) -> None:
    """Circulating supply from market cap / price, and ETF share of it"""
    if not isinstance(etf, dict):
        return
    xrp = _dict(xrp)
    circ = safe_divide(xrp.get("market_cap"), xrp.get("price"))
    etf["circ_supply"] = round(circ) if circ is not None else None
    share = safe_divide(etf.get("total_xrp_locked"), circ)
    etf["pct_supply"] = round(share * 100, 3) if share is not None else None
    funds = etf.get("funds")
    etf["num_funds"] = len(funds) if isinstance(funds, list) else 0


def derive_weekly_flow(fund: Any) -> None:
    """Sum of the last five daily flows, None when there is no history"""
    if not isinstance(fund, dict):
        return
    history = fund.get("daily_flow_history")
    flows = [_number(h.get("flow")) for h in history[-5:] if isinstance(h, dict)] if isinstance(history, list) else []
    fund["weekly_net_flow"] = sum(f for f in flows if f is not None) if flows else None


def _threshold_status(current: Any, target: Any) -> str:
    value = _number(current)
    if value is None:
        return "NEEDS_DATA"
    return "HIT" if value >= target else "TRACKING"


def build_kill_switches(
    manual: Dict[str, Any],
    rlusd: Any,
    etf: Any,
    previous: Any = None,
    targets: Optional[Dict[str, Dict[str, Any]]] = None,
) -> Dict[str, Any]:
    """
    Rebuild kill-switch progress from targets and current inputs.

    Extra keys on a previous entry (e.g. _analysis_note) are kept, as is a
    status the approval engine set outside the computed set. Switches the
    engine does not compute are carried forward untouched.
    """
    targets = targets or config.KILL_SWITCH_TARGETS
    odl = manual.get("odl_volume_annualized")
    rlusd_current = _first_present(_dict(rlusd).get("market_cap"), manual.get("rlusd_circulation"))
    etf_aum = _first_present(_dict(etf).get("total_aum"), manual.get("xrp_etf_aum"))
    dex = manual.get("permissioned_dex_institutions")
    clarity = manual.get("clarity_act_status") or "pending"

    computed = {}
    for key, current in (
        ("odl_volume", odl),
        ("rlusd_circulation", rlusd_current),
        ("xrp_etf_aum", etf_aum),
    ):
        t = targets[key]
        computed[key] = {
            "target": t["target"],
            "current": current,
            "deadline": t["deadline"],
            "status": _threshold_status(current, t["target"]),
            "pct_complete": pct_of_target(current, t["target"]),
        }

    dex_target = targets["permissioned_dex_adoption"]
    computed["permissioned_dex_adoption"] = {
        "target_institutions": dex_target["target_institutions"],
        "current": dex,
        "deadline": dex_target["deadline"],
        "status": _threshold_status(dex, dex_target["target_institutions"]),
    }

    clarity_target = targets["clarity_act"]
    computed["clarity_act"] = {
        "target": clarity_target["target"],
        "current": str(clarity).lower(),
        "deadline": clarity_target["deadline"],
        "status": "HIT" if "passed" in str(clarity).lower() else "PENDING",
    }

    merged = copy.deepcopy(previous) if isinstance(previous, dict) else {}
    for key, entry in computed.items():
        prev_entry = _dict(merged.get(key))
        extras = {k: v for k, v in prev_entry.items() if k not in entry}
        new_entry = {**entry, **extras}
        prev_status = prev_entry.get("status")
        # hand-edited entries may carry a non-string status
        if isinstance(prev_status, str) and prev_status and prev_status not in COMPUTED_KILL_SWITCH_STATUSES:
            new_entry["status"] = prev_status
        merged[key] = new_entry
    return merged


# =============================================================================
# RECONCILE
# =============================================================================

def reconcile(
    previous_state: Any,
    results: List[FetchResult],
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Build the next state blob from the previous one and this cycle's results.

    Never raises on malformed input: anything missing is treated as null.
    """
    prev = copy.deepcopy(previous_state) if isinstance(previous_state, dict) else {}

    # 1. Live metrics: adapters already substituted their fallbacks
    live: Dict[str, Any] = {}
    for key in STATE_KEY_ORDER:
        if key in prev:
            live[key] = prev[key]
    macro = dict(_dict(prev.get("macro")))
    for key in MACRO_KEYS:
        macro.setdefault(key, None)
    live["macro"] = macro
    for result in results:
        set_path(live, result.slot, copy.deepcopy(result.value))

    # 2. Manual and editorial fields
    manual = dict(_dict(prev.get("manual")))
    for key, default in MANUAL_DEFAULTS.items():
        if manual.get(key) is None:
            manual[key] = default

    thesis_scores = prev.get("thesis_scores")
    if thesis_scores is None:
        thesis_scores = copy.deepcopy(DEFAULT_THESIS_SCORES)

    # 3. Derived fields
    xrp = live.get("xrp")
    derive_dex_volume(live.get("xrpl_metrics"), xrp)
    derive_etf_supply(live.get("etf"), xrp)
    derive_weekly_flow(live.get("btc_etf"))
    derive_weekly_flow(live.get("eth_etf"))
    kill_switches = build_kill_switches(manual, live.get("rlusd"), live.get("etf"), prev.get("kill_switches"))

    # 4. Health ledger
    health_check = {r.source_id: r.health().to_dict() for r in results}

    new_state = {
        "updated": utc_timestamp(now),
        "auto_fetched": True,
        "xrp": live.get("xrp"),
        "rlusd": live.get("rlusd"),
        "etf": live.get("etf"),
        "btc_etf": live.get("btc_etf"),
        "eth_etf": live.get("eth_etf"),
        "supply": live.get("supply"),
        "xrpl_metrics": live.get("xrpl_metrics"),
        "macro": live["macro"],
        "news": live.get("news"),
        "manual": manual,
        "kill_switches": kill_switches,
        "thesis_scores": thesis_scores,
        "health_check": health_check,
    }
    for key in EDITORIAL_KEYS:
        new_state[key] = prev.get(key)

    # Anything else (x402_agent, retired slots, operator additions) rides along
    for key, value in prev.items():
        if key not in new_state:
            new_state[key] = value
    for key, value in live.items():
        if key not in new_state:
            new_state[key] = value

    failed = [r.source_id for r in results if r.failed]
    logger.info(
        f"Reconciled {len(results)} sources ({len(failed)} failed) into "
        f"{len(new_state)} top-level keys"
    )
    return new_state


def summarize(state: Dict[str, Any]) -> List[str]:
    """Console summary lines for the end of a fetch cycle"""
    def fmt(value: Any, scale: float = 1.0, suffix: str = "", digits: int = 2) -> str:
        number = _number(value)
        return f"{number / scale:.{digits}f}{suffix}" if number is not None else "N/A"

    fear_greed = _dict(get_path(state, "macro.fear_greed"))
    news = _dict(state.get("news"))
    return [
        f"XRP price:       ${fmt(get_path(state, 'xrp.price'), digits=4)}",
        f"RLUSD mktcap:    ${fmt(get_path(state, 'rlusd.market_cap'), 1e6, 'M', 1)}",
        f"USD/JPY:         {fmt(get_path(state, 'macro.usd_jpy'))}",
        f"JPN 10Y yield:   {fmt(get_path(state, 'macro.jpn_10y'), digits=3)}%",
        f"US 10Y yield:    {fmt(get_path(state, 'macro.us_10y_yield'))}%",
        f"Brent crude:     ${fmt(get_path(state, 'macro.brent_crude'))}",
        f"Fear & Greed:    {fear_greed.get('value', 'N/A')} ({fear_greed.get('label') or 'N/A'})",
        f"XRP ETF AUM:     ${fmt(get_path(state, 'etf.total_aum'), 1e6, 'M', 1)} | "
        f"flow 5D: {fmt(get_path(state, 'etf.weekly_net_flow'), 1e6, 'M', 1)}",
        f"BTC ETF (IBIT):  ${fmt(get_path(state, 'btc_etf.total_aum'), 1e9, 'B')} | "
        f"5D: {fmt(get_path(state, 'btc_etf.weekly_net_flow'), 1e6, 'M', 0)}",
        f"ETH ETF (ETHA):  ${fmt(get_path(state, 'eth_etf.total_aum'), 1e9, 'B')} | "
        f"5D: {fmt(get_path(state, 'eth_etf.weekly_net_flow'), 1e6, 'M', 0)}",
        f"News headlines:  {len(news.get('headlines') or [])} (source: {news.get('source', 'none')})",
        f"Supply escrow:   {fmt(get_path(state, 'supply.escrow'), 1e9, 'B XRP')}",
        f"XRPL:            avg {get_path(state, 'xrpl_metrics.avg_tx_per_ledger', 'N/A')} tx/ledger | "
        f"burn {get_path(state, 'xrpl_metrics.fee_burn_per_ledger_xrp', 'N/A')} XRP/ledger",
    ]
