"""
OVERWATCH CONFIGURATION
Endpoints, domain-tuned constants and file layout

Secrets and URLs come from environment variables (a .env file is loaded by
each entry point via python-dotenv). Every numeric constant here can be
overridden from the environment so thresholds are never hard-wired.
"""

import os
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Any, Optional

logger = logging.getLogger(__name__)


def env_float(name: str, default: float) -> float:
    """Read a float from the environment, falling back on bad input"""
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Ignoring non-numeric {name}={raw!r}, using {default}")
        return default


def env_int(name: str, default: int) -> int:
    """Read an int from the environment, falling back on bad input"""
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Ignoring non-integer {name}={raw!r}, using {default}")
        return default


# =============================================================================
# ENDPOINTS
# =============================================================================

COINGECKO_BASE = "https://api.coingecko.com/api/v3"
FRED_BASE = "https://api.stlouisfed.org/fred/series/observations"
ALTERNATIVE_ME_FNG = "https://api.alternative.me/fng/"
FRANKFURTER_URL = "https://api.frankfurter.app/latest"
ALPHA_VANTAGE_URL = "https://www.alphavantage.co/query"
TWELVE_DATA_URL = "https://api.twelvedata.com/time_series"
XRP_INSIGHTS_BASE = "https://xrp-insights.com/api"
CRYPTOPANIC_URL = "https://cryptopanic.com/api/free/v1/posts/"
NEWSDATA_URL = "https://newsdata.io/api/1/news"
TELEGRAM_API = "https://api.telegram.org"

RIPPLED_URL = os.getenv("XRPL_RPC_URL", "https://s1.ripple.com:51234")

ISHARES_FUNDS = {
    "IBIT": {
        "csv_url": "https://www.ishares.com/us/products/333011/fund/1467271812596.ajax"
                   "?fileType=csv&fileName=IBIT_holdings&dataType=fund",
        "asset_pattern": r'"BTC","BITCOIN","-","Alternative","([0-9,.]+)"',
        "slot": "btc_etf",
    },
    "ETHA": {
        "csv_url": "https://www.ishares.com/us/products/337614/fund/1467271812596.ajax"
                   "?fileType=csv&fileName=ETHA_holdings&dataType=fund",
        "asset_pattern": r'"ETH","ETHER","-","Alternative","([0-9,.]+)"',
        "slot": "eth_etf",
    },
}

# FRED series ids by logical series
FRED_SERIES = {
    "jpn_10y": "IRLTLT01JPM156N",
    "brent": "DCOILBRENTEU",
    "us_10y": "DGS10",
}

# Public RSS feeds used when no keyed news provider answers
NEWS_RSS_FEEDS = [
    "https://www.coindesk.com/arc/outboundfeeds/rss/",
    "https://cointelegraph.com/rss/tag/ripple",
]

# USD issuers tried in order for XRP/USD order book depth
USD_ISSUERS = [
    ("GateHub", "rhub8VRN55s94qWKDv6jmDy1pUykJzF3wq"),
    ("Bitstamp", "rvYAfWj5gh67oV6fW32ZzP3Aw4Eubs59B"),
]


# =============================================================================
# DOMAIN-TUNED CONSTANTS
# =============================================================================

# Seconds between calls to the same CoinGecko free-tier key
COINGECKO_DELAY_SECONDS = env_float("OVERWATCH_COINGECKO_DELAY", 1.2)

# Failed sources in one cycle that trigger an operator alert
SYSTEMIC_FAILURE_THRESHOLD = env_int("OVERWATCH_FAILURE_THRESHOLD", 3)

# Rolling window for iShares daily flows
ISHARES_HISTORY_LENGTH = 14

KILL_SWITCH_TARGETS: Dict[str, Dict[str, Any]] = {
    "odl_volume": {
        "target": env_int("OVERWATCH_TARGET_ODL_VOLUME", 25_000_000_000),
        "deadline": os.getenv("OVERWATCH_DEADLINE_ODL_VOLUME", "2026-12-31"),
    },
    "rlusd_circulation": {
        "target": env_int("OVERWATCH_TARGET_RLUSD", 5_000_000_000),
        "deadline": os.getenv("OVERWATCH_DEADLINE_RLUSD", "2026-12-31"),
    },
    "xrp_etf_aum": {
        "target": env_int("OVERWATCH_TARGET_ETF_AUM", 5_000_000_000),
        "deadline": os.getenv("OVERWATCH_DEADLINE_ETF_AUM", "2026-12-31"),
    },
    "permissioned_dex_adoption": {
        "target_institutions": env_int("OVERWATCH_TARGET_DEX_INSTITUTIONS", 5),
        "deadline": os.getenv("OVERWATCH_DEADLINE_DEX", "2026-09-30"),
    },
    "clarity_act": {
        "target": "passed_or_advanced",
        "deadline": os.getenv("OVERWATCH_DEADLINE_CLARITY", "2026-12-31"),
    },
}


# =============================================================================
# PAYMENT AGENT CONSTANTS
# =============================================================================

X402_VERSION = 2
X402_NETWORK = "xrpl:0"
X402_SOURCE_TAG = 804681468
X402_MAX_TIMEOUT_SECONDS = 300
X402_INVOICE_TTL_SECONDS = 600

DEFAULT_MERCHANT_BASE = "http://127.0.0.1:4403"
DEFAULT_FACILITATOR_URL = "https://xrpl-facilitator-mainnet.t54.ai"
DEFAULT_XRPL_JSON_RPC = "https://xrplcluster.com"

GUARDRAIL_BALANCE_FLOOR_XRP = env_float("X402_BALANCE_FLOOR_XRP", 2.0)
GUARDRAIL_WARN_BALANCE_XRP = env_float("X402_WARN_BALANCE_XRP", 15.0)
GUARDRAIL_PER_TX_CAP_DROPS = env_int("X402_PER_TX_CAP_DROPS", 2000)
GUARDRAIL_SESSION_CAP_DROPS = env_int("X402_SESSION_CAP_DROPS", 5000)

# Paywalled endpoints: path -> (label, price in drops)
X402_ENDPOINTS = {
    "/api/v1/premium-analysis": ("Premium Analysis", 1000),
    "/api/v1/bear-case": ("Bear Case", 1500),
    "/api/v1/stress-report": ("Stress Report", 500),
}


# =============================================================================
# FILE LAYOUT
# =============================================================================

@dataclass(frozen=True)
class OverwatchPaths:
    """All persisted files, resolved from one root directory"""
    root: Path

    @classmethod
    def from_env(cls, root: Optional[str] = None) -> "OverwatchPaths":
        return cls(Path(root or os.getenv("OVERWATCH_ROOT", ".")).resolve())

    @property
    def state(self) -> Path:
        return self.root / "dashboard-data.json"

    @property
    def state_backup(self) -> Path:
        return self.root / "dashboard-data.backup.json"

    @property
    def analysis(self) -> Path:
        return self.root / "analysis-output.json"

    @property
    def html(self) -> Path:
        return self.root / "index.html"

    @property
    def html_backup(self) -> Path:
        return self.root / "index.backup.html"

    @property
    def scripts_dir(self) -> Path:
        return self.root / "scripts"

    @property
    def events_history(self) -> Path:
        return self.scripts_dir / "events-history.json"

    @property
    def changelog(self) -> Path:
        return self.scripts_dir / "changelog.log"

    @property
    def thesis_context(self) -> Path:
        return self.scripts_dir / "thesis-context.md"

    @property
    def debug_response(self) -> Path:
        return self.scripts_dir / "debug-claude-response.txt"
