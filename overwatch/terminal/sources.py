"""
OVERWATCH SOURCE ADAPTERS
One adapter per external data provider, each with fallback-to-previous

Contract for every adapter:
    fetch(previous_record) -> FetchResult

fetch() never raises. Network calls go through @resilient_call (one retry
after a fixed delay, circuit breaker per provider). A response whose shape
does not match raises SourceShapeError internally and is treated exactly
like a network failure: the previous record comes back with status FAIL.

Adapter chains (primary -> secondary -> tertiary) record the link that
finally answered in FetchResult.source.
"""

import os
import re
import time
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Dict, Any, Optional, List, Tuple

import requests

from overwatch import config
from overwatch.shared.resilience import (
    resilient_call,
    get_http_session,
)
from overwatch.shared.validation import (
    SchemaValidator,
    RangeValidator,
    COINGECKO_PRICE_SCHEMA,
    FEAR_GREED_SCHEMA,
)
from overwatch.terminal.models import (
    FetchResult,
    FetchStatus,
    copy_record,
    utc_timestamp,
)

logger = logging.getLogger(__name__)


# =============================================================================
# EXCEPTIONS
# =============================================================================

class SourceShapeError(ValueError):
    """Upstream answered, but not with the structure we expect"""
    pass


class SourceSkipped(Exception):
    """Adapter has no credential configured; recorded as health 'skip'"""
    pass


# =============================================================================
# BASE ADAPTER
# =============================================================================

class SourceAdapter(ABC):
    """
    Base class for all source adapters.

    Subclasses set source_id (health ledger key), slot (dotted path in the
    state blob) and provider (circuit breaker / rate limiter name), and
    implement _fetch(previous) returning (record, source_label).
    """

    source_id: str = ""
    slot: str = ""
    provider: str = ""

    def __init__(self, session: Optional[requests.Session] = None):
        self._session = session or get_http_session()

    def default_record(self) -> Any:
        """All-null record used when no previous value ever existed"""
        return None

    @abstractmethod
    def _fetch(self, previous: Any) -> Tuple[Any, str]:
        """Return (record, source_label) or raise"""
        pass

    def fetch(self, previous: Any = None) -> FetchResult:
        """Fetch a fresh record; on any failure return the previous one"""
        fallback = copy_record(previous) if previous is not None else self.default_record()

        try:
            record, source = self._fetch(previous)
        except SourceSkipped as e:
            logger.warning(f"[{self.source_id}] skipped: {e}")
            return FetchResult(self.source_id, self.slot, fallback, FetchStatus.SKIP)
        except Exception as e:
            logger.error(f"[{self.source_id}] fetch failed: {e}")
            return FetchResult(self.source_id, self.slot, fallback, FetchStatus.FAIL, error=str(e))

        return FetchResult(self.source_id, self.slot, record, FetchStatus.OK, source=source)

    # ---------------------------------------------------------------------
    # HTTP helpers
    # ---------------------------------------------------------------------

    def _get_json(
        self,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        timeout: float = 10,
    ) -> Any:
        response = self._session.get(url, params=params, headers=headers, timeout=timeout)
        response.raise_for_status()
        try:
            return response.json()
        except ValueError as e:
            raise SourceShapeError(f"Response is not JSON: {e}")

    def _get_text(
        self,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        timeout: float = 15,
    ) -> str:
        response = self._session.get(url, headers=headers, timeout=timeout)
        response.raise_for_status()
        return response.text


def _to_float(value: Any, what: str) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise SourceShapeError(f"Could not parse {what} from {value!r}")
    check = RangeValidator.validate_range(number, what)
    if check.has_errors:
        raise SourceShapeError(f"{what}: {check.first_error()}")
    return number


# =============================================================================
# COINGECKO ADAPTERS
# =============================================================================

class XRPPriceAdapter(SourceAdapter):
    """XRP spot price: CoinGecko, then yfinance XRP-USD"""

    source_id = "xrp"
    slot = "xrp"
    provider = "coingecko"

    def default_record(self) -> Dict[str, Any]:
        return {"price": None, "change_24h": None, "volume_24h": None, "market_cap": None}

    @resilient_call("coingecko")
    def _fetch_coingecko(self) -> Dict[str, Any]:
        return self._get_json(
            f"{config.COINGECKO_BASE}/simple/price",
            params={
                "ids": "ripple",
                "vs_currencies": "usd",
                "include_24hr_vol": "true",
                "include_24hr_change": "true",
                "include_market_cap": "true",
            },
        )

    @resilient_call("yfinance_xrp", use_rate_limiter=False)
    def _fetch_yfinance(self) -> Dict[str, Any]:
        import yfinance as yf
        hist = yf.Ticker("XRP-USD").history(period="2d")
        if hist is None or hist.empty:
            raise SourceShapeError("yfinance returned no XRP-USD history")
        closes = hist["Close"]
        price = float(closes.iloc[-1])
        change = None
        if len(closes) >= 2 and float(closes.iloc[-2]) > 0:
            change = (price / float(closes.iloc[-2]) - 1) * 100
        volume = float(hist["Volume"].iloc[-1]) if "Volume" in hist else None
        return {"price": price, "change_24h": change, "volume_24h": volume, "market_cap": None}

    def _fetch(self, previous: Any) -> Tuple[Dict[str, Any], str]:
        try:
            data = self._fetch_coingecko()
            entry = data.get("ripple") if isinstance(data, dict) else None
            if not entry:
                raise SourceShapeError("Unexpected response shape")
            check = SchemaValidator.validate_schema(entry, COINGECKO_PRICE_SCHEMA, "coingecko.ripple")
            check.log_issues(prefix="[xrp] ")
            record = {
                "price": entry.get("usd"),
                "change_24h": entry.get("usd_24h_change"),
                "volume_24h": entry.get("usd_24h_vol"),
                "market_cap": entry.get("usd_market_cap"),
            }
            source = "coingecko"
        except Exception as e:
            logger.warning(f"[xrp] CoinGecko failed ({e}), trying yfinance")
            record = self._fetch_yfinance()
            source = "yfinance"

        change = record["change_24h"]
        logger.info(
            f"[xrp] price=${record['price']} 24h="
            f"{f'{change:.2f}%' if change is not None else 'N/A'} ({source})"
        )
        return record, source


class RLUSDAdapter(SourceAdapter):
    """RLUSD market cap: CoinGecko id, then search for the RLUSD symbol"""

    source_id = "rlusd"
    slot = "rlusd"
    provider = "coingecko"

    def default_record(self) -> Dict[str, Any]:
        return {"market_cap": None, "source": "manual"}

    @resilient_call("coingecko")
    def _fetch_price(self, coin_id: str) -> Dict[str, Any]:
        return self._get_json(
            f"{config.COINGECKO_BASE}/simple/price",
            params={"ids": coin_id, "vs_currencies": "usd", "include_market_cap": "true"},
        )

    @resilient_call("coingecko")
    def _search(self, query: str) -> Dict[str, Any]:
        return self._get_json(f"{config.COINGECKO_BASE}/search", params={"query": query})

    def _fetch(self, previous: Any) -> Tuple[Dict[str, Any], str]:
        try:
            data = self._fetch_price("ripple-usd")
            entry = data.get("ripple-usd") if isinstance(data, dict) else None
            if not entry:
                raise SourceShapeError("Unexpected response shape, will try search")
            coin_id = "ripple-usd"
        except Exception as e:
            logger.warning(f"[rlusd] Primary id failed ({e}), trying search")
            time.sleep(config.COINGECKO_DELAY_SECONDS)
            search = self._search("RLUSD")
            coins = search.get("coins") if isinstance(search, dict) else None
            match = next(
                (c for c in coins or [] if str(c.get("symbol", "")).upper() == "RLUSD"),
                None,
            )
            if not match:
                raise SourceShapeError("RLUSD not found in search results")
            coin_id = match["id"]
            time.sleep(config.COINGECKO_DELAY_SECONDS)
            data = self._fetch_price(coin_id)
            entry = data.get(coin_id) if isinstance(data, dict) else None
            if entry is None:
                raise SourceShapeError(f"No price entry for {coin_id}")

        record = {"market_cap": entry.get("usd_market_cap"), "source": "coingecko"}
        logger.info(f"[rlusd] market_cap=${record['market_cap']} (id={coin_id})")
        return record, "coingecko"


# =============================================================================
# SENTIMENT / FX / YIELDS
# =============================================================================

class FearGreedAdapter(SourceAdapter):
    """Crypto Fear & Greed index from alternative.me"""

    source_id = "fear_greed"
    slot = "macro.fear_greed"
    provider = "alternative_me"

    def default_record(self) -> Dict[str, Any]:
        return {"value": None, "label": None}

    @resilient_call("alternative_me")
    def _fetch_index(self) -> Dict[str, Any]:
        return self._get_json(config.ALTERNATIVE_ME_FNG, params={"limit": 1})

    def _fetch(self, previous: Any) -> Tuple[Dict[str, Any], str]:
        data = self._fetch_index()
        entries = data.get("data") if isinstance(data, dict) else None
        if not entries:
            raise SourceShapeError("Unexpected response shape")
        entry = entries[0]
        check = SchemaValidator.validate_schema(entry, FEAR_GREED_SCHEMA, "fear_greed", strict_types=True)
        if not check.valid:
            raise SourceShapeError(check.first_error())

        record = {
            "value": _to_float(entry["value"], "fear_greed"),
            "label": entry["value_classification"],
        }
        if record["value"].is_integer():
            record["value"] = int(record["value"])
        logger.info(f"[fear_greed] {record['value']} ({record['label']})")
        return record, "alternative.me"


class USDJPYAdapter(SourceAdapter):
    """USD/JPY: Alpha Vantage (keyed), then Frankfurter, then yfinance JPY=X"""

    source_id = "usd_jpy"
    slot = "macro.usd_jpy"
    provider = "frankfurter"

    def __init__(self, session=None, api_key: Optional[str] = None):
        super().__init__(session)
        self._api_key = api_key

    @property
    def api_key(self) -> Optional[str]:
        return self._api_key or os.getenv("ALPHA_VANTAGE_KEY")

    @resilient_call("alphavantage", base_delay=2.0)
    def _fetch_alpha_vantage(self) -> float:
        data = self._get_json(
            config.ALPHA_VANTAGE_URL,
            params={
                "function": "FX_DAILY",
                "from_symbol": "USD",
                "to_symbol": "JPY",
                "outputsize": "compact",
                "apikey": self.api_key,
            },
            timeout=12,
        )
        series = data.get("Time Series FX (Daily)") if isinstance(data, dict) else None
        if not series:
            raise SourceShapeError("No time series in Alpha Vantage response")
        latest = max(series.keys())
        rate = _to_float(series[latest].get("4. close"), "usd_jpy")
        logger.info(f"[usd_jpy] {rate} (Alpha Vantage, date: {latest})")
        return rate

    @resilient_call("frankfurter")
    def _fetch_frankfurter(self) -> float:
        data = self._get_json(config.FRANKFURTER_URL, params={"from": "USD", "to": "JPY"})
        rate = (data.get("rates") or {}).get("JPY") if isinstance(data, dict) else None
        if not rate:
            raise SourceShapeError("Unexpected response shape")
        return _to_float(rate, "usd_jpy")

    @resilient_call("yfinance_fx", use_rate_limiter=False)
    def _fetch_yfinance(self) -> float:
        import yfinance as yf
        hist = yf.Ticker("JPY=X").history(period="1d")
        if hist is None or hist.empty:
            raise SourceShapeError("yfinance returned no JPY=X history")
        return _to_float(hist["Close"].iloc[-1], "usd_jpy")

    def _fetch(self, previous: Any) -> Tuple[float, str]:
        if self.api_key:
            try:
                return self._fetch_alpha_vantage(), "alphavantage"
            except Exception as e:
                logger.warning(f"[usd_jpy] Alpha Vantage failed ({e}), trying Frankfurter")
        else:
            logger.warning("[usd_jpy] ALPHA_VANTAGE_KEY not set, using Frankfurter")

        try:
            rate = self._fetch_frankfurter()
            logger.info(f"[usd_jpy] {rate} (Frankfurter)")
            return rate, "frankfurter"
        except Exception as e:
            logger.warning(f"[usd_jpy] Frankfurter failed ({e}), trying yfinance")

        rate = self._fetch_yfinance()
        logger.info(f"[usd_jpy] {rate} (yfinance)")
        return rate, "yfinance"


class FREDSeriesAdapter(SourceAdapter):
    """Most recent valid observation of one FRED series"""

    provider = "fred"

    def __init__(
        self,
        source_id: str,
        slot: str,
        series_id: str,
        range_field: str = "yield_pct",
        session=None,
        api_key: Optional[str] = None,
    ):
        super().__init__(session)
        self.source_id = source_id
        self.slot = slot
        self.series_id = series_id
        self.range_field = range_field
        self._api_key = api_key

    @property
    def api_key(self) -> Optional[str]:
        return self._api_key or os.getenv("FRED_API_KEY")

    @resilient_call("fred")
    def _fetch_observations(self) -> Dict[str, Any]:
        return self._get_json(
            config.FRED_BASE,
            params={
                "series_id": self.series_id,
                "api_key": self.api_key,
                "file_type": "json",
                "sort_order": "desc",
                "limit": 1,
            },
        )

    def _fetch_fred(self) -> float:
        if not self.api_key:
            raise SourceSkipped(f"FRED_API_KEY not set, skipping {self.series_id}")
        data = self._fetch_observations()
        check = SchemaValidator.validate_fred_response(data)
        if not check.valid:
            raise SourceShapeError(check.first_error())
        obs = check.data["observations"][0]
        value = _to_float(obs["value"], self.range_field)
        logger.info(f"[{self.source_id}] {self.series_id} = {value} (date: {obs.get('date')})")
        return value

    def _fetch(self, previous: Any) -> Tuple[float, str]:
        return self._fetch_fred(), "fred"


class JapanTenYearAdapter(FREDSeriesAdapter):
    """Japan 10Y yield: Twelve Data JP10Y (keyed, daily), then FRED (monthly)"""

    def __init__(self, session=None, api_key: Optional[str] = None, twelve_data_key: Optional[str] = None):
        super().__init__(
            source_id="fred_jpn_10y",
            slot="macro.jpn_10y",
            series_id=config.FRED_SERIES["jpn_10y"],
            session=session,
            api_key=api_key,
        )
        self._twelve_data_key = twelve_data_key

    @property
    def twelve_data_key(self) -> Optional[str]:
        return self._twelve_data_key or os.getenv("TWELVE_DATA_KEY")

    @resilient_call("twelvedata")
    def _fetch_twelve_data(self) -> float:
        data = self._get_json(
            config.TWELVE_DATA_URL,
            params={
                "symbol": "JP10Y",
                "interval": "1day",
                "outputsize": 1,
                "apikey": self.twelve_data_key,
            },
            timeout=12,
        )
        values = data.get("values") if isinstance(data, dict) else None
        if not isinstance(values, list) or not values:
            raise SourceShapeError("No values in Twelve Data response")
        value = _to_float(values[0].get("close"), "yield_pct")
        logger.info(f"[{self.source_id}] JP10Y = {value} (Twelve Data, date: {values[0].get('datetime')})")
        return value

    def _fetch(self, previous: Any) -> Tuple[float, str]:
        if self.twelve_data_key:
            try:
                return self._fetch_twelve_data(), "twelvedata"
            except Exception as e:
                logger.warning(f"[{self.source_id}] Twelve Data failed ({e}), falling back to FRED")
        else:
            logger.warning(f"[{self.source_id}] TWELVE_DATA_KEY not set, using FRED")
        return self._fetch_fred(), "fred"


def brent_adapter(session=None) -> FREDSeriesAdapter:
    return FREDSeriesAdapter(
        "fred_brent", "macro.brent_crude", config.FRED_SERIES["brent"],
        range_field="brent_crude", session=session,
    )


def us_ten_year_adapter(session=None) -> FREDSeriesAdapter:
    return FREDSeriesAdapter(
        "fred_us_10y", "macro.us_10y_yield", config.FRED_SERIES["us_10y"], session=session,
    )


# =============================================================================
# NEWS
# =============================================================================

XRP_RELEVANCE = re.compile(
    r"\b(?:XRP|Ripple|XRPL|RLUSD|ODL|OnDemandLiquidity|RippleNet)\b"
    r"|stablecoin\s+settlement|tokenized\s+treasury"
    r"|cross[- ]border\s+payment\s+blockchain|SBI\s+Holdings\s+blockchain",
    re.IGNORECASE,
)

MAX_HEADLINES = 15


def _parse_iso(value: Any) -> Optional[datetime]:
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class NewsAdapter(SourceAdapter):
    """
    XRP headlines: CryptoPanic (keyed) -> NewsData.io (keyed) -> RSS feeds.

    With no key and no feed configured the adapter records 'skip'.
    """

    source_id = "news"
    slot = "news"
    provider = "cryptopanic"

    def __init__(
        self,
        session=None,
        cryptopanic_key: Optional[str] = None,
        newsdata_key: Optional[str] = None,
        rss_feeds: Optional[List[str]] = None,
    ):
        super().__init__(session)
        self._cryptopanic_key = cryptopanic_key
        self._newsdata_key = newsdata_key
        self.rss_feeds = config.NEWS_RSS_FEEDS if rss_feeds is None else rss_feeds

    @property
    def cryptopanic_key(self) -> Optional[str]:
        return self._cryptopanic_key or os.getenv("CRYPTOPANIC_API_KEY")

    @property
    def newsdata_key(self) -> Optional[str]:
        return self._newsdata_key or os.getenv("NEWSDATA_API_KEY")

    def default_record(self) -> Dict[str, Any]:
        return {"last_fetched": utc_timestamp(), "source": "none", "headlines": []}

    @resilient_call("cryptopanic")
    def _fetch_cryptopanic(self) -> List[Dict[str, Any]]:
        data = self._get_json(
            config.CRYPTOPANIC_URL,
            params={
                "auth_token": self.cryptopanic_key,
                "currencies": "XRP",
                "kind": "news",
                "filter": "important",
            },
            timeout=12,
        )
        results = data.get("results") if isinstance(data, dict) else None
        if not isinstance(results, list) or not results:
            raise SourceShapeError("Empty or unexpected CryptoPanic response")

        cutoff = datetime.now(timezone.utc) - timedelta(hours=24)
        headlines = []
        for post in results:
            published = _parse_iso(post.get("published_at"))
            if not post.get("title") or published is None or published <= cutoff:
                continue
            headlines.append({
                "title": post["title"],
                "source": (post.get("source") or {}).get("title") or "CryptoPanic",
                "url": post.get("url") or "",
                "published": post.get("published_at"),
            })
        return headlines[:MAX_HEADLINES]

    @resilient_call("newsdata")
    def _fetch_newsdata(self) -> List[Dict[str, Any]]:
        data = self._get_json(
            config.NEWSDATA_URL,
            params={
                "apikey": self.newsdata_key,
                "q": "XRP OR Ripple OR XRPL OR RLUSD",
                "language": "en",
                "size": 10,
                "category": "technology,business,top",
            },
            timeout=12,
        )
        results = data.get("results") if isinstance(data, dict) else None
        if not isinstance(results, list) or not results:
            raise SourceShapeError("Empty NewsData.io response")

        relevant = [
            r for r in results
            if XRP_RELEVANCE.search(f"{r.get('title') or ''} {r.get('description') or ''}")
        ]
        pool = relevant or results
        logger.info(f"[news] NewsData.io: {len(relevant)} XRP-relevant of {len(results)} returned")
        return [
            {
                "title": r.get("title") or "",
                "source": r.get("source_id") or "NewsData",
                "url": r.get("link") or "",
                "published": r.get("pubDate"),
            }
            for r in pool[:MAX_HEADLINES]
        ]

    @resilient_call("rss", use_circuit_breaker=False, use_rate_limiter=False)
    def _fetch_feed(self, feed_url: str) -> List[Any]:
        import feedparser

        response = self._session.get(feed_url, timeout=10)
        response.raise_for_status()
        feed = feedparser.parse(response.content)
        if feed.bozo and not feed.entries:
            raise SourceShapeError(f"Feed parse error: {feed.bozo_exception}")
        return feed.entries

    def _fetch_rss(self) -> List[Dict[str, Any]]:
        cutoff = datetime.now(timezone.utc) - timedelta(hours=24)
        headlines = []
        failures = 0
        for feed_url in self.rss_feeds:
            try:
                entries = self._fetch_feed(feed_url)
            except Exception as e:
                logger.warning(f"[news] RSS feed {feed_url} error: {e}")
                failures += 1
                continue

            for entry in entries:
                title = entry.get("title", "")
                if not XRP_RELEVANCE.search(f"{title} {entry.get('summary', '')}"):
                    continue
                published = None
                parsed = entry.get("published_parsed") or entry.get("updated_parsed")
                if parsed:
                    published = datetime(*parsed[:6], tzinfo=timezone.utc)
                    if published < cutoff:
                        continue
                headlines.append({
                    "title": title,
                    "source": feed_url,
                    "url": entry.get("link", ""),
                    "published": published.isoformat() if published else None,
                })

        if failures == len(self.rss_feeds):
            raise SourceShapeError("All RSS feeds failed")
        return headlines[:MAX_HEADLINES]

    def _fetch(self, previous: Any) -> Tuple[Dict[str, Any], str]:
        if not (self.cryptopanic_key or self.newsdata_key or self.rss_feeds):
            raise SourceSkipped("No news provider configured")

        chain = [
            ("cryptopanic", self.cryptopanic_key, self._fetch_cryptopanic),
            ("newsdata", self.newsdata_key, self._fetch_newsdata),
            ("rss", bool(self.rss_feeds), self._fetch_rss),
        ]
        last_error: Optional[Exception] = None
        for name, configured, fetcher in chain:
            if not configured:
                logger.warning(f"[news] {name} not configured, skipping")
                continue
            try:
                headlines = fetcher()
            except Exception as e:
                logger.warning(f"[news] {name} failed ({e})")
                last_error = e
                continue
            logger.info(f"[news] {name}: {len(headlines)} headlines")
            return {"last_fetched": utc_timestamp(), "source": name, "headlines": headlines}, name

        raise SourceShapeError(f"All news providers failed: {last_error}")
