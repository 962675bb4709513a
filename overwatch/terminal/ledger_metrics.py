"""
OVERWATCH XRPL LEDGER METRICS
Network metrics straight from a public rippled server (JSON-RPC)

Queries:
- server_info          -> validated ledger sequence
- 6 consecutive ledgers -> tx counts of the last five, fee burn
- book_offers          -> XRP/USD depth (GateHub, then Bitstamp)

total_coins is a drop count near 1e17, past the range where a float holds
every integer exactly. Fee burn is therefore computed with Python ints and
only converted to XRP at the end.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, Any, Optional, List, Tuple

from overwatch import config
from overwatch.shared.resilience import resilient_call
from overwatch.shared.validation import SchemaValidator, LEDGER_SCHEMA
from overwatch.terminal.models import utc_timestamp
from overwatch.terminal.sources import SourceAdapter, SourceShapeError

logger = logging.getLogger(__name__)

DROPS_PER_XRP = 1_000_000
LEDGER_SAMPLE = 5
XRP_NATIVE = {"currency": "XRP"}


class RippledError(Exception):
    """rippled answered with status=error"""
    pass


def fee_burn_drops(oldest_total_coins: Any, newest_total_coins: Any) -> int:
    """Exact drop difference between two total_coins values"""
    return int(oldest_total_coins) - int(newest_total_coins)


def fee_burn_per_ledger_xrp(oldest_total_coins: Any, newest_total_coins: Any,
                            ledgers: int = LEDGER_SAMPLE) -> Optional[float]:
    """Average XRP burned per ledger over the sample, 4 decimals; None if no burn"""
    if oldest_total_coins is None or newest_total_coins is None:
        return None
    burned = fee_burn_drops(oldest_total_coins, newest_total_coins)
    if burned <= 0:
        return None
    return round(burned / DROPS_PER_XRP / ledgers, 4)


def _book_side(offers: List[Dict[str, Any]], xrp_field: str, usd_field: str) -> List[Dict[str, float]]:
    side = []
    for offer in offers:
        usd = offer.get(usd_field)
        side.append({
            "xrp": int(offer.get(xrp_field) or 0) / DROPS_PER_XRP,
            "usd": float(usd.get("value", 0)) if isinstance(usd, dict) else 0.0,
        })
    return side


class XRPLMetricsAdapter(SourceAdapter):
    """Ledger throughput, fee burn and order-book depth from rippled"""

    source_id = "xrpl_metrics"
    slot = "xrpl_metrics"
    provider = "rippled"

    def __init__(self, session=None, rpc_url: Optional[str] = None):
        super().__init__(session)
        self.rpc_url = rpc_url or config.RIPPLED_URL

    def default_record(self) -> Dict[str, Any]:
        return {
            "last_fetched": None,
            "source": "none",
            "current_ledger": None,
            "last_ledger_txns": None,
            "avg_tx_per_ledger": None,
            "fee_burn_per_ledger_xrp": None,
            "book_depth_xrp_usd": None,
            "dex_volume_24h_usd": None,
            "dex_volume_24h_xrp": None,
            "dex_exchanges_24h": None,
            "dex_takers_24h": None,
        }

    @resilient_call("rippled")
    def _rpc(self, method: str, params: Optional[Dict[str, Any]] = None, timeout: float = 15) -> Dict[str, Any]:
        response = self._session.post(
            self.rpc_url,
            json={"method": method, "params": [params or {}]},
            timeout=timeout,
        )
        response.raise_for_status()
        try:
            result = response.json().get("result")
        except (ValueError, AttributeError) as e:
            raise SourceShapeError(f"rippled {method}: bad JSON ({e})")
        if not isinstance(result, dict):
            raise SourceShapeError(f"rippled {method}: missing result")
        if result.get("status") == "error":
            raise RippledError(f"XRPL {method}: {result.get('error_message') or result.get('error')}")
        return result

    def _ledger(self, index: int) -> Dict[str, Any]:
        result = self._rpc("ledger", {"ledger_index": index, "transactions": True, "expand": False}, timeout=12)
        ledger = result.get("ledger")
        check = SchemaValidator.validate_schema(ledger, LEDGER_SCHEMA, f"ledger[{index}]", strict_types=True)
        if not check.valid:
            raise SourceShapeError(check.first_error())
        return ledger

    def _book_depth(self) -> Optional[Dict[str, Any]]:
        for label, issuer in config.USD_ISSUERS:
            usd = {"currency": "USD", "issuer": issuer}
            try:
                bids_result = self._rpc("book_offers", {"taker_gets": XRP_NATIVE, "taker_pays": usd, "limit": 10}, timeout=12)
                asks_result = self._rpc("book_offers", {"taker_gets": usd, "taker_pays": XRP_NATIVE, "limit": 10}, timeout=12)
                # Bids: TakerGets is XRP drops; asks: TakerPays is XRP drops
                bids = _book_side(bids_result.get("offers") or [], "TakerGets", "TakerPays")
                asks = _book_side(asks_result.get("offers") or [], "TakerPays", "TakerGets")
            except Exception as e:
                logger.warning(f"[xrpl_metrics] book_offers {label} failed: {e}")
                continue

            if not bids and not asks:
                logger.warning(f"[xrpl_metrics] book_offers {label}: no offers on either side")
                continue

            total_bid = sum(o["xrp"] for o in bids)
            total_ask = sum(o["xrp"] for o in asks)
            logger.info(
                f"[xrpl_metrics] book XRP/USD.{label}: {len(bids)} bids ({total_bid / 1000:.0f}K XRP) / "
                f"{len(asks)} asks ({total_ask / 1000:.0f}K XRP)"
            )
            return {
                "pair": f"XRP/USD.{label}",
                "bids": len(bids),
                "asks": len(asks),
                "total_bid_xrp": round(total_bid),
                "total_ask_xrp": round(total_ask),
                "best_bid": bids[0] if bids else None,
                "best_ask": asks[0] if asks else None,
            }
        return None

    def _fetch(self, previous: Any) -> Tuple[Dict[str, Any], str]:
        server_info = self._rpc("server_info")
        validated_seq = ((server_info.get("info") or {}).get("validated_ledger") or {}).get("seq")
        if not validated_seq:
            raise SourceShapeError("validated_ledger.seq missing from server_info")
        logger.info(f"[xrpl_metrics] validated ledger: {validated_seq}")

        indices = [validated_seq - LEDGER_SAMPLE + i for i in range(LEDGER_SAMPLE + 1)]
        with ThreadPoolExecutor(max_workers=LEDGER_SAMPLE + 1) as executor:
            ledgers = list(executor.map(self._ledger, indices))

        tx_counts = [len(l.get("transactions") or []) for l in ledgers[1:]]
        burn = fee_burn_per_ledger_xrp(ledgers[0].get("total_coins"), ledgers[-1].get("total_coins"))

        record = self.default_record()
        record.update({
            "last_fetched": utc_timestamp(),
            "source": "xrpl_native",
            "current_ledger": validated_seq,
            "last_ledger_txns": tx_counts[-1],
            "avg_tx_per_ledger": round(sum(tx_counts) / len(tx_counts)),
            "fee_burn_per_ledger_xrp": burn,
            "book_depth_xrp_usd": self._book_depth(),
        })
        logger.info(
            f"[xrpl_metrics] last_txns={record['last_ledger_txns']} | "
            f"avg={record['avg_tx_per_ledger']} tx/ledger | burn={burn if burn is not None else 'N/A'} XRP/ledger"
        )
        return record, "xrpl_native"
