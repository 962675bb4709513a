"""
OVERWATCH x402 MERCHANT
Paywalled read-only views of dashboard-data.json, settled on XRPL

    GET /api/v1/premium-analysis  1000 drops  thesis scorecard + market snapshot
    GET /api/v1/bear-case         1500 drops  counter-thesis, headwinds
    GET /api/v1/stress-report      500 drops  macro stress, kill switches
    GET /health                    free

Flow per endpoint:
1. No PAYMENT-SIGNATURE -> 402 + PAYMENT-REQUIRED header, invoice kept 600s
2. PAYMENT-SIGNATURE -> facilitator /verify then /settle
3. Settled -> 200 + payload + PAYMENT-RESPONSE header

Required env vars:
    XRPL_MERCHANT_ADDRESS   address that receives payments
    XRPL_FACILITATOR_URL    facilitator (default: mainnet)

Usage:
    python -m overwatch.x402.merchant
"""

import os
import time
import uuid
import logging
import threading
from pathlib import Path
from typing import Dict, Any, Optional, List, Callable, Tuple

import requests
from fastapi import FastAPI, Header, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from overwatch import config
from overwatch.config import OverwatchPaths
from overwatch.shared.resilience import get_http_session
from overwatch.terminal.models import utc_timestamp
from overwatch.terminal.state_store import StateStore
from overwatch.x402.codec import (
    PAYMENT_REQUIRED_HEADER,
    PAYMENT_RESPONSE_HEADER,
    PAYMENT_SIGNATURE_HEADER,
    HeaderDecodeError,
    encode_header,
    decode_header,
    drops_to_xrp,
)

logger = logging.getLogger(__name__)

VERIFY_TIMEOUT = 15
SETTLE_TIMEOUT = 30
DEFAULT_PORT = 4403


class _PaymentRefused(Exception):
    """Facilitator declined; answered with 402"""
    pass


# =============================================================================
# INVOICES
# =============================================================================

class InvoiceStore:
    """Outstanding payment requirements by invoice id, dropped after ttl seconds"""

    def __init__(self, ttl_seconds: float = config.X402_INVOICE_TTL_SECONDS,
                 clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        # invoice id -> (requirements, route the invoice was issued for, expiry)
        self._invoices: Dict[str, Tuple[Dict[str, Any], Optional[str], float]] = {}
        self._lock = threading.Lock()

    def _purge(self, now: float) -> None:
        expired = [k for k, (_, _, expires) in self._invoices.items() if expires <= now]
        for key in expired:
            del self._invoices[key]

    def _entry(self, invoice_id: Optional[str]) -> Optional[Tuple[Dict[str, Any], Optional[str], float]]:
        if not invoice_id:
            return None
        with self._lock:
            self._purge(self._clock())
            return self._invoices.get(invoice_id)

    def issue(self, requirements: Dict[str, Any], route: Optional[str] = None) -> None:
        with self._lock:
            now = self._clock()
            self._purge(now)
            self._invoices[requirements["extra"]["invoiceId"]] = (requirements, route, now + self.ttl_seconds)

    def get(self, invoice_id: Optional[str]) -> Optional[Dict[str, Any]]:
        entry = self._entry(invoice_id)
        return entry[0] if entry else None

    def route_of(self, invoice_id: Optional[str]) -> Optional[str]:
        entry = self._entry(invoice_id)
        return entry[1] if entry else None

    def discard(self, invoice_id: str) -> None:
        with self._lock:
            self._invoices.pop(invoice_id, None)

    def __len__(self) -> int:
        with self._lock:
            self._purge(self._clock())
            return len(self._invoices)


def new_invoice_id() -> str:
    return uuid.uuid4().hex.upper()


# =============================================================================
# PAYLOADS
# =============================================================================

def _sub(data: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = data.get(key)
    return value if isinstance(value, dict) else {}


def build_analysis_payload(data: Dict[str, Any]) -> Dict[str, Any]:
    xrp, macro, rlusd, etf = (_sub(data, k) for k in ("xrp", "macro", "rlusd", "etf"))
    return {
        "resource": "premium-analysis",
        "timestamp": utc_timestamp(),
        "data": {
            "probability": data.get("probability"),
            "thesis_scores": data.get("thesis_scores"),
            "kill_switches": data.get("kill_switches"),
            "last_analysis": data.get("last_analysis"),
            "market": {
                "xrp_price_usd": xrp.get("price"),
                "xrp_change_24h_pct": xrp.get("change_24h"),
                "fear_greed": macro.get("fear_greed"),
                "rlusd_market_cap": rlusd.get("market_cap"),
                "etf_total_aum": etf.get("total_aum"),
                "etf_daily_flow": etf.get("daily_net_flow"),
                "etf_cum_flow": etf.get("cum_net_flow"),
                "us_10y": macro.get("us_10y_yield"),
                "brent_crude": macro.get("brent_crude"),
                "usd_jpy": macro.get("usd_jpy"),
            },
            "data_as_of": data.get("updated"),
        },
    }


def build_bear_case_payload(data: Dict[str, Any]) -> Dict[str, Any]:
    bear = _sub(data, "bear_case")
    return {
        "resource": "bear-case",
        "timestamp": utc_timestamp(),
        "data": {
            "counter_thesis_score": bear.get("counter_thesis_score"),
            "score_reasoning": bear.get("score_reasoning"),
            "bear_narrative": bear.get("bear_narrative"),
            "competing_infrastructure": bear.get("competing_infrastructure") or [],
            "macro_headwinds": bear.get("macro_headwinds") or [],
            "odl_stagnation": bear.get("odl_stagnation"),
            "token_velocity_concern": bear.get("token_velocity_concern"),
            "kill_switches": data.get("kill_switches"),
            "last_updated": bear.get("last_updated"),
            "data_as_of": data.get("updated"),
        },
    }


def build_stress_payload(data: Dict[str, Any]) -> Dict[str, Any]:
    bear, macro = _sub(data, "bear_case"), _sub(data, "macro")
    return {
        "resource": "stress-report",
        "timestamp": utc_timestamp(),
        "data": {
            "stress_assessment": data.get("stress_assessment"),
            "bear_score": bear.get("counter_thesis_score"),
            "macro": {
                "usd_jpy": macro.get("usd_jpy"),
                "jpn_10y": macro.get("jpn_10y"),
                "us_10y": macro.get("us_10y_yield"),
                "brent_crude": macro.get("brent_crude"),
                "fear_greed": macro.get("fear_greed"),
            },
            "macro_headwinds": bear.get("macro_headwinds") or [],
            "xrpl_metrics": data.get("xrpl_metrics"),
            "kill_switches": data.get("kill_switches"),
            "data_as_of": data.get("updated"),
        },
    }


PAYLOAD_BUILDERS = {
    "/api/v1/premium-analysis": (
        "Overwatch Terminal: Premium Thesis Analysis (XRPL mainnet)", build_analysis_payload),
    "/api/v1/bear-case": (
        "Overwatch Terminal: Counter-Thesis & Bear Case (XRPL mainnet)", build_bear_case_payload),
    "/api/v1/stress-report": (
        "Overwatch Terminal: Macro Stress Report (XRPL mainnet)", build_stress_payload),
}


# =============================================================================
# RESPONSE MODELS
# =============================================================================

class EndpointOut(BaseModel):
    path: str
    drops: str
    xrp: str


class HealthOut(BaseModel):
    status: str
    network: str
    facilitator: str
    merchant: str
    endpoints: List[EndpointOut]


# =============================================================================
# APP
# =============================================================================

def create_app(
    merchant_address: str,
    facilitator_url: Optional[str] = None,
    data_path: Optional[Path] = None,
    session: Optional[requests.Session] = None,
    invoices: Optional[InvoiceStore] = None,
) -> FastAPI:
    """Build the merchant app; everything external is injectable"""
    facilitator_url = (
        facilitator_url or os.getenv("XRPL_FACILITATOR_URL", config.DEFAULT_FACILITATOR_URL)
    ).rstrip("/")
    network = os.getenv("XRPL_NETWORK", config.X402_NETWORK)
    store = StateStore(data_path or OverwatchPaths.from_env().state)
    http = session or get_http_session()
    invoices = invoices if invoices is not None else InvoiceStore()

    app = FastAPI(title="Overwatch x402 Merchant", version="2.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET"],
        allow_headers=["*"],
        expose_headers=[PAYMENT_REQUIRED_HEADER, PAYMENT_RESPONSE_HEADER],
    )
    app.state.invoices = invoices

    @app.get("/health", response_model=HealthOut)
    def health():
        return HealthOut(
            status="ok",
            network=network,
            facilitator=facilitator_url,
            merchant=merchant_address,
            endpoints=[
                EndpointOut(path=path, drops=str(drops), xrp=f"{drops_to_xrp(drops):.6f}")
                for path, (_label, drops) in config.X402_ENDPOINTS.items()
            ],
        )

    def _facilitator(action: str, signature: Dict[str, Any], requirements: Dict[str, Any],
                     timeout: int) -> Dict[str, Any]:
        response = http.post(
            f"{facilitator_url}/{action}",
            json={"paymentPayload": signature, "paymentRequirements": requirements},
            timeout=timeout,
        )
        if not response.ok:
            logger.error(f"/{action} HTTP {response.status_code}: {response.text[:200]}")
            raise _PaymentRefused(f"Facilitator {action} failed (HTTP {response.status_code})")
        return response.json()

    def make_paywall_route(route_path: str, price_drops: int, description: str,
                           build_payload: Callable[[Dict[str, Any]], Dict[str, Any]]):

        def challenge(request: Request) -> JSONResponse:
            invoice_id = new_invoice_id()
            requirements = {
                "scheme": "exact",
                "network": network,
                "amount": str(price_drops),
                "asset": "XRP",
                "payTo": merchant_address,
                "maxTimeoutSeconds": config.X402_MAX_TIMEOUT_SECONDS,
                "extra": {"invoiceId": invoice_id, "sourceTag": config.X402_SOURCE_TAG},
            }
            invoices.issue(requirements, route=route_path)
            body = {
                "x402Version": config.X402_VERSION,
                "resource": {
                    "url": str(request.url.replace(query="")),
                    "description": description,
                    "mimeType": "application/json",
                },
                "accepts": [requirements],
                "error": "Payment required, retry with PAYMENT-SIGNATURE header",
                "extensions": {},
            }
            logger.info(f"402 [{route_path}] invoiceId={invoice_id[:12]}… amount={price_drops} drops")
            return JSONResponse(status_code=402, content=body,
                                headers={PAYMENT_REQUIRED_HEADER: encode_header(body)})

        def paywalled(
            request: Request,
            payment_signature: Optional[str] = Header(None, alias=PAYMENT_SIGNATURE_HEADER),
        ):
            if not payment_signature:
                return challenge(request)

            try:
                signature = decode_header(payment_signature)
            except HeaderDecodeError:
                return JSONResponse(status_code=400, content={"error": "Invalid PAYMENT-SIGNATURE encoding"})

            payload = signature.get("payload") if isinstance(signature.get("payload"), dict) else {}
            invoice_id = payload.get("invoiceId")
            requirements = invoices.get(invoice_id)
            if requirements is None:
                logger.info(f"Unknown or expired invoiceId: {invoice_id} [{route_path}]")
                return JSONResponse(status_code=402,
                                    content={"error": "Unknown or expired invoice, send a new request"})
            issued_for = invoices.route_of(invoice_id)
            if issued_for != route_path:
                logger.warning(f"invoiceId {invoice_id[:12]}… issued for {issued_for}, presented on {route_path}")
                return JSONResponse(status_code=402,
                                    content={"error": "Invoice was issued for a different resource"})

            try:
                logger.info(f"/verify [{route_path}] invoice={invoice_id[:12]}…")
                verification = _facilitator("verify", signature, requirements, VERIFY_TIMEOUT)
                if not verification.get("isValid"):
                    logger.info(f"/verify rejected: {verification.get('invalidReason')}")
                    raise _PaymentRefused(verification.get("invalidReason") or "Payment verification failed")

                logger.info(f"/settle [{route_path}] invoice={invoice_id[:12]}…")
                settlement = _facilitator("settle", signature, requirements, SETTLE_TIMEOUT)
                logger.info(f"/settle: success={settlement.get('success')} "
                            f"tx={settlement.get('transaction') or 'n/a'} [{route_path}]")
                if not settlement.get("success"):
                    raise _PaymentRefused(settlement.get("errorReason") or "Settlement failed")
            except _PaymentRefused as e:
                return JSONResponse(status_code=402, content={"error": str(e)})
            except requests.Timeout as e:
                logger.error(f"Facilitator timeout [{route_path}]: {e}")
                return JSONResponse(status_code=502, content={"error": "Facilitator timed out, try again"})
            except (requests.RequestException, ValueError) as e:
                logger.error(f"Facilitator error [{route_path}]: {e}")
                return JSONResponse(status_code=500, content={"error": "Internal error, try again"})

            invoices.discard(invoice_id)

            settled_network = settlement.get("network") or network
            body = build_payload(store.load())
            body["access"] = "GRANTED"
            body["payment"] = {
                "protocol": "x402",
                "version": config.X402_VERSION,
                "tx_hash": settlement.get("transaction"),
                "payer": settlement.get("payer"),
                "amount_drops": str(price_drops),
                "amount_xrp": f"{drops_to_xrp(price_drops):.6f}",
                "network": settled_network,
                "facilitator": facilitator_url,
            }
            receipt = encode_header({
                "success": True,
                "transaction": settlement.get("transaction"),
                "network": settled_network,
                "payer": settlement.get("payer"),
            })
            logger.info(f"200 [{route_path}] payer={str(settlement.get('payer'))[:10]}…")
            return JSONResponse(status_code=200, content=body, headers={PAYMENT_RESPONSE_HEADER: receipt})

        return paywalled

    for path, (_label, drops) in config.X402_ENDPOINTS.items():
        description, builder = PAYLOAD_BUILDERS[path]
        app.add_api_route(path, make_paywall_route(path, drops, description, builder), methods=["GET"])

    return app


# =============================================================================
# COMMAND LINE INTERFACE
# =============================================================================

def main():
    import argparse
    import uvicorn
    from dotenv import load_dotenv

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    load_dotenv()

    parser = argparse.ArgumentParser(description="x402 merchant for Overwatch data")
    parser.add_argument("--root", help="Repository root (default: OVERWATCH_ROOT or cwd)")
    parser.add_argument("--port", type=int,
                        default=int(os.getenv("MERCHANT_PORT", os.getenv("PORT", DEFAULT_PORT))))
    args = parser.parse_args()

    merchant_address = os.getenv("XRPL_MERCHANT_ADDRESS")
    if not merchant_address:
        logger.error("XRPL_MERCHANT_ADDRESS is required")
        exit(1)

    app = create_app(merchant_address, data_path=OverwatchPaths.from_env(args.root).state)
    logger.info(f"Listening on http://127.0.0.1:{args.port}  merchant={merchant_address}")
    uvicorn.run(app, host="127.0.0.1", port=args.port)


if __name__ == "__main__":
    main()
