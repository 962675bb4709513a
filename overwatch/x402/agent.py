"""
OVERWATCH x402 AGENT
Pays for each paywalled merchant endpoint with a signed XRPL Payment

Per endpoint:
    UNPAID -> GET, expect 402 -> CHALLENGE_RECEIVED
           -> guardrails, build + sign Payment bound to the invoice -> SUBMITTED
           -> GET with PAYMENT-SIGNATURE -> SETTLED | REJECTED
Any protocol error marks only that endpoint FAILED; the others still run.
A guardrail violation is REJECTED before anything is signed or sent.

The x402_agent block is written into dashboard-data.json afterwards.

Required env vars:
    X402_MAINNET_SEED       agent wallet seed
    XRPL_FACILITATOR_URL    facilitator (default: mainnet)
    X402_MERCHANT_BASE      merchant base URL (default: http://127.0.0.1:4403)
    XRPL_RPC_URL            XRPL JSON-RPC endpoint

Usage:
    python -m overwatch.x402.agent
"""

import os
import re
import math
import logging
from enum import Enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Any, Optional, List, Tuple

import requests

from overwatch import config
from overwatch.config import OverwatchPaths
from overwatch.shared.resilience import get_http_session
from overwatch.terminal.models import utc_timestamp
from overwatch.terminal.state_store import StateStore
from overwatch.terminal.publish import GitPublisher, commit_stamp
from overwatch.x402.codec import (
    PAYMENT_REQUIRED_HEADER,
    PAYMENT_SIGNATURE_HEADER,
    PAYMENT_RESPONSE_HEADER,
    HeaderDecodeError,
    encode_header,
    decode_header,
    memo_data,
    invoice_hash,
    drops_to_xrp,
    DROPS_PER_XRP,
)
from overwatch.x402.guardrails import SpendingGuardrails

logger = logging.getLogger(__name__)

CHALLENGE_TIMEOUT = 15
PAID_REQUEST_TIMEOUT = 45
FACILITATOR_PROBE_TIMEOUT = 10
MERCHANT_PROBE_TIMEOUT = 8


class PaymentState(Enum):
    UNPAID = "UNPAID"
    CHALLENGE_RECEIVED = "CHALLENGE_RECEIVED"
    SUBMITTED = "SUBMITTED"
    SETTLED = "SETTLED"
    REJECTED = "REJECTED"
    FAILED = "FAILED"


class X402ProtocolError(Exception):
    """The merchant did not follow the x402 exchange"""
    pass


def last_ledger_sequence(validated: int, max_timeout_seconds: Optional[int]) -> int:
    """validated + ceil(timeout / 4) + 2"""
    timeout = max_timeout_seconds or config.X402_MAX_TIMEOUT_SECONDS
    return validated + math.ceil(timeout / 4) + 2


# =============================================================================
# LEDGER ACCESS
# =============================================================================

class XRPLGateway:
    """Wallet + JSON-RPC client; the only code that talks to xrpl-py"""

    def __init__(self, seed: str, rpc_url: Optional[str] = None):
        from xrpl.wallet import Wallet
        from xrpl.clients import JsonRpcClient

        self.wallet = Wallet.from_seed(seed)
        self.rpc_url = rpc_url or os.getenv("XRPL_RPC_URL", config.DEFAULT_XRPL_JSON_RPC)
        self.client = JsonRpcClient(self.rpc_url)

    @property
    def address(self) -> str:
        return self.wallet.address

    def balance_xrp(self) -> float:
        from xrpl.account import get_balance
        return drops_to_xrp(get_balance(self.address, self.client))

    def sign_payment(
        self,
        destination: str,
        amount_drops: int,
        invoice_id: str,
        source_tag: int,
        max_timeout_seconds: Optional[int],
    ) -> Tuple[str, str]:
        """Autofill and sign; returns (tx_blob, tx_hash). Nothing is submitted."""
        from xrpl.models.transactions import Payment, Memo
        from xrpl.transaction import autofill, sign
        from xrpl.ledger import get_latest_validated_ledger_sequence

        validated = get_latest_validated_ledger_sequence(self.client)
        payment = Payment(
            account=self.address,
            destination=destination,
            amount=str(amount_drops),
            source_tag=source_tag,
            memos=[Memo(memo_data=memo_data(invoice_id))],
            invoice_id=invoice_hash(invoice_id),
            last_ledger_sequence=last_ledger_sequence(validated, max_timeout_seconds),
        )
        signed = sign(autofill(payment, self.client), self.wallet)
        return signed.blob(), signed.get_hash()


# =============================================================================
# PROTOCOL
# =============================================================================

@dataclass
class PaymentAttempt:
    """One endpoint's walk through the payment state machine"""
    endpoint: str
    label: str
    state: PaymentState = PaymentState.UNPAID
    amount_drops: Optional[int] = None
    invoice_id: Optional[str] = None
    tx_hash: Optional[str] = None
    reason: Optional[str] = None
    data: Optional[Dict[str, Any]] = None
    flow_log: List[str] = field(default_factory=list)
    timestamp: str = field(default_factory=utc_timestamp)

    @property
    def settled(self) -> bool:
        return self.state == PaymentState.SETTLED

    def to_transaction(self) -> Dict[str, Any]:
        entry = {
            "endpoint": self.endpoint,
            "label": self.label,
            "status": "SUCCESS" if self.settled else self.state.value,
            "timestamp": self.timestamp,
        }
        if self.amount_drops is not None:
            entry["amount_drops"] = str(self.amount_drops)
            entry["amount_xrp"] = drops_to_xrp(self.amount_drops)
        if self.invoice_id:
            entry["invoice_id"] = self.invoice_id
        if self.tx_hash:
            entry["tx_hash"] = self.tx_hash
        if self.reason:
            entry["error"] = self.reason
        return entry


def parse_challenge(response: requests.Response) -> Dict[str, Any]:
    """First accepted payment requirement from a 402 response"""
    raw = response.headers.get(PAYMENT_REQUIRED_HEADER)
    if not raw:
        raise X402ProtocolError("Missing PAYMENT-REQUIRED header")
    try:
        body = decode_header(raw)
    except HeaderDecodeError as e:
        raise X402ProtocolError(str(e)) from e

    accepts = body.get("accepts") or []
    if not accepts or not isinstance(accepts[0], dict):
        raise X402ProtocolError("No accepted payment terms in 402 body")
    requirement = dict(accepts[0])

    invoice_id = (requirement.get("extra") or {}).get("invoiceId")
    if not invoice_id:
        raise X402ProtocolError("No invoiceId in payment requirements")
    if not requirement.get("payTo"):
        raise X402ProtocolError("No payTo in payment requirements")

    # stray non-digits (editor unicode) in the amount
    requirement["amount"] = re.sub(r"\D", "", str(requirement.get("amount", "")))
    if not requirement["amount"]:
        raise X402ProtocolError("Payment amount empty after sanitizing")
    return requirement


class X402Agent:
    """Walks each paywalled endpoint through challenge, payment and settlement"""

    def __init__(
        self,
        gateway: XRPLGateway,
        guardrails: Optional[SpendingGuardrails] = None,
        merchant_base: Optional[str] = None,
        facilitator_url: Optional[str] = None,
        session: Optional[requests.Session] = None,
    ):
        self.gateway = gateway
        self.guardrails = guardrails or SpendingGuardrails()
        self.merchant_base = (
            merchant_base or os.getenv("X402_MERCHANT_BASE", config.DEFAULT_MERCHANT_BASE)
        ).rstrip("/")
        self.facilitator_url = (
            facilitator_url or os.getenv("XRPL_FACILITATOR_URL", config.DEFAULT_FACILITATOR_URL)
        ).rstrip("/")
        self._session = session or get_http_session()
        self.balance_xrp: Optional[float] = None

    # -------------------------------------------------------------------------
    # Probes
    # -------------------------------------------------------------------------

    def check_facilitator(self) -> bool:
        """True when the facilitator lists our network; never fatal"""
        try:
            response = self._session.get(
                f"{self.facilitator_url}/supported", timeout=FACILITATOR_PROBE_TIMEOUT
            )
            response.raise_for_status()
            kinds = response.json().get("kinds") or []
        except (requests.RequestException, ValueError, AttributeError) as e:
            logger.warning(f"Facilitator check: {e}, proceeding")
            return False
        supported = any(k.get("network") == config.X402_NETWORK for k in kinds if isinstance(k, dict))
        logger.info(f"Facilitator reachable, {config.X402_NETWORK} supported: {supported}")
        if not supported:
            logger.warning(f"{config.X402_NETWORK} not listed in supported kinds, proceeding anyway")
        return supported

    def check_merchant(self) -> bool:
        try:
            response = self._session.get(
                f"{self.merchant_base}/health", timeout=MERCHANT_PROBE_TIMEOUT
            )
            response.raise_for_status()
        except requests.RequestException as e:
            logger.error(f"Merchant not reachable at {self.merchant_base}/health: {e}")
            return False
        logger.info(f"Merchant healthy at {self.merchant_base}")
        return True

    # -------------------------------------------------------------------------
    # One endpoint
    # -------------------------------------------------------------------------

    def _pay(self, attempt: PaymentAttempt, url: str) -> None:
        challenge = self._session.get(
            url, headers={"Accept": "application/json"}, timeout=CHALLENGE_TIMEOUT
        )
        attempt.flow_log.append(f"→ GET {url}  →  HTTP {challenge.status_code}")
        if challenge.status_code != 402:
            raise X402ProtocolError(
                f"Expected 402, got {challenge.status_code}: {challenge.text[:200]}"
            )

        requirement = parse_challenge(challenge)
        invoice_id = requirement["extra"]["invoiceId"]
        attempt.invoice_id = invoice_id
        attempt.amount_drops = int(requirement["amount"])
        attempt.state = PaymentState.CHALLENGE_RECEIVED
        attempt.flow_log.append(
            f"← 402  amount={attempt.amount_drops} drops  invoiceId={invoice_id[:12]}…"
        )
        logger.info(f"[{attempt.label}] 402: {attempt.amount_drops} drops → "
                    f"{requirement['payTo'][:10]}… invoiceId {invoice_id[:12]}…")

        reason = self.guardrails.check(attempt.amount_drops, self.balance_xrp, "Payment")
        if reason:
            attempt.state = PaymentState.REJECTED
            attempt.reason = reason
            attempt.flow_log.append(f"✗ Guardrail: {reason}")
            logger.warning(f"[{attempt.label}] Guardrail refused payment: {reason}")
            return

        tx_blob, tx_hash = self.gateway.sign_payment(
            requirement["payTo"],
            attempt.amount_drops,
            invoice_id,
            (requirement.get("extra") or {}).get("sourceTag", config.X402_SOURCE_TAG),
            requirement.get("maxTimeoutSeconds"),
        )
        attempt.tx_hash = tx_hash
        attempt.flow_log.append(f"→ Signed Payment  hash={tx_hash[:12]}…  drops={attempt.amount_drops}")

        signature = encode_header({
            "x402Version": config.X402_VERSION,
            "accepted": requirement,
            "payload": {"signedTxBlob": tx_blob, "invoiceId": invoice_id},
        })
        attempt.state = PaymentState.SUBMITTED
        paid = self._session.get(
            url,
            headers={"Accept": "application/json", PAYMENT_SIGNATURE_HEADER: signature},
            timeout=PAID_REQUEST_TIMEOUT,
        )
        attempt.flow_log.append(f"→ GET (+PAYMENT-SIGNATURE)  →  HTTP {paid.status_code}")

        if paid.status_code != 200:
            attempt.state = PaymentState.REJECTED
            attempt.reason = f"HTTP {paid.status_code}: {paid.text[:200]}"
            logger.error(f"[{attempt.label}] Payment rejected ({attempt.reason})")
            return

        attempt.data = paid.json()
        receipt_header = paid.headers.get(PAYMENT_RESPONSE_HEADER)
        if receipt_header:
            try:
                receipt = decode_header(receipt_header)
                attempt.tx_hash = receipt.get("transaction") or tx_hash
            except HeaderDecodeError as e:
                logger.warning(f"[{attempt.label}] Unreadable PAYMENT-RESPONSE: {e}")

        attempt.state = PaymentState.SETTLED
        self.guardrails.record_spend(attempt.amount_drops)
        if self.balance_xrp is not None:
            self.balance_xrp -= attempt.amount_drops / DROPS_PER_XRP
        attempt.flow_log.append(f"← 200  tx={attempt.tx_hash[:12]}…  payer={self.gateway.address[:10]}…")
        logger.info(f"[{attempt.label}] Settled: tx={attempt.tx_hash}")

    def request(self, path: str, label: str) -> PaymentAttempt:
        """Run the full exchange for one endpoint; never raises"""
        attempt = PaymentAttempt(endpoint=path, label=label)
        url = f"{self.merchant_base}{path}"
        try:
            self._pay(attempt, url)
        except (X402ProtocolError, requests.RequestException, ValueError) as e:
            attempt.state = PaymentState.FAILED
            attempt.reason = str(e)
            attempt.flow_log.append(f"ERROR: {e}")
            logger.error(f"[{label}] failed: {e}")
        except Exception as e:
            attempt.state = PaymentState.FAILED
            attempt.reason = f"{type(e).__name__}: {e}"
            attempt.flow_log.append(f"ERROR: {attempt.reason}")
            logger.exception(f"[{label}] unexpected error")
        return attempt

    def run(self, endpoints: Optional[Dict[str, Tuple[str, int]]] = None) -> List[PaymentAttempt]:
        endpoints = endpoints or config.X402_ENDPOINTS
        return [self.request(path, label) for path, (label, _drops) in endpoints.items()]


# =============================================================================
# STATE BLOCK
# =============================================================================

def build_agent_block(
    agent: X402Agent,
    attempts: List[PaymentAttempt],
    previous: Optional[Dict[str, Any]] = None,
    facilitator_ok: bool = False,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """The x402_agent block written into dashboard-data.json"""
    previous = previous if isinstance(previous, dict) else {}
    settled = [a for a in attempts if a.settled]
    spent = sum(a.amount_drops or 0 for a in settled)
    transactions = [a.to_transaction() for a in attempts]

    flow = []
    for a in attempts:
        flow.append(f"── {a.label} ──")
        flow.extend(a.flow_log)

    return {
        "network": "XRPL MAINNET",
        "protocol": f"x402 v{config.X402_VERSION}",
        "facilitator": agent.facilitator_url,
        "facilitator_ok": facilitator_ok,
        "agent_address": agent.gateway.address,
        "merchant_base": agent.merchant_base,
        "balance_xrp": round(agent.balance_xrp, 6) if agent.balance_xrp is not None else None,
        "payments_sent": int(previous.get("payments_sent") or 0) + len(settled),
        "session_drops_spent": spent,
        "session_xrp_spent": drops_to_xrp(spent),
        "transactions": transactions,
        "last_payment": settled[-1].to_transaction() if settled else None,
        "x402_flow": flow,
        "last_updated": utc_timestamp(now),
    }


def run_agent(
    paths: OverwatchPaths,
    agent: Optional[X402Agent] = None,
    publisher: Optional[GitPublisher] = None,
    push: bool = True,
    now: Optional[datetime] = None,
) -> int:
    """Full agent session; returns the process exit code"""
    if agent is None:
        seed = os.getenv("X402_MAINNET_SEED")
        if not seed:
            logger.error("X402_MAINNET_SEED is required")
            return 1
        try:
            agent = X402Agent(XRPLGateway(seed))
        except Exception as e:
            logger.error(f"Invalid X402_MAINNET_SEED: {e}")
            return 1

    logger.info(f"Agent:       {agent.gateway.address}")
    logger.info(f"Merchant:    {agent.merchant_base}")
    logger.info(f"Facilitator: {agent.facilitator_url}")

    try:
        agent.balance_xrp = agent.gateway.balance_xrp()
    except Exception as e:
        logger.error(f"Could not read balance for {agent.gateway.address}: {e}")
        return 1

    logger.info(f"Balance: {agent.balance_xrp} XRP")
    if agent.balance_xrp < agent.guardrails.balance_floor_xrp:
        logger.error(f"Balance too low ({agent.balance_xrp} XRP), minimum "
                     f"{agent.guardrails.balance_floor_xrp} XRP required")
        return 1
    if agent.balance_xrp < config.GUARDRAIL_WARN_BALANCE_XRP:
        logger.warning(f"Low balance ({agent.balance_xrp} XRP), consider topping up {agent.gateway.address}")

    facilitator_ok = agent.check_facilitator()
    if not agent.check_merchant():
        return 1

    store = StateStore(paths.state)
    state = store.load()
    attempts = agent.run()

    try:
        agent.balance_xrp = agent.gateway.balance_xrp()
    except Exception as e:
        logger.warning(f"Could not refresh balance: {e}")

    state["x402_agent"] = build_agent_block(
        agent, attempts, state.get("x402_agent"), facilitator_ok, now
    )
    store.save(state)
    logger.info("Wrote x402_agent block to dashboard-data.json")

    if push:
        publisher = publisher or GitPublisher(paths.root)
        publisher.publish([paths.state.name], f"auto: x402 mainnet agent update {commit_stamp(now)}")

    print(f"\n{'-'*60}")
    print(f"Agent:    {agent.gateway.address}")
    print(f"Balance:  {agent.balance_xrp} XRP")
    print(f"Session:  {sum(a.settled for a in attempts)}/{len(attempts)} endpoints paid  |  "
          f"{state['x402_agent']['session_drops_spent']} drops")
    for a in attempts:
        icon = "✓" if a.settled else "✗"
        detail = f"  tx={a.tx_hash[:14]}…" if a.tx_hash else (f"  ({a.reason})" if a.reason else "")
        print(f"  {icon} {a.label:<20} {a.amount_drops if a.amount_drops is not None else '-'} drops{detail}")
    print(f"{'-'*60}")
    return 0


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

    parser = argparse.ArgumentParser(description="Pay for each paywalled endpoint over x402")
    parser.add_argument("--root", help="Repository root (default: OVERWATCH_ROOT or cwd)")
    parser.add_argument("--no-push", action="store_true", help="Skip git commit/push")
    args = parser.parse_args()

    exit(run_agent(OverwatchPaths.from_env(args.root), push=not args.no_push))


if __name__ == "__main__":
    main()
