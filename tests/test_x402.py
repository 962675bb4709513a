"""
Unit Tests for the x402 Payment Agent

Tests cover:
- Header codec (canonical JSON, strict decoding) and invoice binding
- Spending guardrails and their check order
- Agent state machine per endpoint (settle, reject, fail)
- x402_agent state block and the run_agent preconditions
"""

import base64
import hashlib
import json
from unittest.mock import Mock

import pytest
import requests

from overwatch.x402.codec import (
    PAYMENT_REQUIRED_HEADER,
    PAYMENT_SIGNATURE_HEADER,
    PAYMENT_RESPONSE_HEADER,
    HeaderDecodeError,
    canonical_json,
    encode_header,
    decode_header,
    memo_data,
    invoice_hash,
    drops_to_xrp,
)
from overwatch.x402.guardrails import SpendingGuardrails
from overwatch.x402.agent import (
    PaymentAttempt,
    PaymentState,
    X402Agent,
    X402ProtocolError,
    build_agent_block,
    last_ledger_sequence,
    parse_challenge,
    run_agent,
)
from overwatch.terminal.state_store import StateStore


MERCHANT = "http://merchant.test"
PAY_TO = "rMerchantAddressXXXXXXXXXXXXXXXXX"


class FakeGateway:
    """Stands in for XRPLGateway: fixed address, scripted balance, recorded signing"""

    address = "rAgentAddressYYYYYYYYYYYYYYYYYYYY"

    def __init__(self, balances=(20.0,)):
        self.balances = list(balances)
        self.signed = []

    def balance_xrp(self):
        if len(self.balances) > 1:
            return self.balances.pop(0)
        return self.balances[0]

    def sign_payment(self, destination, amount_drops, invoice_id, source_tag, max_timeout_seconds):
        self.signed.append((destination, amount_drops, invoice_id, source_tag, max_timeout_seconds))
        return f"BLOB-{invoice_id}", f"HASH{len(self.signed):060d}"


def requirement(amount="1000", invoice_id="INV0001AAAABBBBCCCC"):
    return {
        "scheme": "exact",
        "network": "xrpl:0",
        "amount": amount,
        "asset": "XRP",
        "payTo": PAY_TO,
        "maxTimeoutSeconds": 300,
        "extra": {"invoiceId": invoice_id, "sourceTag": 804681468},
    }


def http_response(status_code, body=None, headers=None):
    response = Mock()
    response.status_code = status_code
    response.ok = status_code < 400
    response.headers = headers or {}
    response.json.return_value = body if body is not None else {}
    response.text = json.dumps(body) if body is not None else ""
    return response


def challenge_response(req):
    body = {"x402Version": 2, "accepts": [req]}
    return http_response(402, body, {PAYMENT_REQUIRED_HEADER: encode_header(body)})


def paid_response(data=None, tx="SETTLEDTXHASH000000000000"):
    return http_response(200, data or {"access": "GRANTED"},
                         {PAYMENT_RESPONSE_HEADER: encode_header({"success": True, "transaction": tx})})


def make_agent(responses, guardrails=None, balance=20.0):
    session = Mock()
    session.get.side_effect = list(responses)
    agent = X402Agent(FakeGateway(), guardrails=guardrails or SpendingGuardrails(),
                      merchant_base=MERCHANT, facilitator_url="http://facilitator.test", session=session)
    agent.balance_xrp = balance
    return agent, session


# =============================================================================
# CODEC
# =============================================================================

class TestCodec:

    def test_canonical_json(self):
        assert canonical_json({"b": 1, "a": {"d": 2, "c": "é"}}) == '{"a":{"c":"é","d":2},"b":1}'

    def test_encode_is_key_order_independent(self):
        assert encode_header({"x": 1, "y": 2}) == encode_header({"y": 2, "x": 1})

    def test_decode(self):
        assert decode_header(encode_header({"x402Version": 2})) == {"x402Version": 2}

    def test_decode_rejects_bad_base64(self):
        with pytest.raises(HeaderDecodeError):
            decode_header("not base64!!")

    def test_decode_rejects_non_object(self):
        with pytest.raises(HeaderDecodeError):
            decode_header(base64.b64encode(b"[1,2]").decode())

    def test_decode_rejects_non_json(self):
        with pytest.raises(HeaderDecodeError):
            decode_header(base64.b64encode(b"hello").decode())

    def test_invoice_binding(self):
        assert memo_data("abc") == "616263"
        assert invoice_hash("abc") == hashlib.sha256(b"abc").hexdigest().upper()
        assert len(invoice_hash("abc")) == 64

    def test_drops_to_xrp(self):
        assert drops_to_xrp("1500") == 0.0015
        assert drops_to_xrp(1_000_000) == 1.0

    def test_last_ledger_sequence(self):
        assert last_ledger_sequence(100, 20) == 107
        assert last_ledger_sequence(100, None) == 100 + 75 + 2


# =============================================================================
# GUARDRAILS
# =============================================================================

class TestGuardrails:

    def test_allows_normal_payment(self):
        assert SpendingGuardrails().check(1000, 20.0) is None

    def test_transaction_type(self):
        assert SpendingGuardrails().check(1000, 20.0, "OfferCreate") == "transaction type not allowed"

    def test_invalid_amount(self):
        assert SpendingGuardrails().check(0, 20.0) == "invalid amount"

    def test_per_tx_cap(self):
        assert SpendingGuardrails(per_tx_cap_drops=2000).check(2001, 20.0) == "cap exceeded"
        assert SpendingGuardrails(per_tx_cap_drops=2000).check(2000, 20.0) is None

    def test_session_cap(self):
        guard = SpendingGuardrails(per_tx_cap_drops=2000, session_cap_drops=3000)
        guard.record_spend(2000)
        assert guard.check(1001, 20.0) == "session cap exceeded"
        assert guard.check(1000, 20.0) is None

    def test_balance_floor(self):
        guard = SpendingGuardrails(balance_floor_xrp=2.0)
        assert guard.check(1000, 2.0005) == "balance floor"
        assert guard.check(1000, 2.5) is None
        assert guard.check(1000, None) is None

    def test_check_order(self):
        """Cap is reported before the balance floor"""
        guard = SpendingGuardrails(balance_floor_xrp=100.0, per_tx_cap_drops=10)
        assert guard.check(50, 1.0) == "cap exceeded"


# =============================================================================
# AGENT STATE MACHINE
# =============================================================================

class TestParseChallenge:

    def test_sanitizes_amount(self):
        req = challenge_response(requirement(amount="1\u200b000"))
        assert parse_challenge(req)["amount"] == "1000"

    def test_missing_header(self):
        with pytest.raises(X402ProtocolError):
            parse_challenge(http_response(402, {}))

    def test_missing_invoice(self):
        req = requirement()
        req["extra"] = {}
        with pytest.raises(X402ProtocolError):
            parse_challenge(challenge_response(req))

    def test_empty_amount(self):
        with pytest.raises(X402ProtocolError):
            parse_challenge(challenge_response(requirement(amount="free")))


class TestAgentRequest:

    def test_settles(self):
        agent, session = make_agent([challenge_response(requirement()), paid_response({"resource": "x"})])

        attempt = agent.request("/api/v1/premium-analysis", "Premium Analysis")

        assert attempt.state == PaymentState.SETTLED
        assert attempt.amount_drops == 1000
        assert attempt.invoice_id == "INV0001AAAABBBBCCCC"
        assert attempt.tx_hash == "SETTLEDTXHASH000000000000"
        assert attempt.data == {"resource": "x"}
        assert agent.guardrails.session_spent_drops == 1000
        assert agent.balance_xrp == pytest.approx(19.999)
        assert agent.gateway.signed == [(PAY_TO, 1000, "INV0001AAAABBBBCCCC", 804681468, 300)]

    def test_signature_header_contents(self):
        agent, session = make_agent([challenge_response(requirement()), paid_response()])
        agent.request("/api/v1/bear-case", "Bear Case")

        first_url = session.get.call_args_list[0][0][0]
        headers = session.get.call_args_list[1][1]["headers"]
        signature = decode_header(headers[PAYMENT_SIGNATURE_HEADER])
        assert first_url == f"{MERCHANT}/api/v1/bear-case"
        assert signature["x402Version"] == 2
        assert signature["accepted"]["payTo"] == PAY_TO
        assert signature["payload"] == {"signedTxBlob": "BLOB-INV0001AAAABBBBCCCC",
                                        "invoiceId": "INV0001AAAABBBBCCCC"}

    def test_receipt_missing_keeps_signed_hash(self):
        agent, _ = make_agent([challenge_response(requirement()), http_response(200, {"ok": 1})])
        attempt = agent.request("/x", "X")
        assert attempt.settled
        assert attempt.tx_hash == "HASH" + "1".zfill(60)

    def test_unexpected_status_fails(self):
        agent, _ = make_agent([http_response(200, {"free": True})])
        attempt = agent.request("/x", "X")

        assert attempt.state == PaymentState.FAILED
        assert "Expected 402" in attempt.reason
        assert agent.gateway.signed == []

    def test_guardrail_rejects_before_signing(self):
        agent, session = make_agent([challenge_response(requirement(amount="5000"))])
        attempt = agent.request("/x", "X")

        assert attempt.state == PaymentState.REJECTED
        assert attempt.reason == "cap exceeded"
        assert agent.gateway.signed == []
        assert session.get.call_count == 1

    def test_balance_floor_rejects(self):
        agent, _ = make_agent([challenge_response(requirement())], balance=2.0005)
        attempt = agent.request("/x", "X")
        assert attempt.reason == "balance floor"

    def test_paid_request_rejected(self):
        agent, _ = make_agent([
            challenge_response(requirement()),
            http_response(402, {"error": "Settlement failed"}),
        ])
        attempt = agent.request("/x", "X")

        assert attempt.state == PaymentState.REJECTED
        assert attempt.reason.startswith("HTTP 402:")
        assert agent.guardrails.session_spent_drops == 0

    def test_network_error_fails(self):
        agent, _ = make_agent([requests.ConnectionError("refused")])
        attempt = agent.request("/x", "X")
        assert attempt.state == PaymentState.FAILED
        assert "refused" in attempt.reason

    def test_run_continues_after_failure(self):
        agent, _ = make_agent([
            http_response(500, {"error": "boom"}),
            challenge_response(requirement(invoice_id="INV2")), paid_response(),
        ])
        attempts = agent.run({"/a": ("A", 1000), "/b": ("B", 1000)})

        assert [a.state for a in attempts] == [PaymentState.FAILED, PaymentState.SETTLED]

    def test_session_cap_across_endpoints(self):
        guard = SpendingGuardrails(per_tx_cap_drops=2000, session_cap_drops=2000)
        agent, _ = make_agent([
            challenge_response(requirement("1500", "INV1")), paid_response(),
            challenge_response(requirement("1000", "INV2")),
        ], guardrails=guard)
        attempts = agent.run({"/a": ("A", 1500), "/b": ("B", 1000)})

        assert attempts[0].settled
        assert attempts[1].reason == "session cap exceeded"


class TestProbes:

    def test_facilitator_supported(self):
        agent, session = make_agent([http_response(200, {"kinds": [{"network": "xrpl:0", "scheme": "exact"}]})])
        assert agent.check_facilitator() is True
        assert session.get.call_args[0][0] == "http://facilitator.test/supported"

    def test_facilitator_unreachable_is_not_fatal(self):
        agent, _ = make_agent([requests.Timeout("slow")])
        assert agent.check_facilitator() is False

    def test_merchant_health(self):
        ok_agent, _ = make_agent([http_response(200, {"status": "ok"})])
        down_agent, _ = make_agent([requests.ConnectionError("refused")])

        assert ok_agent.check_merchant() is True
        assert down_agent.check_merchant() is False


# =============================================================================
# STATE BLOCK / RUNNER
# =============================================================================

class TestAgentBlock:

    def test_block_contents(self, fixed_now):
        agent, _ = make_agent([])
        agent.balance_xrp = 19.9985
        settled = PaymentAttempt("/a", "A", PaymentState.SETTLED, 1000, "INV1", "TX1", flow_log=["step"])
        rejected = PaymentAttempt("/b", "B", PaymentState.REJECTED, 5000, "INV2", reason="cap exceeded")

        block = build_agent_block(agent, [settled, rejected], {"payments_sent": 4}, True, fixed_now)

        assert block["network"] == "XRPL MAINNET"
        assert block["protocol"] == "x402 v2"
        assert block["payments_sent"] == 5
        assert block["session_drops_spent"] == 1000
        assert block["session_xrp_spent"] == 0.001
        assert block["last_payment"]["tx_hash"] == "TX1"
        assert block["last_payment"]["status"] == "SUCCESS"
        assert block["transactions"][1] == {
            "endpoint": "/b", "label": "B", "status": "REJECTED", "timestamp": rejected.timestamp,
            "amount_drops": "5000", "amount_xrp": 0.005, "invoice_id": "INV2", "error": "cap exceeded",
        }
        assert block["x402_flow"] == ["── A ──", "step", "── B ──"]
        assert block["last_updated"] == "2026-02-20T14:30:00.000Z"

    def test_no_settlement(self):
        agent, _ = make_agent([])
        block = build_agent_block(agent, [], None)
        assert block["payments_sent"] == 0
        assert block["last_payment"] is None


class TestRunAgent:

    def test_missing_seed(self, paths, monkeypatch):
        monkeypatch.delenv("X402_MAINNET_SEED", raising=False)
        assert run_agent(paths, push=False) == 1

    def test_balance_below_floor(self, paths):
        agent, session = make_agent([])
        agent.gateway.balances = [1.5]

        assert run_agent(paths, agent=agent, push=False) == 1
        session.get.assert_not_called()

    def test_balance_unreadable(self, paths):
        agent, _ = make_agent([])
        agent.gateway.balance_xrp = Mock(side_effect=ConnectionError("rpc down"))
        assert run_agent(paths, agent=agent, push=False) == 1

    def test_merchant_down(self, paths):
        agent, _ = make_agent([
            http_response(200, {"kinds": []}),
            requests.ConnectionError("refused"),
        ])
        assert run_agent(paths, agent=agent, push=False) == 1
        assert not paths.state.exists()

    def test_writes_block_and_publishes(self, paths, sample_state, fixed_now):
        StateStore(paths.state).save(sample_state)
        req = requirement(invoice_id="INV-PREMIUM")
        agent, _ = make_agent([
            http_response(200, {"kinds": [{"network": "xrpl:0"}]}),
            http_response(200, {"status": "ok"}),
            challenge_response(req), paid_response(),
            challenge_response(requirement("1500", "INV-BEAR")), paid_response(tx="TXBEAR"),
            challenge_response(requirement("500", "INV-STRESS")), http_response(402, {"error": "no"}),
        ])
        agent.gateway.balances = [20.0, 19.9975]
        publisher = Mock()

        code = run_agent(paths, agent=agent, publisher=publisher, now=fixed_now)

        state = StateStore(paths.state).load()
        block = state["x402_agent"]
        assert code == 0
        assert state["custom_note"] == "kept across cycles"
        assert block["payments_sent"] == 2
        assert block["session_drops_spent"] == 2500
        assert block["balance_xrp"] == 19.9975
        assert block["facilitator_ok"] is True
        assert [t["status"] for t in block["transactions"]] == ["SUCCESS", "SUCCESS", "REJECTED"]
        publisher.publish.assert_called_once_with(
            ["dashboard-data.json"], "auto: x402 mainnet agent update 2026-02-20 14:30 UTC"
        )
