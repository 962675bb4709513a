"""
Tests for the x402 Merchant

Tests cover:
- Health endpoint and the 402 challenge
- Signature decoding and invoice lookup
- Facilitator verify / settle outcomes and their status codes
- Invoice expiry
- Agent paying the merchant end to end
"""

from unittest.mock import Mock

import pytest
import requests
from fastapi.testclient import TestClient

from overwatch.x402.codec import (
    PAYMENT_REQUIRED_HEADER,
    PAYMENT_RESPONSE_HEADER,
    PAYMENT_SIGNATURE_HEADER,
    encode_header,
    decode_header,
)
from overwatch.x402.merchant import InvoiceStore, create_app, new_invoice_id
from overwatch.x402.agent import X402Agent, PaymentState
from overwatch.x402.guardrails import SpendingGuardrails
from overwatch.terminal.state_store import StateStore


MERCHANT_ADDRESS = "rMerchantAddressXXXXXXXXXXXXXXXXX"
FACILITATOR = "https://facilitator.test"


def facilitator(respond, verify=None, settle=None):
    """Mock session answering POST /verify and /settle"""
    verify = verify if verify is not None else respond({"isValid": True})
    settle = settle if settle is not None else respond({
        "success": True, "transaction": "SETTLEDTX0001", "payer": "rPayer", "network": "xrpl:0",
    })
    session = Mock()

    def post(url, json=None, timeout=None):
        answer = verify if url.endswith("/verify") else settle
        if isinstance(answer, Exception):
            raise answer
        return answer

    session.post.side_effect = post
    return session


@pytest.fixture
def data_path(tmp_path, sample_state):
    path = tmp_path / "dashboard-data.json"
    StateStore(path).save(sample_state)
    return path


@pytest.fixture
def merchant(data_path, make_response):
    """(client, facilitator session) for a merchant with a working facilitator"""
    session = facilitator(make_response)
    app = create_app(MERCHANT_ADDRESS, facilitator_url=FACILITATOR, data_path=data_path,
                     session=session, invoices=InvoiceStore())
    return TestClient(app), session


def signature_for(client, path):
    """Fetch a challenge and build a PAYMENT-SIGNATURE header for it"""
    challenge = client.get(path)
    requirement = decode_header(challenge.headers[PAYMENT_REQUIRED_HEADER])["accepts"][0]
    return encode_header({
        "x402Version": 2,
        "accepted": requirement,
        "payload": {"signedTxBlob": "DEADBEEF", "invoiceId": requirement["extra"]["invoiceId"]},
    })


def build_app(data_path, session):
    return TestClient(create_app(MERCHANT_ADDRESS, facilitator_url=FACILITATOR,
                                 data_path=data_path, session=session))


class TestHealth:

    def test_health(self, merchant):
        client, _ = merchant
        body = client.get("/health").json()

        assert body["status"] == "ok"
        assert body["network"] == "xrpl:0"
        assert body["merchant"] == MERCHANT_ADDRESS
        assert body["facilitator"] == FACILITATOR
        assert {"path": "/api/v1/stress-report", "drops": "500", "xrp": "0.000500"} in body["endpoints"]


class TestChallenge:

    def test_402_with_requirements(self, merchant):
        client, session = merchant
        response = client.get("/api/v1/bear-case")

        assert response.status_code == 402
        header = decode_header(response.headers[PAYMENT_REQUIRED_HEADER])
        assert header == response.json()
        req = header["accepts"][0]
        assert req["amount"] == "1500"
        assert req["payTo"] == MERCHANT_ADDRESS
        assert req["network"] == "xrpl:0"
        assert req["maxTimeoutSeconds"] == 300
        assert req["extra"]["sourceTag"] == 804681468
        assert len(req["extra"]["invoiceId"]) == 32
        assert header["resource"]["url"].endswith("/api/v1/bear-case")
        assert header["x402Version"] == 2
        assert len(client.app.state.invoices) == 1
        session.post.assert_not_called()

    def test_each_challenge_is_a_new_invoice(self, merchant):
        client, _ = merchant
        first = decode_header(client.get("/api/v1/stress-report").headers[PAYMENT_REQUIRED_HEADER])
        second = decode_header(client.get("/api/v1/stress-report").headers[PAYMENT_REQUIRED_HEADER])

        assert first["accepts"][0]["extra"]["invoiceId"] != second["accepts"][0]["extra"]["invoiceId"]
        assert len(client.app.state.invoices) == 2

    def test_bad_signature_encoding(self, merchant):
        client, _ = merchant
        response = client.get("/api/v1/bear-case", headers={PAYMENT_SIGNATURE_HEADER: "%%%"})
        assert response.status_code == 400

    def test_unknown_invoice(self, merchant):
        client, session = merchant
        signature = encode_header({"payload": {"invoiceId": new_invoice_id()}})

        response = client.get("/api/v1/bear-case", headers={PAYMENT_SIGNATURE_HEADER: signature})

        assert response.status_code == 402
        assert "Unknown or expired invoice" in response.json()["error"]
        session.post.assert_not_called()


class TestSettlement:

    def test_success(self, merchant):
        client, session = merchant
        signature = signature_for(client, "/api/v1/bear-case")

        response = client.get("/api/v1/bear-case", headers={PAYMENT_SIGNATURE_HEADER: signature})

        body = response.json()
        assert response.status_code == 200
        assert body["access"] == "GRANTED"
        assert body["resource"] == "bear-case"
        assert body["data"]["counter_thesis_score"] == 38
        assert body["data"]["macro_headwinds"] == ["JGB yields rising"]
        assert body["payment"]["tx_hash"] == "SETTLEDTX0001"
        assert body["payment"]["amount_drops"] == "1500"
        assert body["payment"]["amount_xrp"] == "0.001500"
        receipt = decode_header(response.headers[PAYMENT_RESPONSE_HEADER])
        assert receipt == {"success": True, "transaction": "SETTLEDTX0001",
                           "network": "xrpl:0", "payer": "rPayer"}
        assert len(client.app.state.invoices) == 0

    def test_facilitator_calls(self, merchant):
        client, session = merchant
        signature = signature_for(client, "/api/v1/premium-analysis")
        client.get("/api/v1/premium-analysis", headers={PAYMENT_SIGNATURE_HEADER: signature})

        urls = [c[0][0] for c in session.post.call_args_list]
        sent = session.post.call_args_list[0][1]["json"]
        assert urls == [f"{FACILITATOR}/verify", f"{FACILITATOR}/settle"]
        assert sent["paymentPayload"] == decode_header(signature)
        assert sent["paymentRequirements"]["amount"] == "1000"

    def test_invoice_cannot_be_replayed(self, merchant):
        client, _ = merchant
        signature = signature_for(client, "/api/v1/stress-report")
        headers = {PAYMENT_SIGNATURE_HEADER: signature}

        assert client.get("/api/v1/stress-report", headers=headers).status_code == 200
        assert client.get("/api/v1/stress-report", headers=headers).status_code == 402

    def test_invoice_bound_to_its_route(self, merchant):
        client, session = merchant
        signature = signature_for(client, "/api/v1/stress-report")

        response = client.get("/api/v1/premium-analysis", headers={PAYMENT_SIGNATURE_HEADER: signature})

        assert response.status_code == 402
        assert response.json() == {"error": "Invoice was issued for a different resource"}
        session.post.assert_not_called()
        assert len(client.app.state.invoices) == 1

    def test_verify_invalid(self, data_path, make_response):
        refused = make_response({"isValid": False, "invalidReason": "bad_signature"})
        session = facilitator(make_response, verify=refused)
        client = build_app(data_path, session)
        signature = signature_for(client, "/api/v1/bear-case")

        response = client.get("/api/v1/bear-case", headers={PAYMENT_SIGNATURE_HEADER: signature})

        assert response.status_code == 402
        assert response.json() == {"error": "bad_signature"}
        assert session.post.call_count == 1
        assert len(client.app.state.invoices) == 1

    def test_settle_failed(self, data_path, make_response):
        failed = make_response({"success": False, "errorReason": "tecUNFUNDED"})
        session = facilitator(make_response, settle=failed)
        client = build_app(data_path, session)
        signature = signature_for(client, "/api/v1/bear-case")

        response = client.get("/api/v1/bear-case", headers={PAYMENT_SIGNATURE_HEADER: signature})

        assert response.status_code == 402
        assert response.json()["error"] == "tecUNFUNDED"

    def test_facilitator_http_error(self, data_path, make_response):
        down = make_response({"error": "down"}, status_code=503)
        client = build_app(data_path, facilitator(make_response, verify=down))
        signature = signature_for(client, "/api/v1/bear-case")

        response = client.get("/api/v1/bear-case", headers={PAYMENT_SIGNATURE_HEADER: signature})

        assert response.status_code == 402
        assert "HTTP 503" in response.json()["error"]

    @pytest.mark.parametrize("error, status", [
        (requests.Timeout("slow"), 502),
        (requests.ConnectionError("refused"), 500),
    ])
    def test_facilitator_unreachable(self, data_path, make_response, error, status):
        client = build_app(data_path, facilitator(make_response, verify=error))
        signature = signature_for(client, "/api/v1/bear-case")

        response = client.get("/api/v1/bear-case", headers={PAYMENT_SIGNATURE_HEADER: signature})
        assert response.status_code == status


class TestInvoiceStore:

    def test_expiry(self):
        now = [1000.0]
        store = InvoiceStore(ttl_seconds=600, clock=lambda: now[0])
        store.issue({"extra": {"invoiceId": "A"}})

        now[0] += 599
        assert store.get("A") == {"extra": {"invoiceId": "A"}}
        now[0] += 1
        assert store.get("A") is None
        assert len(store) == 0

    def test_missing_id(self):
        assert InvoiceStore().get(None) is None
        assert InvoiceStore().route_of(None) is None

    def test_route_recorded(self):
        store = InvoiceStore()
        store.issue({"extra": {"invoiceId": "A"}}, route="/api/v1/bear-case")
        store.issue({"extra": {"invoiceId": "B"}})
        assert store.route_of("A") == "/api/v1/bear-case"
        assert store.route_of("B") is None

    def test_discard(self):
        store = InvoiceStore()
        store.issue({"extra": {"invoiceId": "A"}})
        store.discard("A")
        store.discard("A")
        assert store.get("A") is None


# =============================================================================
# AGENT AGAINST MERCHANT
# =============================================================================

class SigningGateway:
    address = "rAgentAddressYYYYYYYYYYYYYYYYYYYY"

    def balance_xrp(self):
        return 20.0

    def sign_payment(self, destination, amount_drops, invoice_id, source_tag, max_timeout_seconds):
        return f"BLOB{invoice_id}", f"LOCAL{invoice_id}"


class TestAgentAgainstMerchant:

    def test_all_endpoints_settle(self, merchant):
        client, session = merchant
        agent = X402Agent(SigningGateway(), guardrails=SpendingGuardrails(),
                          merchant_base="http://testserver", facilitator_url=FACILITATOR, session=client)
        agent.balance_xrp = 20.0

        attempts = agent.run()

        assert [a.state for a in attempts] == [PaymentState.SETTLED] * 3
        assert [a.tx_hash for a in attempts] == ["SETTLEDTX0001"] * 3
        assert agent.guardrails.session_spent_drops == 3000
        assert attempts[2].data["resource"] == "stress-report"
        settle_payloads = [c[1]["json"]["paymentPayload"] for c in session.post.call_args_list[1::2]]
        assert [p["payload"]["signedTxBlob"] for p in settle_payloads] == [
            f"BLOB{a.invoice_id}" for a in attempts
        ]

    def test_guardrail_stops_before_facilitator(self, merchant):
        client, session = merchant
        agent = X402Agent(SigningGateway(), guardrails=SpendingGuardrails(per_tx_cap_drops=1000),
                          merchant_base="http://testserver", facilitator_url=FACILITATOR, session=client)
        agent.balance_xrp = 20.0

        attempt = agent.request("/api/v1/bear-case", "Bear Case")

        assert attempt.state == PaymentState.REJECTED
        assert attempt.reason == "cap exceeded"
        session.post.assert_not_called()
