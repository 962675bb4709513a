"""
Overwatch x402

XRPL micropayments for paywalled data (agent.py pays, merchant.py sells).
"""

from .codec import encode_header, decode_header, canonical_json, memo_data, invoice_hash
from .guardrails import SpendingGuardrails

__all__ = [
    "encode_header",
    "decode_header",
    "canonical_json",
    "memo_data",
    "invoice_hash",
    "SpendingGuardrails",
]
