"""
x402 header codec and challenge binding

Headers (PAYMENT-REQUIRED, PAYMENT-SIGNATURE, PAYMENT-RESPONSE) carry
base64 of canonical JSON: sorted keys, no whitespace, UTF-8.
"""

import json
import base64
import hashlib
import binascii
from typing import Any, Dict

PAYMENT_REQUIRED_HEADER = "PAYMENT-REQUIRED"
PAYMENT_SIGNATURE_HEADER = "PAYMENT-SIGNATURE"
PAYMENT_RESPONSE_HEADER = "PAYMENT-RESPONSE"

DROPS_PER_XRP = 1_000_000


class HeaderDecodeError(ValueError):
    """Header is not base64 of a JSON object"""
    pass


def canonical_json(obj: Any) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def encode_header(obj: Any) -> str:
    return base64.b64encode(canonical_json(obj).encode("utf-8")).decode("ascii")


def decode_header(value: str) -> Dict[str, Any]:
    try:
        decoded = json.loads(base64.b64decode(value, validate=True).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError, TypeError) as e:
        raise HeaderDecodeError(f"Invalid x402 header: {e}") from e
    if not isinstance(decoded, dict):
        raise HeaderDecodeError("Invalid x402 header: not a JSON object")
    return decoded


def memo_data(invoice_id: str) -> str:
    """upper(hex(utf8(invoiceId)))"""
    return invoice_id.encode("utf-8").hex().upper()


def invoice_hash(invoice_id: str) -> str:
    """upper(sha256(utf8(invoiceId))), the 256-bit InvoiceID field"""
    return hashlib.sha256(invoice_id.encode("utf-8")).hexdigest().upper()


def drops_to_xrp(drops: Any) -> float:
    return round(int(drops) / DROPS_PER_XRP, 6)
