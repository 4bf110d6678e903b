"""
Payment request parsing and validation for HTTP 402 flows.

A server asks for payment either with a JSON ``X-Cashu`` header
(``{"mints": [...], "amount": n, "unit": "sat"}``) or with a NUT-18
``creqA`` encoded request. Both become a PaymentRequest; validation runs
before any storage is touched.
"""

import base64
import binascii
import json
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlsplit

import cbor2

from .config import DEFAULT_UNIT, MAX_PAYMENT_AMOUNT
from .errors import ValidationError
from .models import PaymentRequest

NUT18_PREFIX = "creqA"
PAYMENT_HEADER = "X-Cashu"


def is_valid_mint_url(url: Any) -> bool:
    if not isinstance(url, str) or not url:
        return False
    try:
        parts = urlsplit(url)
    except ValueError:
        return False
    return parts.scheme in ("http", "https") and bool(parts.hostname)


def validate_payment_request(request: PaymentRequest, unit: str = DEFAULT_UNIT,
                             max_amount: int = MAX_PAYMENT_AMOUNT) -> Tuple[bool, str]:
    """Check a payment request before anything is reserved. Returns (ok, error)."""
    if not isinstance(request.mints, list) or not request.mints:
        return False, "Payment request must list at least one mint"
    for mint in request.mints:
        if not is_valid_mint_url(mint):
            return False, f"Invalid mint URL: {mint}"
    if isinstance(request.amount, bool) or not isinstance(request.amount, int):
        return False, "Payment amount must be an integer"
    if request.amount <= 0:
        return False, "Payment amount must be positive"
    if request.amount > max_amount:
        return False, f"Payment amount exceeds maximum of {max_amount} {unit}"
    if not request.unit:
        return False, "Payment unit is required"
    if request.unit != unit:
        return False, f"Unsupported unit: {request.unit}"
    return True, ""


def _request_from_fields(fields: Dict[str, Any]) -> PaymentRequest:
    mints = fields.get("mints") or []
    if isinstance(mints, str):
        mints = [mints]
    return PaymentRequest(
        amount=fields.get("amount"),
        unit=fields.get("unit") or "",
        mints=list(mints),
        payment_id=fields.get("payment_id") or fields.get("id"),
        description=fields.get("description"),
        single_use=bool(fields.get("single_use", False)),
    )


def decode_payment_request(encoded: str) -> PaymentRequest:
    """Decode a NUT-18 ``creqA`` request (base64url CBOR)."""
    encoded = (encoded or "").strip()
    if not encoded.startswith(NUT18_PREFIX):
        raise ValidationError("not a NUT-18 payment request")
    payload = encoded[len(NUT18_PREFIX):]
    try:
        raw = base64.urlsafe_b64decode(payload + "=" * (-len(payload) % 4))
        data = cbor2.loads(raw)
    except (ValueError, binascii.Error, cbor2.CBORDecodeError) as e:
        raise ValidationError(f"malformed payment request: {e}") from e
    if not isinstance(data, dict):
        raise ValidationError("malformed payment request")
    return _request_from_fields({
        "amount": data.get("a"),
        "unit": data.get("u"),
        "mints": data.get("m"),
        "id": data.get("i"),
        "description": data.get("d"),
        "single_use": data.get("s", False),
    })


def encode_payment_request(request: PaymentRequest) -> str:
    data: Dict[str, Any] = {"a": request.amount, "u": request.unit, "m": request.mints}
    if request.payment_id:
        data["i"] = request.payment_id
    if request.description:
        data["d"] = request.description
    if request.single_use:
        data["s"] = True
    return NUT18_PREFIX + base64.urlsafe_b64encode(cbor2.dumps(data)).decode("ascii").rstrip("=")


def parse_payment_header(value: str) -> PaymentRequest:
    """Parse an ``X-Cashu`` header: JSON object or NUT-18 request."""
    value = (value or "").strip()
    if value.startswith(NUT18_PREFIX):
        return decode_payment_request(value)
    try:
        fields = json.loads(value)
    except json.JSONDecodeError as e:
        raise ValidationError(f"malformed {PAYMENT_HEADER} header: {e}") from e
    if not isinstance(fields, dict):
        raise ValidationError(f"malformed {PAYMENT_HEADER} header")
    return _request_from_fields(fields)


def find_payment_request(headers: Dict[str, str]) -> Optional[PaymentRequest]:
    """Payment request from a 402 response's headers, if it carries one."""
    for name, value in headers.items():
        if name.lower() == PAYMENT_HEADER.lower():
            return parse_payment_header(value)
    return None


def payment_headers(token: str) -> Dict[str, str]:
    """Headers for retrying the request with the payment attached."""
    return {PAYMENT_HEADER: token}
