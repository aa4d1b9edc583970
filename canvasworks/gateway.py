from abc import ABC, abstractmethod
from typing import Optional
import hmac
import hashlib
import json
import time

from .errors import PayloadError, SignatureError
from .events import DomainEvent, decode_event

SIGNATURE_HEADER = "stripe-signature"


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class PaymentAdapter(ABC):
    @abstractmethod
    def verify_webhook(self, payload: bytes, headers: dict) -> dict: ...

    def parse_event(self, payload: bytes, headers: dict) -> DomainEvent:
        return decode_event(self.verify_webhook(payload, headers))


def compute_signature(secret: str, timestamp: int, payload: bytes) -> str:
    signed = str(timestamp).encode() + b"." + payload
    return hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()


def sign_payload(
        secret: str, payload: bytes, timestamp: Optional[int] = None
) -> str:
    """Build a signature header value the way the gateway does."""
    ts = int(time.time()) if timestamp is None else timestamp
    return f"t={ts},v1={compute_signature(secret, ts, payload)}"


def _parse_signature_header(header: str) -> tuple[int, list[str]]:
    timestamp = None
    signatures = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                raise SignatureError("invalid signature timestamp")
        elif key == "v1" and value:
            signatures.append(value)
    if timestamp is None or not signatures:
        raise SignatureError("malformed signature header")
    return timestamp, signatures


# ----------------------------
# Stripe-style HMAC implementation
# ----------------------------
class StripeAdapter(PaymentAdapter):

    def __init__(self, secret: str, tolerance_seconds: int = 300,
                 clock=time.time) -> None:
        self.secret = secret
        self.tolerance = tolerance_seconds
        self.clock = clock

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        headers = {k.lower(): v for k, v in headers.items()}
        sig = headers.get(SIGNATURE_HEADER)
        if not sig:
            raise SignatureError(f"missing {SIGNATURE_HEADER} header")
        timestamp, candidates = _parse_signature_header(sig)

        expected = compute_signature(self.secret, timestamp, payload)
        # compare against every v1 so secret rotation keeps working
        matched = False
        for candidate in candidates:
            if hmac.compare_digest(expected, candidate):
                matched = True
        if not matched:
            raise SignatureError("invalid signature")
        if self.tolerance and abs(self.clock() - timestamp) > self.tolerance:
            raise SignatureError("signature timestamp outside tolerance")

        try:
            return json.loads(payload.decode())
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise PayloadError("invalid JSON")
