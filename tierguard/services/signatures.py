from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import hashlib
import hmac
import json

from tierguard.core.errors import InvalidSignatureError, StaleSignatureError


DEFAULT_TOLERANCE_S = 300


@dataclass(frozen=True)
class SignatureCheck:
    # Report which timestamp was used so callers can log replay decisions.
    signed_at: datetime
    scheme: str


def build_signature(secret: str, payload: bytes) -> str:
    # Compute HMAC SHA256 signatures for webhook payloads.
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def build_timestamped_header(secret: str, payload: bytes, timestamp: int) -> str:
    # Produce the t=...,v1=... form where the timestamp is covered by the MAC.
    signed = f"{timestamp}.".encode("utf-8") + payload
    return f"t={timestamp},v1={build_signature(secret, signed)}"


def _parse_header(header: str) -> tuple[int | None, list[str]]:
    if "=" not in header:
        return None, [header.strip()]
    timestamp: int | None = None
    signatures: list[str] = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                raise InvalidSignatureError("signature timestamp is not an integer") from None
        elif key == "v1" and value:
            signatures.append(value)
    return timestamp, signatures


def _body_timestamp(raw_body: bytes) -> int:
    # Plain-hex signatures rely on the event's own created field for freshness.
    try:
        decoded = json.loads(raw_body)
    except ValueError:
        raise InvalidSignatureError("signed body is not valid JSON") from None
    created = decoded.get("created") if isinstance(decoded, dict) else None
    if isinstance(created, bool) or not isinstance(created, (int, float)):
        raise InvalidSignatureError("signed body has no created timestamp")
    return int(created)


def verify_signature(
    raw_body: bytes,
    signature_header: str | None,
    secret: str | None,
    *,
    now: datetime | None = None,
    tolerance_s: int = DEFAULT_TOLERANCE_S,
) -> SignatureCheck:
    """Validate webhook authenticity and freshness.

    Accepts either a plain hex HMAC of the raw body, or ``t=<unix>,v1=<hex>``
    where the MAC covers ``"<t>.<body>"``. Digests are compared in constant time.
    Raises ``InvalidSignatureError`` or ``StaleSignatureError``; has no side effects.
    """
    if not secret:
        raise InvalidSignatureError("webhook secret is not configured")
    if not signature_header or not signature_header.strip():
        raise InvalidSignatureError("signature header is missing")

    timestamp, candidates = _parse_header(signature_header)
    if not candidates:
        raise InvalidSignatureError("signature header has no v1 signature")
    if timestamp is not None:
        signed_payload = f"{timestamp}.".encode("utf-8") + raw_body
        scheme = "timestamped"
    else:
        signed_payload = raw_body
        scheme = "body"
    expected = build_signature(secret, signed_payload).encode("ascii")
    if not any(
        hmac.compare_digest(expected, candidate.lower().encode("utf-8")) for candidate in candidates
    ):
        raise InvalidSignatureError("signature does not match payload")

    if timestamp is None:
        timestamp = _body_timestamp(raw_body)
    current = now or datetime.now(timezone.utc)
    age_s = current.timestamp() - timestamp
    if age_s > tolerance_s or age_s < -tolerance_s:
        raise StaleSignatureError(f"signature timestamp outside {tolerance_s}s window")
    return SignatureCheck(signed_at=datetime.fromtimestamp(timestamp, tz=timezone.utc), scheme=scheme)
