from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
import logging
from typing import Mapping

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import load_der_public_key, load_pem_public_key

from notifypipe.core.errors import WebhookVerificationError


logger = logging.getLogger(__name__)

HEADER_SIGNATURE = "x-twilio-email-event-webhook-signature"
HEADER_TIMESTAMP = "x-twilio-email-event-webhook-timestamp"


@dataclass(frozen=True)
class SignatureHeaders:
    signature: str | None
    timestamp: str | None

    @property
    def complete(self) -> bool:
        return bool(self.signature) and bool(self.timestamp)


@dataclass(frozen=True)
class VerificationResult:
    # Carry a stable reason code so rejected requests can be diagnosed from logs alone.
    ok: bool
    reason: str


def parse_signature_headers(headers: Mapping[str, str]) -> SignatureHeaders:
    # Normalize header keys to lower-case and strip values for strict parsing behavior.
    normalized = {str(key).strip().lower(): str(value).strip() for key, value in headers.items()}
    return SignatureHeaders(
        signature=normalized.get(HEADER_SIGNATURE) or None,
        timestamp=normalized.get(HEADER_TIMESTAMP) or None,
    )


def load_verification_key(public_key: str) -> ec.EllipticCurvePublicKey:
    # Accept a full PEM document or the bare base64 DER body the provider console shows.
    text = public_key.strip()
    if "BEGIN PUBLIC KEY" in text:
        key = load_pem_public_key(text.encode("utf-8"))
    else:
        key = load_der_public_key(base64.b64decode("".join(text.split()), validate=True))
    if not isinstance(key, ec.EllipticCurvePublicKey):
        raise ValueError("webhook verification key must be an EC public key")
    return key


def check_event_signature(
    *,
    public_key: str,
    timestamp: str | None,
    raw_body: bytes,
    signature: str | None,
) -> VerificationResult:
    # ECDSA/SHA-256 over timestamp + raw body, with a base64 DER signature.
    if not signature or not timestamp:
        return VerificationResult(ok=False, reason="missing_signature_headers")
    try:
        key = load_verification_key(public_key)
    except (ValueError, binascii.Error, UnsupportedAlgorithm):
        logger.error("webhook verification key could not be loaded")
        return VerificationResult(ok=False, reason="invalid_public_key")
    try:
        signature_bytes = base64.b64decode(signature, validate=True)
    except (ValueError, binascii.Error):
        return VerificationResult(ok=False, reason="invalid_signature_encoding")
    try:
        key.verify(signature_bytes, timestamp.encode("utf-8") + raw_body, ec.ECDSA(hashes.SHA256()))
    except InvalidSignature:
        return VerificationResult(ok=False, reason="signature_mismatch")
    return VerificationResult(ok=True, reason="ok")


def verify_event_signature(public_key: str, timestamp: str | None, raw_body: bytes, signature: str | None) -> bool:
    return check_event_signature(
        public_key=public_key,
        timestamp=timestamp,
        raw_body=raw_body,
        signature=signature,
    ).ok


def authenticate_webhook(
    *,
    public_key: str | None,
    headers: Mapping[str, str],
    raw_body: bytes,
    environment: str,
    relaxed_validation: bool = False,
) -> None:
    # Raise WebhookVerificationError when the request must be rejected before any event is read.
    if not public_key:
        if environment == "production" and not relaxed_validation:
            raise WebhookVerificationError("webhook public key not configured", reason="missing_public_key")
        logger.warning("sendgrid webhook signature verification skipped; no public key configured")
        return
    parsed = parse_signature_headers(headers)
    if not parsed.complete:
        raise WebhookVerificationError("webhook signature headers missing", reason="missing_signature_headers")
    result = check_event_signature(
        public_key=public_key,
        timestamp=parsed.timestamp,
        raw_body=raw_body,
        signature=parsed.signature,
    )
    if not result.ok:
        logger.warning("sendgrid webhook signature rejected reason=%s", result.reason)
        raise WebhookVerificationError("webhook signature verification failed", reason=result.reason)
