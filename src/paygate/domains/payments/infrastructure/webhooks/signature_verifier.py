"""Webhook signature verification."""

import hashlib
import hmac
import time
from typing import Callable, List, Optional, Tuple

import structlog

logger = structlog.get_logger(__name__)


class WebhookVerifier:
    """HMAC-SHA256 verification of webhook deliveries.

    The signature header is a comma-separated list of ``key=value`` fields,
    e.g. ``t=1492774577,v1=5257a869...,v0=6ffbb59b...``. Only values under the
    configured scheme token are compared; several may be present while the
    vendor rolls secrets. When a ``t`` field is present the signed payload is
    ``"{t}." + raw_body`` and the timestamp must fall within the tolerance.
    """

    def __init__(
        self,
        scheme: str = "v1",
        tolerance_seconds: int = 300,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.scheme = scheme
        self.tolerance_seconds = tolerance_seconds
        self.clock = clock

    def verify(self, raw_body: bytes, signature_header: Optional[str], secret: Optional[str]) -> bool:
        """Return True only if ``raw_body`` carries a valid signature for ``secret``."""
        is_valid, reason = self.check(raw_body, signature_header, secret)
        if not is_valid:
            logger.warning("Webhook signature verification failed", reason=reason)
        return is_valid

    def check(
        self,
        raw_body: bytes,
        signature_header: Optional[str],
        secret: Optional[str],
    ) -> Tuple[bool, str]:
        """
        Verify and explain.

        Returns:
            Tuple of (is_valid, reason)
        """
        if not secret:
            return False, "No webhook secret configured"
        if not signature_header:
            return False, "Missing signature header"

        timestamp, signatures = self._parse_header(signature_header)
        if not signatures:
            return False, "Invalid signature format"

        if timestamp is not None:
            try:
                signature_time = int(timestamp)
            except ValueError:
                return False, "Invalid signature timestamp"

            age = abs(int(self.clock()) - signature_time)
            if self.tolerance_seconds and age > self.tolerance_seconds:
                return False, f"Signature timestamp outside tolerance: {age}s"

            signed_payload = timestamp.encode() + b"." + raw_body
        else:
            signed_payload = raw_body

        expected_signature = self.compute_signature(signed_payload, secret)

        # Compare against every candidate without short-circuiting on the first mismatch
        matched = False
        for candidate in signatures:
            if hmac.compare_digest(expected_signature, candidate):
                matched = True

        if not matched:
            return False, "Signature mismatch"
        return True, "Signature verified"

    @staticmethod
    def compute_signature(signed_payload: bytes, secret: str) -> str:
        return hmac.new(secret.encode(), signed_payload, hashlib.sha256).hexdigest()

    def sign(self, raw_body: bytes, secret: str, timestamp: Optional[int] = None) -> str:
        """Build a header in the format ``verify`` accepts."""
        if timestamp is None:
            return f"{self.scheme}={self.compute_signature(raw_body, secret)}"
        signed_payload = str(timestamp).encode() + b"." + raw_body
        return f"t={timestamp},{self.scheme}={self.compute_signature(signed_payload, secret)}"

    def _parse_header(self, signature_header: str) -> Tuple[Optional[str], List[str]]:
        timestamp = None
        signatures = []

        for part in signature_header.split(","):
            key, sep, value = part.strip().partition("=")
            if not sep:
                continue
            if key == "t":
                timestamp = value
            elif key == self.scheme:
                signatures.append(value)

        return timestamp, signatures
