# app/services/webhook_validator.py
from __future__ import annotations

import hashlib
import hmac
import logging
import time
from typing import Any, Dict, Mapping, Optional

logger = logging.getLogger(__name__)

URL_VALIDATION_EVENT = "endpoint.url_validation"

# Deliveries older than this are treated as replays.
MAX_TIMESTAMP_SKEW_SECONDS = 300


class WebhookValidator:
    """
    Verifies Zoom webhook deliveries.

    Zoom signs each delivery as

        x-zm-signature = "v0=" + HMAC_SHA256(secret, "v0:{timestamp}:{raw body}")

    and answers the `endpoint.url_validation` challenge with the HMAC of the
    plain token. Without a configured secret every delivery is accepted.
    """

    def __init__(self, secret_token: str | None) -> None:
        self._secret_token = secret_token

    @property
    def enabled(self) -> bool:
        return bool(self._secret_token)

    def _hmac_hex(self, message: str) -> str:
        return hmac.new(
            (self._secret_token or "").encode("utf-8"),
            message.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

    def sign(self, timestamp: str, body: bytes) -> str:
        message = "v0:%s:%s" % (timestamp, body.decode("utf-8"))
        return "v0=" + self._hmac_hex(message)

    def verify(
        self,
        body: bytes,
        signature: Optional[str],
        timestamp: Optional[str],
        *,
        now: Optional[float] = None,
    ) -> bool:
        if not self.enabled:
            return True

        if not signature or not timestamp:
            logger.warning("Webhook rejected: missing signature headers")
            return False

        try:
            sent_at = int(timestamp)
        except ValueError:
            logger.warning("Webhook rejected: non-numeric timestamp %r", timestamp)
            return False

        current = time.time() if now is None else now
        if abs(current - sent_at) > MAX_TIMESTAMP_SKEW_SECONDS:
            logger.warning("Webhook rejected: timestamp outside replay window")
            return False

        expected = self.sign(timestamp, body)
        if not hmac.compare_digest(signature, expected):
            logger.warning("Webhook rejected: signature mismatch")
            return False
        return True

    def challenge_response(self, payload: Mapping[str, Any]) -> Dict[str, str]:
        """
        Build the response to an `endpoint.url_validation` delivery.
        """
        plain_token = str((payload or {}).get("plainToken") or "")
        return {
            "plainToken": plain_token,
            "encryptedToken": self._hmac_hex(plain_token),
        }
