# tests/test_webhook_validator.py
import hashlib
import hmac

from app.services.webhook_validator import MAX_TIMESTAMP_SKEW_SECONDS, WebhookValidator

BODY = b'{"event":"meeting.participant_joined","payload":{}}'
NOW = 1_741_000_000


def test_signed_delivery_is_accepted():
    validator = WebhookValidator("webhook-secret")
    signature = validator.sign(str(NOW), BODY)

    assert signature.startswith("v0=")
    assert validator.verify(BODY, signature, str(NOW), now=NOW + 5)


def test_tampered_body_is_rejected():
    validator = WebhookValidator("webhook-secret")
    signature = validator.sign(str(NOW), BODY)

    assert not validator.verify(BODY + b" ", signature, str(NOW), now=NOW)


def test_signature_from_another_secret_is_rejected():
    signature = WebhookValidator("other").sign(str(NOW), BODY)

    assert not WebhookValidator("webhook-secret").verify(BODY, signature, str(NOW), now=NOW)


def test_stale_timestamp_is_rejected():
    validator = WebhookValidator("webhook-secret")
    signature = validator.sign(str(NOW), BODY)

    later = NOW + MAX_TIMESTAMP_SKEW_SECONDS + 1
    assert not validator.verify(BODY, signature, str(NOW), now=later)


def test_missing_or_garbage_headers_are_rejected():
    validator = WebhookValidator("webhook-secret")
    signature = validator.sign(str(NOW), BODY)

    assert not validator.verify(BODY, None, str(NOW), now=NOW)
    assert not validator.verify(BODY, signature, None, now=NOW)
    assert not validator.verify(BODY, signature, "yesterday", now=NOW)


def test_without_secret_every_delivery_is_accepted():
    validator = WebhookValidator(None)

    assert validator.enabled is False
    assert validator.verify(BODY, None, None)


def test_url_validation_challenge():
    response = WebhookValidator("webhook-secret").challenge_response({"plainToken": "abc123"})

    expected = hmac.new(b"webhook-secret", b"abc123", hashlib.sha256).hexdigest()
    assert response == {"plainToken": "abc123", "encryptedToken": expected}
