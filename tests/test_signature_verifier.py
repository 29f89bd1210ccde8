import hashlib
import hmac

from app.services.config_store import InMemoryConfigStore
from app.services.security_utils import (
    build_payload_digest,
    hex_digests_match,
    parse_sha256_signature,
)
from app.services.signature_verifier import WebhookSignatureVerifier, sign_webhook_message

HEADER = "X-Vivi-Signature"
PAYLOAD = {
    "messageId": "msg-123",
    "date": "Thu, 15 Aug 2030 09:00:00 -0700",
    "subject": "Alice Chen has booked Private lesson with CoachAmber",
}


def _verifier(secret: str) -> WebhookSignatureVerifier:
    return WebhookSignatureVerifier(InMemoryConfigStore(webhook_secret=secret), header_name=HEADER)


def test_sign_webhook_message_signs_message_id_and_date() -> None:
    expected = hmac.new(
        b"s3cret",
        b"msg-123.Thu, 15 Aug 2030 09:00:00 -0700",
        hashlib.sha256,
    ).hexdigest()

    assert sign_webhook_message(PAYLOAD["messageId"], PAYLOAD["date"], "s3cret") == f"sha256={expected}"


def test_verifier_accepts_valid_signature_with_any_header_casing() -> None:
    signature = sign_webhook_message(PAYLOAD["messageId"], PAYLOAD["date"], "s3cret")

    assert _verifier("s3cret").verify(PAYLOAD, {HEADER: signature})
    assert _verifier("s3cret").verify(PAYLOAD, {"x-vivi-signature": signature})


def test_verifier_rejects_wrong_secret() -> None:
    signature = sign_webhook_message(PAYLOAD["messageId"], PAYLOAD["date"], "other")

    assert not _verifier("s3cret").verify(PAYLOAD, {HEADER: signature})


def test_verifier_rejects_missing_or_malformed_header() -> None:
    verifier = _verifier("s3cret")

    assert not verifier.verify(PAYLOAD, {})
    assert not verifier.verify(PAYLOAD, {HEADER: "md5=abcd"})
    assert not verifier.verify(PAYLOAD, {HEADER: "sha256=not-hex"})


def test_verifier_rejects_payload_without_date() -> None:
    payload = {"messageId": "msg-123", "subject": "No date"}
    signature = sign_webhook_message("msg-123", "", "s3cret")

    assert not _verifier("s3cret").verify(payload, {HEADER: signature})


def test_verifier_passes_when_no_secret_is_configured() -> None:
    assert _verifier("").verify(PAYLOAD, {})


def test_verifier_reads_rotated_secret_on_each_call() -> None:
    store = InMemoryConfigStore()
    verifier = WebhookSignatureVerifier(store, header_name=HEADER)
    old_signature = sign_webhook_message(PAYLOAD["messageId"], PAYLOAD["date"], "old-secret")
    new_signature = sign_webhook_message(PAYLOAD["messageId"], PAYLOAD["date"], "new-secret")

    store.set_webhook_secret("old-secret")
    assert verifier.verify(PAYLOAD, {HEADER: old_signature})

    store.set_webhook_secret("  new-secret  ")
    assert verifier.verify(PAYLOAD, {HEADER: new_signature})
    assert not verifier.verify(PAYLOAD, {HEADER: old_signature})


def test_parse_sha256_signature_normalizes_case_and_rejects_odd_length() -> None:
    assert parse_sha256_signature("sha256=ABCD") == "abcd"
    assert parse_sha256_signature("sha256=abc") is None
    assert parse_sha256_signature(None) is None


def test_hex_digests_match_compares_bytes() -> None:
    assert hex_digests_match("abcd", "ABCD")
    assert not hex_digests_match("abcd", "abce")
    assert not hex_digests_match("abcd", "zz")


def test_payload_digest_ignores_key_order() -> None:
    assert build_payload_digest({"a": 1, "b": [1, 2]}) == build_payload_digest({"b": [1, 2], "a": 1})
    assert build_payload_digest({"a": 1}) != build_payload_digest({"a": 2})
