from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from app.services.config_store import ConfigStore
from app.services.security_utils import (
    compute_hmac_sha256_hex,
    hex_digests_match,
    parse_sha256_signature,
)

logger = logging.getLogger(__name__)


class WebhookSignatureVerifier:
    def __init__(self, config_store: ConfigStore, header_name: str) -> None:
        self.config_store = config_store
        self.header_name = header_name

    def verify(self, payload: Mapping[str, Any], headers: Mapping[str, str]) -> bool:
        secret = self.config_store.get_webhook_secret()
        if not secret:
            logger.info("Webhook signature check skipped reason=no_secret_configured")
            return True

        provided_hex = parse_sha256_signature(_get_header(headers, self.header_name))
        if not provided_hex:
            logger.warning("Webhook signature rejected reason=missing_or_malformed_header")
            return False

        message_id = _to_text(payload.get("messageId"))
        date = _to_text(payload.get("date"))
        if not message_id or not date:
            logger.warning("Webhook signature rejected reason=missing_message_id_or_date")
            return False

        expected_hex = compute_hmac_sha256_hex(f"{message_id}.{date}", secret)
        if not hex_digests_match(expected_hex, provided_hex):
            logger.warning("Webhook signature rejected reason=mismatch message_id=%s", message_id)
            return False
        return True


def sign_webhook_message(message_id: str, date: str, secret: str) -> str:
    return f"sha256={compute_hmac_sha256_hex(f'{message_id}.{date}', secret)}"


def _get_header(headers: Mapping[str, str], name: str) -> str | None:
    value = headers.get(name)
    if value is not None:
        return value
    lowered_name = name.lower()
    for key, candidate in headers.items():
        if key.lower() == lowered_name:
            return candidate
    return None


def _to_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    cleaned = value.strip()
    return cleaned or None
