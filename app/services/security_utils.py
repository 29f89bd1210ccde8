from __future__ import annotations

import hashlib
import hmac
import json
import re
from collections.abc import Mapping
from typing import Any

_SHA256_SIGNATURE_PATTERN = re.compile(r"^sha256=([0-9a-f]+)$", re.IGNORECASE)


def compute_hmac_sha256_hex(message: str | bytes, secret: str) -> str:
    message_bytes = message.encode("utf-8") if isinstance(message, str) else message
    return hmac.new(
        key=secret.encode("utf-8"),
        msg=message_bytes,
        digestmod=hashlib.sha256,
    ).hexdigest()


def parse_sha256_signature(header_value: str | None) -> str | None:
    if not header_value:
        return None
    match = _SHA256_SIGNATURE_PATTERN.match(header_value.strip())
    if not match:
        return None
    hex_digest = match.group(1).lower()
    if len(hex_digest) % 2:
        return None
    return hex_digest


def hex_digests_match(expected_hex: str, provided_hex: str) -> bool:
    try:
        expected_bytes = bytes.fromhex(expected_hex)
        provided_bytes = bytes.fromhex(provided_hex)
    except ValueError:
        return False
    return hmac.compare_digest(expected_bytes, provided_bytes)


def build_payload_digest(payload: Mapping[str, Any]) -> str:
    try:
        normalized_payload = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    except TypeError:
        normalized_payload = json.dumps(dict(payload), sort_keys=True, default=str)
    return hashlib.sha256(normalized_payload.encode("utf-8")).hexdigest()
