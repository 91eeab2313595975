"""Time-based duplicate suppression and API error fingerprinting.

DedupeCache is a TTL + size-bounded cache: check() answers "seen this key
recently?" and touches it. ApiErrorDeduper wraps one for provider error
payloads so a repeating failure is logged at full detail only once per
window.
"""

from __future__ import annotations

import hashlib
import json
import threading
import time
from dataclasses import dataclass
from typing import Any

API_ERROR_TTL_MS = 20 * 60 * 1000
API_ERROR_MAX_SIZE = 5000

_HTTP_CODES = ("401", "402", "403", "404", "429", "500", "502", "503")

_TYPE_PATTERNS = (
    ("rate_limit", "rate_limit_error"),
    ("authentication", "authentication_error"),
    ("invalid_api_key", "authentication_error"),
    ("insufficient_quota", "billing_error"),
    ("billing", "billing_error"),
    ("overloaded", "overloaded_error"),
)


def _now_ms() -> int:
    return int(time.time() * 1000)


class DedupeCache:
    """Duplicate detector with TTL expiry and oldest-first eviction.

    Safe to share between concurrent runs; every operation holds the lock.
    """

    def __init__(self, ttl_ms: int, max_size: int) -> None:
        self._ttl_ms = max(ttl_ms, 0)
        self._max_size = max(max_size, 0)
        self._entries: dict[str, int] = {}  # key -> last seen (ms)
        self._lock = threading.Lock()

    def check(self, key: str) -> bool:
        """Return True if key was seen within the TTL, False if new."""
        if not key:
            return False
        return self.check_at(key, _now_ms())

    def check_at(self, key: str, now_ms: int) -> bool:
        if not key:
            return False
        with self._lock:
            existing = self._entries.get(key)
            if existing is not None and (self._ttl_ms <= 0 or now_ms - existing < self._ttl_ms):
                self._entries[key] = now_ms
                return True
            self._entries[key] = now_ms
            self._prune(now_ms)
            return False

    def _prune(self, now_ms: int) -> None:
        if self._ttl_ms > 0:
            expired = [k for k, ts in self._entries.items() if now_ms - ts >= self._ttl_ms]
            for k in expired:
                del self._entries[k]

        if self._max_size > 0 and len(self._entries) > self._max_size:
            overflow = len(self._entries) - self._max_size
            oldest = sorted(self._entries.items(), key=lambda kv: kv[1])[:overflow]
            for k, _ in oldest:
                del self._entries[k]

    def clear(self) -> None:
        with self._lock:
            self._entries = {}

    def size(self) -> int:
        with self._lock:
            return len(self._entries)


# ------------------------------------------------------------------
# API error fingerprinting
# ------------------------------------------------------------------


@dataclass
class ApiErrorInfo:
    http_code: str = ""
    type: str = ""
    message: str = ""
    request_id: str = ""


def hash_text(value: str) -> str:
    return hashlib.sha256(value.encode()).hexdigest()


def stable_stringify(value: Any) -> str:
    """Serialize with sorted keys at every level so key order never matters."""
    if value is None:
        return "null"
    if isinstance(value, dict):
        parts = [json.dumps(str(k)) + ":" + stable_stringify(value[k]) for k in sorted(value)]
        return "{" + ",".join(parts) + "}"
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(stable_stringify(v) for v in value) + "]"
    try:
        return json.dumps(value)
    except (TypeError, ValueError):
        return "null"


def _is_error_payload(payload: Any) -> bool:
    if not isinstance(payload, dict):
        return False
    if payload.get("type") == "error":
        return True
    if isinstance(payload.get("request_id"), str) or isinstance(payload.get("requestId"), str):
        return True
    err = payload.get("error")
    if isinstance(err, dict):
        return "message" in err or "type" in err or "code" in err
    return False


def _extract_braced(raw: str) -> str | None:
    """Return the first balanced {...} block in raw, if any."""
    start = raw.find("{")
    if start < 0:
        return None
    depth = 0
    for i in range(start, len(raw)):
        ch = raw[i]
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return raw[start : i + 1]
    return None


def parse_api_error_payload(raw: str) -> dict[str, Any] | None:
    """Find a JSON error object in raw text ("API Error: {...}" or bare JSON)."""
    try:
        payload = json.loads(raw)
    except (json.JSONDecodeError, ValueError):
        payload = None
    if _is_error_payload(payload):
        return payload

    block = _extract_braced(raw)
    if block is None:
        return None
    try:
        payload = json.loads(block)
    except (json.JSONDecodeError, ValueError):
        return None
    return payload if _is_error_payload(payload) else None


def get_api_error_payload_fingerprint(raw: str) -> str:
    """Deterministic fingerprint of an error payload, or "" if none is found."""
    if not raw:
        return ""
    payload = parse_api_error_payload(raw)
    if payload is None:
        return ""
    return stable_stringify(payload)


def parse_api_error_info(raw: str) -> ApiErrorInfo | None:
    """Extract HTTP code, error type, message and request id from raw error text."""
    if not raw:
        return None

    info = ApiErrorInfo()
    for code in _HTTP_CODES:
        if code in raw:
            info.http_code = code
            break

    payload = parse_api_error_payload(raw)
    if payload is not None:
        for key in ("request_id", "requestId"):
            if isinstance(payload.get(key), str):
                info.request_id = payload[key]
        err = payload.get("error")
        if isinstance(err, dict):
            if isinstance(err.get("message"), str):
                info.message = err["message"]
            if isinstance(err.get("type"), str):
                info.type = err["type"]
        # outer "type": "error" is only an envelope marker
        outer_type = payload.get("type")
        if not info.type and isinstance(outer_type, str) and outer_type != "error":
            info.type = outer_type
        if not info.message and isinstance(payload.get("message"), str):
            info.message = payload["message"]

    if not info.type:
        lower = raw.lower()
        for pattern, err_type in _TYPE_PATTERNS:
            if pattern in lower:
                info.type = err_type
                break

    if info.http_code or info.type or info.message or info.request_id:
        return info
    return None


class ApiErrorDeduper:
    """Owns the error-fingerprint cache shared by all runs of one runner."""

    def __init__(self, ttl_ms: int = API_ERROR_TTL_MS, max_size: int = API_ERROR_MAX_SIZE) -> None:
        self._cache = DedupeCache(ttl_ms, max_size)

    def is_recent(self, fingerprint: str) -> bool:
        """True if this fingerprint was already seen inside the window."""
        return self._cache.check(fingerprint)

    def reset(self) -> None:
        self._cache.clear()
