from __future__ import annotations

import json
import logging
import os
import threading
import time
import urllib.error
import urllib.request
from typing import Any

from resource_office.services.errors import BorrowerDirectoryError

LOGGER = logging.getLogger("resource_office.borrowers")

_DEFAULT_CACHE_TTL_SECONDS = 300
_DEFAULT_MISS_REFRESH_SECONDS = 30
_BORROWER_CACHE: dict[str, dict[str, str]] = {}
_CACHE_EXPIRES_AT = 0.0
_LAST_REFRESH_AT = 0.0
_CACHE_LOCK = threading.Lock()


def _require_env(name: str) -> str:
    value = (os.environ.get(name) or "").strip()
    if not value:
        raise BorrowerDirectoryError(f"Missing required environment variable: {name}")
    return value


def _cache_ttl_seconds() -> int:
    raw = (os.environ.get("BORROWER_CACHE_TTL_SECONDS") or "").strip()
    try:
        return max(int(raw), 0) if raw else _DEFAULT_CACHE_TTL_SECONDS
    except ValueError:
        return _DEFAULT_CACHE_TTL_SECONDS


def _miss_refresh_seconds() -> int:
    raw = (os.environ.get("BORROWER_MISS_REFRESH_SECONDS") or "").strip()
    try:
        return max(int(raw), 0) if raw else _DEFAULT_MISS_REFRESH_SECONDS
    except ValueError:
        return _DEFAULT_MISS_REFRESH_SECONDS


def _build_auth_header_value(token: str, scheme: str) -> str:
    if not scheme:
        return token
    return f"{scheme} {token}"


def normalize_borrower_ref(raw: str | None) -> str:
    value = (raw or "").strip().upper()
    if not value:
        raise ValueError("borrower reference is empty")
    return value


def _to_borrower_entry(item: dict[str, Any]) -> dict[str, str] | None:
    ref_raw = str(item.get("id") or item.get("ref") or "").strip()
    first = str(item.get("firstName") or "").strip()
    last = str(item.get("lastName") or "").strip()
    name = str(item.get("name") or f"{first} {last}").strip()
    if not ref_raw or not name:
        return None
    try:
        normalized_ref = normalize_borrower_ref(ref_raw)
    except ValueError:
        return None
    return {
        "ref": ref_raw,
        "normalizedRef": normalized_ref,
        "name": name,
        "email": str(item.get("email") or item.get("eMail") or "").strip(),
        "borrowerType": str(item.get("type") or item.get("borrowerType") or "").strip(),
        "department": str(item.get("department") or item.get("course") or "").strip(),
    }


def _fetch_borrower_rows() -> list[dict[str, Any]]:
    base_url = _require_env("BORROWER_API_BASE_URL").rstrip("/")
    token = _require_env("BORROWER_API_TOKEN")
    auth_header_name = (os.environ.get("BORROWER_API_AUTH_HEADER") or "Authorization").strip()
    auth_scheme = (os.environ.get("BORROWER_API_AUTH_SCHEME") or "").strip()
    request = urllib.request.Request(
        url=f"{base_url}/Borrowers/all",
        headers={auth_header_name: _build_auth_header_value(token, auth_scheme)},
        method="GET",
    )
    try:
        with urllib.request.urlopen(request, timeout=20) as response:
            if response.status != 200:
                raise BorrowerDirectoryError(f"Borrower API returned status {response.status}")
            payload = json.loads(response.read().decode("utf-8"))
            if not isinstance(payload, list):
                raise BorrowerDirectoryError("Borrower API payload is not a list")
            return payload
    except urllib.error.HTTPError as exc:
        raise BorrowerDirectoryError(f"Borrower API HTTP error: {exc.code}") from exc
    except urllib.error.URLError as exc:
        raise BorrowerDirectoryError(f"Borrower API connection error: {exc.reason}") from exc
    except json.JSONDecodeError as exc:
        raise BorrowerDirectoryError("Borrower API returned invalid JSON") from exc


def get_borrower_directory(force_refresh: bool = False) -> dict[str, dict[str, str]]:
    """Return the cached borrower directory, fetching it when stale.

    ``force_refresh`` is honoured at most once per
    ``BORROWER_MISS_REFRESH_SECONDS`` while a cached copy exists.
    """
    global _CACHE_EXPIRES_AT, _LAST_REFRESH_AT
    with _CACHE_LOCK:
        now = time.time()
        fresh = bool(_BORROWER_CACHE) and now < _CACHE_EXPIRES_AT
        if fresh and (not force_refresh or now - _LAST_REFRESH_AT < _miss_refresh_seconds()):
            return dict(_BORROWER_CACHE)

        try:
            rows = _fetch_borrower_rows()
        except BorrowerDirectoryError:
            LOGGER.exception("Borrower directory refresh failed")
            raise

        parsed: dict[str, dict[str, str]] = {}
        for row in rows:
            if not isinstance(row, dict):
                continue
            entry = _to_borrower_entry(row)
            if not entry:
                continue
            parsed[entry["normalizedRef"]] = entry

        _BORROWER_CACHE.clear()
        _BORROWER_CACHE.update(parsed)
        _CACHE_EXPIRES_AT = now + _cache_ttl_seconds()
        _LAST_REFRESH_AT = now
        LOGGER.info("Borrower directory refreshed entries=%s", len(parsed))
        return dict(_BORROWER_CACHE)


def lookup_borrower(borrower_ref: str) -> dict[str, str] | None:
    """Resolve a borrower reference against the directory.

    Returns ``None`` when the reference is unknown. Raises
    ``BorrowerDirectoryError`` when the directory itself cannot be reached.
    """
    try:
        key = normalize_borrower_ref(borrower_ref)
    except ValueError:
        return None
    entry = get_borrower_directory().get(key)
    if entry is None:
        # Newly registered borrowers may not be in the cached copy yet; the refresh is throttled.
        entry = get_borrower_directory(force_refresh=True).get(key)
    return entry


def get_directory_status() -> dict[str, Any]:
    configured = bool((os.environ.get("BORROWER_API_BASE_URL") or "").strip())
    with _CACHE_LOCK:
        cached = len(_BORROWER_CACHE)
        expires_at = _CACHE_EXPIRES_AT
    return {
        "configured": configured,
        "cachedCount": cached,
        "cacheFresh": bool(cached) and time.time() < expires_at,
        "cacheTtlSeconds": _cache_ttl_seconds(),
    }


def reset_cache() -> None:
    global _CACHE_EXPIRES_AT, _LAST_REFRESH_AT
    with _CACHE_LOCK:
        _BORROWER_CACHE.clear()
        _CACHE_EXPIRES_AT = 0.0
        _LAST_REFRESH_AT = 0.0
