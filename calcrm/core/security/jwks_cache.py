from __future__ import annotations

import threading
import time

import requests


class JwksCache:
    """Per-URI JWKS document cache with a fixed TTL."""

    def __init__(self, *, ttl_sec: int, timeout_sec: int) -> None:
        self.ttl_sec = max(0, int(ttl_sec))
        self.timeout_sec = max(1, int(timeout_sec))
        self._keys_by_uri: dict[str, tuple[float, dict[str, dict]]] = {}
        self._lock = threading.Lock()

    def _fetch(self, jwks_uri: str) -> dict[str, dict]:
        response = requests.get(jwks_uri, timeout=self.timeout_sec)
        response.raise_for_status()
        payload = response.json()
        keys: dict[str, dict] = {}
        for key in payload.get("keys") or []:
            kid = str(key.get("kid") or "").strip()
            if kid:
                keys[kid] = key
        return keys

    def get_key(self, jwks_uri: str, kid: str) -> dict | None:
        now = time.monotonic()
        with self._lock:
            cached = self._keys_by_uri.get(jwks_uri)
        if cached is not None and now - cached[0] < self.ttl_sec and kid in cached[1]:
            return cached[1][kid]

        # Unknown kid or stale cache: refetch once (handles key rotation).
        keys = self._fetch(jwks_uri)
        with self._lock:
            self._keys_by_uri[jwks_uri] = (now, keys)
        return keys.get(kid)
