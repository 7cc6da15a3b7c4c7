"""
core/version.py -- Update-notification lookup against an external version registry.

The registry is queried at most once per TTL window (15 minutes by default)
and the answer is cached in memory. The lookup is purely informational: any
network or parsing failure is logged and reported as "latest unknown", never
raised to the caller.

The registry endpoint is expected to return JSON with either a "tag_name"
(GitHub releases API) or a "version" field.
"""

import logging
import re
import threading
import time
from typing import Any, Optional

import requests

logger = logging.getLogger("appbudget.version")

# Module-level session shared across lookups for connection pooling.
# max_redirects=3 replaces the requests default of 30 -- the registry is a
# known public API; 3 hops is generous and limits redirect-chain SSRF.
_session = requests.Session()
_session.max_redirects = 3

_VERSION_RE = re.compile(r"(\d+(?:\.\d+)*)")


def fetch_latest_version(registry_url: str) -> Optional[str]:
    """Return the latest published version string, or None on any failure."""
    try:
        resp = _session.get(registry_url, timeout=5, headers={"Accept": "application/json"})
        resp.raise_for_status()
        payload = resp.json()
    except (requests.RequestException, ValueError) as e:
        logger.warning("Version registry lookup failed: %s", e)
        return None
    if not isinstance(payload, dict):
        return None
    raw = payload.get("tag_name") or payload.get("version")
    if not isinstance(raw, str) or not raw.strip():
        return None
    return raw.strip().lstrip("vV")


def _version_tuple(value: str) -> Optional[tuple[int, ...]]:
    match = _VERSION_RE.search(value)
    if match is None:
        return None
    return tuple(int(part) for part in match.group(1).split("."))


def is_newer(latest: str, current: str) -> bool:
    """Return True if `latest` is a strictly newer release than `current`.

    Non-numeric versions fall back to plain inequality.
    """
    latest_t = _version_tuple(latest)
    current_t = _version_tuple(current)
    if latest_t is None or current_t is None:
        return latest != current
    return latest_t > current_t


class VersionChecker:
    """TTL-cached wrapper around fetch_latest_version().

    Usage:
        checker = VersionChecker("1.4.0", "https://api.github.com/repos/o/r/releases/latest")
        info = checker.check()   # {"currentVersion", "latestVersion", "updateAvailable"}
    """

    def __init__(self, current_version: str, registry_url: str, ttl: int = 15 * 60) -> None:
        self.current_version = current_version
        self.registry_url = registry_url
        self.ttl = ttl
        self._latest: Optional[str] = None
        self._fetched_at: float = 0.0
        self._lock = threading.Lock()

    def latest(self) -> Optional[str]:
        if not self.registry_url:
            return None
        with self._lock:
            if self._fetched_at and time.monotonic() - self._fetched_at < self.ttl:
                return self._latest
            self._latest = fetch_latest_version(self.registry_url)
            # Failures are cached too, so a dead registry is not hammered.
            self._fetched_at = time.monotonic()
            return self._latest

    def check(self) -> dict[str, Any]:
        latest = self.latest()
        return {
            "currentVersion": self.current_version,
            "latestVersion": latest,
            "updateAvailable": bool(latest and is_newer(latest, self.current_version)),
        }
