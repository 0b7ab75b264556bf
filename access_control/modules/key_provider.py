"""
Key Provider Module - Library Access Control

This module resolves the symmetric key used to seal and open QR access tokens.
The primary source is a fixed, versioned static key loaded from configuration.
A remote key service may override it, but every remote failure falls back to
the static key so that key retrieval is never the reason a scan fails.

Features:
- Versioned static fallback key
- Optional remote key refresh over HTTP with a short timeout
- Bounded caching of the last remote key (expiry, not invalidation)
- Grace period for tokens issued under a recently rotated remote key
- Retired static keys for planned rotation
"""

import hashlib
import logging
import re
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Mapping, Optional

import requests

from access_control.modules.models import utc_now

SOURCE_STATIC = 'static'
SOURCE_REMOTE = 'remote'
SOURCE_RETIRED = 'retired'


@dataclass(frozen=True)
class KeyMaterial:
    """A symmetric secret and the version tag embedded in tokens it seals."""
    version: str
    secret: str = field(repr=False)
    source: str = SOURCE_STATIC
    expires_at: Optional[datetime] = None


# Version tags travel in the clear ahead of the sealed body
KEY_VERSION_PATTERN = re.compile(r'^[A-Za-z0-9_-]{1,32}$')


def _valid_version(version) -> bool:
    return isinstance(version, str) and KEY_VERSION_PATTERN.match(version) is not None


class KeyProvider:
    """
    Resolves the active token key.

    current_key() always returns a usable KeyMaterial. Remote lookups are
    attempted only when a service URL is configured, are cached until the key
    expires (capped at the refresh interval) and, after a failure, are not
    retried until the failure backoff has elapsed.
    """

    def __init__(self, static_version: str, static_secret: str,
                 retired_keys: Optional[Mapping[str, str]] = None,
                 service_url: Optional[str] = None,
                 service_token: Optional[str] = None,
                 fetch_timeout: float = 1.5,
                 refresh_seconds: int = 3600,
                 grace_period: timedelta = timedelta(hours=24),
                 failure_backoff_seconds: int = 30,
                 clock: Callable[[], datetime] = utc_now):
        if not _valid_version(static_version):
            raise ValueError(f"Invalid static key version: {static_version!r}")
        if not static_secret:
            raise ValueError("A static key secret is required")

        self.logger = logging.getLogger(__name__)
        self.static_key = KeyMaterial(static_version, static_secret, SOURCE_STATIC)
        self.retired_keys: Dict[str, KeyMaterial] = {
            version: KeyMaterial(version, secret, SOURCE_RETIRED)
            for version, secret in (retired_keys or {}).items()
            if _valid_version(version) and secret
        }
        self.service_url = service_url
        self.service_token = service_token
        self.fetch_timeout = fetch_timeout
        self.refresh_interval = timedelta(seconds=refresh_seconds)
        self.grace_period = grace_period
        self.failure_backoff = timedelta(seconds=failure_backoff_seconds)
        self.clock = clock

        self._lock = threading.Lock()
        self._cached: Optional[KeyMaterial] = None
        self._remote_keys: Dict[str, KeyMaterial] = {}
        self._next_attempt_at: Optional[datetime] = None

    @classmethod
    def from_config(cls, settings: Mapping, clock: Callable[[], datetime] = utc_now) -> 'KeyProvider':
        """Build a provider from a Flask config mapping or config class dict."""
        return cls(
            static_version=settings['QR_KEY_VERSION'],
            static_secret=settings['QR_STATIC_KEY'],
            retired_keys=settings.get('QR_RETIRED_KEYS') or {},
            service_url=settings.get('QR_KEY_SERVICE_URL'),
            service_token=settings.get('QR_KEY_SERVICE_TOKEN'),
            fetch_timeout=settings.get('QR_KEY_FETCH_TIMEOUT', 1.5),
            refresh_seconds=settings.get('QR_KEY_REFRESH_SECONDS', 3600),
            grace_period=timedelta(hours=settings.get('QR_KEY_GRACE_HOURS', 24)),
            clock=clock,
        )

    def current_key(self) -> KeyMaterial:
        """
        Get the key new tokens should be sealed with.

        Returns:
            KeyMaterial: The cached remote key, a freshly fetched remote key,
            or the static fallback key.
        """
        if not self.service_url:
            return self.static_key

        now = self.clock()
        with self._lock:
            cached = self._cached
            if cached is not None and cached.expires_at > now:
                return cached
            if self._next_attempt_at is not None and now < self._next_attempt_at:
                return self.static_key

        remote = self._fetch_remote_key(now)

        with self._lock:
            if remote is None:
                self._cached = None
                self._next_attempt_at = now + self.failure_backoff
                return self.static_key

            self._cached = remote
            self._remote_keys[remote.version] = remote
            self._next_attempt_at = None
            self._prune_remote_keys(now)
            return remote

    def key_for_version(self, version: str) -> Optional[KeyMaterial]:
        """
        Find the key that sealed a token carrying the given version tag.

        Args:
            version (str): Version tag read from the token

        Returns:
            Optional[KeyMaterial]: Matching key, or None if the version is
            unknown or its grace period is over.
        """
        current = self.current_key()
        if version == current.version:
            return current
        if version == self.static_key.version:
            return self.static_key

        now = self.clock()
        with self._lock:
            remote = self._remote_keys.get(version)
        if remote is not None and now <= remote.expires_at + self.grace_period:
            return remote

        return self.retired_keys.get(version)

    def _fetch_remote_key(self, now: datetime) -> Optional[KeyMaterial]:
        """Ask the key service for a key; any failure is logged and yields None."""
        headers = {}
        if self.service_token:
            headers['Authorization'] = f"Bearer {self.service_token}"

        try:
            response = requests.post(self.service_url, headers=headers, timeout=self.fetch_timeout)
            response.raise_for_status()
            data = response.json()

            secret = data.get('key')
            if not isinstance(secret, str) or not secret:
                raise ValueError("response has no key")

            version = data.get('version') or self._derive_version(secret)
            if not _valid_version(version):
                raise ValueError(f"invalid key version {version!r}")
            if self._collides_with_configured_key(version, secret):
                raise ValueError(f"key version {version} is already bound to a different configured secret")

            expires_at = now + self.refresh_interval
            expires_ms = data.get('expiresAt')
            if expires_ms is not None:
                expires_at = min(expires_at, datetime.fromtimestamp(float(expires_ms) / 1000, tz=timezone.utc))

        except (requests.RequestException, ValueError, TypeError, AttributeError, OverflowError, OSError) as e:
            self.logger.warning(f"Remote key lookup failed, using static key {self.static_key.version}: {str(e)}")
            return None

        self.logger.info(f"Remote key {version} retrieved, cached until {expires_at.isoformat()}")
        return KeyMaterial(version, secret, SOURCE_REMOTE, expires_at)

    def _derive_version(self, secret: str) -> str:
        # An unversioned remote key equal to the static one keeps the static tag
        if secret == self.static_key.secret:
            return self.static_key.version
        return 'r' + hashlib.sha256(secret.encode('utf-8')).hexdigest()[:8]

    def _collides_with_configured_key(self, version: str, secret: str) -> bool:
        # Reusing a configured tag would orphan tokens sealed under that key
        configured = self.retired_keys.get(version)
        if version == self.static_key.version:
            configured = self.static_key
        return configured is not None and configured.secret != secret

    def _prune_remote_keys(self, now: datetime):
        expired = [
            version for version, key in self._remote_keys.items()
            if now > key.expires_at + self.grace_period
        ]
        for version in expired:
            del self._remote_keys[version]
