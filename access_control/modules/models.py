"""
Shared data types for the library access control core.

Holds the access token payload, the persisted scan event shape, the derived
session state and the read-only subscription view supplied by collaborators.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any


class ScanType(str, Enum):
    ENTRY = 'entry'
    EXIT = 'exit'


class ScanResult(str, Enum):
    GRANTED = 'granted'
    DENIED = 'denied'


class SessionState(str, Enum):
    OUTSIDE = 'OUTSIDE'
    INSIDE = 'INSIDE'


# Machine-readable denial reasons shown to operators and stored in the log
REASON_MALFORMED = 'malformed_or_tampered'
REASON_EXPIRED = 'expired'
REASON_REPLAYED = 'replayed'
REASON_SUBSCRIPTION_INACTIVE = 'subscription_inactive'
REASON_WRONG_SCAN_TYPE = 'wrong_scan_type_for_state'

# Infrastructure failure reasons (retryable)
REASON_TIMEOUT = 'timeout'
REASON_CONFLICT = 'conflict'
REASON_WRITE_FAILED = 'write_failed'
REASON_STORE_UNAVAILABLE = 'store_unavailable'
REASON_INVALID_SCAN_TYPE = 'invalid_scan_type'

SUBSCRIPTION_ACTIVE = 'active'
SUBSCRIPTION_EXPIRED = 'expired'
SUBSCRIPTION_INACTIVE = 'inactive'


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Return a tz-aware UTC datetime; naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Fixed-width ISO-8601 so stored timestamps sort lexicographically."""
    return ensure_utc(value).isoformat(timespec='microseconds')


def parse_timestamp(value: str) -> datetime:
    return ensure_utc(datetime.fromisoformat(value))


@dataclass(frozen=True)
class AccessToken:
    """Decoded payload of a QR access token. Never persisted as-is."""
    user_id: str
    issued_at: datetime
    expires_at: datetime
    nonce: str

    def __post_init__(self):
        if not self.user_id:
            raise ValueError("user_id is required")
        if not self.nonce:
            raise ValueError("nonce is required")
        if self.expires_at <= self.issued_at:
            raise ValueError("expires_at must be later than issued_at")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'user_id': self.user_id,
            'issued_at': format_timestamp(self.issued_at),
            'expires_at': format_timestamp(self.expires_at),
            'nonce': self.nonce,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AccessToken':
        return cls(
            user_id=data['user_id'],
            issued_at=parse_timestamp(data['issued_at']),
            expires_at=parse_timestamp(data['expires_at']),
            nonce=data['nonce'],
        )


@dataclass
class ScanEvent:
    """Data class for one append-only scan log row."""
    user_id: Optional[str]
    scan_type: ScanType
    scanned_at: datetime
    scanned_by: str
    location: str
    outcome: ScanResult
    denial_reason: Optional[str] = None
    nonce: Optional[str] = None
    id: Optional[int] = field(default=None, compare=False)

    @property
    def granted(self) -> bool:
        return self.outcome == ScanResult.GRANTED

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['scan_type'] = self.scan_type.value
        data['outcome'] = self.outcome.value
        data['scanned_at'] = format_timestamp(self.scanned_at)
        # The nonce is replay bookkeeping, not something operators need
        data.pop('nonce')
        return data


@dataclass(frozen=True)
class SubscriptionStatus:
    """Subscription view owned by the membership system."""
    user_id: str
    status: str
    valid_until: Optional[datetime]

    def is_active_at(self, now: datetime) -> bool:
        if self.status != SUBSCRIPTION_ACTIVE or self.valid_until is None:
            return False
        return ensure_utc(self.valid_until) >= ensure_utc(now)
