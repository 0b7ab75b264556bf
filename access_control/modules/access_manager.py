"""
Access Manager Module - Library Access Control

This module is the entry point scanner stations and the member app call into.
It issues time-bounded QR access tokens and processes scans end to end:

    decode -> validate -> derive session state -> transition -> record

Every outcome is returned as a ScanOutcome (granted / denied / failed); no
exception crosses this boundary. Denials are recorded in the scan log as
audit data. Failures are never recorded as an implicit grant or denial.
They are retryable infrastructure problems, except for requests that can
never succeed, such as an unknown scan type.

Features:
- Token issuance with per-issuance nonce
- QR image rendering of issued tokens
- Scan processing with exactly-once entry/exit transitions
- Retry on lost compare-and-set races, re-reading the log each time
- Interactive time budget per scan
"""

import logging
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, Dict, Any, List

from access_control.modules.errors import AccessControlError, ScanTimeoutError
from access_control.modules.key_provider import KeyProvider
from access_control.modules.models import (
    AccessToken, ScanEvent, ScanType, ScanResult, SessionState, utc_now, format_timestamp,
    REASON_REPLAYED, REASON_CONFLICT, REASON_INVALID_SCAN_TYPE,
)
from access_control.modules.qr_generator import QRGenerator
from access_control.modules.scan_log import ScanLogWriter, REASON_DUPLICATE_NONCE
from access_control.modules.session_state import derive_state, next_state
from access_control.modules.ports import SubscriptionStore
from access_control.modules.token_codec import TokenCodec
from access_control.modules.token_validator import TokenValidator, ValidationContext

OUTCOME_GRANTED = 'granted'
OUTCOME_DENIED = 'denied'
OUTCOME_FAILED = 'failed'

# Failures the same request can never recover from
PERMANENT_FAILURES = frozenset([REASON_INVALID_SCAN_TYPE])


@dataclass(frozen=True)
class ScanOutcome:
    """Result of processing one scan, as shown to the operator."""
    outcome: str
    user_id: Optional[str] = None
    new_state: Optional[SessionState] = None
    reason: Optional[str] = None
    event_id: Optional[int] = None

    @classmethod
    def granted(cls, user_id: str, new_state: SessionState, event_id: int) -> 'ScanOutcome':
        return cls(OUTCOME_GRANTED, user_id=user_id, new_state=new_state, event_id=event_id)

    @classmethod
    def denied(cls, reason: str, user_id: Optional[str] = None,
               event_id: Optional[int] = None) -> 'ScanOutcome':
        return cls(OUTCOME_DENIED, user_id=user_id, reason=reason, event_id=event_id)

    @classmethod
    def failed(cls, reason: str, user_id: Optional[str] = None) -> 'ScanOutcome':
        return cls(OUTCOME_FAILED, user_id=user_id, reason=reason)

    @property
    def is_granted(self) -> bool:
        return self.outcome == OUTCOME_GRANTED

    @property
    def retryable(self) -> bool:
        # The same token would be denied again; only failures are worth a retry
        return self.outcome == OUTCOME_FAILED and self.reason not in PERMANENT_FAILURES

    def to_dict(self) -> Dict[str, Any]:
        return {
            'outcome': self.outcome,
            'user_id': self.user_id,
            'new_state': self.new_state.value if self.new_state else None,
            'reason': self.reason,
            'event_id': self.event_id,
            'retryable': self.retryable,
        }


class AccessManager:
    """
    Issues access tokens and turns scans into recorded entry/exit transitions.
    """

    def __init__(self, scan_log: ScanLogWriter, subscriptions: SubscriptionStore,
                 key_provider: KeyProvider,
                 qr_generator: Optional[QRGenerator] = None,
                 codec: Optional[TokenCodec] = None,
                 validity: timedelta = timedelta(minutes=20),
                 scan_timeout: float = 3.0,
                 max_write_attempts: int = 3,
                 default_location: str = 'main_entrance',
                 nonce_bytes: int = 16,
                 clock: Callable[[], datetime] = utc_now,
                 monotonic: Callable[[], float] = time.monotonic):
        """
        Initialize the access manager with its collaborators.

        Args:
            scan_log (ScanLogWriter): Durable scan log
            subscriptions (SubscriptionStore): Read-only subscription source
            key_provider (KeyProvider): Token key source
            qr_generator (QRGenerator): Renderer for issued tokens
            codec (TokenCodec): Token codec
            validity (timedelta): Lifetime of issued tokens
            scan_timeout (float): Interactive budget per scan, in seconds
            max_write_attempts (int): Grant attempts before giving up on races
            default_location (str): Location recorded when none is given
            nonce_bytes (int): Entropy of per-token nonces
            clock: Wall clock used for issuance and validation
            monotonic: Monotonic clock used for the scan budget
        """
        if validity <= timedelta(0):
            raise ValueError("Token validity must be positive")

        self.scan_log = scan_log
        self.subscriptions = subscriptions
        self.key_provider = key_provider
        self.codec = codec or TokenCodec()
        self.validator = TokenValidator(key_provider, self.codec)
        self.qr_generator = qr_generator or QRGenerator()
        self.validity = validity
        self.scan_timeout = scan_timeout
        self.max_write_attempts = max_write_attempts
        self.default_location = default_location
        self.nonce_bytes = nonce_bytes
        self.clock = clock
        self.monotonic = monotonic
        self.logger = logging.getLogger(__name__)

    def generate_token(self, user_id: str) -> str:
        """
        Issue a new access token for a user.

        Args:
            user_id (str): Credential holder

        Returns:
            str: Encoded token to embed in the user's QR code

        Raises:
            ValueError: If the user id is empty or the user has no active,
                in-date subscription
            StoreUnavailableError: If the subscription store cannot be read
        """
        token, _ = self._issue_token(user_id)
        return token

    def generate_token_qr(self, user_id: str) -> Dict[str, Any]:
        """
        Issue a new access token and render it as a QR code.

        Args:
            user_id (str): Credential holder

        Returns:
            Dict[str, Any]: QR image data plus token expiry
        """
        token, payload = self._issue_token(user_id)
        result = self.qr_generator.generate_token_qr_code(token, user_id)
        result['expires_at'] = format_timestamp(payload.expires_at)
        return result

    def _issue_token(self, user_id: str):
        if not isinstance(user_id, str) or not user_id.strip():
            raise ValueError("A user id is required to issue a token")

        issued_at = self.clock()
        subscription = self.subscriptions.get_subscription_status(user_id)
        if subscription is None or not subscription.is_active_at(issued_at):
            self.logger.warning(f"Token refused for user {user_id}: no active subscription")
            raise ValueError(f"User {user_id} has no active subscription")

        payload = AccessToken(
            user_id=user_id,
            issued_at=issued_at,
            expires_at=issued_at + self.validity,
            nonce=secrets.token_urlsafe(self.nonce_bytes),
        )
        key = self.key_provider.current_key()
        token = self.codec.encode(payload, key)

        self.logger.info(
            f"Access token issued for user {user_id} under key {key.version}, "
            f"expires {format_timestamp(payload.expires_at)}"
        )
        return token, payload

    def process_scan(self, raw_token, scan_type, operator_id: str,
                     location: Optional[str] = None) -> ScanOutcome:
        """
        Process a QR code scan for entry or exit.

        Args:
            raw_token: Untrusted string decoded from the camera frame
            scan_type: 'entry' or 'exit'
            operator_id (str): Operator running the scan station
            location (str): Scan station location

        Returns:
            ScanOutcome: granted, denied or failed
        """
        deadline = self.monotonic() + self.scan_timeout
        location = location or self.default_location

        try:
            scan_type = ScanType(scan_type)
        except ValueError:
            self.logger.warning(f"Scan rejected: unknown scan type {scan_type!r} from operator {operator_id}")
            return ScanOutcome.failed(REASON_INVALID_SCAN_TYPE)

        try:
            return self._process_scan(raw_token, scan_type, operator_id, location, deadline)

        except AccessControlError as e:
            self.logger.error(f"Scan processing failed ({e.reason}) at {location}: {str(e)}")
            return ScanOutcome.failed(e.reason)
        except Exception as e:
            self.logger.exception(f"Unexpected error while processing scan at {location}: {str(e)}")
            return ScanOutcome.failed('internal_error')

    def _process_scan(self, raw_token, scan_type: ScanType, operator_id: str,
                      location: str, deadline: float) -> ScanOutcome:
        context = ValidationContext(
            now=self.clock(),
            operator_id=operator_id,
            subscriptions=self.subscriptions,
            history=self.scan_log,
        )
        validation = self.validator.validate(raw_token, context)
        self._check_deadline(deadline)

        if not validation.valid:
            nonce = validation.payload.nonce if validation.payload else None
            return self._deny(validation.reason, validation.user_id, scan_type,
                              operator_id, location, nonce, deadline)

        user_id = validation.user_id
        nonce = validation.payload.nonce

        for attempt in range(1, self.max_write_attempts + 1):
            # Always re-derive from the log; a lost race must see the winner's write
            latest = self.scan_log.latest_for(user_id, granted_only=True)
            current_state = derive_state(latest)
            transition = next_state(user_id, scan_type, current_state)
            self._check_deadline(deadline)

            if not transition.accepted:
                return self._deny(transition.reason, user_id, scan_type,
                                  operator_id, location, nonce, deadline)

            event = ScanEvent(
                user_id=user_id,
                scan_type=scan_type,
                scanned_at=self.clock(),
                scanned_by=operator_id,
                location=location,
                outcome=ScanResult.GRANTED,
                nonce=nonce,
            )
            result = self.scan_log.record(
                event,
                expected_latest_id=latest.id if latest else None,
                deadline=deadline,
            )

            if result.committed:
                self.logger.info(
                    f"Access granted: user {user_id} {scan_type.value} at {location} "
                    f"by {operator_id}, now {transition.new_state.value}"
                )
                return ScanOutcome.granted(user_id, transition.new_state, result.event_id)

            if result.reason == REASON_CONFLICT:
                self.logger.info(f"Concurrent scan for user {user_id}, re-reading log (attempt {attempt})")
                continue

            if result.reason == REASON_DUPLICATE_NONCE:
                return self._deny(REASON_REPLAYED, user_id, scan_type,
                                  operator_id, location, nonce, deadline)

            return ScanOutcome.failed(result.reason, user_id)

        self.logger.error(f"Gave up granting scan for user {user_id} after {self.max_write_attempts} conflicts")
        return ScanOutcome.failed(REASON_CONFLICT, user_id)

    def _deny(self, reason: str, user_id: Optional[str], scan_type: ScanType,
              operator_id: str, location: str, nonce: Optional[str],
              deadline: float) -> ScanOutcome:
        """Record a denied scan; an unwritable denial is reported as a failure."""
        event = ScanEvent(
            user_id=user_id,
            scan_type=scan_type,
            scanned_at=self.clock(),
            scanned_by=operator_id,
            location=location,
            outcome=ScanResult.DENIED,
            denial_reason=reason,
            nonce=nonce,
        )
        result = self.scan_log.record(event, deadline=deadline)
        if not result.committed:
            return ScanOutcome.failed(result.reason, user_id)

        self.logger.warning(
            f"Access denied ({reason}): user {user_id or 'unknown'} {scan_type.value} "
            f"at {location} by {operator_id}"
        )
        return ScanOutcome.denied(reason, user_id, result.event_id)

    def _check_deadline(self, deadline: float):
        if self.monotonic() > deadline:
            raise ScanTimeoutError(f"scan exceeded {self.scan_timeout}s budget")

    def get_user_history(self, user_id: str, limit: int = 100) -> List[Dict[str, Any]]:
        """Scan events for a user, newest first, as dictionaries."""
        return [event.to_dict() for event in self.scan_log.history_for(user_id, limit)]

    def get_current_state(self, user_id: str) -> SessionState:
        """Current session state derived from the scan log."""
        return derive_state(self.scan_log.latest_for(user_id, granted_only=True))
