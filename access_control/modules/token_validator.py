"""
Token Validator Module - Library Access Control

Decides whether a scanned token may be honoured. Checks run cheapest and most
attacker-relevant first, and stop at the first failure:

1. decode (tamper / key mismatch)    -> malformed_or_tampered
2. expiry against context.now         -> expired
3. nonce already used by a grant      -> replayed
4. subscription active and in date    -> subscription_inactive

All time comparisons use context.now, never the store's or the codec's clock.
Store failures propagate as StoreUnavailableError; the caller turns them into
a retryable failure rather than a denial.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from access_control.modules.key_provider import KeyProvider
from access_control.modules.models import (
    AccessToken, ensure_utc,
    REASON_MALFORMED, REASON_EXPIRED, REASON_REPLAYED, REASON_SUBSCRIPTION_INACTIVE,
)
from access_control.modules.ports import SubscriptionStore, ScanHistoryStore
from access_control.modules.token_codec import TokenCodec, DecodeError


@dataclass
class ValidationContext:
    now: datetime
    operator_id: str
    subscriptions: SubscriptionStore
    history: ScanHistoryStore


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    reason: Optional[str] = None
    user_id: Optional[str] = None
    payload: Optional[AccessToken] = None

    @classmethod
    def accept(cls, payload: AccessToken) -> 'ValidationResult':
        return cls(valid=True, user_id=payload.user_id, payload=payload)

    @classmethod
    def reject(cls, reason: str, payload: Optional[AccessToken] = None) -> 'ValidationResult':
        return cls(
            valid=False,
            reason=reason,
            user_id=payload.user_id if payload else None,
            payload=payload,
        )


class TokenValidator:

    def __init__(self, key_provider: KeyProvider, codec: Optional[TokenCodec] = None):
        self.key_provider = key_provider
        self.codec = codec or TokenCodec()
        self.logger = logging.getLogger(__name__)

    def decode(self, token):
        """Decode with the key matching the token's version tag, else the current key."""
        version = self.codec.peek_version(token)
        key = self.key_provider.key_for_version(version) if version else None
        if key is None:
            key = self.key_provider.current_key()
        return self.codec.decode(token, key)

    def validate(self, token, context: ValidationContext) -> ValidationResult:
        """
        Validate a raw scanned token.

        Args:
            token: Untrusted string from the scanner
            context (ValidationContext): Clock, operator and store accessors

        Returns:
            ValidationResult: Accepted payload or the first failing reason
        """
        decoded = self.decode(token)
        if isinstance(decoded, DecodeError):
            self.logger.warning(f"Token rejected by codec ({decoded.value}) at operator {context.operator_id}")
            return ValidationResult.reject(REASON_MALFORMED)

        payload = decoded
        now = ensure_utc(context.now)

        if now > payload.expires_at:
            return ValidationResult.reject(REASON_EXPIRED, payload)

        if context.history.nonce_consumed(payload.user_id, payload.nonce, payload.issued_at):
            return ValidationResult.reject(REASON_REPLAYED, payload)

        subscription = context.subscriptions.get_subscription_status(payload.user_id)
        if subscription is None or not subscription.is_active_at(now):
            return ValidationResult.reject(REASON_SUBSCRIPTION_INACTIVE, payload)

        return ValidationResult.accept(payload)
