"""
Token Codec Module - Library Access Control

This module turns an AccessToken payload into the opaque string carried by a
QR code, and back. Payloads are serialized as JSON and sealed with Fernet
(AES-CBC plus HMAC-SHA256). The key version is prepended in the clear so the
validator can pick the matching key across rotation:

    <key_version>.<fernet_token>

Decoding is deterministic and fails closed. Any tampering, truncation or key
mismatch comes back as a DecodeError value; nothing raises on scanner input.
"""

import base64
import binascii
import hashlib
import json
import logging
from enum import Enum
from functools import lru_cache
from typing import Optional, Union

from cryptography.fernet import Fernet, InvalidToken

from access_control.modules.key_provider import KeyMaterial, KEY_VERSION_PATTERN
from access_control.modules.models import AccessToken

# Generous upper bound; real tokens are a few hundred characters
MAX_TOKEN_LENGTH = 4096

PAYLOAD_FIELDS = frozenset(['user_id', 'issued_at', 'expires_at', 'nonce'])


class DecodeError(str, Enum):
    MALFORMED = 'malformed'
    AUTHENTICATION_FAILED = 'authentication_failed'


@lru_cache(maxsize=32)
def _fernet_for_secret(secret: str) -> Fernet:
    # Fernet wants 32 url-safe base64 bytes; secrets are free-form strings
    derived = hashlib.sha256(secret.encode('utf-8')).digest()
    return Fernet(base64.urlsafe_b64encode(derived))


def _is_canonical_base64(body: str) -> bool:
    """True only if body is exactly what urlsafe_b64encode would produce."""
    try:
        raw = base64.urlsafe_b64decode(body.encode('ascii'))
    except (ValueError, binascii.Error):
        return False
    return len(raw) > 0 and base64.urlsafe_b64encode(raw).decode('ascii') == body


class TokenCodec:
    """Reversible, tamper-evident transform between AccessToken and EncodedToken."""

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    def encode(self, payload: AccessToken, key: KeyMaterial) -> str:
        """
        Seal a payload under the given key.

        Args:
            payload (AccessToken): Token payload to seal
            key (KeyMaterial): Key to seal with

        Returns:
            str: Encoded token tagged with the key version
        """
        body = json.dumps(payload.to_dict(), sort_keys=True, separators=(',', ':'))
        sealed = _fernet_for_secret(key.secret).encrypt(body.encode('utf-8'))
        return f"{key.version}.{sealed.decode('ascii')}"

    def peek_version(self, token) -> Optional[str]:
        """Read the key version tag of a token without trusting anything else."""
        if not isinstance(token, str) or not token or len(token) > MAX_TOKEN_LENGTH:
            return None

        version, separator, _ = token.partition('.')
        if not separator or not KEY_VERSION_PATTERN.match(version):
            return None
        return version

    def decode(self, token, key: KeyMaterial) -> Union[AccessToken, DecodeError]:
        """
        Open an encoded token.

        Args:
            token: Untrusted string from the scanner
            key (KeyMaterial): Key expected to have sealed it

        Returns:
            AccessToken on success, otherwise DecodeError.MALFORMED or
            DecodeError.AUTHENTICATION_FAILED.
        """
        version = self.peek_version(token)
        if version is None:
            return DecodeError.MALFORMED

        body = token.partition('.')[2]
        if not _is_canonical_base64(body):
            return DecodeError.MALFORMED

        if version != key.version:
            return DecodeError.AUTHENTICATION_FAILED

        try:
            plaintext = _fernet_for_secret(key.secret).decrypt(body.encode('ascii'))
        except InvalidToken:
            return DecodeError.AUTHENTICATION_FAILED

        try:
            data = json.loads(plaintext.decode('utf-8'))
            if not isinstance(data, dict) or set(data) != PAYLOAD_FIELDS:
                return DecodeError.MALFORMED
            if not all(isinstance(data[name], str) for name in PAYLOAD_FIELDS):
                return DecodeError.MALFORMED
            return AccessToken.from_dict(data)
        except (ValueError, TypeError, KeyError) as e:
            # Authentic but unusable payload, e.g. sealed by a buggy issuer
            self.logger.warning(f"Authenticated token carried an invalid payload: {str(e)}")
            return DecodeError.MALFORMED
