from datetime import timedelta

import pytest

from access_control.modules.errors import StoreUnavailableError
from access_control.modules.key_provider import KeyMaterial
from access_control.modules.models import (
    AccessToken, SubscriptionStatus,
    REASON_MALFORMED, REASON_EXPIRED, REASON_REPLAYED, REASON_SUBSCRIPTION_INACTIVE,
)
from access_control.modules.token_codec import TokenCodec
from access_control.modules.token_validator import TokenValidator, ValidationContext
from tests.conftest import T0, MemorySubscriptions, MemoryHistory


def active(user_id, days=30):
    return SubscriptionStatus(user_id, 'active', T0 + timedelta(days=days))


@pytest.fixture
def stores():
    return MemorySubscriptions({'U1': active('U1')}), MemoryHistory()


@pytest.fixture
def validator(key_provider):
    return TokenValidator(key_provider)


def issue(key_provider, user_id='U1', nonce='nonce-1', minutes=5, issued_at=T0, key=None):
    payload = AccessToken(user_id, issued_at, issued_at + timedelta(minutes=minutes), nonce)
    return TokenCodec().encode(payload, key or key_provider.current_key())


def context(stores, now):
    subscriptions, history = stores
    return ValidationContext(now=now, operator_id='op-1', subscriptions=subscriptions, history=history)


def test_fresh_token_is_valid(validator, key_provider, stores):
    result = validator.validate(issue(key_provider), context(stores, T0 + timedelta(minutes=1)))

    assert result.valid
    assert result.user_id == 'U1'
    assert result.payload.nonce == 'nonce-1'
    assert result.reason is None


def test_expiry_boundary(validator, key_provider, stores):
    token = issue(key_provider, minutes=5)

    assert validator.validate(token, context(stores, T0 + timedelta(minutes=5))).valid

    late = validator.validate(token, context(stores, T0 + timedelta(minutes=5, milliseconds=1)))
    assert not late.valid
    assert late.reason == REASON_EXPIRED
    assert late.user_id == 'U1'


def test_tampered_token_is_malformed(validator, key_provider, stores):
    token = issue(key_provider)
    tampered = token[:-3] + ('A' if token[-3] != 'A' else 'B') + token[-2:]

    result = validator.validate(tampered, context(stores, T0))

    assert result.reason == REASON_MALFORMED
    assert result.user_id is None


def test_token_sealed_with_unknown_key_is_malformed(validator, key_provider, stores):
    token = issue(key_provider, key=KeyMaterial('v9', 'attacker-key'))
    assert validator.validate(token, context(stores, T0)).reason == REASON_MALFORMED


def test_retired_key_token_still_validates(validator, key_provider, stores):
    token = issue(key_provider, key=key_provider.key_for_version('v0'))

    assert token.startswith('v0.')
    assert validator.validate(token, context(stores, T0)).valid


def test_consumed_nonce_is_replayed(validator, key_provider, stores):
    _, history = stores
    history.consumed.append(('U1', 'nonce-1', T0 + timedelta(minutes=1)))

    result = validator.validate(issue(key_provider), context(stores, T0 + timedelta(minutes=2)))

    assert result.reason == REASON_REPLAYED


def test_nonce_consumed_by_other_user_is_not_replay(validator, key_provider, stores):
    _, history = stores
    history.consumed.append(('U2', 'nonce-1', T0 + timedelta(minutes=1)))

    assert validator.validate(issue(key_provider), context(stores, T0 + timedelta(minutes=2))).valid


@pytest.mark.parametrize('subscription', [
    None,
    SubscriptionStatus('U1', 'expired', T0 + timedelta(days=30)),
    SubscriptionStatus('U1', 'inactive', T0 + timedelta(days=30)),
    SubscriptionStatus('U1', 'active', T0 - timedelta(seconds=1)),
    SubscriptionStatus('U1', 'active', None),
])
def test_subscription_must_be_active_and_in_date(validator, key_provider, subscription):
    subscriptions = MemorySubscriptions({'U1': subscription} if subscription else {})
    stores = (subscriptions, MemoryHistory())

    result = validator.validate(issue(key_provider), context(stores, T0))

    assert result.reason == REASON_SUBSCRIPTION_INACTIVE
    assert result.user_id == 'U1'


def test_expired_token_short_circuits_store_lookups(validator, key_provider, stores):
    subscriptions, history = stores

    result = validator.validate(issue(key_provider), context(stores, T0 + timedelta(hours=1)))

    assert result.reason == REASON_EXPIRED
    assert history.calls == 0
    assert subscriptions.calls == 0


def test_replay_reported_before_subscription(validator, key_provider):
    history = MemoryHistory()
    history.consumed.append(('U1', 'nonce-1', T0))
    subscriptions = MemorySubscriptions()

    result = validator.validate(issue(key_provider), context((subscriptions, history), T0))

    assert result.reason == REASON_REPLAYED
    assert subscriptions.calls == 0


def test_store_failure_propagates(validator, key_provider):
    class BrokenSubscriptions(MemorySubscriptions):
        def get_subscription_status(self, user_id):
            raise StoreUnavailableError("subscription store offline")

    stores = (BrokenSubscriptions(), MemoryHistory())

    with pytest.raises(StoreUnavailableError):
        validator.validate(issue(key_provider), context(stores, T0))
