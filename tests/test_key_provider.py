from datetime import timedelta

import pytest
import requests

from access_control.modules import key_provider as key_provider_module
from access_control.modules.key_provider import KeyProvider, SOURCE_REMOTE, SOURCE_STATIC

SERVICE_URL = 'https://keys.example.test/getQrEncryptionKeyHttp'


class FakeResponse:

    def __init__(self, payload, status_code=200):
        self.payload = payload
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self):
        if isinstance(self.payload, Exception):
            raise self.payload
        return self.payload


class FakeKeyService:

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def __call__(self, url, headers=None, timeout=None):
        self.calls.append({'url': url, 'headers': headers, 'timeout': timeout})
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response


def remote_provider(clock, **kwargs):
    return KeyProvider('v1', 'static-secret', service_url=SERVICE_URL,
                       service_token='id-token', fetch_timeout=0.5, clock=clock, **kwargs)


def test_static_key_without_service(clock, monkeypatch):
    service = FakeKeyService(FakeResponse({'key': 'never'}))
    monkeypatch.setattr(key_provider_module.requests, 'post', service)

    provider = KeyProvider('v1', 'static-secret', clock=clock)
    key = provider.current_key()

    assert key.version == 'v1'
    assert key.secret == 'static-secret'
    assert key.source == SOURCE_STATIC
    assert service.calls == []


def test_remote_key_is_fetched_and_cached(clock, monkeypatch):
    expires_ms = (clock.now + timedelta(minutes=30)).timestamp() * 1000
    service = FakeKeyService(FakeResponse({'key': 'remote-secret', 'version': 'v2', 'expiresAt': expires_ms}))
    monkeypatch.setattr(key_provider_module.requests, 'post', service)

    provider = remote_provider(clock)
    first = provider.current_key()
    clock.advance(minutes=10)
    second = provider.current_key()

    assert first.version == 'v2'
    assert first.source == SOURCE_REMOTE
    assert second is first
    assert len(service.calls) == 1
    assert service.calls[0]['timeout'] == 0.5
    assert service.calls[0]['headers'] == {'Authorization': 'Bearer id-token'}


def test_cached_key_expires_and_re_resolves(clock, monkeypatch):
    service = FakeKeyService(
        FakeResponse({'key': 'remote-a', 'version': 'ra'}),
        FakeResponse({'key': 'remote-b', 'version': 'rb'}),
    )
    monkeypatch.setattr(key_provider_module.requests, 'post', service)

    provider = remote_provider(clock, refresh_seconds=60)
    assert provider.current_key().version == 'ra'
    clock.advance(seconds=61)
    assert provider.current_key().version == 'rb'
    assert len(service.calls) == 2


@pytest.mark.parametrize('failure', [
    requests.Timeout('slow'),
    requests.ConnectionError('down'),
    FakeResponse({'error': 'Internal server error'}, status_code=500),
    FakeResponse(ValueError('not json')),
    FakeResponse(['not', 'an', 'object']),
    FakeResponse({'key': ''}),
    FakeResponse({'key': 'k', 'version': 'bad.version'}),
])
def test_remote_failure_falls_back_to_static_key(clock, monkeypatch, failure):
    monkeypatch.setattr(key_provider_module.requests, 'post', FakeKeyService(failure))

    key = remote_provider(clock).current_key()

    assert key.source == SOURCE_STATIC
    assert key.secret == 'static-secret'


def test_failure_backoff_avoids_repeated_lookups(clock, monkeypatch):
    service = FakeKeyService(requests.Timeout('slow'))
    monkeypatch.setattr(key_provider_module.requests, 'post', service)

    provider = remote_provider(clock, failure_backoff_seconds=30)
    provider.current_key()
    clock.advance(seconds=10)
    provider.current_key()
    assert len(service.calls) == 1

    clock.advance(seconds=25)
    provider.current_key()
    assert len(service.calls) == 2


def test_unversioned_remote_key_matching_static_keeps_static_version(clock, monkeypatch):
    monkeypatch.setattr(key_provider_module.requests, 'post',
                        FakeKeyService(FakeResponse({'key': 'static-secret'})))

    assert remote_provider(clock).current_key().version == 'v1'


def test_unversioned_remote_key_gets_derived_version(clock, monkeypatch):
    monkeypatch.setattr(key_provider_module.requests, 'post',
                        FakeKeyService(FakeResponse({'key': 'rotated-secret'})))

    version = remote_provider(clock).current_key().version
    assert version.startswith('r')
    assert version != 'v1'


def test_key_for_version_covers_rotation(clock, monkeypatch):
    service = FakeKeyService(
        FakeResponse({'key': 'remote-a', 'version': 'ra'}),
        FakeResponse({'key': 'remote-b', 'version': 'rb'}),
    )
    monkeypatch.setattr(key_provider_module.requests, 'post', service)

    provider = KeyProvider('v1', 'static-secret', retired_keys={'v0': 'old-secret'},
                           service_url=SERVICE_URL, refresh_seconds=60,
                           grace_period=timedelta(hours=1), clock=clock)
    assert provider.current_key().version == 'ra'
    clock.advance(seconds=61)
    assert provider.current_key().version == 'rb'

    assert provider.key_for_version('rb').secret == 'remote-b'
    assert provider.key_for_version('ra').secret == 'remote-a'
    assert provider.key_for_version('v1').secret == 'static-secret'
    assert provider.key_for_version('v0').secret == 'old-secret'
    assert provider.key_for_version('unknown') is None

    # Past the grace period the superseded remote key is no longer honoured
    clock.advance(hours=2)
    assert provider.key_for_version('ra') is None


def test_from_config_reads_settings(clock):
    provider = KeyProvider.from_config({
        'QR_KEY_VERSION': 'v3',
        'QR_STATIC_KEY': 'configured',
        'QR_RETIRED_KEYS': {'v2': 'previous'},
        'QR_KEY_SERVICE_URL': None,
    }, clock=clock)

    assert provider.current_key().version == 'v3'
    assert provider.key_for_version('v2').secret == 'previous'


def test_invalid_static_configuration_is_rejected():
    with pytest.raises(ValueError):
        KeyProvider('v.1', 'secret')
    with pytest.raises(ValueError):
        KeyProvider('v1', '')


@pytest.mark.parametrize('version', ['v1', 'v0'])
def test_remote_key_reusing_configured_version_is_rejected(clock, monkeypatch, version):
    monkeypatch.setattr(key_provider_module.requests, 'post',
                        FakeKeyService(FakeResponse({'key': 'impostor-secret', 'version': version})))

    provider = KeyProvider('v1', 'static-secret', retired_keys={'v0': 'old-secret'},
                           service_url=SERVICE_URL, clock=clock)

    assert provider.current_key().source == SOURCE_STATIC
    assert provider.key_for_version('v1').secret == 'static-secret'
    assert provider.key_for_version('v0').secret == 'old-secret'


def test_remote_key_matching_configured_version_and_secret_is_accepted(clock, monkeypatch):
    monkeypatch.setattr(key_provider_module.requests, 'post',
                        FakeKeyService(FakeResponse({'key': 'static-secret', 'version': 'v1'})))

    key = remote_provider(clock).current_key()

    assert key.source == SOURCE_REMOTE
    assert key.version == 'v1'
