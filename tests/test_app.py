import threading
from datetime import timedelta

import pytest

from access_control.modules.errors import StoreUnavailableError
from access_control.modules.models import utc_now
from app import create_app


@pytest.fixture
def app():
    app = create_app('testing')
    components = app.extensions['access_control']
    components['subscriptions'].upsert_subscription('U1', 'active', utc_now() + timedelta(days=30))
    yield app
    components['db_manager'].close_all_connections()


@pytest.fixture
def client(app):
    return app.test_client()


def issue_token(client, user_id='U1'):
    response = client.post(f'/api/users/{user_id}/token')
    assert response.status_code == 200
    return response.get_json()


def test_health(client):
    response = client.get('/api/health')

    assert response.status_code == 200
    assert response.get_json()['status'] == 'ok'


def test_token_route_returns_qr_payload(client):
    data = issue_token(client)

    assert data['success']
    assert data['user_id'] == 'U1'
    assert data['qr_data'].startswith('v1.')
    assert data['image_base64']
    assert data['expires_at']


def test_scan_grant_then_replay(client):
    token = issue_token(client)['qr_data']
    body = {'qr_code': token, 'scan_type': 'entry', 'operator_id': 'op-1', 'location': 'north_door'}

    granted = client.post('/api/scan', json=body)
    assert granted.status_code == 200
    assert granted.get_json()['new_state'] == 'INSIDE'
    assert granted.get_json()['success'] is True

    replayed = client.post('/api/scan', json=body)
    assert replayed.status_code == 403
    assert replayed.get_json()['reason'] == 'replayed'
    assert replayed.get_json()['retryable'] is False


def test_scan_tampered_token_is_forbidden(client):
    response = client.post('/api/scan', json={
        'qr_code': 'v1.this-is-not-a-token', 'scan_type': 'entry', 'operator_id': 'op-1',
    })

    assert response.status_code == 403
    assert response.get_json()['reason'] == 'malformed_or_tampered'


def test_scan_with_unknown_type_is_a_bad_request(client, app):
    token = issue_token(client)['qr_data']

    response = client.post('/api/scan', json={'qr_code': token, 'scan_type': 'visit', 'operator_id': 'op-1'})

    assert response.status_code == 400
    assert response.get_json()['success'] is False
    assert app.extensions['access_control']['scan_log'].recent_events(5) == []


@pytest.mark.parametrize('body', [
    {},
    {'qr_code': '', 'scan_type': 'entry', 'operator_id': 'op-1'},
    {'qr_code': 'v1.abc', 'scan_type': 'entry'},
    {'qr_code': 42, 'scan_type': 'entry', 'operator_id': 'op-1'},
])
def test_scan_rejects_incomplete_requests(client, body):
    response = client.post('/api/scan', json=body)

    assert response.status_code == 400
    assert response.get_json()['success'] is False


def test_user_scan_history(client):
    token = issue_token(client)['qr_data']
    client.post('/api/scan', json={'qr_code': token, 'scan_type': 'entry', 'operator_id': 'op-1'})

    response = client.get('/api/users/U1/scans?limit=10')
    data = response.get_json()

    assert response.status_code == 200
    assert data['state'] == 'INSIDE'
    assert len(data['scans']) == 1
    assert data['scans'][0]['location'] == 'main_entrance'
    assert 'nonce' not in data['scans'][0]


@pytest.mark.parametrize('user_id', ['U404', 'U2'])
def test_token_refused_without_active_subscription(client, app, user_id):
    app.extensions['access_control']['subscriptions'].upsert_subscription(
        'U2', 'expired', utc_now() - timedelta(days=1))

    response = client.post(f'/api/users/{user_id}/token')

    assert response.status_code == 400
    assert response.get_json()['success'] is False


def test_token_route_reports_store_outage(client, app, monkeypatch):
    def offline(user_id):
        raise StoreUnavailableError("membership database offline")

    monkeypatch.setattr(app.extensions['access_control']['subscriptions'], 'get_subscription_status', offline)

    response = client.post('/api/users/U1/token')

    assert response.status_code == 503


def test_database_is_shared_across_threads(app):
    responses = []

    def worker():
        with app.test_client() as client:
            responses.append(client.get('/api/users/U1/scans'))

    thread = threading.Thread(target=worker)
    thread.start()
    thread.join(timeout=10)

    assert responses[0].status_code == 200
    assert responses[0].get_json()['state'] == 'OUTSIDE'


def test_testing_apps_get_separate_databases(app):
    other = create_app('testing')

    assert other.config['DATABASE_PATH'] != app.config['DATABASE_PATH']
    assert other.extensions['access_control']['subscriptions'].get_subscription_status('U1') is None
