"""
Tests for HTTP API Server (server.py)

Test coverage for:
- API key authentication (header and query parameter)
- Rule management endpoints
- Confirmation flow for dangerous rules
- Manual runs and their status codes
- Notifications, health and version endpoints
- Error handlers
"""

import pytest

from torbox_rules.__version__ import __version__
from torbox_rules.presets import PRESETS
from torbox_rules.server import create_app
from torbox_rules.service import AutomationService
from torbox_rules.storage import MemoryRuleStorage

API_KEY = 'test-api-key-123'
HEADERS = {'X-API-Key': API_KEY}

DANGEROUS_PRESET = next(p for p in PRESETS if p.is_dangerous)
SAFE_PRESET = next(p for p in PRESETS if not p.is_dangerous)


@pytest.fixture
def service(rule_store, scheduler, notifier):
    """Running automation service without the periodic scheduler"""
    automation = AutomationService(rule_store, scheduler, notifier, run_scheduler=False)
    automation.start(timeout=5)
    yield automation
    automation.stop(timeout=5)


@pytest.fixture
def app(service):
    app = create_app(service, API_KEY)
    app.config['TESTING'] = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()


def create_rule(client, **overrides):
    body = {
        'name': 'Notify everything',
        'check_interval_minutes': 10,
        'conditions': [],
        'action': 'notify_user',
        'scope': 'all',
    }
    body.update(overrides)
    response = client.post('/api/rules', json=body, headers=HEADERS)
    assert response.status_code == 201, response.get_json()
    return response.get_json()


# ============================================================================
# Authentication
# ============================================================================

class TestAuthentication:
    def test_missing_key(self, client):
        response = client.get('/api/rules')
        assert response.status_code == 401
        assert response.get_json()['error'] == 'Unauthorized'

    def test_wrong_key(self, client):
        response = client.get('/api/rules', headers={'X-API-Key': 'nope'})
        assert response.status_code == 401

    def test_query_parameter(self, client):
        response = client.get(f'/api/rules?key={API_KEY}')
        assert response.status_code == 200

    def test_no_configured_key_rejects_everything(self, service):
        client = create_app(service, None).test_client()
        assert client.get('/api/rules', headers=HEADERS).status_code == 401

    def test_health_and_version_are_open(self, client):
        assert client.get('/api/health').status_code == 200
        assert client.get('/api/version').status_code == 200


# ============================================================================
# Health and metadata
# ============================================================================

class TestHealth:
    def test_healthy(self, client):
        data = client.get('/api/health').get_json()

        assert data['status'] == 'healthy'
        assert data['version'] == __version__
        assert data['storage'] == {'backend': 'memory', 'rules': 0, 'enabled_rules': 0}
        assert data['scheduler']['status'] == 'stopped'

    def test_unhealthy_storage(self, client, memory_storage, mocker):
        mocker.patch.object(memory_storage, 'health_check', return_value=False)

        response = client.get('/api/health')

        assert response.status_code == 503
        assert 'Rule storage not accessible' in response.get_json()['errors']

    def test_version(self, client):
        data = client.get('/api/version').get_json()
        assert data['version'] == __version__
        assert data['api_version'] == '1.0'


class TestPresetsAndMeta:
    def test_presets(self, client):
        data = client.get('/api/presets', headers=HEADERS).get_json()

        assert len(data['presets']) == len(PRESETS)
        assert data['presets'][0]['id'] == PRESETS[0].id
        assert data['categories']

    def test_reannounce_only_for_torrents(self, client):
        data = client.get('/api/meta', headers=HEADERS).get_json()

        assert data['supported_scopes']['reannounce_torrent'] == ['torrent']
        assert data['supported_scopes']['pause_download'] == ['all', 'torrent', 'usenet', 'web']
        assert data['actions']['notify_user'] == 'Notify (Local)'


# ============================================================================
# Rules
# ============================================================================

class TestRules:
    def test_list_empty(self, client):
        data = client.get('/api/rules', headers=HEADERS).get_json()
        assert data == {'total': 0, 'enabled': 0, 'rules': []}

    def test_create_custom_rule_is_disabled(self, client):
        rule = create_rule(client)

        assert rule['id'].startswith('rule_custom_')
        assert rule['enabled'] is False
        assert rule['is_custom'] is True
        assert rule['run_state'] == 'idle'

    def test_create_delete_rule_marks_dangerous(self, client):
        rule = create_rule(client, action='delete_download')
        assert rule['is_dangerous'] is True

    def test_create_invalid_rule(self, client):
        response = client.post('/api/rules', json={'name': '', 'action': 'notify_user'}, headers=HEADERS)

        assert response.status_code == 400
        assert response.get_json()['message'] == 'Rule name is required.'

    def test_create_illegal_pairing(self, client):
        response = client.post('/api/rules', json={
            'name': 'Reannounce web', 'action': 'reannounce_torrent', 'scope': 'web',
        }, headers=HEADERS)

        assert response.status_code == 400
        assert client.get('/api/rules', headers=HEADERS).get_json()['total'] == 0

    def test_get_rule(self, client):
        rule = create_rule(client)

        response = client.get(f"/api/rules/{rule['id']}", headers=HEADERS)

        assert response.status_code == 200
        assert response.get_json()['name'] == 'Notify everything'

    def test_get_missing_rule(self, client):
        response = client.get('/api/rules/rule_custom_missing', headers=HEADERS)
        assert response.status_code == 404

    def test_update_rule(self, client):
        rule = create_rule(client)

        response = client.patch(f"/api/rules/{rule['id']}", json={'name': 'Renamed', 'check_interval_minutes': 30},
                                headers=HEADERS)

        assert response.status_code == 200
        assert response.get_json()['name'] == 'Renamed'
        assert response.get_json()['check_interval_minutes'] == 30

    def test_update_rejects_history_fields(self, client):
        rule = create_rule(client)

        response = client.patch(f"/api/rules/{rule['id']}", json={'run_count': 99}, headers=HEADERS)

        assert response.status_code == 400
        assert 'run_count' in response.get_json()['message']

    def test_update_rejects_rule_id_in_body(self, client, rule_store):
        rule = create_rule(client)

        response = client.patch(f"/api/rules/{rule['id']}", json={'rule_id': 'other', 'name': 'x'}, headers=HEADERS)

        assert response.status_code == 400
        assert 'rule_id' in response.get_json()['message']
        assert rule_store.get(rule['id']).name == 'Notify everything'

    def test_update_to_delete_disables_rule(self, client):
        rule = create_rule(client, action='pause_download')
        client.post(f"/api/rules/{rule['id']}/toggle", json={'enabled': True}, headers=HEADERS)

        response = client.patch(f"/api/rules/{rule['id']}", json={'action': 'delete_download'}, headers=HEADERS)

        assert response.status_code == 200
        assert response.get_json()['is_dangerous'] is True
        assert response.get_json()['enabled'] is False

    def test_delete_rule(self, client):
        rule = create_rule(client)

        response = client.delete(f"/api/rules/{rule['id']}", headers=HEADERS)

        assert response.status_code == 200
        assert client.get(f"/api/rules/{rule['id']}", headers=HEADERS).status_code == 404

    def test_delete_missing_rule(self, client):
        assert client.delete('/api/rules/nope', headers=HEADERS).status_code == 404


class TestPresetCreation:
    def test_safe_preset(self, client):
        response = client.post('/api/rules/from-preset', json={'preset_id': SAFE_PRESET.id}, headers=HEADERS)

        assert response.status_code == 201
        assert response.get_json()['name'] == SAFE_PRESET.name
        assert response.get_json()['enabled'] is False

    def test_dangerous_preset_needs_confirmation(self, client):
        response = client.post('/api/rules/from-preset', json={'preset_id': DANGEROUS_PRESET.id}, headers=HEADERS)

        assert response.status_code == 409
        assert client.get('/api/rules', headers=HEADERS).get_json()['total'] == 0

    def test_dangerous_preset_confirmed(self, client):
        response = client.post('/api/rules/from-preset', json={'preset_id': DANGEROUS_PRESET.id, 'confirm': True},
                               headers=HEADERS)

        assert response.status_code == 201
        assert response.get_json()['is_dangerous'] is True

    def test_truthy_string_is_not_confirmation(self, client):
        response = client.post('/api/rules/from-preset', json={'preset_id': DANGEROUS_PRESET.id, 'confirm': 'yes'},
                               headers=HEADERS)
        assert response.status_code == 409

    def test_missing_preset_id(self, client):
        response = client.post('/api/rules/from-preset', json={}, headers=HEADERS)
        assert response.status_code == 400

    def test_unknown_preset(self, client):
        response = client.post('/api/rules/from-preset', json={'preset_id': 'nope'}, headers=HEADERS)
        assert response.status_code == 404


class TestToggle:
    def test_enable_and_disable(self, client):
        rule = create_rule(client)
        url = f"/api/rules/{rule['id']}/toggle"

        enabled = client.post(url, json={'enabled': True}, headers=HEADERS)
        assert enabled.status_code == 200
        assert enabled.get_json()['enabled'] is True
        assert client.get('/api/rules', headers=HEADERS).get_json()['enabled'] == 1

        disabled = client.post(url, json={'enabled': False}, headers=HEADERS)
        assert disabled.get_json()['enabled'] is False

    def test_enabled_must_be_boolean(self, client):
        rule = create_rule(client)
        response = client.post(f"/api/rules/{rule['id']}/toggle", json={'enabled': 'true'}, headers=HEADERS)
        assert response.status_code == 400

    def test_dangerous_rule_needs_confirmation(self, client):
        rule = create_rule(client, action='delete_download')
        url = f"/api/rules/{rule['id']}/toggle"

        refused = client.post(url, json={'enabled': True}, headers=HEADERS)
        assert refused.status_code == 409
        assert client.get(f"/api/rules/{rule['id']}", headers=HEADERS).get_json()['enabled'] is False

        confirmed = client.post(url, json={'enabled': True, 'confirm': True}, headers=HEADERS)
        assert confirmed.status_code == 200
        assert confirmed.get_json()['enabled'] is True

    def test_missing_rule(self, client):
        response = client.post('/api/rules/nope/toggle', json={'enabled': True}, headers=HEADERS)
        assert response.status_code == 404


# ============================================================================
# Manual runs
# ============================================================================

class TestRun:
    def test_run_disabled_rule(self, client, populated_api):
        rule = create_rule(client)

        response = client.post(f"/api/rules/{rule['id']}/run", headers=HEADERS)

        assert response.status_code == 200
        data = response.get_json()
        assert data == {'rule_id': rule['id'], 'status': 'completed', 'message': 'Processed 4 items.'}
        stored = client.get(f"/api/rules/{rule['id']}", headers=HEADERS).get_json()
        assert stored['run_count'] == 1
        assert stored['last_result'] == 'Manual run: Processed 4 items.'

    def test_cooldown(self, client, populated_api):
        rule = create_rule(client)
        client.post(f"/api/rules/{rule['id']}/run", headers=HEADERS)

        response = client.post(f"/api/rules/{rule['id']}/run", headers=HEADERS)

        assert response.status_code == 429
        assert response.get_json()['status'] == 'throttled'

    def test_failed_run_reports_200(self, client, mock_api):
        rule = create_rule(client)
        mock_api.list_error = RuntimeError('upstream exploded')

        response = client.post(f"/api/rules/{rule['id']}/run", headers=HEADERS)

        assert response.status_code == 200
        assert response.get_json()['status'] == 'failed'

    def test_missing_rule(self, client):
        assert client.post('/api/rules/nope/run', headers=HEADERS).status_code == 404


# ============================================================================
# Notifications
# ============================================================================

class TestNotifications:
    def test_list_mark_read_and_clear(self, client, notifier):
        notifier.append_notification('Automation ran', 'Processed 1 item.')

        data = client.get('/api/notifications', headers=HEADERS).get_json()
        assert data['unread'] == 1
        assert data['notifications'][0]['message'] == 'Processed 1 item.'

        assert client.post('/api/notifications/read', headers=HEADERS).status_code == 200
        assert client.get('/api/notifications', headers=HEADERS).get_json()['unread'] == 0

        assert client.delete('/api/notifications', headers=HEADERS).status_code == 200
        assert client.get('/api/notifications', headers=HEADERS).get_json()['notifications'] == []

    def test_without_notifier(self, rule_store, scheduler):
        automation = AutomationService(rule_store, scheduler, None, run_scheduler=False)
        automation.start(timeout=5)
        try:
            client = create_app(automation, API_KEY).test_client()
            data = client.get('/api/notifications', headers=HEADERS).get_json()
            assert data == {'unread': 0, 'notifications': []}
        finally:
            automation.stop(timeout=5)


# ============================================================================
# Error handlers
# ============================================================================

class TestErrorHandlers:
    def test_unknown_endpoint(self, client):
        response = client.get('/api/nothing-here', headers=HEADERS)
        assert response.status_code == 404
        assert response.get_json()['message'] == 'Endpoint not found'

    def test_method_not_allowed(self, client):
        response = client.put('/api/rules', headers=HEADERS)
        assert response.status_code == 405
        assert response.get_json()['error'] == 'Method Not Allowed'

    def test_storage_error_is_503(self, client, rule_store, mocker):
        from torbox_rules.errors import StorageError
        mocker.patch.object(rule_store, 'get', side_effect=StorageError('memory', 'gone'))

        response = client.get('/api/rules/anything', headers=HEADERS)

        assert response.status_code == 503


# ============================================================================
# Gunicorn runner
# ============================================================================

class TestRunServer:
    @pytest.fixture
    def gunicorn_run(self, mocker):
        from gunicorn.app.base import BaseApplication
        return mocker.patch.object(BaseApplication, 'run', autospec=True)

    def test_single_gthread_worker(self, app, gunicorn_run):
        from torbox_rules.server import run_server

        run_server(app, host='127.0.0.1', port=5055)

        cfg = gunicorn_run.call_args[0][0].cfg
        assert cfg.workers == 1
        assert cfg.worker_class_str == 'gthread'
        assert cfg.threads > 1
        assert cfg.bind == ['127.0.0.1:5055']
        assert cfg.preload_app is True

    def test_loads_flask_app(self, app, gunicorn_run):
        from torbox_rules.server import run_server

        run_server(app)

        assert gunicorn_run.call_args[0][0].load() is app
