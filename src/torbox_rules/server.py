"""
HTTP API Server - Flask application over the automation service

Provides REST API for:
- Rule management (presets, custom rules, edits, toggles, deletion)
- Manual rule runs
- Local notifications
- Health checks and version info
- Authentication via API key
"""

import logging
import os
import secrets
from datetime import datetime, timezone
from functools import wraps
from typing import Any, Dict

from flask import Flask, jsonify, request

from torbox_rules.__version__ import __version__
from torbox_rules.errors import PresetNotFoundError, RuleNotFoundError, RuleValidationError, StorageError
from torbox_rules.models import (
    ACTION_LABELS,
    CONDITION_FIELD_LABELS,
    OPERATOR_LABELS,
    SCOPE_LABELS,
    RuleAction,
    RuleScope,
    is_action_supported_for_scope,
)
from torbox_rules.presets import PRESET_CATEGORIES, PRESETS
from torbox_rules.scheduler import RunStatus
from torbox_rules.service import AutomationService
from torbox_rules.store import EDITABLE_FIELDS

logger = logging.getLogger(__name__)

# Global references (set by create_app)
service: AutomationService = None
api_key_config: str = None

RUN_STATUS_CODES = {
    RunStatus.COMPLETED: 200,
    RunStatus.FAILED: 200,
    RunStatus.SKIPPED: 200,
    RunStatus.THROTTLED: 429,
    RunStatus.BUSY: 409,
}


def create_app(automation_service: AutomationService, api_key: str) -> Flask:
    """
    Create and configure Flask application

    Args:
        automation_service: Automation service hosting the engine
        api_key: API authentication key

    Returns:
        Configured Flask app
    """
    global service, api_key_config

    service = automation_service
    api_key_config = api_key

    app = Flask(__name__)
    app.json.sort_keys = False

    # Disable Flask's default logger (use our configured logger instead)
    app.logger.disabled = True
    logging.getLogger('werkzeug').setLevel(logging.WARNING)

    register_routes(app)
    register_error_handlers(app)

    logger.info("Flask application created")
    return app


def require_api_key(f):
    """
    Decorator for endpoints requiring API key authentication

    Checks for API key in:
    1. Query parameter: ?key=xxx
    2. Header: X-API-Key: xxx

    Returns 401 if missing or invalid.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        key = request.args.get('key') or request.headers.get('X-API-Key')

        # Constant-time comparison to prevent timing attacks
        if not key or not api_key_config or not secrets.compare_digest(key, api_key_config):
            return jsonify({
                'error': 'Unauthorized',
                'message': 'Invalid or missing API key'
            }), 401

        return f(*args, **kwargs)

    return decorated_function


def _json_body() -> Dict[str, Any]:
    body = request.get_json(silent=True)
    return body if isinstance(body, dict) else {}


def _confirmation(body: Dict[str, Any]):
    """Confirm callback answering with the request's confirm flag"""
    confirmed = body.get('confirm') is True
    return lambda rule: confirmed


def _confirmation_required(rule_name: str):
    return jsonify({
        'error': 'Confirmation Required',
        'message': f"'{rule_name}' can delete downloads permanently. Resend with confirm=true to proceed."
    }), 409


def register_routes(app: Flask):
    """Register all API routes"""

    @app.route('/api/health', methods=['GET'])
    def health():
        """
        Health check endpoint (no authentication required)

        Returns:
            200: Service healthy
            503: Service unhealthy
        """
        errors = []

        if not service.store.storage.health_check():
            errors.append("Rule storage not accessible")

        if not service.is_alive():
            errors.append("Automation loop not running")

        if errors:
            return jsonify({
                'status': 'unhealthy',
                'errors': errors,
                'timestamp': datetime.now(timezone.utc).isoformat()
            }), 503

        status = service.get_status()

        return jsonify({
            'status': 'healthy',
            'version': __version__,
            'storage': {
                'backend': service.store.storage.backend_name,
                'rules': status['rules'],
                'enabled_rules': status['enabled_rules'],
            },
            'scheduler': {
                'status': 'running' if status['scheduler_running'] else 'stopped',
                'tick_count': status['tick_count'],
                'running_rules': status['running_rules'],
            },
            'timestamp': datetime.now(timezone.utc).isoformat()
        }), 200

    @app.route('/api/version', methods=['GET'])
    def version():
        """
        Get version information (no authentication required)

        Returns:
            200: Version info
        """
        return jsonify({
            'version': __version__,
            'api_version': '1.0',
            'python_version': os.sys.version.split()[0]
        }), 200

    @app.route('/api/presets', methods=['GET'])
    @require_api_key
    def list_presets():
        """List built-in presets with their categories"""
        return jsonify({
            'categories': PRESET_CATEGORIES,
            'presets': [preset.to_dict() for preset in PRESETS],
        }), 200

    @app.route('/api/meta', methods=['GET'])
    @require_api_key
    def meta():
        """Label tables and legal action/scope pairings for rule editors"""
        return jsonify({
            'fields': CONDITION_FIELD_LABELS,
            'operators': OPERATOR_LABELS,
            'actions': ACTION_LABELS,
            'scopes': SCOPE_LABELS,
            'supported_scopes': {
                action.value: [scope.value for scope in RuleScope if is_action_supported_for_scope(action, scope)]
                for action in RuleAction
            },
        }), 200

    @app.route('/api/rules', methods=['GET'])
    @require_api_key
    def list_rules():
        """
        List rules in stored order

        Returns:
            200: Rules and enabled count
            401: Unauthorized
        """
        rules = service.invoke(lambda: service.store.rules)
        return jsonify({
            'total': len(rules),
            'enabled': sum(1 for rule in rules if rule.enabled),
            'rules': [rule.to_api_dict() for rule in rules],
        }), 200

    @app.route('/api/rules', methods=['POST'])
    @require_api_key
    def create_custom_rule():
        """
        Create a custom rule (always disabled)

        Body:
            name, check_interval_minutes, conditions, action, action_value, scope

        Returns:
            201: Rule created
            400: Invalid rule
        """
        body = _json_body()
        rule = service.call(
            service.store.create_custom,
            name=body.get('name', ''),
            check_interval_minutes=body.get('check_interval_minutes', 10),
            conditions=body.get('conditions') or [],
            action=body.get('action'),
            action_value=body.get('action_value'),
            scope=body.get('scope') or 'all',
        )
        return jsonify(rule.to_api_dict()), 201

    @app.route('/api/rules/from-preset', methods=['POST'])
    @require_api_key
    def create_rule_from_preset():
        """
        Create a rule from a preset (always disabled)

        Body:
            preset_id (required), confirm (required true for dangerous presets)

        Returns:
            201: Rule created
            404: Unknown preset
            409: Dangerous preset not confirmed
        """
        body = _json_body()
        preset_id = body.get('preset_id')
        if not preset_id:
            return jsonify({
                'error': 'Bad Request',
                'message': 'preset_id is required'
            }), 400

        rule = service.call(service.store.create_from_preset, preset_id, confirm=_confirmation(body))
        if rule is None:
            return _confirmation_required(preset_id)

        return jsonify(rule.to_api_dict()), 201

    @app.route('/api/rules/<rule_id>', methods=['GET'])
    @require_api_key
    def get_rule(rule_id: str):
        rule = service.invoke(service.store.get, rule_id)
        return jsonify(rule.to_api_dict()), 200

    @app.route('/api/rules/<rule_id>', methods=['PATCH'])
    @require_api_key
    def update_rule(rule_id: str):
        """
        Edit a rule

        Returns:
            200: Updated rule
            400: Invalid edit (store unchanged)
            404: Rule not found
        """
        fields = _json_body()
        unknown = set(fields) - EDITABLE_FIELDS
        if unknown:
            raise RuleValidationError(rule_id, f"Fields cannot be edited: {', '.join(sorted(unknown))}")

        rule = service.call(service.store.update, rule_id, **fields)
        return jsonify(rule.to_api_dict()), 200

    @app.route('/api/rules/<rule_id>', methods=['DELETE'])
    @require_api_key
    def delete_rule(rule_id: str):
        service.call(service.store.delete, rule_id)
        return jsonify({
            'id': rule_id,
            'message': 'Rule deleted'
        }), 200

    @app.route('/api/rules/<rule_id>/toggle', methods=['POST'])
    @require_api_key
    def toggle_rule(rule_id: str):
        """
        Enable or disable a rule

        Body:
            enabled (required), confirm (required true to enable dangerous rules)

        Returns:
            200: Rule state
            400: Unsupported action/scope combination
            404: Rule not found
            409: Dangerous rule not confirmed
        """
        body = _json_body()
        if not isinstance(body.get('enabled'), bool):
            return jsonify({
                'error': 'Bad Request',
                'message': 'enabled must be true or false'
            }), 400

        applied = service.call(service.store.toggle, rule_id, body['enabled'], confirm=_confirmation(body))
        rule = service.invoke(service.store.get, rule_id)
        if not applied:
            return _confirmation_required(rule.name)

        return jsonify(rule.to_api_dict()), 200

    @app.route('/api/rules/<rule_id>/run', methods=['POST'])
    @require_api_key
    def run_rule(rule_id: str):
        """
        Run a rule now (also allowed while disabled)

        Returns:
            200: Run finished (completed, failed or skipped)
            404: Rule not found
            409: Rule already running
            429: Manual run cooldown in effect
        """
        report = service.call(service.scheduler.run_now, rule_id)
        return jsonify(report.to_dict()), RUN_STATUS_CODES[report.status]

    @app.route('/api/notifications', methods=['GET'])
    @require_api_key
    def list_notifications():
        notifier = service.notifier
        if notifier is None:
            return jsonify({'unread': 0, 'notifications': []}), 200

        return jsonify({
            'unread': service.invoke(notifier.unread_count),
            'notifications': service.invoke(notifier.get_notifications),
        }), 200

    @app.route('/api/notifications/read', methods=['POST'])
    @require_api_key
    def mark_notifications_read():
        if service.notifier is not None:
            service.invoke(service.notifier.mark_all_read)
        return jsonify({'message': 'Notifications marked as read'}), 200

    @app.route('/api/notifications', methods=['DELETE'])
    @require_api_key
    def clear_notifications():
        if service.notifier is not None:
            service.invoke(service.notifier.clear)
        return jsonify({'message': 'Notifications cleared'}), 200


def register_error_handlers(app: Flask):
    """Map domain errors to JSON responses"""

    @app.errorhandler(RuleValidationError)
    def rule_invalid(error):
        return jsonify({
            'error': 'Bad Request',
            'message': error.message
        }), 400

    @app.errorhandler(RuleNotFoundError)
    @app.errorhandler(PresetNotFoundError)
    def rule_not_found(error):
        return jsonify({
            'error': 'Not Found',
            'message': error.message
        }), 404

    @app.errorhandler(StorageError)
    def storage_failed(error):
        logger.error(str(error))
        return jsonify({
            'error': 'Service Unavailable',
            'message': error.message
        }), 503

    @app.errorhandler(404)
    def not_found(error):
        """Handle 404 errors"""
        return jsonify({
            'error': 'Not Found',
            'message': 'Endpoint not found'
        }), 404

    @app.errorhandler(405)
    def method_not_allowed(error):
        return jsonify({
            'error': 'Method Not Allowed',
            'message': f'{request.method} not allowed on {request.path}'
        }), 405

    @app.errorhandler(500)
    def internal_error(error):
        """Handle 500 errors"""
        logger.error(f"Internal server error: {error}", exc_info=True)
        return jsonify({
            'error': 'Internal Server Error',
            'message': 'An unexpected error occurred'
        }), 500


def run_server(
    app: Flask,
    host: str = '0.0.0.0',
    port: int = 5000,
    log_http_access: bool = False
):
    """
    Run Flask app with Gunicorn in production mode

    The automation engine is in-process state, so exactly one worker is used.
    The service is started in that worker after the fork.

    Args:
        app: Flask application
        host: Bind address
        port: Bind port
        log_http_access: Enable HTTP access logging (default: False to suppress health checks)
    """
    from gunicorn.app.base import BaseApplication
    from gunicorn.glogging import Logger

    class FilteredLogger(Logger):
        """Custom Gunicorn logger that filters out health check requests"""

        def access(self, resp, req, environ, request_time):
            """Override access log to filter /api/health requests"""
            if not log_http_access:
                if environ.get('PATH_INFO') == '/api/health':
                    return

            super().access(resp, req, environ, request_time)

    class StandaloneApplication(BaseApplication):
        def __init__(self, app, options=None):
            self.application = app
            self.options = options or {}
            super().__init__()

        def load_config(self):
            for key, value in self.options.items():
                if key in self.cfg.settings and value is not None:
                    self.cfg.set(key, value)

        def load(self):
            return self.application

    def post_fork(server, worker_process):
        """
        Gunicorn post-fork hook - start the automation service in the worker

        Threads don't survive a fork, so the event loop thread is only created
        inside the worker process.
        """
        from torbox_rules.server import service as service_instance

        service_instance.start()
        logger.info(f"Automation service started in Gunicorn worker {worker_process.pid}")

    def worker_exit(server, worker_process):
        """Gunicorn worker-exit hook - let in-flight runs finish"""
        from torbox_rules.server import service as service_instance

        service_instance.stop()

    options = {
        'bind': f'{host}:{port}',
        'workers': 1,
        'worker_class': 'gthread',
        'threads': 4,
        'timeout': 120,
        'accesslog': '-',  # Log to stdout
        'errorlog': '-',   # Log to stderr
        'loglevel': 'warning',
        'logger_class': FilteredLogger,
        'preload_app': True,
        'post_fork': post_fork,
        'worker_exit': worker_exit,
    }

    logger.info(f"Starting Gunicorn server on {host}:{port}")

    app_instance = StandaloneApplication(app, options)
    app_instance.run()
