"""
Library Access Control - Main Application

This module serves as the HTTP entry point for the library access control
core. Scanner stations post raw QR strings here; the member app requests
fresh QR access tokens. The dashboard screens, charts and exports are separate
collaborators and are not served from here.

Features:
- QR code scan processing for entry and exit
- Dynamic QR access token issuance
- Per-user scan history for the operator view
- Health check
"""

import logging

from flask import Flask, jsonify, request

from access_control.modules.access_manager import AccessManager, OUTCOME_GRANTED, OUTCOME_DENIED
from access_control.modules.database_manager import DatabaseManager
from access_control.modules.errors import AccessControlError
from access_control.modules.key_provider import KeyProvider
from access_control.modules.models import ScanType
from access_control.modules.qr_generator import QRGenerator
from access_control.modules.scan_log import ScanLogWriter
from access_control.modules.subscription_store import SqliteSubscriptionStore
from config import init_config, token_validity

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s %(levelname)s: %(message)s [in %(pathname)s:%(lineno)d]'
)
logger = logging.getLogger(__name__)

STATUS_BY_OUTCOME = {
    OUTCOME_GRANTED: 200,
    OUTCOME_DENIED: 403,
}


def create_app(config_name=None):
    """Create the Flask application and wire the access control components."""
    app = Flask(__name__)
    config_class = init_config(app, config_name)
    logging.getLogger().setLevel(app.config['LOG_LEVEL'])

    # Initialize system components
    db_manager = DatabaseManager(app.config['DATABASE_PATH'], timeout=app.config['DATABASE_TIMEOUT'])
    scan_log = ScanLogWriter(db_manager)
    subscriptions = SqliteSubscriptionStore(db_manager)
    access_manager = AccessManager(
        scan_log=scan_log,
        subscriptions=subscriptions,
        key_provider=KeyProvider.from_config(app.config),
        qr_generator=QRGenerator.from_config(app.config),
        validity=token_validity(config_class),
        scan_timeout=app.config['SCAN_TIMEOUT_SECONDS'],
        max_write_attempts=app.config['SCAN_MAX_WRITE_ATTEMPTS'],
        default_location=app.config['SCAN_DEFAULT_LOCATION'],
        nonce_bytes=app.config['QR_TOKEN_NONCE_BYTES'],
    )

    app.extensions['access_control'] = {
        'db_manager': db_manager,
        'scan_log': scan_log,
        'subscriptions': subscriptions,
        'access_manager': access_manager,
    }

    @app.route('/api/health')
    def health():
        """Liveness check"""
        return jsonify({'success': True, 'status': 'ok'})

    @app.route('/api/scan', methods=['POST'])
    def process_scan():
        """Process QR code scan and record the entry/exit decision"""
        data = request.get_json(silent=True) or {}
        qr_code = data.get('qr_code')
        scan_type = data.get('scan_type')
        operator_id = data.get('operator_id')

        if not isinstance(qr_code, str) or not qr_code.strip():
            return jsonify({'success': False, 'message': 'No QR code data provided'}), 400

        if not isinstance(operator_id, str) or not operator_id.strip():
            return jsonify({'success': False, 'message': 'No operator specified'}), 400

        if scan_type not in [t.value for t in ScanType]:
            return jsonify({'success': False, 'message': 'scan_type must be "entry" or "exit"'}), 400

        outcome = access_manager.process_scan(
            qr_code.strip(),
            scan_type,
            operator_id.strip(),
            data.get('location') or None
        )

        response = outcome.to_dict()
        response['success'] = outcome.is_granted
        return jsonify(response), STATUS_BY_OUTCOME.get(outcome.outcome, 503)

    @app.route('/api/users/<user_id>/token', methods=['POST'])
    def issue_token(user_id):
        """Issue a fresh QR access token for a user"""
        try:
            result = access_manager.generate_token_qr(user_id)
        except ValueError as e:
            return jsonify({'success': False, 'message': str(e)}), 400
        except AccessControlError as e:
            logger.error(f"Token issuance unavailable for user {user_id}: {str(e)}")
            return jsonify({'success': False, 'message': 'Subscription check unavailable'}), 503
        except Exception as e:
            logger.error(f"Token issuance error for user {user_id}: {str(e)}")
            return jsonify({'success': False, 'message': 'Could not issue an access token'}), 500

        return jsonify(result)

    @app.route('/api/users/<user_id>/scans')
    def user_scans(user_id):
        """Scan history for a user, newest first"""
        limit = request.args.get('limit', app.config['SCAN_HISTORY_LIMIT'], type=int)
        limit = max(1, min(limit, app.config['SCAN_HISTORY_LIMIT']))

        try:
            history = access_manager.get_user_history(user_id, limit)
            state = access_manager.get_current_state(user_id)
        except Exception as e:
            logger.error(f"Scan history error for user {user_id}: {str(e)}")
            return jsonify({'success': False, 'message': 'Scan history unavailable'}), 503

        return jsonify({
            'success': True,
            'user_id': user_id,
            'state': state.value,
            'scans': history
        })

    return app


if __name__ == '__main__':
    # Run the application
    app = create_app()
    app.run(debug=app.config['DEBUG'], host='0.0.0.0', port=5000)
