"""
Server routes - connection test and transfer tool check.
"""

import logging

from flask import Blueprint, current_app, jsonify

from pullkeeper import store, transport
from pullkeeper.backup.probe import check_capabilities

logger = logging.getLogger(__name__)

bp = Blueprint('servers', __name__, url_prefix='/api/servers')


def _server_not_found(server_id):
    return jsonify({'error': f'Server not found: {server_id}'}), 404


@bp.route('/<server_id>/test', methods=['GET'])
def test_server_connection(server_id):
    """
    Open an SSH session to the server and run a trivial command.

    Returns:
        JSON {success, message}; 400 when the connection fails
    """
    server = store.find_server(server_id)
    if server is None:
        return _server_not_found(server_id)

    logger.info(f"Connection test started for server {server.name}")
    result = transport.test_connection(server, timeout=current_app.config.get('SSH_CONNECT_TIMEOUT', 30))

    return jsonify(result), 200 if result['success'] else 400


@bp.route('/<server_id>/capabilities', methods=['GET'])
def get_server_capabilities(server_id):
    """
    Report whether rsync and scp exist on the server.

    Returns:
        JSON {success, capabilities, message}; 400 when the connection fails
    """
    server = store.find_server(server_id)
    if server is None:
        return _server_not_found(server_id)

    result = check_capabilities(server, timeout=current_app.config.get('SSH_CONNECT_TIMEOUT', 30))

    return jsonify(result), 200 if result['success'] else 400
