"""
Backup routes - create, list, download, restore and delete archives.

All endpoints require an administrator. Backup errors are returned as
{"error": ..., "kind": ...} with a status derived from the error kind.
"""

import logging
from flask import Blueprint, jsonify, request, send_file, current_app

from sourdough.auth import admin_required
from sourdough.backup import BackupService, BackupError, ErrorKind, load_backup_config


bp = Blueprint('backup', __name__, url_prefix='/api/backup')
logger = logging.getLogger(__name__)

ERROR_STATUS = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.INVALID_FILENAME: 400,
    ErrorKind.INVALID_ARCHIVE: 422,
    ErrorKind.UNSUPPORTED_VERSION: 422,
    ErrorKind.UNSAFE_STATEMENT_REJECTED: 422,
    ErrorKind.OPERATION_IN_PROGRESS: 409,
    ErrorKind.DESTINATION_UNAVAILABLE: 502,
}


def error_response(error: BackupError):
    """JSON body and HTTP status for a backup error."""
    status = ERROR_STATUS.get(error.kind, 500)
    if status >= 500:
        logger.error(f"Backup request failed ({error.kind.value}): {error}")
    return jsonify(error.to_dict()), status


def get_backup_service() -> BackupService:
    return BackupService(load_backup_config(current_app._get_current_object()))


def _flag(data, name):
    value = data.get(name, True)
    if isinstance(value, str):
        return value.lower() in ('1', 'true', 'yes', 'on')
    return bool(value)


@bp.route('', methods=['GET'])
@admin_required
def list_backups():
    """
    List stored archives, newest first.

    Query params:
        - destination: Destination name (default: local)
    """
    try:
        with get_backup_service() as service:
            backups = service.list_backups(request.args.get('destination'))
    except BackupError as e:
        return error_response(e)
    return jsonify({'backups': backups})


@bp.route('', methods=['POST'])
@admin_required
def create_backup():
    """
    Create a backup.

    Request body (all optional):
        - include_database, include_files, include_settings: bool (default true)
        - destinations: list of destination names besides local
    """
    data = request.get_json(silent=True) or {}
    destinations = data.get('destinations')
    if destinations is not None and not isinstance(destinations, list):
        return jsonify({'error': 'destinations must be a list'}), 400

    try:
        with get_backup_service() as service:
            result = service.create(
                include_database=_flag(data, 'include_database'),
                include_files=_flag(data, 'include_files'),
                include_settings=_flag(data, 'include_settings'),
                destinations=destinations,
            )
    except BackupError as e:
        return error_response(e)

    return jsonify({'message': 'Backup created successfully', 'backup': result}), 201


@bp.route('/<filename>/download', methods=['GET'])
@admin_required
def download_backup(filename):
    try:
        with get_backup_service() as service:
            stream = service.download(filename)
    except BackupError as e:
        return error_response(e)

    return send_file(stream, mimetype='application/zip', as_attachment=True, download_name=filename)


@bp.route('/restore', methods=['POST'])
@admin_required
def restore_backup():
    """
    Restore from an uploaded archive or a stored one.

    Either a multipart file field 'backup', or a JSON body with
    'filename' and optional 'destination' (default: local).
    """
    upload = request.files.get('backup')

    try:
        with get_backup_service() as service:
            if upload is not None:
                if not (upload.filename or '').lower().endswith('.zip'):
                    return jsonify({'error': 'Backup must be a .zip archive'}), 400
                logger.warning(f"Restore requested from uploaded file {upload.filename}")
                result = service.restore_from_upload(upload.stream)
            else:
                data = request.get_json(silent=True) or {}
                filename = data.get('filename')
                if not filename:
                    return jsonify({'error': 'Provide a backup file or a stored backup filename'}), 400
                logger.warning(f"Restore requested from stored backup {filename}")
                result = service.restore_from_stored(filename, data.get('destination') or 'local')
    except BackupError as e:
        return error_response(e)

    return jsonify({'message': 'Backup restored successfully', **result})


@bp.route('/<filename>', methods=['DELETE'])
@admin_required
def delete_backup(filename):
    try:
        with get_backup_service() as service:
            service.delete(filename, request.args.get('destination') or 'local')
    except BackupError as e:
        return error_response(e)
    return jsonify({'message': 'Backup deleted successfully'})


@bp.route('/destinations', methods=['GET'])
@admin_required
def destination_status():
    with get_backup_service() as service:
        return jsonify({'destinations': service.destination_status()})


@bp.route('/retention', methods=['POST'])
@admin_required
def apply_retention():
    """Run the retention policy now against all enabled destinations."""
    try:
        with get_backup_service() as service:
            summary = service.apply_retention()
    except BackupError as e:
        return error_response(e)
    return jsonify(summary)
