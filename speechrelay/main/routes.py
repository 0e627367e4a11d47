from __future__ import annotations

from flask import Blueprint, current_app, jsonify

from speechrelay.sockets.transcription_gateway import active_session_count

main_bp = Blueprint('main_bp', __name__)


@main_bp.route('/')
def index():
    return f"{current_app.config.get('APP_NAME', 'SpeechRelay')} socket server is running!", 200


@main_bp.route('/healthz')
def healthz():
    return jsonify({
        'status': 'ok',
        'provider': current_app.config.get('STT_PROVIDER'),
        'sessions': active_session_count(),
    })
