# speechrelay/__init__.py
from __future__ import annotations

import os
from typing import Any, Dict

from flask import Flask
from flask_cors import CORS

from .config import Config
from .extensions import socketio


def create_app(config_overrides: Dict[str, Any] | None = None):
    app = Flask(__name__)
    app.config.from_object(Config)
    if config_overrides:
        app.config.update(config_overrides)

    # Under pytest the Socket.IO test client needs synchronous handlers.
    if os.environ.get('PYTEST_CURRENT_TEST'):
        app.config['TESTING'] = True
        app.config['SOCKETIO_ASYNC_MODE'] = 'threading'

    origins = app.config.get('CORS_ALLOWED_ORIGINS', '*')
    CORS(app, resources={r"/*": {"origins": origins}})

    # Register Socket.IO event handlers before init_app so every server
    # created by init_app picks them up.
    from .sockets import transcription_gateway  # noqa: F401

    async_mode: str = app.config.get('SOCKETIO_ASYNC_MODE') or 'threading'
    socketio_kwargs: Dict[str, Any] = {
        "cors_allowed_origins": origins,
        "async_mode": async_mode,
        "max_http_buffer_size": int(app.config.get('SOCKETIO_MAX_HTTP_BUFFER_SIZE', 100_000_000)),
    }
    if async_mode == "threading":
        socketio_kwargs["async_handlers"] = False
    socketio.init_app(app, **socketio_kwargs)

    from .main.routes import main_bp
    app.register_blueprint(main_bp)

    return app
