# run.py
import os

if os.environ.get('SOCKETIO_ASYNC_MODE') == 'eventlet':
    import eventlet
    eventlet.monkey_patch()

import logging
from speechrelay import create_app, socketio

app = create_app()

# Configure logging to include line number
logging.basicConfig(
    format='%(asctime)s [%(levelname)s] %(filename)s:%(lineno)d - %(message)s',
    level=logging.INFO
)


if __name__ == "__main__":
    port = int(app.config.get('PORT', 8080))
    socketio.run(app, host="0.0.0.0", port=port, debug=False, allow_unsafe_werkzeug=True)
