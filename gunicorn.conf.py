import os

bind = f"0.0.0.0:{os.environ.get('PORT', '8080')}"

# Socket.IO sessions are sticky to one process: single worker. Each client
# session runs its own event loop thread, so use the threaded worker.
workers = 1
worker_class = 'gthread'
threads = int(os.environ.get('GUNICORN_THREADS', '100'))

# Recognition sessions are long-lived; never recycle the worker under them.
max_requests = 0
timeout = int(os.environ.get('GUNICORN_TIMEOUT', '120'))
graceful_timeout = 10
preload_app = True

accesslog = '-'
errorlog = '-'
loglevel = os.environ.get('LOG_LEVEL', 'info').lower()
