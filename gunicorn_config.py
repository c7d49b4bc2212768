"""
Gunicorn Configuration File
Run with: gunicorn -c gunicorn_config.py app:app
"""
import multiprocessing
import os

# Server Socket
bind = os.getenv('GUNICORN_BIND', '0.0.0.0:5000')
backlog = 2048

# Worker Processes
# Generation is CPU-bound but short; requests are otherwise Mongo I/O
workers = int(os.getenv('GUNICORN_WORKERS', (multiprocessing.cpu_count() * 2) + 1))
worker_class = os.getenv('GUNICORN_WORKER_CLASS', 'gthread')
threads = int(os.getenv('GUNICORN_THREADS', 4))

# Worker Lifecycle
max_requests = 1000
max_requests_jitter = 50
timeout = int(os.getenv('GUNICORN_TIMEOUT', 60))
graceful_timeout = 30
keepalive = 5

proc_name = 'timetable_scheduler'

# Logging
accesslog = os.getenv('GUNICORN_ACCESS_LOG', '-')  # '-' means stdout
errorlog = os.getenv('GUNICORN_ERROR_LOG', '-')  # '-' means stderr
loglevel = os.getenv('GUNICORN_LOG_LEVEL', 'info')
access_log_format = '%(h)s %(l)s %(u)s %(t)s "%(r)s" %(s)s %(b)s "%(f)s" "%(a)s" %(D)s'

# Security
limit_request_line = 4096
limit_request_fields = 100
limit_request_field_size = 8190


# Server Hooks
def on_starting(server):
    server.log.info(f"Starting Gunicorn with {workers} workers and {threads} threads per worker")


def when_ready(server):
    server.log.info(f"Gunicorn is ready. Listening on: {bind}")


def post_fork(server, worker):
    server.log.info(f"Worker spawned (pid: {worker.pid})")


def worker_abort(worker):
    worker.log.warning(f"Worker received SIGABRT signal (pid: {worker.pid})")


def on_exit(server):
    server.log.info("Shutting down Gunicorn")
