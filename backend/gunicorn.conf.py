"""Gunicorn configuration for production deployment.

Run with: gunicorn -c gunicorn.conf.py revledger.main:app
"""

import multiprocessing
import os

bind = os.getenv("GUNICORN_BIND", "0.0.0.0:8000")
backlog = 1024

# Each worker runs its own engine pool; keep the count low so the pools
# together stay under the database connection limit
workers = int(os.getenv("GUNICORN_WORKERS", min(multiprocessing.cpu_count() + 1, 4)))
worker_class = "uvicorn.workers.UvicornWorker"
max_requests = 5000
max_requests_jitter = 500

timeout = 30
graceful_timeout = 20
keepalive = 5

proc_name = "revenue-ledger-api"

accesslog = "-"
errorlog = "-"
loglevel = os.getenv("GUNICORN_LOG_LEVEL", "info")

daemon = False
pidfile = None


def worker_int(worker):
    """Called when a worker receives SIGINT or SIGQUIT."""
    worker.log.info("revenue ledger worker %s interrupted", worker.pid)


def worker_abort(worker):
    """Called when a worker times out; in-flight ledger transactions roll back."""
    worker.log.warning("revenue ledger worker %s aborted", worker.pid)
