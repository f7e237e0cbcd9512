"""Gunicorn configuration for production deployment.

Run with: gunicorn -c gunicorn.conf.py billing_dashboard.main:app
"""

import multiprocessing
import os

bind = os.getenv("GUNICORN_BIND", "0.0.0.0:8000")
backlog = 2048

# Revenue period locks are per worker; cross-worker safety comes from the
# atomic upserts and unique keys in the database.
workers = int(os.getenv("GUNICORN_WORKERS", min(multiprocessing.cpu_count() * 2 + 1, 8)))
worker_class = "uvicorn.workers.UvicornWorker"
worker_connections = 1000
max_requests = 10000
max_requests_jitter = 1000

timeout = 60
graceful_timeout = 30  # background revenue events finish within this window
keepalive = 5

proc_name = "billing-dashboard-api"

accesslog = "-"
errorlog = "-"
loglevel = os.getenv("GUNICORN_LOG_LEVEL", "info")
access_log_format = '%(h)s %(l)s %(u)s %(t)s "%(r)s" %(s)s %(b)s "%(f)s" "%(a)s" %(D)s'

daemon = False
pidfile = None
umask = 0

keyfile = os.getenv("GUNICORN_KEYFILE")
certfile = os.getenv("GUNICORN_CERTFILE")


def worker_exit(server, worker):
    """Called just after a worker has been exited."""
    server.log.info("worker %s exited", worker.pid)
