"""
Gunicorn configuration for the PDF service with multi-worker support.

This configuration enables production-grade multi-worker deployment using
Gunicorn as the process manager with Uvicorn workers for async support.

Environment Variables:
    WORKERS: Number of worker processes (default: 1)
    WORKER_TIMEOUT: Worker timeout in seconds (default: 120)
    GRACEFUL_TIMEOUT: Graceful shutdown timeout in seconds (default: 30); keep it above BROWSER_SHUTDOWN_GRACE_PERIOD
    KEEP_ALIVE: Keep-alive timeout in seconds (default: 5)
    PORT: Service port (default: 3000)
    LOG_LEVEL: Log level (default: INFO)

Notes:
    - Each worker runs its own BrowserManager, which launches at most one Chromium process
    - Worker class is fixed to uvicorn.workers.UvicornWorker so the FastAPI lifespan runs per worker
    - SIGTERM/SIGINT reach the worker's lifespan shutdown, which closes its browser
    - The dedicated metrics server binds a single port, so it is disabled when WORKERS > 1
"""

import os
from typing import Any

# Server socket
bind = f"0.0.0.0:{os.getenv('PORT', '3000')}"

# Worker processes
workers = int(os.getenv("WORKERS", "1"))
worker_class = "uvicorn.workers.UvicornWorker"

# Worker timeout (time a worker can handle a request before being killed)
timeout = int(os.getenv("WORKER_TIMEOUT", "120"))

# Graceful timeout (time to wait for workers to finish serving requests before shutdown)
graceful_timeout = int(os.getenv("GRACEFUL_TIMEOUT", "30"))

# Keep-alive (seconds to wait for requests on a Keep-Alive connection)
keepalive = int(os.getenv("KEEP_ALIVE", "5"))

# Logging
loglevel = os.getenv("LOG_LEVEL", "INFO").lower()
accesslog = "-"  # stdout
errorlog = "-"  # stderr
access_log_format = '%(h)s %(l)s %(u)s %(t)s "%(r)s" %(s)s %(b)s "%(f)s" "%(a)s" %(D)s'

proc_name = "pdf-service"
daemon = False

# Disable preload_app so every worker launches its own browser after the fork
preload_app = False

if workers > 1:
    os.environ["METRICS_SERVER_ENABLED"] = "false"


def on_starting(server: Any) -> None:
    """Called just before the master process is initialized."""
    server.log.info("Starting Gunicorn with %d worker(s)", workers)
    if workers > 1:
        server.log.info("Dedicated metrics server disabled in multi-worker mode")


def when_ready(server: Any) -> None:
    """Called just after the server is started."""
    server.log.info("Gunicorn is ready. Listening on: %s", bind)


def worker_int(worker: Any) -> None:
    """Called when a worker receives SIGINT or SIGQUIT signal."""
    worker.log.info("Worker %s: received SIGINT/SIGQUIT, closing browser and shutting down", worker.pid)


def worker_abort(worker: Any) -> None:
    """Called when a worker receives SIGABRT signal (e.g. after exceeding the worker timeout)."""
    worker.log.warning("Worker %s: received SIGABRT, aborting; its browser is abandoned", worker.pid)


def post_fork(server: Any, worker: Any) -> None:
    """Called just after a worker has been forked."""
    server.log.info("Worker %s spawned (PID: %s)", worker.age, worker.pid)


def worker_exit(server: Any, worker: Any) -> None:
    """Called just after a worker has been exited."""
    server.log.info("Worker %s exited", worker.pid)


def on_exit(server: Any) -> None:
    """Called just before the master process exits."""
    server.log.info("Shutting down: master process exiting")
