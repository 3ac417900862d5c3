"""Gunicorn configuration for research_relay.server:app.

Workflows run as background tasks inside the worker that accepted the
request. With the in-process result store every worker holds its own
records, so more than one worker needs REDIS_URL set.
"""

import os

from research_relay.logging import configure_structlog

port = os.environ.get("PORT", "8080")
bind = f"0.0.0.0:{port}"

_default_workers = "4" if os.environ.get("REDIS_URL") else "1"
workers = int(os.environ.get("GUNICORN_WORKERS", _default_workers))
worker_class = "uvicorn.workers.UvicornWorker"

# Enqueue returns immediately; this only bounds poll and webhook requests
timeout = int(os.environ.get("GUNICORN_TIMEOUT", "60"))
# In-flight workflows are cancelled on shutdown; give them time to land results
graceful_timeout = int(os.environ.get("GUNICORN_GRACEFUL_TIMEOUT", "120"))
keepalive = int(os.environ.get("GUNICORN_KEEPALIVE", "5"))

loglevel = os.environ.get("GUNICORN_LOG_LEVEL", "info")
accesslog = "-"
errorlog = "-"

# Recycling a worker would cancel its background workflows
max_requests = 0


def post_worker_init(worker):  # noqa: ARG001
    configure_structlog()
