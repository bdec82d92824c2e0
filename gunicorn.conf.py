"""Gunicorn configuration for the stock management API."""
import os

# Network binding configuration. Defaults are suitable for containerized deployments.
bind = os.getenv("GUNICORN_BIND", "0.0.0.0:5000")

# Each worker owns its own connection pool; row locks in the database keep
# concurrent movements against the same item serialized across workers.
workers = int(os.getenv("GUNICORN_WORKERS", "2"))

# Log to stdout/stderr by default so container orchestrators can capture logs.
accesslog = os.getenv("GUNICORN_ACCESS_LOGFILE", "-")
errorlog = os.getenv("GUNICORN_ERROR_LOGFILE", "-")
loglevel = os.getenv("LOG_LEVEL", "info").lower()

forwarded_allow_ips = os.getenv("GUNICORN_FORWARDED_ALLOW_IPS", "*")


def worker_exit(server, worker):
    """Release the worker's database pool when it shuts down."""

    app = getattr(worker, "wsgi", None)
    if app is None:
        return

    from stockapp import shutdown_app

    shutdown_app(app)
