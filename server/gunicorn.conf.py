"""Gunicorn configuration for production deployment.

Reads settings from environment variables (same as config.py).
Workers coordinate only through the shared key/value store, so any worker
count is safe with the redis or sql store backend. The memory backend is
per-process and must run with WORKERS=1.

Usage:
    gunicorn main:app -c gunicorn.conf.py
"""
import os
import multiprocessing

host = os.getenv("HOST", "0.0.0.0")
port = os.getenv("PORT", "3020")
workers_env = os.getenv("WORKERS", "0")  # 0 = auto-calculate
log_level = os.getenv("LOG_LEVEL", "INFO").lower()
debug = os.getenv("DEBUG", "false").lower() == "true"
store_backend = os.getenv("STORE_BACKEND", "sql").lower()

bind = f"{host}:{port}"

# WORKERS=0 means auto (2 * cpu + 1), WORKERS=N means use N
workers_count = int(workers_env)
if store_backend == "memory":
    workers = 1
else:
    workers = workers_count if workers_count > 0 else (multiprocessing.cpu_count() * 2 + 1)
worker_class = "uvicorn.workers.UvicornWorker"

# A request may wait out a full lock lease plus a build
timeout = int(os.getenv("GUNICORN_TIMEOUT", "120"))
graceful_timeout = int(os.getenv("GUNICORN_GRACEFUL_TIMEOUT", "30"))
keepalive = int(os.getenv("GUNICORN_KEEPALIVE", "5"))

max_requests = int(os.getenv("GUNICORN_MAX_REQUESTS", "10000"))
max_requests_jitter = int(os.getenv("GUNICORN_MAX_REQUESTS_JITTER", "1000"))

accesslog = "-" if not debug else None
errorlog = "-"
loglevel = log_level

proc_name = "image-version-server"

preload_app = not debug
