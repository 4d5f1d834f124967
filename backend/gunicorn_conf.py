# backend/gunicorn_conf.py

# Gunicorn config file:  gunicorn -c backend/gunicorn_conf.py flowbot.main:app
# More than one worker needs STORAGE_BACKEND=mongo and LOCK_BACKEND=redis so
# that every worker sees the same sessions.

import os

bind = os.getenv("BIND", "0.0.0.0:8000")
workers = int(os.getenv("WEB_CONCURRENCY", "1"))
worker_class = "uvicorn.workers.UvicornWorker"
pythonpath = "backend"

# Settings for running behind a reverse proxy like Nginx
forwarded_allow_ips = "*"

# --- Logging ---
# Send access and error logs to stdout and stderr
accesslog = "-"
errorlog = "-"
loglevel = os.getenv("LOG_LEVEL", "info").lower()
