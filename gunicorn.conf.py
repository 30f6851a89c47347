"""Gunicorn configuration for the operations hub API."""
import os

bind = os.getenv("GUNICORN_BIND", "0.0.0.0:5000")

# Realtime channels live in process memory, so board subscribers must share a
# worker. Scale with threads rather than processes.
workers = int(os.getenv("GUNICORN_WORKERS", "1"))
worker_class = "gthread"
threads = int(os.getenv("GUNICORN_THREADS", "16"))

# Event streams stay open between heartbeats.
timeout = int(os.getenv("GUNICORN_TIMEOUT", "120"))

accesslog = os.getenv("GUNICORN_ACCESS_LOGFILE", "-")
errorlog = os.getenv("GUNICORN_ERROR_LOGFILE", "-")

forwarded_allow_ips = os.getenv("GUNICORN_FORWARDED_ALLOW_IPS", "*")
