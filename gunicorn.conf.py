"""
Gunicorn configuration for the Remedara FHIR linking service
Run with: gunicorn -c gunicorn.conf.py main:app
"""

import os
import multiprocessing

# Server socket
bind = os.environ.get('GUNICORN_BIND', '0.0.0.0:5000')
backlog = 2048

# Worker processes
workers = int(os.environ.get('GUNICORN_WORKERS', multiprocessing.cpu_count() * 2 + 1))
worker_class = 'sync'
timeout = 120  # Synchronous multi-provider sync can take a while
keepalive = 2

# Restart workers after this many requests to prevent memory leaks
max_requests = 1000
max_requests_jitter = 50

# Logging
accesslog = '-'
errorlog = '-'
loglevel = 'info'
# Query strings are left out: the OAuth callback carries authorization codes
access_log_format = '%(h)s %(l)s %(u)s %(t)s "%(m)s %(U)s" %(s)s %(b)s "%(a)s"'

# Process naming
proc_name = 'remedara-fhir'

# Server mechanics
daemon = False
pidfile = None
umask = 0
