import multiprocessing
import os


def cpu():
    return max(1, (os.cpu_count() or multiprocessing.cpu_count() or 1))


bind = os.getenv("GUNI_BIND", "0.0.0.0:8000")
wsgi_app = "config.wsgi:application"

workers = int(os.getenv("GUNI_WORKERS", str(min(max(2, cpu() * 2), 8))))

# provider calls block, so each worker runs a thread pool
worker_class = "gthread"
threads = int(os.getenv("GTHREADS", "4"))

# must exceed HTTP_TIMEOUT_SECS * (HTTP_RETRY_MAX + 1) plus backoff
timeout = int(os.getenv("GUNI_TIMEOUT", "60"))
graceful_timeout = int(os.getenv("GUNI_GRACEFUL_TIMEOUT", "30"))
keepalive = int(os.getenv("GUNI_KEEPALIVE", "5"))

preload_app = True
max_requests = int(os.getenv("GUNI_MAX_REQUESTS", "2000"))
max_requests_jitter = int(os.getenv("GUNI_MAX_REQUESTS_JITTER", "200"))

# access lines come from gateway.middleware.AccessLogMiddleware as JSON
accesslog = None
errorlog = "-"
loglevel = os.getenv("GUNI_LOGLEVEL", "info")
