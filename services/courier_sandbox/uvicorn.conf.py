"""Courier sandbox server settings; names mirror the uvicorn CLI options."""
import os

app = "services.courier_sandbox.main:app"
host = os.getenv("SANDBOX_HOST", "0.0.0.0")
port = int(os.getenv("PORT", "9001"))
workers = int(os.getenv("UVICORN_WORKERS", "1"))
loop = "uvloop"  # needs uvicorn[standard]
http = "h11"
# one JSON line per request comes from the app middleware
access_log = False
timeout_keep_alive = int(os.getenv("UVICORN_KEEPALIVE", "5"))
log_level = os.getenv("LOG_LEVEL", "info")
