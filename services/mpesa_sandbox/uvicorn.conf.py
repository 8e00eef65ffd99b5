import os

host = "0.0.0.0"
port = int(os.getenv("PORT", "9002"))
# SQLite default: keep a single worker unless SANDBOX_DATABASE_URL points at a server database
workers = int(os.getenv("UVICORN_WORKERS", "1"))
loop = "uvloop"  # requires uvicorn[standard]
http = "h11"
log_level = os.getenv("LOG_LEVEL", "info")
