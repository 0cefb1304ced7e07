"""
ASGI entrypoint: `uvicorn main:app`.
Builds the app from HTTPFM_* environment variables and prints log lines to stdout.
"""

from httpfm_backend.config import ServerConfig
from server import create_app

app = create_app(ServerConfig.from_env(log_sink=print))

__all__ = ["app"]
