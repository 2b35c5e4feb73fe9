"""Range-aware video streaming proxy over remote object storage."""

from .app import create_app
from .proxy import StreamProxy
from .settings import AppSettings, GCSSettings, S3Settings

__all__ = ["AppSettings", "GCSSettings", "S3Settings", "StreamProxy", "create_app"]
