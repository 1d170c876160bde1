"""Internal machinery: HTTP transport and credentials."""

from .http import (
    Auth,
    BearerAuth,
    GoogleAuth,
    HttpClient,
    HttpError,
)

__all__ = [
    "Auth",
    "BearerAuth",
    "GoogleAuth",
    "HttpClient",
    "HttpError",
]
