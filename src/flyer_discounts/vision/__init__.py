"""Clients for the external AI endpoints and the retry policy they share."""

from .client import MIN_IMAGE_BYTES, VisionClient
from .language import LanguageClient
from .retry import BackoffPolicy, call_with_backoff

__all__ = ["BackoffPolicy", "LanguageClient", "MIN_IMAGE_BYTES", "VisionClient", "call_with_backoff"]
