"""Error taxonomy shared by every pipeline stage.

Retry behaviour keys off these classes: quota and server errors are retried
by the backoff policy, everything else surfaces to the caller unchanged.
"""

from __future__ import annotations

from typing import Optional


RAW_PREVIEW_CHARS = 500


def truncate_raw(text: Optional[str], limit: int = RAW_PREVIEW_CHARS) -> str:
    if not text:
        return ""
    return text if len(text) <= limit else text[:limit] + "..."


class FlyerPipelineError(Exception):
    """Base class for all pipeline failures."""


class InvalidInput(FlyerPipelineError):
    """Caller error; never retried."""


class UpstreamError(FlyerPipelineError):
    def __init__(self, message: str, *, status_code: Optional[int] = None, body: Optional[str] = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = truncate_raw(body)


class UpstreamQuotaExceeded(UpstreamError):
    """HTTP 429 from an AI endpoint."""


class UpstreamServerError(UpstreamError):
    """HTTP 5xx or a transport failure."""


class UpstreamClientError(UpstreamError):
    """Any other HTTP error; surfaced without retry."""


class ContentPolicyViolation(UpstreamError):
    """The upstream refused the input on policy grounds; fatal for a batch."""


class RetriesExhausted(FlyerPipelineError):
    def __init__(self, operation: str, attempts: int, last_error: Optional[BaseException] = None) -> None:
        super().__init__(f"All {attempts} attempts failed for {operation}: {last_error}")
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error


class ParseError(FlyerPipelineError):
    def __init__(self, message: str, *, raw: Optional[str] = None) -> None:
        super().__init__(message)
        self.raw = truncate_raw(raw)


class MatchParseError(ParseError):
    pass


class FlyerParseError(ParseError):
    pass


class NotFound(FlyerPipelineError):
    pass


class TransactionConflict(FlyerPipelineError):
    pass


class InvalidTransition(FlyerPipelineError):
    pass
