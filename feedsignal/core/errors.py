from typing import Optional


class FeedSignalError(Exception):
    """Base class for the non-fatal error kinds raised inside the pipeline."""


class UpstreamRequestFailed(FeedSignalError):
    def __init__(self, message: str, status_code: Optional[int] = None, code: str = "REQUEST_ERROR"):
        super().__init__(message)
        self.status_code = status_code
        self.code = code


class UpstreamRateLimited(UpstreamRequestFailed):
    """The record source answered 429 / 'Too many requests'. The next tick retries."""

    def __init__(self, message: str = "Rate limit exceeded - Too many requests", status_code: Optional[int] = 429):
        super().__init__(message, status_code=status_code, code="RATE_LIMIT")


class JudgmentCallFailed(FeedSignalError):
    def __init__(self, message: str, model: Optional[str] = None):
        super().__init__(message)
        self.model = model


class PersistenceUnavailable(FeedSignalError):
    """The key-value store could not be reached; callers degrade to memory."""


class EmbeddingFailed(FeedSignalError):
    def __init__(self, message: str, model: Optional[str] = None):
        super().__init__(message)
        self.model = model
