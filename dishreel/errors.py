"""
Typed errors raised inside the pipeline.

Components convert these into result values at their boundary (a failed
StepVideo, an unsuccessful AnalysisResult, ...) so one bad step never takes
the whole job down. Routes map the few that escape onto HTTP status codes.
"""

from typing import Optional


class PipelineError(Exception):
    """Base class for every error the pipeline raises on purpose."""


class ConfigurationError(PipelineError):
    """A required credential or setting is missing."""


class ImageValidationError(PipelineError, ValueError):
    """The base image URL is malformed or unreachable."""


class ModelOutputError(PipelineError):
    """A model returned text that is not the JSON shape we asked for."""


class ServiceError(PipelineError):
    """An external HTTP service rejected or failed a request."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransientServiceError(ServiceError):
    """5xx, 429 or network failure: worth retrying."""


class TerminalServiceError(ServiceError):
    """Any other 4xx, or a well-formed response reporting failure."""


class StorageError(PipelineError):
    """Uploading or downloading an artifact failed."""


class AssemblyError(PipelineError):
    """The concatenation tool is missing or failed."""


class InsufficientCreditsError(PipelineError):
    """The credit gate refused to start paid work."""

    def __init__(self, message: str, remaining: int = 0):
        super().__init__(message)
        self.remaining = remaining
