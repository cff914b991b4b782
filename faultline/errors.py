"""Exceptions that carry a structured FailureKind.

Raising one of these lets the recovery engine pick a strategy by kind
instead of by searching the message text.
"""

from __future__ import annotations

from faultline.records import FailureKind


class PipelineError(Exception):
    """Base class for failures the recovery engine can classify by kind."""

    kind: FailureKind | None = None

    def __init__(self, message: str = "", kind: FailureKind | None = None):
        super().__init__(message)
        if kind is not None:
            self.kind = kind


class RateLimitError(PipelineError):
    kind = FailureKind.RATE_LIMIT


class ModelLoadingError(PipelineError):
    kind = FailureKind.MODEL_LOADING


class NetworkError(PipelineError):
    kind = FailureKind.NETWORK


class ParseError(PipelineError):
    kind = FailureKind.PARSE


class FatalError(PipelineError):
    kind = FailureKind.FATAL
