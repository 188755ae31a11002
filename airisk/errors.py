"""Exception hierarchy shared by services, orchestrators, and the API layer."""
from __future__ import annotations


class AIRiskError(Exception):
    """Base class for errors raised by AIRisk."""


class InvalidInputError(AIRiskError):
    """Request rejected before any mutation (maps to HTTP 400)."""


class NotFoundError(AIRiskError):
    """Entity missing or owned by someone else (maps to HTTP 404)."""


class LLMCallError(AIRiskError):
    """LLM call failed or returned unparseable output."""
    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


class AnalysisValidationError(LLMCallError):
    """LLM output parsed as JSON but does not have the analysis shape."""


class NewsParseError(LLMCallError):
    """News search output could not be parsed into alerts."""


class ConflictError(AIRiskError):
    """Uniqueness violation such as a taken username (maps to HTTP 409)."""
