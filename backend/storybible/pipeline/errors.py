"""Exception taxonomy for the extraction pipeline.

Only StageFailure and DocumentValidationError are terminal and user visible.
AgentFailure is absorbed by the orchestrator (empty slice + failure marker),
TransportError is absorbed by the consumer's poll fallback.
"""

from __future__ import annotations


class ExtractionError(Exception):
    """Base class for all extraction errors."""


class DocumentValidationError(ExtractionError):
    """Input document rejected before Stage 1 starts."""


class SessionNotFoundError(ExtractionError):
    """Unknown or garbage-collected session id."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"Extraction session '{session_id}' not found or expired")


class InvalidTransitionError(ExtractionError):
    """A state machine was asked to move along an edge it does not have."""


class StageFailure(ExtractionError):
    """A gating stage failed. Fatal for the session."""

    def __init__(self, stage: float, message: str) -> None:
        self.stage = stage
        self.message = message or "Unknown error"
        super().__init__(f"Stage {stage} failed: {self.message}")


class StageTimeoutError(StageFailure):
    """A gating stage exceeded its maximum duration."""

    def __init__(self, stage: float, timeout_s: float) -> None:
        self.timeout_s = timeout_s
        super().__init__(stage, f"timed out after {timeout_s:g}s")


class AgentFailure(ExtractionError):
    """A single Stage-2 extractor failed. Absorbed, never fatal."""

    def __init__(self, agent: str, message: str) -> None:
        self.agent = agent
        self.message = message or "Unknown error"
        super().__init__(f"{agent} failed: {self.message}")


class AgentTimeoutError(AgentFailure):
    def __init__(self, agent: str, timeout_s: float) -> None:
        self.timeout_s = timeout_s
        super().__init__(agent, f"timed out after {timeout_s:g}s")


class AgentResponseError(ExtractionError):
    """An agent backend returned something that could not be parsed."""


class ResultAlreadyWrittenError(ExtractionError):
    """FinalResult is write-once per session."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"Result for session '{session_id}' has already been written")


class TransportError(ExtractionError):
    """Push or poll transport failed to deliver."""


class ExtractionFailedError(ExtractionError):
    """Raised on the consumer side when a session ends in error."""

    def __init__(self, session_id: str, message: str) -> None:
        self.session_id = session_id
        self.message = message
        super().__init__(message)
