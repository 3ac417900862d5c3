"""Domain-specific exceptions for the research relay pipeline."""


class ResearchPipelineError(Exception):
    """Base exception for research pipeline errors."""


class UpstreamStatusError(ResearchPipelineError):
    """Raised when an outbound HTTP call returns a non-success status."""

    def __init__(self, status: int, url: str) -> None:
        self.status = status
        self.url = url
        super().__init__(f"Upstream call to {url} returned HTTP {status}")


class StepFailedError(ResearchPipelineError):
    """Raised when a workflow step exhausts its retries."""

    def __init__(self, step: str, attempts: int, reason: str) -> None:
        self.step = step
        self.attempts = attempts
        self.reason = reason
        super().__init__(f"Step '{step}' failed after {attempts} attempt(s): {reason}")


class PlanParseError(ResearchPipelineError):
    """Raised when planner output cannot be parsed into sub-queries."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Unusable research plan: {reason}")


class PlanningError(ResearchPipelineError):
    """Raised when the planning step fails after retries."""

    def __init__(self, topic: str, reason: str) -> None:
        self.topic = topic
        self.reason = reason
        super().__init__(f"Failed to create research plan for '{topic}': {reason}")


class ConsolidationError(ResearchPipelineError):
    """Raised when generated sections cannot be consolidated into a result."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Failed to consolidate research results: {reason}")
