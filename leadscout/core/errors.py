"""Error taxonomy shared across the pipeline."""

from typing import Dict, List, Optional


class LeadScoutError(RuntimeError):
    """Base class for every error raised by the package."""


class ConfigError(LeadScoutError):
    """Raised when configuration values are missing or malformed."""


class ValidationError(LeadScoutError):
    """Raised when a query or predicate fails schema, type or range checks."""

    def __init__(self, errors: List[Dict[str, str]], message: Optional[str] = None) -> None:
        self.errors = list(errors)
        if message is None:
            summary = "; ".join(f"{err['path']}: {err['message']}" for err in self.errors[:3])
            message = f"Query validation failed: {summary}" if summary else "Query validation failed"
        super().__init__(message)


class FetchError(LeadScoutError):
    """Network failure, timeout or non-success status while fetching an audit path.

    Recorded as evidence by the auditor and never propagated to its caller.
    """

    def __init__(self, url: str, reason: str, *, status_code: Optional[int] = None) -> None:
        self.url = url
        self.reason = reason
        self.status_code = status_code
        super().__init__(f"{url}: {reason}")


class UpstreamCollaboratorError(LeadScoutError):
    """A planning, discovery or synthesis collaborator failed or returned garbage."""


class NotFoundError(LeadScoutError):
    """A referenced entity (package code, scoring profile) does not exist."""
