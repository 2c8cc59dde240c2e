"""Exception hierarchy for penreview.

Only ConfigError and ContextError stop a run. Everything else is caught at
document or job granularity by the orchestrator and surfaced as an error row
in the published report.
"""

from __future__ import annotations


class PenReviewError(Exception):
    """Base class for every error raised by penreview."""


class ConfigError(PenReviewError):
    """Invalid or missing run configuration. Fatal."""


class ContextError(PenReviewError):
    """The run is not attached to a pull request. Fatal."""


class NotFoundError(PenReviewError):
    """A document does not exist at the requested revision."""

    def __init__(self, path: str, ref: str):
        super().__init__(f"{path} not found at {ref[:7]}")
        self.path = path
        self.ref = ref


class ParseError(PenReviewError):
    """Document content is not a well-formed design document."""


class RenderError(PenReviewError):
    """Base class for failures talking to the rendering service."""


class ServiceError(RenderError):
    """The rendering service answered with a non-success status or was unreachable."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class JobFailed(RenderError):
    """A render job reached the terminal ``failed`` status."""


class JobTimeout(RenderError):
    """A render job did not finish within its polling budget."""


class CommentError(PenReviewError):
    """Publishing the report comment failed."""
