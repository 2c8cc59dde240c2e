"""Marked PR comment reconciliation.

The design review report is a single issue comment identified by an HTML
comment marker hidden in its body. Later runs find it by marker and edit it
in place, so a PR carries at most one live report per marker no matter how
many times the workflow runs. Independent workflows on the same PR pass
different marker namespaces.
"""

from __future__ import annotations

import logging

from github import GithubException

from penreview_core.config import COMMENT_MODES
from penreview_core.errors import CommentError

logger = logging.getLogger(__name__)

_MARKER_PREFIX = "penreview-report"


def get_comment_marker(namespace: str | None = None) -> str:
    if namespace:
        return f"<!-- {_MARKER_PREFIX}:{namespace} -->"
    return f"<!-- {_MARKER_PREFIX} -->"


def embed_marker(body: str, marker: str) -> str:
    if marker in body:
        return body
    return f"{marker}\n{body}"


class CommentReconciler:
    """Publish a report body as the single marked comment on ``pull``."""

    def __init__(self, pull, mode: str = "update"):
        if mode not in COMMENT_MODES:
            raise ValueError(f"Unknown comment mode: {mode!r}. Choose one of {', '.join(COMMENT_MODES)}.")
        self.pull = pull
        self.mode = mode

    def find_existing(self, marker: str):
        """Return the oldest comment whose body contains ``marker``, or None.

        PyGithub paginates lazily, so iteration stops fetching pages at the
        first match.
        """
        for comment in self.pull.get_issue_comments():
            if marker in (comment.body or ""):
                return comment
        return None

    def upsert(self, body: str, marker: str) -> int | None:
        """Create or update the marked comment and return its id.

        Returns None without touching GitHub when the mode is "none".
        """
        if self.mode == "none":
            logger.info('Comment mode is "none", skipping PR comment')
            return None

        body = embed_marker(body, marker)
        try:
            if self.mode == "update":
                existing = self.find_existing(marker)
                if existing is not None:
                    logger.info("Updating existing comment #%s", existing.id)
                    existing.edit(body)
                    return existing.id

            created = self.pull.create_issue_comment(body)
        except GithubException as e:
            raise CommentError(f"Could not publish review comment: {e}") from e
        logger.info("Created comment #%s", created.id)
        return created.id

    def delete(self, marker: str) -> bool:
        try:
            existing = self.find_existing(marker)
            if existing is None:
                logger.info("No existing comment found to delete")
                return False
            existing.delete()
        except GithubException as e:
            raise CommentError(f"Could not delete review comment: {e}") from e
        logger.info("Deleted comment #%s", existing.id)
        return True
