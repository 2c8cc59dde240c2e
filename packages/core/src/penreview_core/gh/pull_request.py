from __future__ import annotations

import base64
import fnmatch
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path

from github import Github, GithubException, UnknownObjectException

from penreview_core.errors import ContextError, NotFoundError

logger = logging.getLogger(__name__)

# GitHub file statuses mapped onto the four document statuses we report.
_STATUS_MAP = {
    "added": "added",
    "removed": "removed",
    "modified": "modified",
    "changed": "modified",
    "renamed": "renamed",
    "copied": "added",
}


@dataclass
class PullRequestContext:
    repo: str
    number: int
    base_sha: str
    head_sha: str


@dataclass
class ChangedDocument:
    path: str
    status: str  # "added" | "modified" | "removed" | "renamed"
    previous_path: str | None = None

    @property
    def base_path(self) -> str:
        return self.previous_path or self.path


def get_repo(repo_name: str, token: str):
    return Github(token).get_repo(repo_name)


def get_pull(repo, pr_number: int):
    return repo.get_pull(pr_number)


def get_context(pull, repo_name: str) -> PullRequestContext:
    return PullRequestContext(
        repo=repo_name,
        number=pull.number,
        base_sha=pull.base.sha,
        head_sha=pull.head.sha,
    )


def read_event_context(event_path: str | None = None, repo_name: str | None = None) -> tuple[str, int]:
    """Return (repo, pr_number) from a GitHub Actions ``pull_request`` event payload.

    Raises ContextError when the run was not triggered by a pull request.
    """
    event_path = event_path or os.environ.get("GITHUB_EVENT_PATH")
    repo_name = repo_name or os.environ.get("GITHUB_REPOSITORY")
    if not event_path or not Path(event_path).exists():
        raise ContextError("Not running in a pull request context. Pass --repo and --pr explicitly.")

    with open(event_path, encoding="utf-8") as f:
        payload = json.load(f)

    pull_request = payload.get("pull_request")
    if not pull_request:
        raise ContextError("This command can only be run on pull_request events.")
    if not repo_name:
        repo_name = (payload.get("repository") or {}).get("full_name")
    if not repo_name:
        raise ContextError("Could not determine the repository from the event payload.")
    return repo_name, int(pull_request["number"])


def _map_status(status: str) -> str:
    return _STATUS_MAP.get(status, "modified")


def get_changed_documents(pull, pattern: str = "**/*.pen") -> list[ChangedDocument]:
    """Return the changed design documents of a PR, in the order GitHub lists them."""
    documents = []
    for f in pull.get_files():
        if not _matches(f.filename, pattern):
            continue
        status = _map_status(f.status)
        previous = getattr(f, "previous_filename", None) if status == "renamed" else None
        documents.append(ChangedDocument(path=f.filename, status=status, previous_path=previous))
    logger.info("Found %d changed document(s) matching %s", len(documents), pattern)
    return documents


def _matches(filename: str, pattern: str) -> bool:
    # fnmatch's "*" already crosses "/", so "**/*.pen" must also match root-level files.
    if fnmatch.fnmatch(filename, pattern):
        return True
    if pattern.startswith("**/"):
        return fnmatch.fnmatch(filename, pattern[3:])
    return False


def get_file_content(repo, path: str, ref: str) -> bytes:
    """Return the raw bytes of ``path`` at ``ref``.

    Raises NotFoundError when the file does not exist at that revision.
    Files over 1 MB come back from the contents API without inline content
    and are fetched through the git blob instead.
    """
    try:
        contents = repo.get_contents(path, ref=ref)
    except UnknownObjectException as e:
        raise NotFoundError(path, ref) from e
    except GithubException as e:
        if e.status == 404:
            raise NotFoundError(path, ref) from e
        raise

    if isinstance(contents, list):
        raise NotFoundError(path, ref)

    if contents.encoding == "base64" and contents.content:
        return contents.decoded_content

    blob = repo.get_git_blob(contents.sha)
    return base64.b64decode(blob.content)
