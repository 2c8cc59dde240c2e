"""Design review orchestration.

For each changed design document of a pull request, concurrently: fetch the
base and head revisions, index their frames, diff them, and request renders
for the frames the review mode needs. Per-document outcomes are aggregated
into one report that is published as the single marked PR comment.
"""

from __future__ import annotations

import asyncio
import logging
import re
from pathlib import Path

from github import GithubException
from rich.console import Console

from penreview_core.config import validate_config
from penreview_core.diff import ADDED, MODIFIED, UNCHANGED, DiffResult, diff_frames
from penreview_core.document import Frame, FrameIndex, load_frame_index
from penreview_core.errors import CommentError, ContextError, NotFoundError, RenderError
from penreview_core.gh.comments import CommentReconciler, get_comment_marker
from penreview_core.gh.pull_request import (
    ChangedDocument,
    PullRequestContext,
    get_changed_documents,
    get_context,
    get_file_content,
    get_pull,
    get_repo,
)
from penreview_core.models import DocumentOutcome, FrameOutcome, ReviewSummary, summarize
from penreview_core.render.client import RenderJobClient, create_render_client
from penreview_core.render.credentials import build_credential
from penreview_core.render.models import FrameRender
from penreview_core.report import build_no_changes_report, build_report

console = Console()
logger = logging.getLogger(__name__)


def select_render_targets(diff: DiffResult, head: FrameIndex | None, review_mode: str) -> list[Frame]:
    """Head frames to render, in head traversal order.

    Full mode renders every head frame; diff mode only added and modified ones.
    """
    if head is None:
        return []
    if review_mode == "full":
        return list(head)
    wanted = {f.id for f in diff.added} | {f.id for f in diff.modified}
    return [f for f in head if f.id in wanted]


def apply_frame_limit(frames: list[Frame], limit: int) -> tuple[list[Frame], int]:
    """Truncate to ``limit`` frames (0 = unlimited); return the kept frames and how many were dropped."""
    if limit <= 0 or len(frames) <= limit:
        return frames, 0
    return frames[:limit], len(frames) - limit


def get_output_path(output_dir: str, document_path: str, frame: Frame, image_format: str, side: str = "") -> Path:
    safe_name = re.sub(r"[^a-z0-9]+", "-", frame.name.lower()).strip("-") or "frame"
    suffix = f"-{side}" if side else ""
    return Path(output_dir) / Path(document_path).stem / f"{safe_name}-{frame.id}{suffix}.{image_format}"


async def _render(
    client: RenderJobClient,
    config: dict,
    document_path: str,
    revision: str,
    content: bytes,
    frame: Frame,
    side: str = "",
) -> FrameRender:
    render = await client.render_frame(document_path, revision, content, frame.id)
    output_dir = config.get("output_dir")
    if output_dir and render.success:
        path = get_output_path(output_dir, document_path, frame, config.get("image_format", "webp"), side)
        render = await client.download(render, path)
    return render


async def review_document(
    doc: ChangedDocument,
    context: PullRequestContext,
    repo,
    client: RenderJobClient,
    config: dict,
) -> DocumentOutcome:
    """Run the fetch → index → diff → render pipeline for one document.

    PyGithub is blocking, so fetches run in worker threads and sibling
    documents keep progressing meanwhile.

    Raises on fetch, parse or unexpected errors; ``_review_isolated`` turns
    those into an error outcome.
    """
    outcome = DocumentOutcome(path=doc.path, status=doc.status, previous_path=doc.previous_path)
    depth = config.get("frame_depth", 1)
    review_mode = config.get("review_mode", "full")

    head_content: bytes | None = None
    head_index: FrameIndex | None = None
    if doc.status != "removed":
        head_content = await asyncio.to_thread(get_file_content, repo, doc.path, context.head_sha)
        head_index = load_frame_index(head_content, depth)

    base_content: bytes | None = None
    base_index: FrameIndex | None = None
    if doc.status != "added":
        try:
            base_content = await asyncio.to_thread(get_file_content, repo, doc.base_path, context.base_sha)
        except NotFoundError:
            if doc.status == "removed":
                raise
            logger.warning("Base version not found for %s, treating as added", doc.path)
            outcome.status = "added"
            outcome.previous_path = None
        else:
            base_index = load_frame_index(base_content, depth)

    diff = diff_frames(base_index, head_index)
    outcome.diff = diff

    targets = select_render_targets(diff, head_index, review_mode)
    targets, outcome.skipped_frames = apply_frame_limit(targets, int(config.get("max_frames_per_document", 0)))
    if not targets:
        return outcome

    classification = {f.id: ADDED for f in diff.added}
    classification.update({f.id: MODIFIED for f in diff.modified})

    async def render_target(frame: Frame) -> FrameOutcome:
        kind = classification.get(frame.id, UNCHANGED)
        head_render = _render(client, config, doc.path, context.head_sha, head_content, frame, "head")
        if review_mode == "diff" and kind == MODIFIED:
            base_frame = diff.modified_pairs[frame.id][0]
            base_render = _render(client, config, doc.base_path, context.base_sha, base_content, base_frame, "base")
            base_result, head_result = await asyncio.gather(base_render, head_render)
        else:
            base_result, head_result = None, await head_render
        return FrameOutcome(frame.id, frame.name, kind, head=head_result, base=base_result)

    outcome.frames = list(await asyncio.gather(*(render_target(f) for f in targets)))
    rendered = sum(1 for r in outcome.renders if r.success)
    console.print(f"  {doc.path}: {rendered}/{len(outcome.renders)} render(s) succeeded")
    return outcome


async def _review_isolated(
    doc: ChangedDocument,
    context: PullRequestContext,
    repo,
    client: RenderJobClient,
    config: dict,
) -> DocumentOutcome:
    try:
        return await review_document(doc, context, repo, client, config)
    except Exception as e:
        # Never let one document cancel its siblings.
        logger.warning("Failed to process %s: %s", doc.path, e)
        console.print(f"  [red]Failed to process {doc.path}: {e}[/red]")
        return DocumentOutcome(
            path=doc.path,
            status=doc.status,
            previous_path=doc.previous_path,
            error=str(e) or type(e).__name__,
        )


def _publish(pull, body: str, config: dict) -> int | None:
    reconciler = CommentReconciler(pull, mode=config.get("comment_mode", "update"))
    marker = get_comment_marker(config.get("comment_marker"))
    try:
        return reconciler.upsert(body, marker)
    except CommentError as e:
        logger.warning("%s", e)
        console.print(f"[yellow]{e}[/yellow]")
        return None


async def run_design_review(
    repo,
    pull,
    context: PullRequestContext,
    config: dict,
    render_client: RenderJobClient | None = None,
) -> ReviewSummary:
    """Review every changed design document of ``pull`` and publish the report.

    ``render_client`` is created from ``config`` when omitted and closed at
    the end of the run; a supplied client is left open but its cache is
    cleared.
    """
    review_mode = config.get("review_mode", "full")
    result = ReviewSummary(
        repo=context.repo,
        pr_number=context.number,
        head_sha=context.head_sha,
        review_mode=review_mode,
    )

    changed = await asyncio.to_thread(get_changed_documents, pull, config.get("documents", "**/*.pen"))
    result.changed_files = [d.path for d in changed]
    included = [d for d in changed if d.status != "removed" or config.get("include_removed", False)]

    if not included:
        if changed:
            console.print("[yellow]Only removed design documents changed; nothing to render.[/yellow]")
        else:
            console.print("[yellow]No design documents changed in this pull request.[/yellow]")
        result.summary = summarize([])
        if config.get("comment_mode") != "none":
            result.comment_id = await asyncio.to_thread(_publish, pull, build_no_changes_report(), config)
        return result

    console.print(f"[cyan]Reviewing {len(included)} design document(s) in {review_mode} mode[/cyan]")

    owns_client = render_client is None
    if owns_client:
        render_client = create_render_client(config, build_credential(config))
        try:
            await render_client.health_check()
        except RenderError as e:
            logger.warning("%s", e)

    try:
        # Outcomes keep discovery order regardless of completion order.
        outcomes = await asyncio.gather(
            *(_review_isolated(doc, context, repo, render_client, config) for doc in included)
        )
    finally:
        if owns_client:
            await render_client.aclose()
        else:
            render_client.clear()

    result.documents = list(outcomes)
    result.summary = summarize(result.documents)

    if config.get("comment_mode") != "none":
        body = build_report(result.documents, result.summary, context.head_sha, review_mode)
        result.comment_id = await asyncio.to_thread(_publish, pull, body, config)

    failed = result.summary.failed_documents
    console.print(
        f"\n[green]Design review complete: {result.frames_rendered} frame(s) rendered "
        f"from {len(result.documents)} document(s)[/green]" + (f" [red]({failed} failed)[/red]" if failed else "")
    )
    return result


def review_pull_request(repo_name: str, pr_number: int, config: dict, repo_obj=None) -> ReviewSummary:
    """Synchronous entry point: validate config, resolve the PR, run the review.

    Raises ConfigError for invalid configuration and ContextError when the PR
    does not exist; every later failure is reported in the summary.
    """
    validate_config(config)
    this_repo = repo_obj if repo_obj is not None else get_repo(repo_name, token=config["github_token"])
    try:
        this_pull = get_pull(this_repo, pr_number)
    except GithubException:
        raise ContextError(f"PR #{pr_number} not found in {repo_name}.")

    context = get_context(this_pull, repo_name)
    return asyncio.run(run_design_review(this_repo, this_pull, context, config))
