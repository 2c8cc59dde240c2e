"""Markdown body of the design review PR comment."""

from __future__ import annotations

from penreview_core.diff import ADDED, MODIFIED, REMOVED, UNCHANGED
from penreview_core.models import DocumentOutcome, FrameOutcome, RunSummary
from penreview_core.render.models import FrameRender

_TITLE = "## Design review"
_IMAGE_WIDTH = 320
_STATUS_LABEL = {"added": "added", "modified": "modified", "renamed": "renamed", "removed": "removed"}


def build_no_changes_report() -> str:
    return f"{_TITLE}\n\nNo design documents changed in this pull request."


def build_report(
    outcomes: list[DocumentOutcome],
    summary: RunSummary,
    head_sha: str,
    review_mode: str,
) -> str:
    """Build the full report: verdict, stats line, then one section per document."""
    lines = [f"{_TITLE}\n", f"_{review_mode.capitalize()} review of `{head_sha[:7]}`_\n"]
    lines.append(f"> {_verdict(summary)}\n")
    lines.append(_stats_line(summary) + "\n")

    for outcome in outcomes:
        lines.extend(_document_section(outcome, review_mode))

    return "\n".join(lines).rstrip() + "\n"


def _verdict(summary: RunSummary) -> str:
    frames = summary.frames_by_classification
    changed = frames.get(ADDED, 0) + frames.get(MODIFIED, 0) + frames.get(REMOVED, 0)
    if summary.failed_documents or summary.failed_renders:
        problems = []
        if summary.failed_documents:
            problems.append(f"{summary.failed_documents} document(s) could not be processed")
        if summary.failed_renders:
            problems.append(f"{summary.failed_renders} render(s) failed")
        return "Partial results: " + ", ".join(problems) + "."
    if changed == 0:
        return "No visual changes detected."
    return f"{changed} frame(s) changed across {summary.total_documents} document(s)."


def _stats_line(summary: RunSummary) -> str:
    frames = summary.frames_by_classification
    docs = ", ".join(f"{count} {status}" for status, count in summary.documents_by_status.items() if count)
    return (
        f"**{summary.total_documents}** document(s)"
        + (f" ({docs})" if docs else "")
        + f" · frames: **{frames.get(ADDED, 0)}** added, **{frames.get(MODIFIED, 0)}** modified, "
        f"**{frames.get(REMOVED, 0)}** removed, **{frames.get(UNCHANGED, 0)}** unchanged"
        + f" · **{summary.successful_renders}** rendered"
        + (f", **{summary.failed_renders}** failed" if summary.failed_renders else "")
    )


def _document_section(outcome: DocumentOutcome, review_mode: str) -> list[str]:
    title = f"`{outcome.path}`"
    if outcome.previous_path:
        title = f"`{outcome.previous_path}` → `{outcome.path}`"
    lines = [f"\n### {title} ({_STATUS_LABEL.get(outcome.status, outcome.status)})\n"]

    if outcome.error is not None:
        lines.append("| Document | Error |")
        lines.append("|----------|-------|")
        lines.append(f"| `{outcome.path}` | ⚠️ {_escape(outcome.error)} |")
        return lines

    if outcome.frames:
        comparison = review_mode == "diff" and any(f.base is not None for f in outcome.frames)
        if comparison:
            lines.append("| Frame | Change | Before | After |")
            lines.append("|-------|:------:|--------|-------|")
        else:
            lines.append("| Frame | Change | Preview |")
            lines.append("|-------|:------:|---------|")
        for frame in outcome.frames:
            lines.append(_frame_row(frame, comparison))
    elif outcome.status != "removed":
        lines.append("_No frames to render._")

    diff = outcome.diff
    if diff is not None:
        if diff.removed:
            names = ", ".join(f"`{f.name}`" for f in diff.removed)
            lines.append(f"\n_Removed frames: {names}_")
        if diff.unchanged and review_mode == "diff":
            lines.append(f"\n_{len(diff.unchanged)} unchanged frame(s) not shown._")
    if outcome.skipped_frames:
        lines.append(f"\n_{outcome.skipped_frames} more frame(s) not rendered (per-document limit)._")
    return lines


def _frame_row(frame: FrameOutcome, comparison: bool) -> str:
    cells = [f"**{_escape(frame.name)}**", frame.classification]
    if comparison:
        cells.append(_image_cell(frame.base, frame.name))
    cells.append(_image_cell(frame.head, frame.name))
    return "| " + " | ".join(cells) + " |"


def _image_cell(render: FrameRender | None, alt: str) -> str:
    if render is None:
        return "—"
    if not render.success:
        return f"⚠️ {_escape(render.error or 'render failed')}"
    return f'<img src="{render.image_url}" width="{_IMAGE_WIDTH}" alt="{_escape(alt)}">'


def _escape(text: str) -> str:
    return text.replace("|", "\\|").replace("\n", " ").replace('"', "&quot;")
