"""Per-document and per-run review outcomes.

Produced by the orchestrator, consumed by the report builder and the CLI.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone

from penreview_core.diff import ADDED, MODIFIED, REMOVED, UNCHANGED, DiffResult
from penreview_core.render.models import FrameRender

DOCUMENT_STATUSES = ("added", "modified", "renamed", "removed")


@dataclass
class FrameOutcome:
    frame_id: str
    name: str
    classification: str
    head: FrameRender | None = None
    base: FrameRender | None = None  # only for modified frames in diff mode

    @property
    def renders(self) -> list[FrameRender]:
        return [r for r in (self.base, self.head) if r is not None]


@dataclass
class DocumentOutcome:
    path: str
    status: str
    previous_path: str | None = None
    diff: DiffResult | None = None
    frames: list[FrameOutcome] = field(default_factory=list)
    skipped_frames: int = 0  # frames left out by max_frames_per_document
    error: str | None = None

    @property
    def renders(self) -> list[FrameRender]:
        return [r for f in self.frames for r in f.renders]


@dataclass
class RunSummary:
    total_documents: int = 0
    documents_by_status: dict[str, int] = field(default_factory=dict)
    failed_documents: int = 0
    frames_by_classification: dict[str, int] = field(default_factory=dict)
    successful_renders: int = 0
    failed_renders: int = 0


def summarize(outcomes: list[DocumentOutcome]) -> RunSummary:
    statuses: Counter = Counter()
    frames: Counter = Counter({ADDED: 0, MODIFIED: 0, REMOVED: 0, UNCHANGED: 0})
    summary = RunSummary(total_documents=len(outcomes))

    for outcome in outcomes:
        statuses[outcome.status] += 1
        if outcome.error is not None:
            summary.failed_documents += 1
        if outcome.diff is not None:
            frames.update(outcome.diff.counts())
        for render in outcome.renders:
            if render.success:
                summary.successful_renders += 1
            else:
                summary.failed_renders += 1

    summary.documents_by_status = {s: statuses.get(s, 0) for s in DOCUMENT_STATUSES}
    summary.frames_by_classification = dict(frames)
    return summary


@dataclass
class ReviewSummary:
    """Result returned by run_design_review."""

    repo: str
    pr_number: int
    head_sha: str
    review_mode: str
    changed_files: list[str] = field(default_factory=list)
    documents: list[DocumentOutcome] = field(default_factory=list)
    summary: RunSummary = field(default_factory=RunSummary)
    comment_id: int | None = None
    reviewed_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @property
    def frames_rendered(self) -> int:
        return self.summary.successful_renders
