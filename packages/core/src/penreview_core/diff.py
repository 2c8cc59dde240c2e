"""Frame-level structural diff between two document revisions."""

from __future__ import annotations

from dataclasses import dataclass, field

from penreview_core.document import Frame, FrameIndex

ADDED = "added"
MODIFIED = "modified"
REMOVED = "removed"
UNCHANGED = "unchanged"


@dataclass
class DiffResult:
    """Classification of every frame id present in either revision.

    The four lists are disjoint and together cover base ∪ head.
    ``modified_pairs`` maps a modified frame id to its (base, head) frames.
    """

    added: list[Frame] = field(default_factory=list)
    modified: list[Frame] = field(default_factory=list)
    removed: list[Frame] = field(default_factory=list)
    unchanged: list[Frame] = field(default_factory=list)
    modified_pairs: dict[str, tuple[Frame, Frame]] = field(default_factory=dict)

    @property
    def has_changes(self) -> bool:
        return bool(self.added or self.modified or self.removed)

    def counts(self) -> dict[str, int]:
        return {
            ADDED: len(self.added),
            MODIFIED: len(self.modified),
            REMOVED: len(self.removed),
            UNCHANGED: len(self.unchanged),
        }

    def classification(self, frame_id: str) -> str | None:
        for name, frames in (
            (ADDED, self.added),
            (MODIFIED, self.modified),
            (REMOVED, self.removed),
            (UNCHANGED, self.unchanged),
        ):
            if any(f.id == frame_id for f in frames):
                return name
        return None


def diff_frames(base: FrameIndex | None, head: FrameIndex | None) -> DiffResult:
    """Match frames by id and classify them.

    A missing side (``None``) behaves like a document with no frames, so an
    added document is all-added and a removed one all-removed.
    """
    base = base if base is not None else FrameIndex()
    head = head if head is not None else FrameIndex()
    result = DiffResult()

    for head_frame in head:
        base_frame = base.get(head_frame.id)
        if base_frame is None:
            result.added.append(head_frame)
        elif base_frame.fingerprint != head_frame.fingerprint:
            result.modified.append(head_frame)
            result.modified_pairs[head_frame.id] = (base_frame, head_frame)
        else:
            result.unchanged.append(head_frame)

    result.removed = [f for f in base if f.id not in head]
    return result
