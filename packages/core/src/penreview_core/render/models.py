"""Wire and cache models for the rendering service."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from penreview_core.errors import ServiceError


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.TIMEOUT)


@dataclass
class RenderedFrame:
    """One frame image produced by the service."""

    frame_id: str
    frame_name: str
    image_url: str
    width: float | None = None
    height: float | None = None
    format: str = ""
    scale: int | None = None

    @classmethod
    def from_payload(cls, payload: dict) -> RenderedFrame:
        return cls(
            frame_id=str(payload["frameId"]),
            frame_name=payload.get("frameName") or "",
            image_url=payload["imageUrl"],
            width=payload.get("width"),
            height=payload.get("height"),
            format=payload.get("format") or "",
            scale=payload.get("scale"),
        )


@dataclass
class RenderBatch:
    """Every rendered frame of one (path, revision), as returned by one job."""

    path: str
    revision: str
    frames: dict[str, RenderedFrame] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_result(cls, path: str, revision: str, result: dict) -> RenderBatch:
        """Build a batch from a completed job's ``result``.

        Raises ServiceError when the result is not shaped like a render result.
        A screenshot entry without an image URL becomes an error for that frame.
        """
        if not isinstance(result, dict):
            raise ServiceError(f"Render result for {path} is not an object")
        screenshots = result.get("screenshots") or []
        errors = result.get("errors") or []
        if not isinstance(screenshots, list) or not isinstance(errors, list):
            raise ServiceError(f"Render result for {path} has malformed screenshots or errors")

        batch = cls(path=path, revision=revision)
        for shot in screenshots:
            if not isinstance(shot, dict) or shot.get("frameId") is None:
                raise ServiceError(f"Render result for {path} has a screenshot without a frameId")
            frame_id = str(shot["frameId"])
            if not shot.get("imageUrl"):
                batch.errors[frame_id] = "Render result has no image URL for this frame"
                continue
            batch.frames[frame_id] = RenderedFrame.from_payload(shot)
        for err in errors:
            if isinstance(err, dict):
                batch.errors[str(err.get("frameId", ""))] = err.get("error") or "Unknown error"
        return batch


@dataclass
class RenderJob:
    """Lifecycle of one submitted document revision."""

    job_id: str
    status: JobStatus = JobStatus.QUEUED
    queue_position: int | None = None
    submitted_at: float = 0.0
    poll_url: str | None = None
    result: RenderBatch | None = None
    error: str | None = None

    def observe(self, payload: dict) -> None:
        """Apply one poll response. Terminal jobs ignore further updates."""
        if self.status.is_terminal:
            return
        try:
            self.status = JobStatus(payload.get("status", self.status.value))
        except ValueError:
            # Unknown intermediate states are treated as still running.
            self.status = JobStatus.PROCESSING
        self.queue_position = payload.get("queuePosition", self.queue_position)
        if self.status == JobStatus.FAILED:
            self.error = payload.get("error") or "Unknown error"


@dataclass
class FrameRender:
    """Outcome of one per-frame render request."""

    frame_id: str
    path: str
    revision: str
    rendered: RenderedFrame | None = None
    error: str | None = None
    local_path: Path | None = None

    @property
    def success(self) -> bool:
        return self.rendered is not None and self.error is None

    @property
    def image_url(self) -> str | None:
        return self.rendered.image_url if self.rendered else None
