"""Render service client: one async job per document revision, cached per frame.

The service renders an entire ``.pen`` file per request, but the review
pipeline asks for images one frame at a time. On the first request for a
(path, revision) the whole document is submitted as a job; every later
request for a frame of that revision is answered from the cached result.

Jobs are asynchronous on the service side: the submit call answers 202 with
a job id and the client polls ``/api/v1/jobs/<id>`` with exponential backoff
until the job completes, fails, or the polling budget runs out. A full
render routinely outlives synchronous gateway timeouts, which is why the
service does not answer inline.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable

import httpx

from penreview_core.errors import JobFailed, JobTimeout, RenderError, ServiceError
from penreview_core.render.credentials import ServiceCredential
from penreview_core.render.models import FrameRender, JobStatus, RenderBatch, RenderJob

logger = logging.getLogger(__name__)

_SUBMIT_PATH = "/api/v1/screenshot"
_JOB_PATH = "/api/v1/jobs/{job_id}"
_HEALTH_PATH = "/health"


@dataclass
class PollSettings:
    initial_interval: float = 2.0
    multiplier: float = 1.5
    max_interval: float = 15.0
    timeout: float = 10 * 60

    @classmethod
    def from_config(cls, config: dict) -> PollSettings:
        defaults = cls()
        return cls(
            initial_interval=float(config.get("poll_initial_interval", defaults.initial_interval)),
            multiplier=float(config.get("poll_multiplier", defaults.multiplier)),
            max_interval=float(config.get("poll_max_interval", defaults.max_interval)),
            timeout=float(config.get("poll_timeout", defaults.timeout)),
        )


class RenderJobClient:
    def __init__(
        self,
        service_url: str,
        credential: ServiceCredential,
        image_format: str = "webp",
        image_scale: int = 2,
        image_quality: int = 90,
        poll: PollSettings | None = None,
        http_client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.service_url = service_url.rstrip("/")
        self.credential = credential
        self.image_format = image_format
        self.image_scale = image_scale
        self.image_quality = image_quality
        self.poll = poll or PollSettings()
        self._http = http_client or httpx.AsyncClient(timeout=60.0)
        self._owns_http = http_client is None
        self._sleep = sleep
        self._clock = clock
        # (path, revision) -> in-flight or finished batch; never resubmitted.
        self._batches: dict[tuple[str, str], asyncio.Future[RenderBatch]] = {}
        self.jobs: dict[tuple[str, str], RenderJob] = {}

    # ------------------------------------------------------------------ #
    # Public interface                                                     #
    # ------------------------------------------------------------------ #

    async def ensure_rendered(self, path: str, revision: str, content: bytes) -> RenderBatch:
        """Return every rendered frame of ``path`` at ``revision``.

        The first caller for a key submits the job; concurrent and later
        callers await the same future. Raises the job's RenderError on
        failure, for every caller.
        """
        key = (path, revision)
        batch = self._batches.get(key)
        if batch is None:
            batch = asyncio.ensure_future(self._submit_and_wait(path, revision, content))
            self._batches[key] = batch
        else:
            logger.debug("Render cache hit for %s@%s", path, revision[:7])
        return await batch

    async def render_frame(self, path: str, revision: str, content: bytes, frame_id: str) -> FrameRender:
        """Look up one frame. Service failures become a per-frame error."""
        render = FrameRender(frame_id=frame_id, path=path, revision=revision)
        try:
            batch = await self.ensure_rendered(path, revision, content)
        except RenderError as e:
            render.error = str(e)
            return render

        rendered = batch.frames.get(frame_id)
        if rendered is None:
            render.error = batch.errors.get(frame_id) or f"Frame {frame_id} not found in render result"
        else:
            render.rendered = rendered
        return render

    async def download(self, render: FrameRender, output_path: Path) -> FrameRender:
        """Fetch the rendered image to ``output_path``. Failures are recorded on the render."""
        if not render.success:
            return render
        try:
            resp = await self._http.get(render.image_url)
        except httpx.HTTPError as e:
            render.error = f"Failed to download image: {e}"
            return render
        if resp.status_code != 200:
            render.error = f"Failed to download image: {resp.status_code}"
            return render
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_bytes(resp.content)
        render.local_path = output_path
        return render

    async def health_check(self) -> dict:
        url = self.service_url + _HEALTH_PATH
        try:
            resp = await self._http.get(url)
        except httpx.HTTPError as e:
            raise ServiceError(f"Cannot reach render service at {url}: {e}") from e
        if resp.status_code != 200:
            logger.warning("Render service health check returned %d", resp.status_code)
            return {}
        try:
            health = resp.json()
        except ValueError:
            health = None
        if not isinstance(health, dict):
            logger.warning("Render service health check returned a non-JSON body")
            return {}
        logger.info("Render service health: %s", health.get("status"))
        return health

    def clear(self) -> None:
        self._batches.clear()
        self.jobs.clear()

    async def aclose(self) -> None:
        self.clear()
        if self._owns_http:
            await self._http.aclose()

    # ------------------------------------------------------------------ #
    # Job lifecycle                                                        #
    # ------------------------------------------------------------------ #

    async def _submit_and_wait(self, path: str, revision: str, content: bytes) -> RenderBatch:
        job = await self._submit(path, content)
        self.jobs[(path, revision)] = job
        result = await self._wait(job)
        batch = RenderBatch.from_result(path, revision, result)
        job.result = batch
        for frame_id, error in batch.errors.items():
            logger.warning("Render service error for frame %s in %s: %s", frame_id, path, error)
        logger.info("Fetched %d rendered frame(s) for %s", len(batch.frames), path)
        return batch

    async def _submit(self, path: str, content: bytes) -> RenderJob:
        token = await self.credential.ensure_fresh()
        payload = {
            "penFile": base64.b64encode(content).decode("ascii"),
            "format": self.image_format,
            "scale": self.image_scale,
            "quality": self.image_quality,
        }
        try:
            resp = await self._http.post(
                self.service_url + _SUBMIT_PATH,
                json=payload,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.HTTPError as e:
            raise ServiceError(f"Render submission for {path} failed: {e}") from e

        if not resp.is_success:
            raise ServiceError(f"Render service returned {resp.status_code}: {resp.text[:200]}", resp.status_code)

        data = _json_object(resp, f"Render submission for {path}")
        if data.get("jobId") is None:
            raise ServiceError(f"Render submission for {path} returned no jobId", resp.status_code)
        job = RenderJob(
            job_id=str(data["jobId"]),
            queue_position=data.get("queuePosition"),
            submitted_at=self._clock(),
            poll_url=data.get("pollUrl"),
        )
        job.observe(data)
        logger.info("Job %s submitted for %s (queue position: %s)", job.job_id, path, job.queue_position)
        _log_usage(resp.headers)
        return job

    async def _wait(self, job: RenderJob) -> dict:
        """Drive ``job`` to a terminal state.

        Each iteration sleeps, refreshes the credential and polls once. The
        interval grows by ``multiplier`` up to ``max_interval``; once the
        elapsed time exceeds ``timeout`` the job is abandoned.
        """
        url = self._poll_url(job)
        started = self._clock()
        interval = self.poll.initial_interval
        last_position = None

        while True:
            elapsed = self._clock() - started
            if elapsed > self.poll.timeout:
                job.status = JobStatus.TIMEOUT
                job.error = f"timed out after {int(elapsed)}s"
                raise JobTimeout(f"Job {job.job_id} timed out after {int(elapsed)}s")

            await self._sleep(interval)

            token = await self.credential.ensure_fresh()
            try:
                resp = await self._http.get(url, headers={"Authorization": f"Bearer {token}"})
            except httpx.HTTPError as e:
                raise ServiceError(f"Job {job.job_id} status request failed: {e}") from e
            if not resp.is_success:
                raise ServiceError(
                    f"Job status request failed with {resp.status_code}: {resp.text[:200]}", resp.status_code
                )

            status = _json_object(resp, f"Job {job.job_id} status")
            job.observe(status)

            if job.queue_position != last_position:
                if job.status == JobStatus.QUEUED:
                    logger.info("Job %s: queued (position %s)", job.job_id, job.queue_position)
                elif job.status == JobStatus.PROCESSING:
                    logger.info("Job %s: processing", job.job_id)
                last_position = job.queue_position

            if job.status == JobStatus.COMPLETED:
                result = status.get("result")
                if not result:
                    job.status = JobStatus.FAILED
                    job.error = "completed without a result"
                    raise JobFailed(f"Job {job.job_id} completed but returned no result")
                logger.info("Job %s: completed in %ds", job.job_id, int(self._clock() - started))
                return result

            if job.status == JobStatus.FAILED:
                raise JobFailed(f"Job {job.job_id} failed: {job.error}")

            interval = min(interval * self.poll.multiplier, self.poll.max_interval)

    def _poll_url(self, job: RenderJob) -> str:
        if job.poll_url:
            if job.poll_url.startswith(("http://", "https://")):
                return job.poll_url
            return self.service_url + "/" + job.poll_url.lstrip("/")
        return self.service_url + _JOB_PATH.format(job_id=job.job_id)


def _json_object(resp: httpx.Response, what: str) -> dict:
    try:
        data = resp.json()
    except ValueError as e:
        raise ServiceError(f"{what} returned invalid JSON: {e}", resp.status_code) from e
    if not isinstance(data, dict):
        raise ServiceError(f"{what} returned {type(data).__name__}, expected an object", resp.status_code)
    return data


def _log_usage(headers: httpx.Headers) -> None:
    current = headers.get("X-Usage-Current")
    if current:
        logger.info(
            "Render service usage: %s/%s (%s remaining)",
            current,
            headers.get("X-Usage-Limit", "?"),
            headers.get("X-Usage-Remaining", "?"),
        )


def create_render_client(config: dict, credential: ServiceCredential, **kwargs) -> RenderJobClient:
    return RenderJobClient(
        service_url=config["service_url"],
        credential=credential,
        image_format=config.get("image_format", "webp"),
        image_scale=int(config.get("image_scale", 2)),
        image_quality=int(config.get("image_quality", 90)),
        poll=PollSettings.from_config(config),
        **kwargs,
    )
