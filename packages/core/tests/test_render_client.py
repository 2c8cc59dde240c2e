"""Tests for the render job client: submission, polling, caching, credentials."""

import asyncio
import base64
import json
import logging

import httpx
import pytest

from penreview_core.errors import ConfigError, JobFailed, JobTimeout, ServiceError
from penreview_core.render.client import PollSettings, RenderJobClient
from penreview_core.render.credentials import ServiceCredential, actions_id_token_provider, build_credential
from penreview_core.render.models import JobStatus

SERVICE_URL = "https://render.example.com"
CONTENT = b'{"children": []}'
SHA = "a" * 40
SHA2 = "b" * 40


def _result(*frame_ids, errors=None):
    return {
        "success": True,
        "screenshots": [
            {
                "frameId": fid,
                "frameName": f"Frame {fid}",
                "width": 375,
                "height": 812,
                "format": "webp",
                "scale": 2,
                "imageUrl": f"{SERVICE_URL}/images/{fid}.webp",
            }
            for fid in frame_ids
        ],
        "errors": errors or [],
    }


def completed(*frame_ids, errors=None):
    return {"status": "completed", "queuePosition": 0, "result": _result(*frame_ids, errors=errors)}


QUEUED = {"status": "queued", "queuePosition": 3}
PROCESSING = {"status": "processing", "queuePosition": 0}


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


class FakeService:
    """Minimal stand-in for the render service's job API."""

    def __init__(self, statuses, submit_status=202, submit_headers=None):
        self.statuses = list(statuses)
        self.submit_status = submit_status
        self.submit_headers = submit_headers or {}
        self.submits = []
        self.polls = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if request.method == "POST" and path == "/api/v1/screenshot":
            self.submits.append(request)
            if self.submit_status >= 400:
                return httpx.Response(self.submit_status, text="quota exceeded")
            job_id = f"job-{len(self.submits)}"
            return httpx.Response(
                self.submit_status,
                json={"jobId": job_id, "status": "queued", "queuePosition": 2, "pollUrl": f"/api/v1/jobs/{job_id}"},
                headers=self.submit_headers,
            )
        if path.startswith("/api/v1/jobs/"):
            self.polls.append(request)
            status = self.statuses[min(len(self.polls), len(self.statuses)) - 1]
            return httpx.Response(200, json=status)
        if path == "/health":
            return httpx.Response(200, json={"status": "ok"})
        if path.startswith("/images/"):
            return httpx.Response(200, content=b"image-bytes")
        return httpx.Response(404)


def make_client(service, clock=None, credential=None, **kwargs):
    clock = clock or FakeClock()
    http = httpx.AsyncClient(transport=httpx.MockTransport(service.handler))
    return RenderJobClient(
        SERVICE_URL,
        credential or ServiceCredential.from_api_key("secret-key"),
        http_client=http,
        sleep=clock.sleep,
        clock=clock,
        **kwargs,
    )


def handler_client(handler, clock=None):
    clock = clock or FakeClock()
    return RenderJobClient(
        SERVICE_URL,
        ServiceCredential.from_api_key("k"),
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        sleep=clock.sleep,
        clock=clock,
    )


# ---------------------------------------------------------------------------
# Submission & caching
# ---------------------------------------------------------------------------


class TestSubmission:
    @pytest.mark.asyncio
    async def test_submits_whole_document_with_options(self):
        service = FakeService([completed("A")])
        client = make_client(service, image_format="png", image_scale=3, image_quality=70)

        await client.ensure_rendered("designs/app.pen", SHA, CONTENT)

        request = service.submits[0]
        body = json.loads(request.content)
        assert base64.b64decode(body["penFile"]) == CONTENT
        assert body["format"] == "png"
        assert body["scale"] == 3
        assert body["quality"] == 70
        assert request.headers["Authorization"] == "Bearer secret-key"
        assert service.polls[0].headers["Authorization"] == "Bearer secret-key"

    @pytest.mark.asyncio
    async def test_two_frames_same_revision_submit_once(self):
        service = FakeService([completed("A", "B")])
        client = make_client(service)

        first = await client.render_frame("app.pen", SHA, CONTENT, "A")
        polls_after_first = len(service.polls)
        second = await client.render_frame("app.pen", SHA, CONTENT, "B")

        assert first.success and second.success
        assert second.image_url.endswith("/images/B.webp")
        assert len(service.submits) == 1
        assert len(service.polls) == polls_after_first

    @pytest.mark.asyncio
    async def test_concurrent_requests_share_one_job(self):
        service = FakeService([QUEUED, completed("A", "B", "C")])
        client = make_client(service)

        renders = await asyncio.gather(
            *(client.render_frame("app.pen", SHA, CONTENT, fid) for fid in ("A", "B", "C"))
        )

        assert all(r.success for r in renders)
        assert len(service.submits) == 1

    @pytest.mark.asyncio
    async def test_different_revisions_submit_separately(self):
        service = FakeService([completed("A")])
        client = make_client(service)

        await client.render_frame("app.pen", SHA, CONTENT, "A")
        await client.render_frame("app.pen", SHA2, CONTENT, "A")

        assert len(service.submits) == 2

    @pytest.mark.asyncio
    async def test_submit_error_is_service_error(self):
        service = FakeService([], submit_status=500)
        client = make_client(service)

        with pytest.raises(ServiceError) as exc_info:
            await client.ensure_rendered("app.pen", SHA, CONTENT)

        assert exc_info.value.status_code == 500
        assert service.polls == []

    @pytest.mark.asyncio
    async def test_submit_invalid_json_is_service_error(self):
        client = handler_client(lambda request: httpx.Response(202, text="<html>accepted</html>"))

        with pytest.raises(ServiceError, match="invalid JSON") as exc_info:
            await client.ensure_rendered("app.pen", SHA, CONTENT)
        assert exc_info.value.status_code == 202

    @pytest.mark.asyncio
    async def test_submit_without_job_id_is_service_error(self):
        client = handler_client(lambda request: httpx.Response(202, json={"status": "queued"}))

        render = await client.render_frame("app.pen", SHA, CONTENT, "A")

        assert not render.success
        assert "no jobId" in render.error

    @pytest.mark.asyncio
    async def test_submit_error_becomes_per_frame_error(self):
        service = FakeService([], submit_status=429)
        client = make_client(service)

        a = await client.render_frame("app.pen", SHA, CONTENT, "A")
        b = await client.render_frame("app.pen", SHA, CONTENT, "B")

        assert not a.success and "429" in a.error
        assert not b.success
        assert len(service.submits) == 1

    @pytest.mark.asyncio
    async def test_usage_headers_logged(self, caplog):
        headers = {"X-Usage-Current": "3", "X-Usage-Limit": "100", "X-Usage-Remaining": "97"}
        service = FakeService([completed("A")], submit_headers=headers)
        client = make_client(service)

        with caplog.at_level(logging.INFO, logger="penreview_core.render.client"):
            await client.ensure_rendered("app.pen", SHA, CONTENT)

        assert "3/100 (97 remaining)" in caplog.text

    @pytest.mark.asyncio
    async def test_clear_forgets_cached_batches(self):
        service = FakeService([completed("A")])
        client = make_client(service)

        await client.render_frame("app.pen", SHA, CONTENT, "A")
        client.clear()
        await client.render_frame("app.pen", SHA, CONTENT, "A")

        assert len(service.submits) == 2


# ---------------------------------------------------------------------------
# Polling
# ---------------------------------------------------------------------------


class TestPolling:
    @pytest.mark.asyncio
    async def test_completes_on_nth_poll_and_stops(self):
        service = FakeService([QUEUED, PROCESSING, completed("A")])
        clock = FakeClock()
        client = make_client(service, clock=clock)

        batch = await client.ensure_rendered("app.pen", SHA, CONTENT)

        assert set(batch.frames) == {"A"}
        assert len(service.polls) == 3
        assert clock.sleeps == [2.0, 3.0, 4.5]
        assert client.jobs[("app.pen", SHA)].status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_backoff_is_capped(self):
        service = FakeService([PROCESSING] * 8 + [completed("A")])
        clock = FakeClock()
        client = make_client(service, clock=clock)

        await client.ensure_rendered("app.pen", SHA, CONTENT)

        assert max(clock.sleeps) == 15.0
        assert clock.sleeps[-1] == 15.0
        assert clock.sleeps == sorted(clock.sleeps)

    @pytest.mark.asyncio
    async def test_failed_job_raises_job_failed(self):
        service = FakeService([PROCESSING, {"status": "failed", "queuePosition": 0, "error": "renderer crashed"}])
        client = make_client(service)

        with pytest.raises(JobFailed, match="renderer crashed"):
            await client.ensure_rendered("app.pen", SHA, CONTENT)

        assert client.jobs[("app.pen", SHA)].status == JobStatus.FAILED

    @pytest.mark.asyncio
    async def test_failed_job_gives_error_for_every_frame(self):
        service = FakeService([{"status": "failed", "error": "bad file"}])
        client = make_client(service)

        renders = [await client.render_frame("app.pen", SHA, CONTENT, fid) for fid in ("A", "B")]

        assert [r.success for r in renders] == [False, False]
        assert all("bad file" in r.error for r in renders)
        assert len(service.submits) == 1

    @pytest.mark.asyncio
    async def test_completed_without_result_fails(self):
        service = FakeService([{"status": "completed", "queuePosition": 0}])
        client = make_client(service)

        with pytest.raises(JobFailed, match="no result"):
            await client.ensure_rendered("app.pen", SHA, CONTENT)

    @pytest.mark.asyncio
    async def test_stuck_job_times_out_once(self):
        service = FakeService([PROCESSING])
        clock = FakeClock()
        client = make_client(service, clock=clock, poll=PollSettings(timeout=60.0))

        with pytest.raises(JobTimeout):
            await client.ensure_rendered("app.pen", SHA, CONTENT)
        polls = len(service.polls)

        # Later frames of the same revision reuse the abandoned job's failure.
        render = await client.render_frame("app.pen", SHA, CONTENT, "A")

        assert "timed out" in render.error
        assert len(service.polls) == polls
        assert len(service.submits) == 1
        assert client.jobs[("app.pen", SHA)].status == JobStatus.TIMEOUT
        assert clock.now > 60.0

    @pytest.mark.asyncio
    async def test_poll_http_error_is_service_error(self):
        def handler(request):
            if request.method == "POST":
                return httpx.Response(202, json={"jobId": "j1", "status": "queued", "queuePosition": 0})
            return httpx.Response(503, text="unavailable")

        client = handler_client(handler)

        with pytest.raises(ServiceError) as exc_info:
            await client.ensure_rendered("app.pen", SHA, CONTENT)
        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_poll_invalid_json_is_service_error(self):
        def handler(request):
            if request.method == "POST":
                return httpx.Response(202, json={"jobId": "j1", "status": "queued", "queuePosition": 0})
            return httpx.Response(200, text="<html>gateway</html>")

        client = handler_client(handler)

        with pytest.raises(ServiceError, match="invalid JSON"):
            await client.ensure_rendered("app.pen", SHA, CONTENT)

    @pytest.mark.asyncio
    async def test_poll_non_object_status_is_service_error(self):
        def handler(request):
            if request.method == "POST":
                return httpx.Response(202, json={"jobId": "j1", "status": "queued", "queuePosition": 0})
            return httpx.Response(200, json=["completed"])

        client = handler_client(handler)

        with pytest.raises(ServiceError, match="expected an object"):
            await client.ensure_rendered("app.pen", SHA, CONTENT)


# ---------------------------------------------------------------------------
# Per-frame lookup
# ---------------------------------------------------------------------------


class TestRenderFrame:
    @pytest.mark.asyncio
    async def test_frame_missing_from_result(self):
        service = FakeService([completed("A")])
        client = make_client(service)

        render = await client.render_frame("app.pen", SHA, CONTENT, "Z")

        assert not render.success
        assert "not found" in render.error

    @pytest.mark.asyncio
    async def test_frame_error_reported_by_service(self):
        errors = [{"frameId": "B", "frameName": "Settings", "error": "font missing"}]
        service = FakeService([completed("A", errors=errors)])
        client = make_client(service)

        render = await client.render_frame("app.pen", SHA, CONTENT, "B")

        assert render.error == "font missing"

    @pytest.mark.asyncio
    async def test_rendered_frame_metadata(self):
        service = FakeService([completed("A")])
        client = make_client(service)

        render = await client.render_frame("app.pen", SHA, CONTENT, "A")

        assert render.rendered.width == 375
        assert render.rendered.format == "webp"
        assert render.rendered.scale == 2

    @pytest.mark.asyncio
    async def test_screenshot_without_image_url_is_frame_error(self):
        result = {"screenshots": [{"frameId": "A", "frameName": "Home"}], "errors": []}
        service = FakeService([{"status": "completed", "result": result}])
        client = make_client(service)

        render = await client.render_frame("app.pen", SHA, CONTENT, "A")

        assert not render.success
        assert "no image URL" in render.error

    @pytest.mark.asyncio
    async def test_malformed_result_fails_every_frame(self):
        result = {"screenshots": [{"frameName": "Home", "imageUrl": f"{SERVICE_URL}/images/A.webp"}]}
        service = FakeService([{"status": "completed", "result": result}])
        client = make_client(service)

        renders = [await client.render_frame("app.pen", SHA, CONTENT, fid) for fid in ("A", "B")]

        assert [r.success for r in renders] == [False, False]
        assert all("without a frameId" in r.error for r in renders)
        assert len(service.submits) == 1

    @pytest.mark.asyncio
    async def test_non_object_result_is_frame_error(self):
        service = FakeService([{"status": "completed", "result": ["A"]}])
        client = make_client(service)

        render = await client.render_frame("app.pen", SHA, CONTENT, "A")

        assert "not an object" in render.error

    @pytest.mark.asyncio
    async def test_download_writes_image(self, tmp_path):
        service = FakeService([completed("A")])
        client = make_client(service)
        render = await client.render_frame("app.pen", SHA, CONTENT, "A")

        target = tmp_path / "app" / "a.webp"
        render = await client.download(render, target)

        assert target.read_bytes() == b"image-bytes"
        assert render.local_path == target

    @pytest.mark.asyncio
    async def test_health_check(self):
        client = make_client(FakeService([]))
        assert (await client.health_check())["status"] == "ok"

    @pytest.mark.asyncio
    async def test_health_check_non_json_body(self, caplog):
        def handler(request):
            return httpx.Response(200, text="<html>ok</html>")

        client = handler_client(handler)

        with caplog.at_level(logging.WARNING, logger="penreview_core.render.client"):
            assert await client.health_check() == {}
        assert "non-JSON" in caplog.text


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------


class TestServiceCredential:
    @pytest.mark.asyncio
    async def test_api_key_never_refreshes(self):
        credential = ServiceCredential.from_api_key("k")
        assert not credential.is_stale
        assert await credential.ensure_fresh() == "k"
        assert credential.refresh_count == 0

    @pytest.mark.asyncio
    async def test_provider_token_refreshed_after_interval(self):
        clock = FakeClock()
        issued = []

        async def provider():
            issued.append(f"token-{len(issued) + 1}")
            return issued[-1]

        credential = ServiceCredential(provider=provider, refresh_interval=240, clock=clock)
        assert await credential.ensure_fresh() == "token-1"
        clock.now = 100
        assert await credential.ensure_fresh() == "token-1"
        clock.now = 240
        assert await credential.ensure_fresh() == "token-2"
        assert credential.refresh_count == 2

    @pytest.mark.asyncio
    async def test_long_poll_uses_refreshed_token(self):
        clock = FakeClock()
        issued = []

        async def provider():
            issued.append(f"token-{len(issued) + 1}")
            return issued[-1]

        credential = ServiceCredential(provider=provider, refresh_interval=5.0, clock=clock)
        service = FakeService([PROCESSING, PROCESSING, PROCESSING, completed("A")])
        client = make_client(service, clock=clock, credential=credential)

        await client.ensure_rendered("app.pen", SHA, CONTENT)

        used = [r.headers["Authorization"] for r in service.submits + service.polls]
        assert used[0] == "Bearer token-1"
        assert used[-1] == f"Bearer {issued[-1]}"
        assert len(issued) > 1

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_refresh(self):
        calls = []

        async def provider():
            calls.append(1)
            await asyncio.sleep(0)
            return f"token-{len(calls)}"

        credential = ServiceCredential(provider=provider, refresh_interval=240, clock=FakeClock())

        tokens = await asyncio.gather(*(credential.ensure_fresh() for _ in range(3)))

        assert tokens == ["token-1"] * 3
        assert len(calls) == 1
        assert credential.refresh_count == 1

    def test_requires_token_or_provider(self):
        with pytest.raises(ValueError):
            ServiceCredential()


class TestBuildCredential:
    def test_api_key_preferred(self):
        credential = build_credential({"service_api_key": "k"})
        assert not credential.is_stale

    def test_oidc_requires_actions_environment(self, monkeypatch):
        monkeypatch.delenv("ACTIONS_ID_TOKEN_REQUEST_URL", raising=False)
        monkeypatch.delenv("ACTIONS_ID_TOKEN_REQUEST_TOKEN", raising=False)
        with pytest.raises(ConfigError, match="id-token"):
            build_credential({"service_api_key": None})

    @pytest.mark.asyncio
    async def test_oidc_provider_requests_token_for_audience(self, monkeypatch):
        monkeypatch.setenv("ACTIONS_ID_TOKEN_REQUEST_URL", "https://actions.example.com/token?api-version=2.0")
        monkeypatch.setenv("ACTIONS_ID_TOKEN_REQUEST_TOKEN", "runtime-token")
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"value": "id-token"})

        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        provider = actions_id_token_provider("render.example.com", http_client=http)

        assert await provider() == "id-token"
        assert seen[0].url.params["audience"] == "render.example.com"
        assert seen[0].headers["Authorization"] == "bearer runtime-token"

    @pytest.mark.asyncio
    async def test_oidc_provider_error_status(self, monkeypatch):
        monkeypatch.setenv("ACTIONS_ID_TOKEN_REQUEST_URL", "https://actions.example.com/token")
        monkeypatch.setenv("ACTIONS_ID_TOKEN_REQUEST_TOKEN", "runtime-token")
        http = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(403)))
        provider = actions_id_token_provider(http_client=http)

        with pytest.raises(ServiceError):
            await provider()

    @pytest.mark.asyncio
    async def test_oidc_provider_non_json_response(self, monkeypatch):
        monkeypatch.setenv("ACTIONS_ID_TOKEN_REQUEST_URL", "https://actions.example.com/token")
        monkeypatch.setenv("ACTIONS_ID_TOKEN_REQUEST_TOKEN", "runtime-token")
        http = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200, text="oops")))
        provider = actions_id_token_provider(http_client=http)

        with pytest.raises(ServiceError, match="not valid JSON"):
            await provider()
