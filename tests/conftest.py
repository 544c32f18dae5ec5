"""Shared pytest fixtures for ComfyUI Relay tests."""

import asyncio
import io
import json
import shutil
import tempfile
from pathlib import Path
from typing import Generator

import httpx
import pytest
from fastapi.testclient import TestClient
from PIL import Image

from comfyrelay.api.main import create_app
from comfyrelay.core.comfy_client import ComfyClient
from comfyrelay.core.config import RelayConfig
from comfyrelay.core.storage import UsageStore

REPO_WORKFLOWS = Path(__file__).resolve().parent.parent / "workflows"

COMFY_URL = "http://comfy.test"
ADMIN_PASSWORD = "s3cret-admin"


class FakeComfy:
    """In-memory stand-in for the ComfyUI HTTP API.

    Attributes are switches that tests flip to simulate backend states.
    """

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.submitted: list[dict] = []
        self.online = True
        self.stats_status = 200
        self.upload_status = 200
        self.prompt_status = 200
        self.prompt_id = "prompt-1"
        # None means "not in history yet".
        self.history_status: str | None = "success"
        self.history_messages: list = []
        self.history_error_polls = 0
        self.queue_polls_remaining = 0
        self.pending_polls_remaining = 0
        # Raw 200 bodies that replace the JSON answers, e.g. a proxy's HTML page.
        self.upload_body: str | None = None
        self.prompt_body: str | None = None
        self.outputs = {
            "524": {"images": [{"filename": "headshot_0001.jpg", "subfolder": "", "type": "output"}]},
            "533": {"images": [{"filename": "pose_0001.jpg", "subfolder": "poses", "type": "output"}]},
        }
        self.view_status = 200

    def _history(self) -> dict:
        if self.history_status is None:
            return {}
        return {
            self.prompt_id: {
                "status": {
                    "status_str": self.history_status,
                    "completed": self.history_status == "success",
                    "messages": self.history_messages,
                },
                "outputs": self.outputs,
            }
        }

    def _queue(self) -> dict:
        """Report the prompt as pending first, then running, then gone."""
        item = [0, self.prompt_id, {}, {}, []]
        if self.pending_polls_remaining > 0:
            self.pending_polls_remaining -= 1
            return {"queue_running": [], "queue_pending": [item]}
        if self.queue_polls_remaining > 0:
            self.queue_polls_remaining -= 1
            return {"queue_running": [item], "queue_pending": []}
        return {"queue_running": [], "queue_pending": []}

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not self.online:
            raise httpx.ConnectError("Connection refused", request=request)

        path = request.url.path
        if path == "/system_stats":
            return httpx.Response(self.stats_status, json={"system": {"os": "posix"}, "devices": []})
        if path == "/upload/image":
            if self.upload_status != 200:
                return httpx.Response(self.upload_status, text="upload rejected")
            if self.upload_body is not None:
                return httpx.Response(200, text=self.upload_body)
            return httpx.Response(200, json={"name": "uploaded_face.png", "subfolder": "", "type": "input"})
        if path == "/prompt":
            if self.prompt_status != 200:
                return httpx.Response(self.prompt_status, text='{"error": "invalid prompt"}')
            self.submitted.append(json.loads(request.content))
            if self.prompt_body is not None:
                return httpx.Response(200, text=self.prompt_body)
            return httpx.Response(200, json={"prompt_id": self.prompt_id, "number": 1})
        if path.startswith("/history"):
            if self.history_error_polls > 0:
                self.history_error_polls -= 1
                return httpx.Response(503, text="busy")
            return httpx.Response(200, json=self._history())
        if path == "/queue":
            return httpx.Response(200, json=self._queue())
        if path == "/view":
            if self.view_status != 200:
                return httpx.Response(self.view_status, text="not found")
            return httpx.Response(200, content=b"\xff\xd8fake-jpeg", headers={"content-type": "image/jpeg"})
        return httpx.Response(404, text="unknown path")

    def paths(self) -> list[str]:
        return [request.url.path for request in self.requests]


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files.

    Yields:
        Path to temporary directory

    Cleanup:
        Directory is removed after test completes
    """
    temp_path = Path(tempfile.mkdtemp())
    try:
        yield temp_path
    finally:
        shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def test_config(temp_dir: Path) -> RelayConfig:
    """Create a test configuration with temporary directories.

    The bundled workflow templates and pose catalogue are copied into the
    temporary workflows directory, and all poll delays are zero.
    """
    workflows_dir = temp_dir / "workflows"
    shutil.copytree(REPO_WORKFLOWS, workflows_dir)

    return RelayConfig(
        _env_file=None,
        comfy_url=COMFY_URL,
        admin_password=ADMIN_PASSWORD,
        data_dir=temp_dir / "data",
        upload_dir=temp_dir / "uploads",
        workflows_dir=workflows_dir,
        poll_interval=0,
        upload_settle_delay=0,
        history_poll_attempts=3,
        queue_poll_attempts=3,
        queue_tracking_url="http://tracker.test/api/queue",
    )


@pytest.fixture
def store(test_config: RelayConfig) -> UsageStore:
    return UsageStore.from_config(test_config)


@pytest.fixture
def fake_comfy() -> FakeComfy:
    return FakeComfy()


@pytest.fixture
def tracked() -> list[dict]:
    """Payloads received by the fake queue tracker."""
    return []


@pytest.fixture
def run_with_client(fake_comfy: FakeComfy):
    """Run ``call(client)`` against a :class:`ComfyClient` wired to the fake backend."""

    def _run(call, **overrides):
        options = {
            "poll_interval": 0,
            "history_poll_attempts": 3,
            "queue_poll_attempts": 3,
            **overrides,
        }

        async def scenario():
            client = ComfyClient(
                COMFY_URL,
                transport=httpx.MockTransport(fake_comfy.handler),
                **options,
            )
            try:
                return await call(client)
            finally:
                await client.aclose()

        return asyncio.run(scenario())

    return _run


@pytest.fixture
def test_client(
    test_config: RelayConfig, fake_comfy: FakeComfy, tracked: list[dict]
) -> Generator[TestClient, None, None]:
    """FastAPI TestClient backed by the fake ComfyUI and queue tracker."""

    def tracker(request: httpx.Request) -> httpx.Response:
        tracked.append(json.loads(request.content))
        return httpx.Response(200, json={"success": True})

    app = create_app(
        test_config,
        comfy_transport=httpx.MockTransport(fake_comfy.handler),
        tracking_transport=httpx.MockTransport(tracker),
    )
    with TestClient(app) as client:
        yield client


@pytest.fixture
def admin_headers() -> dict:
    return {"Authorization": f"Bearer {ADMIN_PASSWORD}"}


@pytest.fixture
def png_bytes() -> bytes:
    """A small valid PNG image."""
    buffer = io.BytesIO()
    Image.new("RGB", (8, 8), color=(200, 120, 40)).save(buffer, format="PNG")
    return buffer.getvalue()
