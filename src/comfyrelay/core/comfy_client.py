"""Async HTTP client for the ComfyUI backend.

The relay talks to a single ComfyUI server over its plain HTTP API:

========  =====================  ==========================================
Method    Path                   Used for
========  =====================  ==========================================
GET       ``/system_stats``      Reachability probe and admin diagnostics
POST      ``/upload/image``      Uploading the user's source photo
POST      ``/prompt``            Submitting a patched workflow
GET       ``/history[/{id}]``    Reading execution status and outputs
GET       ``/queue``             Checking whether a prompt is still queued
GET       ``/view``              Fetching a finished image
========  =====================  ==========================================

Polling Strategies
------------------
Two strategies are supported, one per generation profile:

**History polling** (:meth:`ComfyClient.wait_for_history`)
    Sleep, then read ``/history/{id}``.  A ``success`` status returns the
    history entry; an ``error`` status raises
    :class:`GenerationFailedError` carrying the ``execution_error`` details.

**Queue polling** (:meth:`ComfyClient.wait_for_queue`)
    Read ``/queue``.  Once the prompt id is in neither ``queue_running`` nor
    ``queue_pending``, read ``/history`` and return the entry.

Transient HTTP failures are logged and count as an attempt.  Terminal
failures always propagate to the caller, and exhausting the attempt budget
raises :class:`GenerationTimeoutError`.

Output Selection
----------------
:func:`select_output_image` picks the first image of the first node in a
priority list that produced images, falling back to any node with images in
document order.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from urllib.parse import urlencode

import httpx

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Errors.
# ---------------------------------------------------------------------------


class ComfyError(Exception):
    """Base class for every backend failure."""


class BackendUnavailableError(ComfyError):
    """The backend did not answer the reachability probe."""


class UploadError(ComfyError):
    """The source image could not be uploaded."""


class SubmissionError(ComfyError):
    """The backend rejected a workflow submission."""


class GenerationFailedError(ComfyError):
    """The backend reported an execution error for the prompt."""


class GenerationTimeoutError(ComfyError):
    """The prompt did not reach a terminal state within the attempt budget."""


class NoOutputImageError(ComfyError):
    """A finished prompt produced no image in any output node."""


# ---------------------------------------------------------------------------
# Value types.
# ---------------------------------------------------------------------------


@dataclass
class BackendStatus:
    """Result of the ``/system_stats`` probe.

    Attributes:
        status: ``"running"``, ``"error"`` (non-2xx answer) or ``"offline"``.
        message: Human readable detail for non-running states.
    """

    status: str
    message: str | None = None

    @property
    def running(self) -> bool:
        return self.status == "running"


@dataclass
class ImageRef:
    """Reference to an image stored by the backend."""

    filename: str
    subfolder: str = ""
    type: str = "output"

    @classmethod
    def from_output(cls, data: dict) -> ImageRef:
        return cls(
            filename=data["filename"],
            subfolder=data.get("subfolder") or "",
            type=data.get("type") or "output",
        )

    def query(self) -> str:
        return urlencode({"filename": self.filename, "subfolder": self.subfolder, "type": self.type})

    def view_url(self, base_url: str) -> str:
        """Absolute ``/view`` URL on the backend."""
        return f"{base_url.rstrip('/')}/view?{self.query()}"

    def proxy_path(self) -> str:
        """Relative URL served by the relay's own image proxy."""
        return f"/api/image?{self.query()}"


def select_output_image(outputs: dict, priority: Iterable[str] = ()) -> ImageRef:
    """Pick the finished image from a history entry's ``outputs``.

    Args:
        outputs: Mapping of node id to node output.
        priority: Node ids to try first, best first.

    Returns:
        :class:`ImageRef` for the first image found.

    Raises:
        NoOutputImageError: If no node produced an image.
    """
    outputs = outputs or {}

    def _images(node_id: str) -> list:
        node = outputs.get(node_id)
        if not isinstance(node, dict):
            return []
        images = node.get("images")
        return images if isinstance(images, list) else []

    for node_id in priority:
        images = _images(node_id)
        if images:
            logger.info("Output image taken from node %s.", node_id)
            return ImageRef.from_output(images[0])

    for node_id in outputs:
        images = _images(node_id)
        if images:
            logger.info("Output image taken from fallback node %s.", node_id)
            return ImageRef.from_output(images[0])

    raise NoOutputImageError("Generation completed but no output image found")


def extract_execution_errors(entry: dict) -> str:
    """Join the ``execution_error`` messages of a failed history entry."""
    messages = (entry.get("status") or {}).get("messages") or []
    details = []
    for message in messages:
        if isinstance(message, list) and len(message) > 1 and message[0] == "execution_error":
            payload = message[1]
            details.append(
                json.dumps(payload, indent=2) if isinstance(payload, dict) else str(payload)
            )
    return "\n".join(details) or "Unknown ComfyUI error"


def _check_terminal(entry: dict) -> bool:
    """Return ``True`` for a successful entry; raise for a failed one."""
    status = entry.get("status") or {}
    status_str = status.get("status_str")
    if status_str == "error":
        raise GenerationFailedError(
            f"Generation failed on ComfyUI: {extract_execution_errors(entry)}"
        )
    return status_str == "success"


# ---------------------------------------------------------------------------
# Client.
# ---------------------------------------------------------------------------


class ComfyClient:
    """Thin async wrapper over the ComfyUI HTTP API.

    Args:
        base_url: Backend root, e.g. ``http://127.0.0.1:8188``.
        timeout: Timeout for uploads and submissions.
        status_timeout: Timeout for the ``/system_stats`` probe.
        history_timeout: Timeout for each poll request.
        poll_interval: Seconds slept between poll attempts.
        history_poll_attempts: Attempt cap for :meth:`wait_for_history`.
        queue_poll_attempts: Attempt cap for :meth:`wait_for_queue`.
        transport: Optional ``httpx`` transport (used by tests).
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 30.0,
        status_timeout: float = 5.0,
        history_timeout: float = 10.0,
        poll_interval: float = 5.0,
        history_poll_attempts: int = 60,
        queue_poll_attempts: int = 120,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.status_timeout = status_timeout
        self.history_timeout = history_timeout
        self.poll_interval = poll_interval
        self.history_poll_attempts = history_poll_attempts
        self.queue_poll_attempts = queue_poll_attempts
        self._http = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_config(cls, config, transport: httpx.AsyncBaseTransport | None = None) -> ComfyClient:
        """Build a client from a :class:`~comfyrelay.core.config.RelayConfig`."""
        return cls(
            config.comfy_url,
            timeout=config.comfy_timeout,
            status_timeout=config.status_timeout,
            history_timeout=config.history_timeout,
            poll_interval=config.poll_interval,
            history_poll_attempts=config.history_poll_attempts,
            queue_poll_attempts=config.queue_poll_attempts,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    # -- Status -------------------------------------------------------------

    async def check_status(self) -> BackendStatus:
        """Probe ``/system_stats``; never raises."""
        logger.info("Checking ComfyUI status at %s.", self.base_url)
        try:
            response = await self._http.get("/system_stats", timeout=self.status_timeout)
        except httpx.HTTPError as exc:
            logger.error("ComfyUI connection failed: %s", exc)
            return BackendStatus("offline", str(exc) or "Connection failed")

        if response.is_success:
            return BackendStatus("running")
        logger.warning("ComfyUI responded with status %s.", response.status_code)
        return BackendStatus("error", f"ComfyUI returned status {response.status_code}")

    async def system_stats(self) -> dict:
        """Return the raw ``/system_stats`` document.

        Raises:
            httpx.HTTPError: On connection failure or non-2xx status.
        """
        response = await self._http.get("/system_stats", timeout=self.status_timeout)
        response.raise_for_status()
        return response.json()

    # -- Upload and submission ----------------------------------------------

    async def upload_image(self, filename: str, content: bytes, content_type: str) -> str:
        """Upload an image to the backend's input folder.

        Returns:
            The filename the backend stored the image under.

        Raises:
            UploadError: On connection failure, non-2xx status, or a body
                that is not a JSON object.
        """
        logger.info("Uploading %s (%d bytes) to ComfyUI.", filename, len(content))
        try:
            response = await self._http.post(
                "/upload/image",
                files={"image": (filename, content, content_type)},
                data={"overwrite": "true"},
            )
        except httpx.HTTPError as exc:
            raise UploadError(f"Failed to upload image to ComfyUI: {exc}") from exc

        if not response.is_success:
            raise UploadError(
                f"Failed to upload image to ComfyUI: HTTP {response.status_code}: {response.text}"
            )

        try:
            name = response.json().get("name") or filename
        except (ValueError, AttributeError) as exc:
            raise UploadError(f"Failed to upload image to ComfyUI: invalid response: {exc}") from exc
        logger.info("Image uploaded as %s.", name)
        return name

    async def submit(self, workflow: dict, client_id: str | None = None) -> str:
        """Queue a workflow for execution.

        Args:
            workflow: Patched workflow document.
            client_id: Optional client id sent alongside the prompt.

        Returns:
            The backend's ``prompt_id``.

        Raises:
            SubmissionError: On connection failure, non-2xx status, a body
                that is not a JSON object, or a response without ``prompt_id``.
        """
        payload: dict = {"prompt": workflow}
        if client_id:
            payload["client_id"] = client_id

        logger.info("Submitting workflow with %d nodes to ComfyUI.", len(workflow))
        try:
            response = await self._http.post("/prompt", json=payload)
        except httpx.HTTPError as exc:
            raise SubmissionError(f"ComfyUI prompt submission failed: {exc}") from exc

        if not response.is_success:
            logger.error("ComfyUI error response: %s", response.text)
            raise SubmissionError(
                f"ComfyUI prompt submission failed: HTTP {response.status_code}: {response.text}"
            )

        try:
            prompt_id = response.json().get("prompt_id")
        except (ValueError, AttributeError) as exc:
            raise SubmissionError(f"ComfyUI prompt submission failed: invalid response: {exc}") from exc
        if not prompt_id:
            raise SubmissionError("No prompt_id received from ComfyUI")

        logger.info("Prompt submitted with id %s.", prompt_id)
        return prompt_id

    # -- Queue and history --------------------------------------------------

    async def get_history(self, prompt_id: str | None = None) -> dict:
        path = f"/history/{prompt_id}" if prompt_id else "/history"
        response = await self._http.get(path, timeout=self.history_timeout)
        response.raise_for_status()
        return response.json()

    async def get_queue(self) -> dict:
        response = await self._http.get("/queue", timeout=self.history_timeout)
        response.raise_for_status()
        return response.json()

    async def wait_for_history(self, prompt_id: str) -> dict:
        """Poll ``/history/{id}`` until the prompt succeeds or fails.

        Returns:
            The history entry of the finished prompt.

        Raises:
            GenerationFailedError: If the backend reports an error.
            GenerationTimeoutError: If the attempt budget runs out.
        """
        for attempt in range(1, self.history_poll_attempts + 1):
            await asyncio.sleep(self.poll_interval)

            try:
                history = await self.get_history(prompt_id)
            except (httpx.HTTPError, ValueError) as exc:
                logger.warning("Polling attempt %d failed: %s", attempt, exc)
                continue

            entry = history.get(prompt_id)
            if isinstance(entry, dict) and _check_terminal(entry):
                logger.info("Prompt %s completed after %d attempts.", prompt_id, attempt)
                return entry

            logger.debug(
                "Waiting for generation... (%d/%d)", attempt, self.history_poll_attempts
            )

        raise GenerationTimeoutError("Generation timeout - please try again")

    async def wait_for_queue(self, prompt_id: str) -> dict:
        """Poll ``/queue`` until the prompt leaves it, then read its history.

        Returns:
            The history entry of the finished prompt.

        Raises:
            GenerationFailedError: If the history entry reports an error.
            GenerationTimeoutError: If the attempt budget runs out.
        """
        last_error: Exception | None = None

        for attempt in range(1, self.queue_poll_attempts + 1):
            try:
                queue = await self.get_queue()
                queued = [
                    item
                    for key in ("queue_running", "queue_pending")
                    for item in queue.get(key, [])
                    if isinstance(item, list) and len(item) > 1 and item[1] == prompt_id
                ]
                if not queued:
                    history = await self.get_history()
                    entry = history.get(prompt_id)
                    if isinstance(entry, dict):
                        _check_terminal(entry)
                        logger.info("Prompt %s left the queue after %d polls.", prompt_id, attempt)
                        return entry
                last_error = None
            except (httpx.HTTPError, ValueError) as exc:
                logger.warning("Queue poll attempt %d failed: %s", attempt, exc)
                last_error = exc

            if attempt < self.queue_poll_attempts:
                await asyncio.sleep(self.poll_interval)

        if last_error is not None:
            raise GenerationTimeoutError(
                f"Polling failed after {self.queue_poll_attempts} attempts: {last_error}"
            )
        raise GenerationTimeoutError(f"Generation timeout after {self.queue_poll_attempts} attempts")

    # -- Images -------------------------------------------------------------

    async def fetch_view(self, image: ImageRef) -> tuple[bytes, str]:
        """Download a stored image.

        Returns:
            ``(content, media_type)``.

        Raises:
            httpx.HTTPError: On connection failure or non-2xx status.
        """
        response = await self._http.get(
            "/view",
            params={"filename": image.filename, "subfolder": image.subfolder, "type": image.type},
        )
        response.raise_for_status()
        return response.content, response.headers.get("content-type", "image/png")
