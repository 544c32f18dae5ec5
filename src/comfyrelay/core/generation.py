"""Generation orchestration for the headshot and pose profiles.

Each profile runs the same sequence against the backend::

    load template -> upload image -> patch nodes -> submit -> poll -> pick output

The profiles differ in the template, the node patches, the poll strategy and
the shape of the returned image URL:

=========  ==================  ========  ===========================
Profile    Template            Polling   Image URL
=========  ==================  ========  ===========================
headshot   headshot workflow   history   absolute backend ``/view``
pose       base or censored    queue     relay ``/api/image`` proxy
=========  ==================  ========  ===========================

Credits, usage records and HTTP concerns stay in the API layer; this module
only raises :class:`~comfyrelay.core.comfy_client.ComfyError` or
:class:`~comfyrelay.core.workflow.WorkflowError` subclasses on failure.
"""

from __future__ import annotations

import asyncio
import logging
import mimetypes
from dataclasses import dataclass
from pathlib import Path

import httpx

from comfyrelay.core.comfy_client import (
    BackendUnavailableError,
    ComfyClient,
    select_output_image,
)
from comfyrelay.core.config import RelayConfig
from comfyrelay.core.prompts import build_headshot_prompt, build_pose_prompt, load_pose_catalog
from comfyrelay.core.tracking import track_generation
from comfyrelay.core.workflow import (
    HEADSHOT_OUTPUT_PRIORITY,
    load_workflow,
    make_client_id,
    patch_headshot_workflow,
    patch_pose_workflow,
)

logger = logging.getLogger(__name__)


@dataclass
class HeadshotResult:
    image_url: str
    prompt_id: str


@dataclass
class PoseResult:
    image_url: str
    prompt_id: str
    seed: int | None = None


class GenerationService:
    """Runs generation requests against one backend.

    Args:
        config: Relay configuration (paths, site ids, tracking settings).
        client: Backend client.
        tracking_transport: Optional ``httpx`` transport for the queue
            tracker (used by tests).
    """

    def __init__(
        self,
        config: RelayConfig,
        client: ComfyClient,
        tracking_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self.client = client
        self.tracking_transport = tracking_transport

    async def run_headshot(
        self,
        *,
        image: bytes,
        filename: str,
        content_type: str,
        environment: str,
        style: str,
    ) -> HeadshotResult:
        """Generate a professional headshot.

        Args:
            image: Uploaded photo bytes.
            filename: Original upload filename.
            content_type: Upload MIME type.
            environment: Background id.
            style: Clothing style id.

        Returns:
            :class:`HeadshotResult` with an absolute backend ``/view`` URL.

        Raises:
            BackendUnavailableError: If the backend is not running.
            WorkflowNotFoundError: If the template is missing.
            ComfyError: For upload, submission and polling failures.
        """
        status = await self.client.check_status()
        if not status.running:
            raise BackendUnavailableError(
                f"ComfyUI is not accessible: {status.message or status.status}"
            )

        template = load_workflow(self.config.headshot_workflow_path)
        uploaded = await self.client.upload_image(filename, image, content_type)

        prompt = build_headshot_prompt(environment, style)
        patched = patch_headshot_workflow(
            template,
            uploaded_filename=uploaded,
            prompt=prompt,
            session_prefix=self.config.headshot_site,
        )

        prompt_id = await self.client.submit(patched.workflow)
        entry = await self.client.wait_for_history(prompt_id)
        image_ref = select_output_image(entry.get("outputs", {}), HEADSHOT_OUTPUT_PRIORITY)

        return HeadshotResult(
            image_url=image_ref.view_url(self.config.comfy_url),
            prompt_id=prompt_id,
        )

    async def run_pose(
        self,
        upload_path: Path,
        *,
        gender: str,
        age: int,
        body_type: int,
        skin_tone: int,
        pose: str,
        censored: bool,
        user_id: str,
        device_id: str,
    ) -> PoseResult:
        """Generate a posed portrait from an image saved on disk.

        The caller owns *upload_path* and is responsible for removing it.

        Returns:
            :class:`PoseResult` with a relay-relative ``/api/image`` URL.

        Raises:
            WorkflowNotFoundError: If the selected template is missing.
            ComfyError: For upload, submission and polling failures.
        """
        catalog = load_pose_catalog(self.config.poses_path)
        prompt = build_pose_prompt(
            gender=gender,
            age=age,
            body_type=body_type,
            skin_tone=skin_tone,
            pose=pose,
            presets=catalog.poses,
        )
        template = load_workflow(self.config.pose_workflow_path(censored))

        content_type = mimetypes.guess_type(upload_path.name)[0] or "image/jpeg"
        uploaded = await self.client.upload_image(
            upload_path.name, upload_path.read_bytes(), content_type
        )
        # Give the backend time to register the new input file.
        await asyncio.sleep(self.config.upload_settle_delay)

        patched = patch_pose_workflow(
            template,
            uploaded_filename=uploaded,
            prompt=prompt,
            base_lora=catalog.base_lora,
            info_lora=catalog.info_lora,
            session_prefix=self.config.pose_site,
        )

        prompt_id = await self.client.submit(
            patched.workflow, client_id=make_client_id(self.config.pose_site)
        )

        await track_generation(
            self.config.queue_tracking_url,
            {
                "promptId": prompt_id,
                "userId": user_id,
                "deviceId": device_id,
                "pose": pose,
                "gender": gender,
            },
            timeout=self.config.queue_tracking_timeout,
            transport=self.tracking_transport,
        )

        entry = await self.client.wait_for_queue(prompt_id)
        image_ref = select_output_image(entry.get("outputs", {}), (patched.save_node,))

        return PoseResult(image_url=image_ref.proxy_path(), prompt_id=prompt_id, seed=patched.seed)
