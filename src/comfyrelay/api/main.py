"""ComfyUI Relay — FastAPI Application.

This module defines the FastAPI application, the public routes of both
front-end sites, and the ``main()`` CLI function that launches uvicorn.

Architecture
------------
- **Configuration** comes from :class:`~comfyrelay.core.config.RelayConfig`
  (``COMFYRELAY_*`` environment variables).
- **Generation** is delegated to
  :class:`~comfyrelay.core.generation.GenerationService`, which drives the
  ComfyUI backend through :class:`~comfyrelay.core.comfy_client.ComfyClient`.
- **Usage data** (users, credits, generations, events) lives in flat JSON
  files managed by :class:`~comfyrelay.core.storage.UsageStore`.
- **Admin routes** live in :mod:`comfyrelay.api.admin`.
- **The admin dashboard** is a static HTML page returned as-is; it talks to
  the admin API from the browser.

Endpoints
---------
========  ============================  ====================================
Method    Path                          Purpose
========  ============================  ====================================
POST      ``/api/generate``             Headshot generation (uses credits)
POST      ``/api/pose/generate``        Pose generation
GET       ``/api/pose/generate``        Pose API status
GET       ``/api/image``                Proxy a finished image from ComfyUI
POST      ``/api/users/visit``          Register a visit / create the user
GET       ``/api/users/{user_id}``      Credit balance lookup
GET       ``/health``                   Liveness probe
GET       ``/admin``                    Admin dashboard page
========  ============================  ====================================

Every response carries ``Cache-Control: no-cache, no-store, must-revalidate``
and errors are returned as ``{"error": ...}``.

Usage
-----
CLI (installed entry point)::

    comfyrelay

Direct invocation::

    python -m comfyrelay.api.main
"""

from __future__ import annotations

import io
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

import httpx
from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, Request, UploadFile
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse, Response
from PIL import Image
from pydantic import ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from comfyrelay import __version__
from comfyrelay.api import admin
from comfyrelay.api.dependencies import (
    client_ip,
    get_client,
    get_config,
    get_generation,
    get_store,
)
from comfyrelay.api.models import PoseOptions, VisitRequest
from comfyrelay.core.comfy_client import (
    BackendUnavailableError,
    ComfyClient,
    ComfyError,
    GenerationTimeoutError,
    ImageRef,
    UploadError,
)
from comfyrelay.core.config import RelayConfig, config
from comfyrelay.core.generation import GenerationService
from comfyrelay.core.storage import UsageStore, isoformat, utc_now
from comfyrelay.core.workflow import WorkflowError, WorkflowNotFoundError, random_token

logger = logging.getLogger(__name__)

NO_STORE = "no-cache, no-store, must-revalidate"

HEADSHOT_EVENT_PREFIX = "professional_headshot_generation"

# ---------------------------------------------------------------------------
# Upload validation.
# ---------------------------------------------------------------------------


async def _read_upload(image: UploadFile, relay_config: RelayConfig) -> bytes:
    """Read an uploaded image and check its type, size and decodability.

    Raises:
        HTTPException: 400 for a disallowed type, an oversized file, or
            content Pillow cannot identify as an image.
    """
    if image.content_type not in relay_config.allowed_content_types:
        raise HTTPException(
            status_code=400,
            detail="Invalid file type. Please upload JPG, PNG, or WebP images only.",
        )

    content = await image.read()
    if len(content) > relay_config.max_upload_bytes:
        limit_mb = relay_config.max_upload_bytes // (1024 * 1024)
        raise HTTPException(
            status_code=400,
            detail=f"File too large. Maximum size is {limit_mb}MB.",
        )

    try:
        with Image.open(io.BytesIO(content)) as decoded:
            decoded.verify()
    except (OSError, SyntaxError, ValueError) as exc:
        logger.info("Rejected upload %s: %s", image.filename, exc)
        raise HTTPException(status_code=400, detail="Uploaded file is not a valid image.") from exc

    return content


def friendly_error(exc: Exception) -> str:
    """Map a generation failure to a message suitable for end users."""
    if isinstance(exc, WorkflowNotFoundError):
        return "Workflow configuration missing. Please check server setup."
    if isinstance(exc, BackendUnavailableError):
        return "AI service is temporarily unavailable. Please try again in a few minutes."
    if isinstance(exc, GenerationTimeoutError):
        return "Generation is taking longer than expected. Please try again."
    if isinstance(exc, UploadError):
        return "Failed to upload your image. Please try a different image or try again."
    return "Professional headshot generation failed. Please try again."


def _unexpected(exc: Exception) -> bool:
    """True for failures outside the backend and workflow error hierarchies."""
    return not isinstance(exc, (ComfyError, WorkflowError))


# ---------------------------------------------------------------------------
# Application factory.
# ---------------------------------------------------------------------------


def create_app(
    relay_config: RelayConfig | None = None,
    *,
    comfy_transport: httpx.AsyncBaseTransport | None = None,
    tracking_transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    """Build the FastAPI application.

    Args:
        relay_config: Configuration to use; defaults to the global
            :data:`~comfyrelay.core.config.config`.
        comfy_transport: Optional ``httpx`` transport for the backend client.
        tracking_transport: Optional ``httpx`` transport for queue tracking.

    Returns:
        A configured :class:`FastAPI` instance.
    """
    relay_config = relay_config or config

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Create the backend client and usage store; close the client on shutdown."""
        # --- Startup -------------------------------------------------------
        client = ComfyClient.from_config(relay_config, transport=comfy_transport)
        app.state.config = relay_config
        app.state.store = UsageStore.from_config(relay_config)
        app.state.comfy_client = client
        app.state.generation = GenerationService(
            relay_config, client, tracking_transport=tracking_transport
        )
        app.state.started_at = time.monotonic()
        logger.info("Relay started (ComfyUI at %s).", relay_config.comfy_url)

        yield  # Application runs here.

        # --- Shutdown ------------------------------------------------------
        await client.aclose()
        logger.info("ComfyUI client closed on shutdown.")

    app = FastAPI(
        title="ComfyUI Relay",
        description="Generation endpoints and usage tracking in front of a ComfyUI server.",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def no_store(request: Request, call_next):
        response = await call_next(request)
        response.headers["Cache-Control"] = NO_STORE
        return response

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        content = exc.detail if isinstance(exc.detail, dict) else {"error": exc.detail}
        return JSONResponse(status_code=exc.status_code, content=content, headers=exc.headers)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={"error": "Invalid request", "details": jsonable_encoder(exc.errors())},
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content={"error": "Internal server error", "details": str(exc)},
            headers={"Cache-Control": NO_STORE},
        )

    app.include_router(admin.router)
    _register_routes(app)
    return app


# ---------------------------------------------------------------------------
# Routes.
# ---------------------------------------------------------------------------


def _register_routes(app: FastAPI) -> None:
    @app.post("/api/generate")
    async def generate_headshot(
        request: Request,
        environment: str | None = Form(None),
        style: str | None = Form(None),
        userId: str | None = Form(None),
        deviceId: str | None = Form(None),
        image: UploadFile | None = File(None),
        relay_config: RelayConfig = Depends(get_config),
        store: UsageStore = Depends(get_store),
        generation: GenerationService = Depends(get_generation),
    ):
        """Generate a professional headshot for a user with credits.

        One credit is deducted only when the generation succeeds.

        Returns:
            ``{"success", "imageUrl", "creditsRemaining", "message"}``, or a
            500 ``{"error", "details", "code": "GENERATION_FAILED"}`` body.

        Raises:
            HTTPException: 400 for missing fields or an invalid image, 402
                when the user is unknown or out of credits, 403 when blocked.
        """
        if not (environment and style and userId and deviceId and image):
            raise HTTPException(status_code=400, detail="Missing required fields")

        content = await _read_upload(image, relay_config)
        site = relay_config.headshot_site
        ip_address = client_ip(request)
        logger.info("Generation request: %s, %s, user: %s", environment, style, userId)

        user = store.get_user(userId)
        if user is None or user.get("credits", 0) < 1:
            logger.info("User %s has insufficient credits.", userId)
            raise HTTPException(status_code=402, detail="Insufficient credits")
        if user.get("isBlocked"):
            logger.info("User %s is blocked.", userId)
            raise HTTPException(status_code=403, detail="Account blocked")

        store.log_user_event(
            userId,
            deviceId,
            f"{HEADSHOT_EVENT_PREFIX}_started",
            site,
            {
                "environment": environment,
                "style": style,
                "imageSize": len(content),
                "ipAddress": ip_address,
            },
        )

        try:
            result = await generation.run_headshot(
                image=content,
                filename=image.filename or "upload.jpg",
                content_type=image.content_type,
                environment=environment,
                style=style,
            )
        except Exception as exc:
            logger.error(
                "Headshot generation failed for %s: %s",
                userId,
                exc,
                exc_info=_unexpected(exc),
            )
            details = str(exc)
            failure = {
                "environment": environment,
                "style": style,
                "error": details,
                "ipAddress": ip_address,
            }
            store.record_generation(userId, deviceId, site, False, failure)
            store.log_user_event(userId, deviceId, f"{HEADSHOT_EVENT_PREFIX}_failed", site, failure)
            return JSONResponse(
                status_code=500,
                content={
                    "error": friendly_error(exc),
                    "details": details,
                    "code": "GENERATION_FAILED",
                },
            )

        credits_remaining = user.get("credits", 0) - 1
        store.update_user_credits(userId, credits_remaining)
        store.record_generation(
            userId,
            deviceId,
            site,
            True,
            {
                "environment": environment,
                "style": style,
                "ipAddress": ip_address,
                "workflowUsed": relay_config.headshot_workflow,
                "promptId": result.prompt_id,
            },
        )
        store.log_user_event(
            userId,
            deviceId,
            f"{HEADSHOT_EVENT_PREFIX}_completed",
            site,
            {
                "environment": environment,
                "style": style,
                "success": True,
                "imageUrl": result.image_url,
                "ipAddress": ip_address,
            },
        )
        logger.info("Headshot generation succeeded for %s.", userId)

        return {
            "success": True,
            "imageUrl": result.image_url,
            "creditsRemaining": credits_remaining,
            "message": "Professional headshot generated successfully",
        }

    @app.post("/api/pose/generate")
    async def generate_pose(
        request: Request,
        image: UploadFile | None = File(None),
        options: str | None = Form(None),
        x_user_id: str | None = Header(None),
        x_device_id: str | None = Header(None),
        relay_config: RelayConfig = Depends(get_config),
        store: UsageStore = Depends(get_store),
        generation: GenerationService = Depends(get_generation),
    ):
        """Generate a posed portrait from a face photo and attribute options.

        The upload is stored in ``upload_dir`` for the duration of the
        request and removed afterwards, whatever the outcome.

        Returns:
            ``{"success", "imageUrl", "isCensored", "userId", "deviceId",
            "generationTime"}``, or a 500 ``{"error"}`` body.

        Raises:
            HTTPException: 400 for a missing image or options, an invalid
                image, or options that are not valid JSON.
        """
        started = time.monotonic()

        if image is None:
            raise HTTPException(status_code=400, detail="No image file provided")
        if not options:
            raise HTTPException(status_code=400, detail="No options provided")

        content = await _read_upload(image, relay_config)
        try:
            pose_options = PoseOptions.model_validate_json(options)
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail="Invalid options format") from exc

        now_ms = int(time.time() * 1000)
        user_id = x_user_id or f"user_{now_ms}_{random_token(9)}"
        device_id = x_device_id or f"device_{now_ms}_{random_token(9)}"
        site = relay_config.pose_site

        extension = Path(image.filename or "").suffix or ".jpg"
        local_path = relay_config.upload_dir / f"{site}_face_{now_ms}_{random_token(9)}{extension}"
        local_path.parent.mkdir(parents=True, exist_ok=True)
        local_path.write_bytes(content)

        metadata = {
            "pose": pose_options.pose,
            "gender": pose_options.gender,
            "censored": pose_options.censored,
            "ipAddress": client_ip(request),
        }

        try:
            result = await generation.run_pose(
                local_path,
                gender=pose_options.gender,
                age=pose_options.age,
                body_type=pose_options.body_type,
                skin_tone=pose_options.skin_tone,
                pose=pose_options.pose,
                censored=pose_options.censored,
                user_id=user_id,
                device_id=device_id,
            )
        except Exception as exc:
            logger.error(
                "Pose generation failed for %s: %s", user_id, exc, exc_info=_unexpected(exc)
            )
            store.record_generation(user_id, device_id, site, False, {**metadata, "error": str(exc)})
            return JSONResponse(status_code=500, content={"error": f"Generation failed: {exc}"})
        finally:
            local_path.unlink(missing_ok=True)

        elapsed = time.monotonic() - started
        store.record_generation(
            user_id, device_id, site, True, {**metadata, "promptId": result.prompt_id}
        )
        logger.info("Pose generation succeeded for %s in %.2fs.", user_id, elapsed)

        return {
            "success": True,
            "imageUrl": result.image_url,
            "isCensored": pose_options.censored,
            "userId": user_id,
            "deviceId": device_id,
            "generationTime": f"{elapsed:.2f}",
        }

    @app.get("/api/pose/generate")
    async def pose_status(relay_config: RelayConfig = Depends(get_config)) -> dict:
        return {
            "status": "API is running",
            "timestamp": isoformat(utc_now()),
            "comfyuiUrl": relay_config.comfy_url,
        }

    @app.get("/api/image")
    async def proxy_image(
        filename: str,
        subfolder: str = "",
        type: str = "output",
        client: ComfyClient = Depends(get_client),
    ) -> Response:
        """Stream a finished image from the backend's ``/view`` endpoint.

        Raises:
            HTTPException: The backend's status for 4xx answers, 502 when
                the backend cannot be reached or fails.
        """
        try:
            content, media_type = await client.fetch_view(
                ImageRef(filename=filename, subfolder=subfolder, type=type)
            )
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            raise HTTPException(
                status_code=status if 400 <= status < 500 else 502,
                detail="Image not available",
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning("Image proxy failed for %s: %s", filename, exc)
            raise HTTPException(status_code=502, detail="Image backend unavailable") from exc

        return Response(content=content, media_type=media_type)

    @app.post("/api/users/visit")
    async def register_visit(
        body: VisitRequest,
        request: Request,
        relay_config: RelayConfig = Depends(get_config),
        store: UsageStore = Depends(get_store),
    ) -> dict:
        """Create the user on first visit, otherwise refresh visit bookkeeping."""
        user = store.register_visit(
            body.user_id,
            body.device_id,
            body.site or relay_config.headshot_site,
            client_ip(request),
        )
        return {"success": True, "user": user}

    @app.get("/api/users/{user_id}")
    async def get_user(user_id: str, store: UsageStore = Depends(get_store)) -> dict:
        """Return a user's credit balance and status.

        Raises:
            HTTPException: 404 if the user does not exist.
        """
        user = store.get_user(user_id)
        if user is None:
            raise HTTPException(status_code=404, detail="User not found")
        return {
            "userId": user_id,
            "credits": user.get("credits", 0),
            "isBlocked": bool(user.get("isBlocked")),
            "totalGenerations": user.get("totalGenerations", 0),
        }

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok", "version": __version__}

    @app.get("/admin", response_class=HTMLResponse)
    async def admin_dashboard(relay_config: RelayConfig = Depends(get_config)) -> HTMLResponse:
        """Serve the admin dashboard page.

        Raises:
            HTTPException: 404 if ``admin.html`` is not found.
        """
        page = relay_config.templates_dir / "admin.html"
        if page.exists():
            return HTMLResponse(content=page.read_text(encoding="utf-8"))
        raise HTTPException(status_code=404, detail="admin.html not found")


app = create_app()


# ---------------------------------------------------------------------------
# CLI entry point.
# ---------------------------------------------------------------------------


def main() -> None:
    """Launch the uvicorn ASGI server.

    Reads host, port and log level from :data:`~comfyrelay.core.config.config`
    (``COMFYRELAY_SERVER_HOST``, ``COMFYRELAY_SERVER_PORT`` and
    ``COMFYRELAY_LOG_LEVEL``).  Defaults to ``0.0.0.0:3000``.

    This function is registered as the ``comfyrelay`` console script in
    ``pyproject.toml``.
    """
    import uvicorn

    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(
        "comfyrelay.api.main:app",
        host=config.server_host,
        port=config.server_port,
        log_level=config.log_level.lower(),
        reload=False,
    )


if __name__ == "__main__":
    main()
