"""Admin API for the usage dashboard.

Every route except ``/verify`` requires ``Authorization: Bearer <password>``
matching ``admin_password``.  When no password is configured, every admin
request is rejected.

Endpoints
---------
========  ==============================  ===================================
Method    Path                            Purpose
========  ==============================  ===================================
POST      ``/api/admin/verify``           Check a password (dashboard login)
GET       ``/api/admin?type=...``         stats, users, generations,
                                          userEvents or queue
POST      ``/api/admin``                  Named actions (``{"action": ...}``)
PUT       ``/api/admin?action=user``      Update credits and/or blocked flag
DELETE    ``/api/admin?action=oldData``   Remove data past the retention window
========  ==============================  ===================================

Listings are filtered to one site: the ``site`` query parameter, or the
configured dashboard site.
"""

from __future__ import annotations

import logging
import platform
import secrets
import time

import httpx
from fastapi import APIRouter, Depends, HTTPException, Request

from comfyrelay import __version__
from comfyrelay.api.dependencies import get_client, get_config, get_store
from comfyrelay.api.models import AdminActionRequest, AdminUserUpdate
from comfyrelay.core.comfy_client import ComfyClient
from comfyrelay.core.config import RelayConfig
from comfyrelay.core.storage import UsageStore, isoformat, utc_now

logger = logging.getLogger(__name__)

MAX_CREDITS_PER_GRANT = 1000
RECENT_ACTIVITY_LIMIT = 10

# ---------------------------------------------------------------------------
# Authentication.
# ---------------------------------------------------------------------------


def _bearer_token(request: Request) -> str | None:
    header = request.headers.get("Authorization")
    if not header or not header.startswith("Bearer "):
        return None
    return header[len("Bearer ") :]


def _password_matches(provided: str, expected: str | None) -> bool:
    if not expected:
        return False
    return secrets.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


def require_admin(request: Request, config: RelayConfig = Depends(get_config)) -> None:
    """Reject the request with 401 unless it carries the admin password."""
    token = _bearer_token(request)
    if token is None or not _password_matches(token, config.admin_password):
        raise HTTPException(status_code=401, detail="Unauthorized")


router = APIRouter(prefix="/api/admin", tags=["admin"])


@router.post("/verify")
async def verify_password(request: Request, config: RelayConfig = Depends(get_config)) -> dict:
    """Check the dashboard password.

    Raises:
        HTTPException: 401 without a bearer token or on mismatch, 500 when
            no admin password is configured.
    """
    token = _bearer_token(request)
    if token is None:
        logger.info("Admin verification without authorization header.")
        raise HTTPException(status_code=401, detail="Authorization header required")

    if not config.admin_password:
        logger.error("Admin password is not configured.")
        raise HTTPException(status_code=500, detail="Admin authentication not configured")

    if not _password_matches(token, config.admin_password):
        logger.warning("Invalid admin password provided.")
        raise HTTPException(status_code=401, detail="Invalid password")

    return {"success": True, "message": "Authentication successful"}


# ---------------------------------------------------------------------------
# Read endpoints.
# ---------------------------------------------------------------------------


async def _queue_snapshot(client: ComfyClient) -> dict:
    """Summarise the backend's ``/queue`` for the dashboard."""
    snapshot = {
        "comfyuiStatus": "idle",
        "queue": {"running": [], "pending": [], "totalInQueue": 0},
        "timestamp": isoformat(utc_now()),
    }
    try:
        queue = await client.get_queue()
    except (httpx.HTTPError, ValueError) as exc:
        logger.warning("Could not read ComfyUI queue: %s", exc)
        snapshot["comfyuiStatus"] = "offline"
        snapshot["error"] = str(exc)
        return snapshot

    for source, target in (("queue_running", "running"), ("queue_pending", "pending")):
        snapshot["queue"][target] = [
            {"number": item[0], "promptId": item[1]}
            for item in queue.get(source, [])
            if isinstance(item, list) and len(item) > 1
        ]

    total = len(snapshot["queue"]["running"]) + len(snapshot["queue"]["pending"])
    snapshot["queue"]["totalInQueue"] = total
    if total:
        snapshot["comfyuiStatus"] = "busy"
    return snapshot


@router.get("", dependencies=[Depends(require_admin)])
async def get_admin_data(
    type: str | None = None,
    site: str | None = None,
    config: RelayConfig = Depends(get_config),
    store: UsageStore = Depends(get_store),
    client: ComfyClient = Depends(get_client),
):
    """Return one dashboard dataset selected by ``type``.

    Raises:
        HTTPException: 400 for a missing or unknown ``type``.
    """
    site = site or config.dashboard_site
    logger.info("Admin GET request for type=%s site=%s.", type, site)

    if type == "stats":
        return store.get_site_stats(site)
    if type == "users":
        return store.get_users()
    if type == "generations":
        return [g for g in store.get_generations() if g.get("site") == site]
    if type == "userEvents":
        return [e for e in store.get_user_events() if e.get("site") == site]
    if type == "queue":
        return await _queue_snapshot(client)

    raise HTTPException(status_code=400, detail="Invalid type parameter")


# ---------------------------------------------------------------------------
# Actions.
# ---------------------------------------------------------------------------


def _user_not_found() -> HTTPException:
    return HTTPException(status_code=404, detail="User not found")


async def _test_comfyui(client: ComfyClient, comfy_url: str) -> dict:
    try:
        stats = await client.system_stats()
    except httpx.HTTPStatusError as exc:
        return {
            "success": False,
            "message": f"ComfyUI returned HTTP {exc.response.status_code}",
            "comfyUrl": comfy_url,
        }
    except (httpx.HTTPError, ValueError) as exc:
        return {
            "success": False,
            "message": "Cannot connect to ComfyUI",
            "error": str(exc),
            "comfyUrl": comfy_url,
        }
    return {"success": True, "message": "ComfyUI is accessible", "comfyStats": stats}


@router.post("", dependencies=[Depends(require_admin)])
async def admin_action(
    body: AdminActionRequest,
    request: Request,
    config: RelayConfig = Depends(get_config),
    store: UsageStore = Depends(get_store),
    client: ComfyClient = Depends(get_client),
) -> dict:
    """Run a named admin action.

    Raises:
        HTTPException: 400 for missing or invalid parameters and unknown
            actions, 404 when the target user does not exist.
    """
    action = body.action
    user_id = body.user_id
    logger.info("Admin POST action: %s", action)

    if action == "addCredits":
        if not user_id or not body.amount or body.amount <= 0:
            raise HTTPException(status_code=400, detail="Missing userId or invalid amount")
        if body.amount > MAX_CREDITS_PER_GRANT:
            raise HTTPException(
                status_code=400,
                detail=f"Cannot add more than {MAX_CREDITS_PER_GRANT} credits at once",
            )
        if not store.add_user_credits(user_id, body.amount):
            raise _user_not_found()
        return {"success": True, "message": f"Successfully added {body.amount} credits to user"}

    if action == "blockUser":
        if not user_id or body.blocked is None:
            raise HTTPException(status_code=400, detail="Missing userId or blocked status")
        if not store.block_user(user_id, body.blocked):
            raise _user_not_found()
        state = "blocked" if body.blocked else "unblocked"
        return {"success": True, "message": f"User {state} successfully"}

    if action == "cleanOldData":
        result = store.clean_old_data()
        return {
            "success": True,
            "result": result,
            "message": (
                f"Cleaned {result['eventsRemoved']} events and "
                f"{result['generationsRemoved']} generations"
            ),
        }

    if action == "updateCredits":
        if not user_id or body.credits is None or body.credits < 0:
            raise HTTPException(status_code=400, detail="Missing userId or invalid credits value")
        if not store.update_user_credits(user_id, body.credits):
            raise _user_not_found()
        return {"success": True, "message": f"Successfully set credits to {body.credits}"}

    if action == "getUserDetails":
        if not user_id:
            raise HTTPException(status_code=400, detail="Missing userId")
        user = store.get_user(user_id)
        if user is None:
            raise _user_not_found()
        site = config.dashboard_site

        def _recent(records: list[dict]) -> list[dict]:
            mine = [r for r in records if r.get("userId") == user_id and r.get("site") == site]
            return mine[:RECENT_ACTIVITY_LIMIT]

        return {
            "success": True,
            "user": user,
            "recentGenerations": _recent(store.get_generations()),
            "recentEvents": _recent(store.get_user_events()),
        }

    if action == "getSystemInfo":
        return {
            "success": True,
            "systemInfo": {
                "timestamp": isoformat(utc_now()),
                "version": __version__,
                "pythonVersion": platform.python_version(),
                "hasAdminPassword": bool(config.admin_password),
                "comfyUrl": config.comfy_url,
                "dataDir": str(store.resolve_data_dir()),
                "uptime": round(time.monotonic() - request.app.state.started_at, 3),
            },
        }

    if action == "testComfyUI":
        return await _test_comfyui(client, config.comfy_url)

    raise HTTPException(status_code=400, detail="Invalid action")


@router.put("", dependencies=[Depends(require_admin)])
async def update_user(
    body: AdminUserUpdate,
    action: str | None = None,
    store: UsageStore = Depends(get_store),
) -> dict:
    """Update a user's credits and/or blocked flag (``?action=user``)."""
    if action != "user":
        raise HTTPException(status_code=400, detail="Invalid PUT action")
    if not body.user_id:
        raise HTTPException(status_code=400, detail="Missing userId")

    updated = True
    if body.credits is not None:
        updated = updated and store.update_user_credits(body.user_id, body.credits)
    if body.is_blocked is not None:
        updated = updated and store.block_user(body.user_id, body.is_blocked)

    if not updated:
        raise HTTPException(status_code=404, detail="User not found or update failed")
    return {"success": True, "message": "User updated successfully"}


@router.delete("", dependencies=[Depends(require_admin)])
async def delete_admin_data(action: str | None = None, store: UsageStore = Depends(get_store)) -> dict:
    """Remove generations and events older than the retention window (``?action=oldData``)."""
    if action != "oldData":
        raise HTTPException(status_code=400, detail="Invalid DELETE action")

    result = store.clean_old_data()
    return {
        "success": True,
        "result": result,
        "message": (
            f"Deleted {result['eventsRemoved']} old events and "
            f"{result['generationsRemoved']} old generations"
        ),
    }
