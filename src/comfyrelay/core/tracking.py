"""Best-effort queue tracking notifications.

After a pose workflow is submitted, the relay tells an external queue
tracker about it so that a front-end can display the user's position.  The
notification is fire-and-forget: it is bounded by a short timeout and any
failure is logged and otherwise ignored.
"""

from __future__ import annotations

import logging

import httpx

logger = logging.getLogger(__name__)


async def track_generation(
    url: str | None,
    payload: dict,
    timeout: float = 5.0,
    transport: httpx.AsyncBaseTransport | None = None,
) -> bool:
    """POST *payload* to the queue tracker.

    Args:
        url: Tracker endpoint.  ``None`` disables tracking.
        payload: ``{"promptId", "userId", "deviceId", "pose", "gender"}``.
        timeout: Request timeout in seconds.
        transport: Optional ``httpx`` transport (used by tests).

    Returns:
        ``True`` if the tracker accepted the notification.
    """
    if not url:
        return False

    try:
        async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
            response = await client.post(url, json=payload)
            response.raise_for_status()
    except httpx.HTTPError as exc:
        logger.warning("Failed to track generation %s in queue: %s", payload.get("promptId"), exc)
        return False

    logger.info("Generation tracked in queue: %s", payload.get("promptId"))
    return True
