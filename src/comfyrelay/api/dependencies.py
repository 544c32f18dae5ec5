"""FastAPI dependencies shared by the public and admin routers.

Long-lived services are created by the application lifespan and stored on
``app.state``.  Routes receive them through these small accessors so that
tests can swap any of them on a running app.
"""

from __future__ import annotations

from fastapi import Request

from comfyrelay.core.comfy_client import ComfyClient
from comfyrelay.core.config import RelayConfig
from comfyrelay.core.generation import GenerationService
from comfyrelay.core.storage import UsageStore


def get_config(request: Request) -> RelayConfig:
    return request.app.state.config


def get_store(request: Request) -> UsageStore:
    return request.app.state.store


def get_client(request: Request) -> ComfyClient:
    return request.app.state.comfy_client


def get_generation(request: Request) -> GenerationService:
    return request.app.state.generation


def client_ip(request: Request) -> str:
    """Return the caller's address as reported by the fronting proxy.

    ``x-forwarded-for`` wins over ``x-real-ip``; without either header the
    address is ``"unknown"``.
    """
    return (
        request.headers.get("x-forwarded-for")
        or request.headers.get("x-real-ip")
        or "unknown"
    )
