"""Configuration management for the ComfyUI relay.

This module provides centralized configuration management using Pydantic
Settings.  All configuration is loaded from environment variables with the
``COMFYRELAY_`` prefix, allowing each deployment (one per front-end site, or
a single process serving both) to be customised without code changes.

Environment Variable Loading
-----------------------------
Configuration values are loaded in the following priority order:

1. Environment variables (``COMFYRELAY_*`` prefix)
2. ``.env`` file in the working directory
3. Default values defined in :class:`RelayConfig`

Example .env file::

    COMFYRELAY_COMFY_URL=http://10.0.0.5:8188
    COMFYRELAY_ADMIN_PASSWORD=change-me
    COMFYRELAY_SHARED_DATA_DIR=/srv/shared_data
    COMFYRELAY_PEER_DATA_DIRS=["/srv/nudeet/data"]

Global Configuration Instance
------------------------------
A global ``config`` instance is created automatically at module import time
and serves as the single source of truth across the application.

Directory Management
--------------------
The configuration creates the local directories it owns on initialisation:

- ``data_dir``: local JSON usage files (users, generations, events)
- ``upload_dir``: temporary storage for uploaded source images
- ``workflows_dir``: template workflow documents

``shared_data_dir`` is never created: it is only used when an operator has
provisioned it, otherwise the store falls back to ``data_dir``.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class RelayConfig(BaseSettings):
    """Main configuration for the ComfyUI relay.

    Attributes
    ----------
    Backend Settings:
        comfy_url : str
            Base URL of the ComfyUI server.
        comfy_timeout : float
            Timeout for uploads and prompt submission, in seconds.
        status_timeout : float
            Timeout for the ``/system_stats`` reachability probe.
        history_timeout : float
            Timeout for each ``/history`` and ``/queue`` poll request.

    Polling:
        poll_interval : float
            Seconds between poll attempts.
        history_poll_attempts : int
            Attempt cap for the history-based poll loop (headshot profile).
        queue_poll_attempts : int
            Attempt cap for the queue-based poll loop (pose profile).
        upload_settle_delay : float
            Pause after an upload before the workflow is submitted.

    Sites:
        headshot_site : str
            Site identifier recorded for headshot generations.
        pose_site : str
            Site identifier recorded for pose generations.
        admin_site : str | None
            Site shown by the admin API by default (headshot site if unset).

    Admin:
        admin_password : str | None
            Shared secret for the admin API.  When unset, every admin
            request is rejected.

    Storage:
        data_dir : Path
            Local directory holding the JSON usage files.
        shared_data_dir : Path | None
            Directory shared by several sites; preferred when it exists.
        peer_data_dirs : list[Path]
            Other sites' data directories merged into admin listings.
        retention_days : int
            Age after which generations and events are removed by the
            clean-old-data action.
        initial_credits : int
            Credits granted to a user on first visit.

    Workflows and uploads:
        workflows_dir, headshot_workflow, pose_workflow,
        pose_workflow_censored, poses_file, upload_dir, max_upload_bytes,
        allowed_content_types

    Queue tracking:
        queue_tracking_url : str | None
            Endpoint notified (best effort) after each pose submission.
        queue_tracking_timeout : float

    Server:
        templates_dir, server_host, server_port, log_level

    Examples
    --------
    Create a custom configuration::

        >>> custom = RelayConfig(comfy_url="http://gpu-box:8188", poll_interval=1.0)

    Use the global configuration instance::

        >>> from comfyrelay.core.config import config
        >>> config.headshot_site
        'deeplab'
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="COMFYRELAY_",
        case_sensitive=False,
    )

    # Backend
    comfy_url: str = Field(
        default="http://127.0.0.1:8188",
        description="Base URL of the ComfyUI server",
    )
    comfy_timeout: float = Field(default=30.0, gt=0)
    status_timeout: float = Field(default=5.0, gt=0)
    history_timeout: float = Field(default=10.0, gt=0)

    # Polling
    poll_interval: float = Field(
        default=5.0,
        ge=0,
        description="Seconds to sleep between poll attempts",
    )
    history_poll_attempts: int = Field(default=60, ge=1)
    queue_poll_attempts: int = Field(default=120, ge=1)
    upload_settle_delay: float = Field(default=1.0, ge=0)

    # Sites
    headshot_site: str = Field(default="deeplab")
    pose_site: str = Field(default="nudeet")
    admin_site: str | None = Field(
        default=None,
        description="Site shown by the admin API (defaults to headshot_site)",
    )

    # Admin
    admin_password: str | None = Field(
        default=None,
        description="Shared secret for the admin API",
    )

    # Storage
    data_dir: Path = Field(
        default=Path("data"),
        description="Local directory for unified_users.json, generations.json, events.json",
    )
    shared_data_dir: Path | None = Field(
        default=None,
        description="Shared data directory, used instead of data_dir when it exists",
    )
    peer_data_dirs: list[Path] = Field(
        default_factory=list,
        description="Other sites' data directories merged into listings",
    )
    retention_days: int = Field(default=30, ge=1)
    initial_credits: int = Field(default=0, ge=0)

    # Workflows and uploads
    workflows_dir: Path = Field(
        default=Path("workflows"),
        description="Directory holding the template workflow documents",
    )
    headshot_workflow: str = Field(default="proavatar_workflow.json")
    pose_workflow: str = Field(default="pose_workflow_base.json")
    pose_workflow_censored: str = Field(default="pose_workflow_censored.json")
    poses_file: str = Field(default="poses.json")
    upload_dir: Path = Field(
        default=Path("uploads"),
        description="Temporary storage for uploaded source images",
    )
    max_upload_bytes: int = Field(default=10 * 1024 * 1024, gt=0)
    allowed_content_types: list[str] = Field(
        default_factory=lambda: ["image/jpeg", "image/jpg", "image/png", "image/webp"],
    )

    # Queue tracking
    queue_tracking_url: str | None = Field(
        default=None,
        description="Endpoint notified after each pose submission (best effort)",
    )
    queue_tracking_timeout: float = Field(default=5.0, gt=0)

    # Server
    templates_dir: Path = Field(
        default=Path(__file__).resolve().parent.parent / "templates",
        description="Directory holding the admin dashboard HTML",
    )
    server_host: str = Field(default="0.0.0.0")
    server_port: int = Field(default=3000, ge=1024, le=65535)
    log_level: str = Field(default="INFO")

    def __init__(self, **kwargs):
        """Initialize configuration and create the directories it owns.

        Args:
            **kwargs: Configuration overrides (typically from environment variables)
        """
        super().__init__(**kwargs)

        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.upload_dir.mkdir(parents=True, exist_ok=True)
        self.workflows_dir.mkdir(parents=True, exist_ok=True)

    @property
    def dashboard_site(self) -> str:
        """Site the admin API reports on when no site is requested."""
        return self.admin_site or self.headshot_site

    @property
    def headshot_workflow_path(self) -> Path:
        return self.workflows_dir / self.headshot_workflow

    def pose_workflow_path(self, censored: bool = False) -> Path:
        """Return the pose template path, picking the censored variant if asked."""
        name = self.pose_workflow_censored if censored else self.pose_workflow
        return self.workflows_dir / name

    @property
    def poses_path(self) -> Path:
        return self.workflows_dir / self.poses_file


# Global configuration instance.  Loads values from environment variables
# (COMFYRELAY_* prefix) and the .env file.
config = RelayConfig()
