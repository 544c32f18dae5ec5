"""Tests for comfyrelay.core.config — configuration management.

Tests cover:
- Default values for backend, polling, site and upload settings.
- Environment variable overrides via the COMFYRELAY_ prefix.
- Automatic directory creation on initialisation.
- Derived paths for workflow templates and the pose catalogue.
- Pydantic validation constraints.
"""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from comfyrelay.core.config import RelayConfig


def _config(temp_dir: Path, **overrides) -> RelayConfig:
    return RelayConfig(
        _env_file=None,
        data_dir=temp_dir / "data",
        upload_dir=temp_dir / "uploads",
        workflows_dir=temp_dir / "workflows",
        **overrides,
    )


class TestConfigDefaults:
    """Verify that RelayConfig provides the documented defaults."""

    def test_backend_defaults(self, monkeypatch, temp_dir: Path):
        monkeypatch.delenv("COMFYRELAY_COMFY_URL", raising=False)
        cfg = _config(temp_dir)
        assert cfg.comfy_url == "http://127.0.0.1:8188"
        assert cfg.comfy_timeout == 30.0
        assert cfg.status_timeout == 5.0
        assert cfg.history_timeout == 10.0

    def test_polling_defaults(self, temp_dir: Path):
        cfg = _config(temp_dir)
        assert cfg.poll_interval == 5.0
        assert cfg.history_poll_attempts == 60
        assert cfg.queue_poll_attempts == 120
        assert cfg.upload_settle_delay == 1.0

    def test_site_defaults(self, temp_dir: Path):
        cfg = _config(temp_dir)
        assert cfg.headshot_site == "deeplab"
        assert cfg.pose_site == "nudeet"
        assert cfg.dashboard_site == "deeplab"

    def test_upload_defaults(self, temp_dir: Path):
        cfg = _config(temp_dir)
        assert cfg.max_upload_bytes == 10 * 1024 * 1024
        assert set(cfg.allowed_content_types) == {
            "image/jpeg",
            "image/jpg",
            "image/png",
            "image/webp",
        }

    def test_admin_password_unset_by_default(self, monkeypatch, temp_dir: Path):
        monkeypatch.delenv("COMFYRELAY_ADMIN_PASSWORD", raising=False)
        assert _config(temp_dir).admin_password is None

    def test_admin_site_overrides_dashboard_site(self, temp_dir: Path):
        cfg = _config(temp_dir, admin_site="nudeet")
        assert cfg.dashboard_site == "nudeet"


class TestConfigEnvironment:
    """Verify COMFYRELAY_* environment variables are honoured."""

    def test_env_overrides_comfy_url(self, monkeypatch, temp_dir: Path):
        monkeypatch.setenv("COMFYRELAY_COMFY_URL", "http://gpu-box:8188")
        assert _config(temp_dir).comfy_url == "http://gpu-box:8188"

    def test_env_peer_dirs_parsed_as_json_list(self, monkeypatch, temp_dir: Path):
        monkeypatch.setenv("COMFYRELAY_PEER_DATA_DIRS", '["/srv/a", "/srv/b"]')
        cfg = _config(temp_dir)
        assert cfg.peer_data_dirs == [Path("/srv/a"), Path("/srv/b")]


class TestConfigDirectoryCreation:
    """Verify that RelayConfig creates the directories it owns."""

    def test_owned_directories_created(self, temp_dir: Path):
        cfg = _config(temp_dir)
        assert cfg.data_dir.is_dir()
        assert cfg.upload_dir.is_dir()
        assert cfg.workflows_dir.is_dir()

    def test_shared_dir_not_created(self, temp_dir: Path):
        shared = temp_dir / "shared"
        cfg = _config(temp_dir, shared_data_dir=shared)
        assert cfg.shared_data_dir == shared
        assert not shared.exists()


class TestConfigPaths:
    """Verify derived template and catalogue paths."""

    def test_headshot_workflow_path(self, temp_dir: Path):
        cfg = _config(temp_dir)
        assert cfg.headshot_workflow_path == temp_dir / "workflows" / "proavatar_workflow.json"

    def test_pose_workflow_variants(self, temp_dir: Path):
        cfg = _config(temp_dir)
        assert cfg.pose_workflow_path().name == "pose_workflow_base.json"
        assert cfg.pose_workflow_path(censored=True).name == "pose_workflow_censored.json"

    def test_poses_path(self, temp_dir: Path):
        assert _config(temp_dir).poses_path.name == "poses.json"

    def test_templates_dir_contains_dashboard(self, temp_dir: Path):
        assert (_config(temp_dir).templates_dir / "admin.html").exists()


class TestConfigValidation:
    """Verify Pydantic validation constraints on config fields."""

    def test_invalid_port_too_low(self, temp_dir: Path):
        with pytest.raises(ValidationError):
            _config(temp_dir, server_port=80)

    def test_zero_poll_attempts_rejected(self, temp_dir: Path):
        with pytest.raises(ValidationError):
            _config(temp_dir, history_poll_attempts=0)

    def test_negative_initial_credits_rejected(self, temp_dir: Path):
        with pytest.raises(ValidationError):
            _config(temp_dir, initial_credits=-1)
