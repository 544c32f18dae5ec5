"""ComfyUI Relay - generation endpoints and usage tracking for ComfyUI front-ends."""

__version__ = "1.0.0"

from comfyrelay.core.config import RelayConfig, config
from comfyrelay.core.storage import UsageStore

__all__ = [
    "RelayConfig",
    "UsageStore",
    "config",
]
