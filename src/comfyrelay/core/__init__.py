"""Core functionality for relaying generation requests to ComfyUI.

Architecture Overview
---------------------
1. **Configuration** (config.py): Pydantic Settings, ``COMFYRELAY_`` prefix.
2. **Usage store** (storage.py): flat JSON users, generations and events.
3. **Workflows** (workflow.py, prompts.py): template loading, prompt
   composition and node patching.
4. **Backend** (comfy_client.py, tracking.py): async HTTP client for
   ComfyUI and the best-effort queue tracker notification.
5. **Orchestration** (generation.py): one generation request end to end.
"""
