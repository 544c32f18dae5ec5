"""Template workflow loading and node patching.

A workflow document is the JSON graph ComfyUI executes: a mapping of node id
to ``{"inputs": {...}, "class_type": ..., "_meta": {...}}``.  The relay never
builds graphs itself.  It loads a template exported from ComfyUI and patches
a fixed set of node ids with request-specific values.

Node Map
--------
Headshot template:

====  ==================================================
Node  Patched inputs
====  ==================================================
525   ``image`` — uploaded source photo
320   ``text`` — positive prompt
12    ``text`` — negative prompt
524   ``session_id``, ``user_hash`` — save node
14    ``seed``, ``steps``, ``cfg`` — sampler
====  ==================================================

Pose template:

====  ==================================================
Node  Patched inputs
====  ==================================================
320   ``text`` — positive prompt
12    ``text`` — negative prompt
499   replaced by a ``LoadImage`` node for the upload
502   pose LoRA name and strengths
392   base LoRA from the pose catalogue
328   informational LoRA from the pose catalogue
3     IP-adapter ``weight``
14    ``seed`` (plus ``cfg``/``steps`` from the pose preset)
533   save node (falls back to 524)
====  ==================================================

Nodes missing from a template are skipped with a warning.  Patching always
works on a deep copy so a cached template is never modified.
"""

from __future__ import annotations

import copy
import json
import logging
import random
import string
import time
from dataclasses import dataclass, field
from pathlib import Path

from comfyrelay.core.prompts import HeadshotPrompt, LoraSetting, PosePrompt

logger = logging.getLogger(__name__)

Workflow = dict[str, dict]

# ---------------------------------------------------------------------------
# Node identifiers.
# ---------------------------------------------------------------------------

IMAGE_INPUT_NODE = "525"
POSITIVE_PROMPT_NODE = "320"
NEGATIVE_PROMPT_NODE = "12"
SAVE_NODE = "524"
SAMPLER_NODE = "14"

POSE_IMAGE_NODE = "499"
POSE_LORA_NODE = "502"
BASE_LORA_NODE = "392"
INFO_LORA_NODE = "328"
IPADAPTER_NODE = "3"
POSE_SAVE_NODE = "533"

HEADSHOT_CRITICAL_NODES = (
    IMAGE_INPUT_NODE,
    POSITIVE_PROMPT_NODE,
    NEGATIVE_PROMPT_NODE,
    SAVE_NODE,
    SAMPLER_NODE,
)

# Output nodes searched for the finished image, best first: final JPG save,
# upscale, composite, face swap, VAE decode.
HEADSHOT_OUTPUT_PRIORITY = ("524", "540", "562", "89", "15")

HEADSHOT_SEED_RANGE = 4294967295
POSE_SEED_RANGE = 1_000_000_000_000_000

_BASE36 = string.digits + string.ascii_lowercase


class WorkflowError(Exception):
    """A workflow template could not be loaded."""


class WorkflowNotFoundError(WorkflowError):
    """The workflow template file does not exist."""


# ---------------------------------------------------------------------------
# Identifier helpers.
# ---------------------------------------------------------------------------


def random_token(length: int) -> str:
    """Return *length* random lowercase base-36 characters."""
    return "".join(random.choices(_BASE36, k=length))


def make_session_id(prefix: str) -> str:
    """Return ``<prefix>_session_<epoch ms>_<9 chars>``."""
    return f"{prefix}_session_{int(time.time() * 1000)}_{random_token(9)}"


def make_client_id(prefix: str) -> str:
    """Return ``<prefix>_<epoch ms>_<9 chars>`` for ``/prompt`` submissions."""
    return f"{prefix}_{int(time.time() * 1000)}_{random_token(9)}"


# ---------------------------------------------------------------------------
# Loading.
# ---------------------------------------------------------------------------


def load_workflow(path: Path) -> Workflow:
    """Load a workflow template from disk.

    Args:
        path: Path to the exported ComfyUI API-format JSON.

    Returns:
        The parsed workflow document.

    Raises:
        WorkflowNotFoundError: If *path* does not exist.
        WorkflowError: If the file is not a JSON object.
    """
    path = Path(path)
    logger.info("Loading workflow template %s.", path)

    if not path.exists():
        raise WorkflowNotFoundError(f"Workflow file not found at: {path}")

    try:
        with open(path, encoding="utf-8") as handle:
            workflow = json.load(handle)
    except (OSError, ValueError) as exc:
        raise WorkflowError(f"Failed to load workflow {path}: {exc}") from exc

    if not isinstance(workflow, dict):
        raise WorkflowError(f"Workflow {path} is not a JSON object")

    logger.debug("Workflow contains nodes: %s", list(workflow)[:10])
    return workflow


# ---------------------------------------------------------------------------
# Patching.
# ---------------------------------------------------------------------------


def _node_inputs(workflow: Workflow, node_id: str) -> dict | None:
    """Return the ``inputs`` dict of a node, or ``None`` if it is absent."""
    node = workflow.get(node_id)
    if not isinstance(node, dict) or not isinstance(node.get("inputs"), dict):
        logger.warning("Node %s not found in workflow.", node_id)
        return None
    return node["inputs"]


@dataclass
class PatchedWorkflow:
    """A patched workflow plus the values chosen while patching.

    Attributes:
        workflow: The document to submit.
        seed: Sampler seed written to node 14, or ``None`` if absent.
        session_id: Session id written to the save node, or ``None``.
        save_node: Node id whose output is the final image.
        loras: Summary of LoRA patches, for logging.
    """

    workflow: Workflow
    seed: int | None = None
    session_id: str | None = None
    save_node: str = SAVE_NODE
    loras: list[dict] = field(default_factory=list)


def _set_session(workflow: Workflow, node_id: str, prefix: str) -> str | None:
    inputs = _node_inputs(workflow, node_id)
    if inputs is None:
        return None
    session_id = make_session_id(prefix)
    inputs["session_id"] = session_id
    inputs["user_hash"] = random_token(16)
    return session_id


def patch_headshot_workflow(
    template: Workflow,
    *,
    uploaded_filename: str,
    prompt: HeadshotPrompt,
    session_prefix: str = "deeplab",
) -> PatchedWorkflow:
    """Patch the headshot template for one request.

    Args:
        template: Workflow loaded by :func:`load_workflow`; left untouched.
        uploaded_filename: Name returned by the backend's image upload.
        prompt: Prompts and sampler settings.
        session_prefix: Prefix for the save node's session id.

    Returns:
        :class:`PatchedWorkflow` ready for submission.
    """
    workflow = copy.deepcopy(template)
    result = PatchedWorkflow(workflow=workflow)

    inputs = _node_inputs(workflow, IMAGE_INPUT_NODE)
    if inputs is not None:
        inputs["image"] = uploaded_filename

    inputs = _node_inputs(workflow, POSITIVE_PROMPT_NODE)
    if inputs is not None:
        inputs["text"] = prompt.positive

    inputs = _node_inputs(workflow, NEGATIVE_PROMPT_NODE)
    if inputs is not None:
        inputs["text"] = prompt.negative

    result.session_id = _set_session(workflow, SAVE_NODE, session_prefix)

    inputs = _node_inputs(workflow, SAMPLER_NODE)
    if inputs is not None:
        result.seed = random.randrange(HEADSHOT_SEED_RANGE)
        inputs["seed"] = result.seed
        inputs["steps"] = prompt.steps
        inputs["cfg"] = prompt.cfg

    missing = [node_id for node_id in HEADSHOT_CRITICAL_NODES if node_id not in workflow]
    if missing:
        logger.warning(
            "Missing critical nodes %s; available nodes: %s",
            missing,
            list(workflow)[:20],
        )

    logger.info(
        "Headshot workflow patched (image=%s, seed=%s, steps=%s, cfg=%s).",
        uploaded_filename,
        result.seed,
        prompt.steps,
        prompt.cfg,
    )
    return result


def patch_pose_workflow(
    template: Workflow,
    *,
    uploaded_filename: str,
    prompt: PosePrompt,
    base_lora: LoraSetting | None = None,
    info_lora: LoraSetting | None = None,
    session_prefix: str = "nudeet",
) -> PatchedWorkflow:
    """Patch the pose template for one request.

    Args:
        template: Workflow loaded by :func:`load_workflow`; left untouched.
        uploaded_filename: Name of the image uploaded to the backend.
        prompt: Prompts plus the pose preset (may be ``None``).
        base_lora: LoRA written to node 392, if any.
        info_lora: LoRA written to node 328, if any (``strength`` is
            written as ``lora_weight``).
        session_prefix: Prefix for the save node's session id.

    Returns:
        :class:`PatchedWorkflow`; ``save_node`` is ``533`` when the template
        has it, otherwise ``524``.
    """
    workflow = copy.deepcopy(template)
    preset = prompt.preset

    inputs = _node_inputs(workflow, POSITIVE_PROMPT_NODE)
    if inputs is not None:
        inputs["text"] = prompt.positive

    inputs = _node_inputs(workflow, NEGATIVE_PROMPT_NODE)
    if inputs is not None:
        inputs["text"] = prompt.negative

    if POSE_IMAGE_NODE in workflow:
        workflow[POSE_IMAGE_NODE] = {
            "inputs": {"image": uploaded_filename},
            "class_type": "LoadImage",
            "_meta": {"title": "Load Uploaded Image"},
        }

    save_node = POSE_SAVE_NODE if POSE_SAVE_NODE in workflow else SAVE_NODE
    result = PatchedWorkflow(workflow=workflow, save_node=save_node)

    if preset is not None:
        inputs = _node_inputs(workflow, POSE_LORA_NODE)
        if inputs is not None:
            inputs["lora_name"] = preset.lora
            inputs["strength_model"] = preset.strength
            inputs["strength_clip"] = preset.strength
            result.loras.append(
                {"node": POSE_LORA_NODE, "name": preset.lora, "strength": preset.strength}
            )

    if base_lora is not None:
        inputs = _node_inputs(workflow, BASE_LORA_NODE)
        if inputs is not None:
            inputs["lora_name"] = base_lora.name
            inputs["strength_model"] = base_lora.strength
            inputs["strength_clip"] = base_lora.strength
            result.loras.append(
                {"node": BASE_LORA_NODE, "name": base_lora.name, "strength": base_lora.strength}
            )

    if info_lora is not None:
        inputs = _node_inputs(workflow, INFO_LORA_NODE)
        if inputs is not None:
            inputs["lora_name"] = info_lora.name
            inputs["lora_weight"] = info_lora.strength
            result.loras.append(
                {"node": INFO_LORA_NODE, "name": info_lora.name, "weight": info_lora.strength}
            )

    if preset is not None:
        inputs = _node_inputs(workflow, IPADAPTER_NODE)
        if inputs is not None:
            inputs["weight"] = preset.ipadapter_weight

    inputs = _node_inputs(workflow, SAMPLER_NODE)
    if inputs is not None:
        result.seed = random.randrange(POSE_SEED_RANGE)
        inputs["seed"] = result.seed
        if preset is not None:
            inputs["cfg"] = preset.cfg
            inputs["steps"] = preset.steps

    result.session_id = _set_session(workflow, save_node, session_prefix)

    logger.info(
        "Pose workflow patched (image=%s, seed=%s, save_node=%s, loras=%s).",
        uploaded_filename,
        result.seed,
        save_node,
        result.loras,
    )
    return result
