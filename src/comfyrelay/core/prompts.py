"""Prompt composition for the two generation profiles.

Headshot Profile
----------------
The professional headshot prompt is assembled from three fixed parts::

    [base prompt], [environment prompt], [style prompt]

Unknown environments fall back to ``office`` and unknown styles fall back to
``suit`` so that a stale front-end never produces an empty prompt.  The
negative prompt and sampler settings (10 steps, CFG 3.0) are constants.

Pose Profile
------------
The pose prompt is attribute driven.  Each slider value from the front-end
maps to a descriptive phrase using fixed bands::

    age       18-25 -> "young adult", 26-35 -> "adult", >35 -> "mature adult"
    bodyType  <30   -> "slim, petite", >70 -> "curvy"
    skinTone  <30   -> "dark skin",    >70 -> "pale skin, light skin"

Pose presets (LoRA file, strength, extra prompt text, IP-adapter weight,
sampler settings) are not hard-coded: they are read from a JSON catalogue
so each deployment ships its own.  The catalogue also names the fixed base
and informational LoRAs patched into every pose workflow::

    {
      "baseLora": {"name": "base_pose.safetensors", "strength": 0.2},
      "infoLora": {"name": "info_pose.safetensors", "weight": 1.0},
      "poses": {
        "standing-front": {
          "lora": "standing_pose.safetensors",
          "strength": 0.8,
          "prompt": "standing pose, front view",
          "negativePrompt": "",
          "ipadapterWeight": 0.5,
          "cfg": 2.5,
          "steps": 10
        }
      }
    }

A file without a ``poses`` key is read as a bare pose mapping.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Headshot profile constants.
# ---------------------------------------------------------------------------

HEADSHOT_BASE_PROMPT = (
    "professional portrait photo shoot, photography, perfect face, solo, high quality, "
    "4k, hd, highly detailed face, perfect eyes, headshot, medium shot"
)

ENVIRONMENT_PROMPTS: dict[str, str] = {
    "office": (
        "blurred corporate office background, formal, coorporate photo, linkedin profile "
        "portrait, professional lighting, depth of field, detailed indoor office background"
    ),
    "studio-white": (
        "plain white background, formal, coorporate photo, linkedin profile portrait, "
        "professional lighting, depth of field"
    ),
    "studio-grey": (
        "grey scale plain background, formal, coorporate photo, linkedin profile portrait, "
        "professional lighting, depth of field"
    ),
    "studio-color": (
        "plain color background, formal, professional lighting, coloured background, "
        "vibrant color, colorful modern backdrop background"
    ),
    "black-white": (
        "Black background, plain black background, dark background, professional lighting, "
        "vintage photo grain, ((classic black and white photo)), black&white, b&w, ((greyscale))"
    ),
    "outdoor": (
        "blurred office outdoor, Corporate Outdoor, formal, coorporate photo, linkedin "
        "profile portrait, professional lighting, depth of field, outdoor"
    ),
}
DEFAULT_ENVIRONMENT = "office"

STYLE_PROMPTS: dict[str, str] = {
    "suit": "wearing a suit, wearing office suit, office shirt, executive",
    "casual": "wearing casual clothes, casual, formal, modern look, casual look, decontracted",
    "formal": "Wearing formal clothes, executive clothes, prenium formal wear",
}
DEFAULT_STYLE = "suit"

HEADSHOT_NEGATIVE_PROMPT = (
    "painting, big chin, tattoos, 3d, cgi, illustration, blur, earings, wedding dress, "
    "lowres, text, error, ugly, duplicate, morbid, mutilated, extra fingers, mutated hands, "
    "poorly drawn hands, poorly drawn face, mutation, deformed, bad anatomy, bad proportions, "
    "extra limbs, cloned face, disfigured, gross proportions, malformed limbs, missing arms, "
    "missing legs, extra arms, extra legs, fused fingers, too many fingers, long neck, "
    "(4_persons), naked, nsfw, nude, (2_persons), Heterochromia, undressed, explicit, "
    "closeup, low neck, cleavage, facing camera, from front, sunglasses, full body"
)

HEADSHOT_STEPS = 10
HEADSHOT_CFG = 3.0

# ---------------------------------------------------------------------------
# Pose profile constants.
# ---------------------------------------------------------------------------

POSE_QUALITY_SUFFIX = "masterpiece, best quality, ultra detailed, photorealistic, 8k uhd"

POSE_BASE_NEGATIVE = (
    "painting, big chin, tattoos, 3d, makeup, cgi, illustration, blur, earings, "
    "wedding dress, {other}, lowres, text, error, ugly, duplicate, morbid, mutilated, "
    "extra fingers, mutated hands, poorly drawn hands, poorly drawn face, mutation, "
    "deformed, bad anatomy, bad proportions, extra limbs, cloned face, disfigured, "
    "gross proportions, malformed limbs, missing arms, missing legs, extra arms, "
    "extra legs, fused fingers, too many fingers, long neck, 4_persons, scarf, collar"
)


@dataclass
class PromptPair:
    """Positive and negative prompt text for one workflow submission."""

    positive: str
    negative: str


@dataclass
class HeadshotPrompt(PromptPair):
    """Headshot prompts plus the fixed sampler settings."""

    steps: int = HEADSHOT_STEPS
    cfg: float = HEADSHOT_CFG


@dataclass
class PosePreset:
    """Per-pose LoRA and sampler settings."""

    lora: str
    strength: float
    prompt: str = ""
    negative_prompt: str = ""
    ipadapter_weight: float = 0.5
    cfg: float = 3.0
    steps: int = 10

    @classmethod
    def from_dict(cls, data: dict) -> PosePreset:
        return cls(
            lora=data["lora"],
            strength=float(data["strength"]),
            prompt=data.get("prompt", ""),
            negative_prompt=data.get("negativePrompt", ""),
            ipadapter_weight=float(data.get("ipadapterWeight", 0.5)),
            cfg=float(data.get("cfg", 3.0)),
            steps=int(data.get("steps", 10)),
        )


@dataclass
class LoraSetting:
    """A fixed LoRA applied to every pose workflow."""

    name: str
    strength: float = 1.0


@dataclass
class PoseCatalog:
    """Pose presets plus the fixed base and informational LoRAs."""

    poses: dict[str, PosePreset] = field(default_factory=dict)
    base_lora: LoraSetting | None = None
    info_lora: LoraSetting | None = None


@dataclass
class PosePrompt(PromptPair):
    """Pose prompts plus the preset they were built from (if any)."""

    preset: PosePreset | None = None


# ---------------------------------------------------------------------------
# Headshot composition.
# ---------------------------------------------------------------------------


def build_headshot_prompt(environment: str, style: str) -> HeadshotPrompt:
    """Compose the headshot prompts for an environment and clothing style.

    Args:
        environment: Background id, e.g. ``"studio-white"``.
        style: Clothing id, e.g. ``"casual"``.

    Returns:
        :class:`HeadshotPrompt` with fixed negative prompt, steps and CFG.
    """
    environment_text = ENVIRONMENT_PROMPTS.get(environment, ENVIRONMENT_PROMPTS[DEFAULT_ENVIRONMENT])
    style_text = STYLE_PROMPTS.get(style, STYLE_PROMPTS[DEFAULT_STYLE])
    positive = f"{HEADSHOT_BASE_PROMPT}, {environment_text}, {style_text}"

    logger.info("Headshot prompt built (environment=%s, style=%s).", environment, style)
    logger.debug("Positive prompt: %s", positive)

    return HeadshotPrompt(positive=positive, negative=HEADSHOT_NEGATIVE_PROMPT)


# ---------------------------------------------------------------------------
# Pose composition.
# ---------------------------------------------------------------------------


def _lora_setting(data, strength_key: str) -> LoraSetting | None:
    if not isinstance(data, dict) or not data.get("name"):
        return None
    return LoraSetting(name=data["name"], strength=float(data.get(strength_key, 1.0)))


def load_pose_catalog(path: Path) -> PoseCatalog:
    """Load the pose preset catalogue.

    A missing file yields an empty catalogue (every pose then runs with the
    template's own LoRA and sampler settings).  Malformed entries are skipped.

    Args:
        path: Path to the catalogue JSON file.

    Returns:
        :class:`PoseCatalog`.
    """
    if not path.exists():
        logger.warning("Pose presets file %s not found; no presets loaded.", path)
        return PoseCatalog()

    with open(path, encoding="utf-8") as handle:
        raw = json.load(handle)

    pose_map = raw.get("poses", raw)
    catalog = PoseCatalog(
        base_lora=_lora_setting(raw.get("baseLora"), "strength"),
        info_lora=_lora_setting(raw.get("infoLora"), "weight"),
    )
    for pose_id, data in pose_map.items():
        if pose_id in ("baseLora", "infoLora"):
            continue
        try:
            catalog.poses[pose_id] = PosePreset.from_dict(data)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Skipping malformed pose preset '%s': %s", pose_id, exc)
    return catalog


def _age_phrase(age: int) -> str | None:
    if 18 <= age <= 25:
        return "young adult"
    if 25 < age <= 35:
        return "adult"
    if age > 35:
        return "mature adult"
    return None


def build_pose_prompt(
    *,
    gender: str,
    age: int,
    body_type: int,
    skin_tone: int,
    pose: str,
    presets: dict[str, PosePreset],
) -> PosePrompt:
    """Compose the pose prompts from the front-end's attribute sliders.

    Args:
        gender: ``"female"`` or ``"male"``.
        age: Age in years.
        body_type: Slider value 0-100.
        skin_tone: Slider value 0-100.
        pose: Pose id looked up in *presets*.
        presets: ``poses`` of the catalogue from :func:`load_pose_catalog`.

    Returns:
        :class:`PosePrompt`; ``preset`` is ``None`` for unknown poses.
    """
    is_female = gender == "female"
    preset = presets.get(pose)

    parts = [f"a {'woman' if is_female else 'man'}, perfect face, detailed face, solo"]

    age_phrase = _age_phrase(age)
    if age_phrase:
        parts.append(age_phrase)

    if body_type < 30:
        parts.append("slim, petite")
    elif body_type > 70:
        parts.append("curvy")

    if skin_tone < 30:
        parts.append("dark skin")
    elif skin_tone > 70:
        parts.append("pale skin, light skin")

    if preset and preset.prompt:
        parts.append(preset.prompt)

    parts.append(POSE_QUALITY_SUFFIX)

    negative = POSE_BASE_NEGATIVE.format(other="(man)" if is_female else "(woman)")
    if preset and preset.negative_prompt:
        negative = f"{negative}, {preset.negative_prompt}"

    if preset is None:
        logger.warning("No preset for pose '%s'; using template defaults.", pose)

    return PosePrompt(positive=", ".join(parts), negative=negative, preset=preset)
