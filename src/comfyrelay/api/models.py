"""Pydantic request models for the relay API.

The front-ends send camelCase JSON.  Fields are declared in snake_case with
camelCase aliases, and either spelling is accepted on input.

Models
------
PoseOptions
    The ``options`` JSON form field of ``POST /api/pose/generate``.
VisitRequest
    Payload for ``POST /api/users/visit``.
AdminActionRequest
    Payload for ``POST /api/admin``; which fields are required depends on
    ``action`` and is checked by the route.
AdminUserUpdate
    Payload for ``PUT /api/admin?action=user``.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class PoseOptions(_CamelModel):
    """Attribute sliders and flags chosen on the pose front-end.

    Attributes:
        gender: ``"female"`` or ``"male"``.
        age: Age in years (18-80).
        body_type: Body type slider, 0-100.
        skin_tone: Skin tone slider, 0-100.
        pose: Pose id from the pose catalogue.
        censored: Use the censored workflow template.
    """

    gender: str = Field(default="female", description="'female' or 'male'.")
    age: int = Field(default=25, ge=18, le=80, description="Age in years.")
    body_type: int = Field(default=50, ge=0, le=100, alias="bodyType")
    skin_tone: int = Field(default=50, ge=0, le=100, alias="skinTone")
    pose: str = Field(default="", description="Pose id from the pose catalogue.")
    censored: bool = Field(default=False, description="Use the censored template.")


class VisitRequest(_CamelModel):
    """Request body for ``POST /api/users/visit``."""

    user_id: str = Field(..., min_length=1, alias="userId")
    device_id: str = Field(..., min_length=1, alias="deviceId")
    site: str | None = Field(
        default=None,
        description="Site id recorded in sitesUsed (defaults to the headshot site).",
    )


class AdminActionRequest(_CamelModel):
    """Request body for ``POST /api/admin``.

    Attributes:
        action: One of ``addCredits``, ``blockUser``, ``cleanOldData``,
            ``updateCredits``, ``getUserDetails``, ``getSystemInfo``,
            ``testComfyUI``.
        user_id: Target user for user actions.
        amount: Credits to add (``addCredits``).
        blocked: New blocked flag (``blockUser``).
        credits: New credit balance (``updateCredits``).
    """

    action: str = Field(..., description="Admin action name.")
    user_id: str | None = Field(default=None, alias="userId")
    amount: int | None = Field(default=None)
    blocked: bool | None = Field(default=None)
    credits: int | None = Field(default=None)


class AdminUserUpdate(_CamelModel):
    """Request body for ``PUT /api/admin?action=user``."""

    user_id: str | None = Field(default=None, alias="userId")
    credits: int | None = Field(default=None, ge=0)
    is_blocked: bool | None = Field(default=None, alias="isBlocked")
