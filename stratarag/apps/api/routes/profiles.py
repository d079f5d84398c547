from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from stratarag.apps.api.deps import get_caller, get_db
from stratarag.apps.api.errors import error_detail
from stratarag.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from stratarag.apps.api.response import SuccessEnvelope, success_response
from stratarag.domain.models import APP_ROLES, Profile
from stratarag.persistence.repos import access as access_repo
from stratarag.services.access.engine import AccessProfile, can_update_profile, can_view_profile


logger = logging.getLogger(__name__)
router = APIRouter(prefix="/profiles", tags=["profiles"], responses=DEFAULT_ERROR_RESPONSES)


class ProfileResponse(BaseModel):
    id: str
    org_id: str | None
    app_role: str | None
    email: str | None
    display_name: str | None


class ProfileUpdateRequest(BaseModel):
    display_name: str | None = Field(default=None, max_length=200)
    email: str | None = Field(default=None, max_length=320)
    app_role: str | None = None

    model_config = {"extra": "forbid"}


def _to_response(profile: Profile) -> ProfileResponse:
    return ProfileResponse(
        id=profile.id,
        org_id=profile.org_id,
        app_role=profile.app_role,
        email=profile.email,
        display_name=profile.display_name,
    )


async def _visible_profile(db: AsyncSession, caller: AccessProfile, profile_id: str) -> Profile:
    profile = await access_repo.get_profile(db, profile_id)
    if profile is None or not can_view_profile(caller, profile):
        raise HTTPException(status_code=404, detail=error_detail("NOT_FOUND", "Profile not found"))
    return profile


@router.get("/{profile_id}", response_model=SuccessEnvelope[ProfileResponse])
async def get_profile(
    request: Request,
    profile_id: str,
    caller: AccessProfile = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
) -> dict:
    profile = await _visible_profile(db, caller, profile_id)
    return success_response(request=request, data=_to_response(profile))


@router.patch("/{profile_id}", response_model=SuccessEnvelope[ProfileResponse])
async def update_profile(
    request: Request,
    profile_id: str,
    payload: ProfileUpdateRequest,
    caller: AccessProfile = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
) -> dict:
    profile = await _visible_profile(db, caller, profile_id)
    if not can_update_profile(caller, profile):
        raise HTTPException(
            status_code=403,
            detail=error_detail("AUTH_FORBIDDEN", "Caller may not update this profile"),
        )
    changes = payload.model_dump(exclude_unset=True)
    if "app_role" in changes:
        # Role changes are an escalation path, so only super admins may make them.
        if not caller.is_super_admin:
            raise HTTPException(
                status_code=403,
                detail=error_detail("AUTH_FORBIDDEN", "Only super admins may change app roles"),
            )
        if changes["app_role"] is not None and changes["app_role"] not in APP_ROLES:
            raise HTTPException(
                status_code=422,
                detail=error_detail("PROFILE_VALIDATION_ERROR", f"Unsupported app role: {changes['app_role']}"),
            )
    for key, value in changes.items():
        setattr(profile, key, value)
    await db.commit()
    await db.refresh(profile)
    logger.info(
        "profile_updated profile_id=%s caller_id=%s fields=%s",
        profile.id,
        caller.caller_id,
        ",".join(sorted(changes)),
    )
    return success_response(request=request, data=_to_response(profile))
