from __future__ import annotations

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from helpdesk.dependencies.auth import CurrentSession
from helpdesk.dependencies.services import ProfileRepositoryDep
from helpdesk.profiles.models import Profile

router = APIRouter(prefix="/profiles", tags=["profiles"])


class ProfileModel(BaseModel):
    id: str
    email: str | None = None
    nickname: str | None = None
    phone: str | None = None
    avatar_url: str | None = None
    is_support: bool
    is_admin: bool
    created_at: str
    updated_at: str

    @classmethod
    def from_entity(cls, profile: Profile) -> "ProfileModel":
        return cls(
            id=profile.id,
            email=profile.email,
            nickname=profile.nickname,
            phone=profile.phone,
            avatar_url=profile.avatar_url,
            is_support=profile.is_support,
            is_admin=profile.is_admin,
            created_at=profile.created_at.isoformat(),
            updated_at=profile.updated_at.isoformat(),
        )


class ProfileUpdateRequest(BaseModel):
    nickname: str | None = Field(default=None, max_length=150)
    phone: str | None = Field(default=None, max_length=50)
    avatar_url: str | None = None


@router.get("/me", response_model=ProfileModel)
async def get_own_profile(session: CurrentSession, profiles: ProfileRepositoryDep) -> ProfileModel:
    profile = await profiles.get_profile(session.user_id)
    if profile is None:
        raise HTTPException(status_code=404, detail="Profile not found")
    return ProfileModel.from_entity(profile)


@router.patch("/me", response_model=ProfileModel)
async def update_own_profile(
    payload: ProfileUpdateRequest,
    session: CurrentSession,
    profiles: ProfileRepositoryDep,
) -> ProfileModel:
    # Only fields present in the request body are written; explicit nulls clear them.
    profile = await profiles.update_profile(session.user_id, **payload.model_dump(exclude_unset=True))
    if profile is None:
        raise HTTPException(status_code=404, detail="Profile not found")
    return ProfileModel.from_entity(profile)
