"""Request/response schemas for user endpoints."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class ProfileUpdateRequest(BaseModel):
    username: str | None = Field(None, min_length=3, max_length=64, pattern=r"^[A-Za-z0-9_.]+$")
    first_name: str | None = Field(None, max_length=100)
    last_name: str | None = Field(None, max_length=100)
    avatar_url: str | None = Field(None, max_length=512)
    bio: str | None = Field(None, max_length=500)


class PublicUserResponse(BaseModel):
    id: int
    username: str
    first_name: str | None = None
    last_name: str | None = None
    avatar_url: str | None = None
    bio: str | None = None
    created_at: datetime | None = None

    model_config = {"from_attributes": True}


class UserSearchResponse(BaseModel):
    users: list[PublicUserResponse]
