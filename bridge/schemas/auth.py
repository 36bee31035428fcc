"""
Pydantic schemas for legacy login.
"""

from pydantic import BaseModel, EmailStr, Field

from bridge.schemas.user import UserPublic


class LoginRequest(BaseModel):
    email: EmailStr = Field(..., description="Legacy account email address")
    password: str = Field(..., min_length=1, description="Legacy account password")


class LoginResponse(BaseModel):
    message: str
    token: str
    user: UserPublic


class LogoutResponse(BaseModel):
    message: str
