"""
Pydantic schemas for password update and reset.
"""

from typing import Optional

from pydantic import Field, field_validator

from bridge.schemas.migration import CamelModel
from bridge.utils.password_generator import validate_password_strength


class PasswordUpdateRequest(CamelModel):
    password: str = Field(..., description="New password")

    @field_validator("password")
    @classmethod
    def validate_password(cls, v: str) -> str:
        """New passwords must also be acceptable to Entra."""
        errors = validate_password_strength(v)
        if errors:
            raise ValueError("; ".join(errors))
        return v


class PasswordChangeResult(CamelModel):
    user_id: int
    updated_in_db: bool
    updated_in_entra: bool
    entra_error: Optional[str] = None


class PasswordUpdateResponse(CamelModel):
    message: str
    data: PasswordChangeResult


class PasswordResetResponse(CamelModel):
    message: str
    temporary_password: str
    data: PasswordChangeResult
