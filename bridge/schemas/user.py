"""
Pydantic schemas for legacy user records.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class LocalUser(BaseModel):
    """Detached snapshot of a legacy user row, safe to pass between threads."""

    id: int
    email: str
    username: str
    password: str = Field(..., repr=False, description="bcrypt hash")
    is_active: bool = True
    migrated_to_entra: bool = False
    entra_user_id: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class UserPublic(BaseModel):
    """User fields returned to API callers."""

    id: int
    email: str
    username: str
    is_active: bool
    migrated_to_entra: bool
    entra_user_id: Optional[str] = None

    model_config = ConfigDict(
        from_attributes=True, alias_generator=to_camel, populate_by_name=True
    )
