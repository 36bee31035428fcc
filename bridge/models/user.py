"""
Database models for the legacy user store.
"""

from datetime import datetime, timezone

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Integer, String

from bridge.db.database import Base


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, matching the legacy columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class User(Base):
    """Legacy user record, extended with the Entra migration link."""

    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint(
            "(migrated_to_entra AND entra_user_id IS NOT NULL)"
            " OR (NOT migrated_to_entra AND entra_user_id IS NULL)",
            name="ck_users_entra_link",
        ),
    )

    id = Column(Integer, primary_key=True, autoincrement=True, index=True)

    email = Column(String(255), nullable=False, unique=True, index=True)
    username = Column(String(100), nullable=False)

    # bcrypt hash
    password = Column(String(255), nullable=False)

    is_active = Column(Boolean, nullable=False, default=True)

    # Entra integration: both set together, never cleared
    migrated_to_entra = Column(Boolean, nullable=False, default=False, index=True)
    entra_user_id = Column(String(64), nullable=True, unique=True, index=True)

    # Migration order key
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    updated_at = Column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )


class EntraSignIn(Base):
    """Durable record of Entra users that have completed a sign-in."""

    __tablename__ = "entra_sign_ins"

    entra_user_id = Column(String(64), primary_key=True)
    first_signed_in_at = Column(DateTime, nullable=False, default=utcnow)
    last_signed_in_at = Column(DateTime, nullable=False, default=utcnow)
    sign_in_count = Column(Integer, nullable=False, default=1)
