"""
CRUD operations for durable Entra sign-in records.
"""

from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from bridge.models.user import EntraSignIn, utcnow


def get_sign_in(db: Session, entra_user_id: str) -> Optional[EntraSignIn]:
    return (
        db.query(EntraSignIn)
        .filter(EntraSignIn.entra_user_id == entra_user_id)
        .first()
    )


def has_signed_in(db: Session, entra_user_id: str) -> bool:
    """Return True once the Entra user has completed at least one sign-in."""
    return get_sign_in(db, entra_user_id) is not None


def record_sign_in(db: Session, entra_user_id: str) -> EntraSignIn:
    """
    Insert or bump the sign-in record for an Entra user.

    Concurrent first sign-ins for the same user collapse onto one row.

    Args:
        db: Database session
        entra_user_id: Entra user object id

    Returns:
        The stored EntraSignIn row
    """
    now = utcnow()
    record = get_sign_in(db, entra_user_id)
    if record is None:
        record = EntraSignIn(
            entra_user_id=entra_user_id,
            first_signed_in_at=now,
            last_signed_in_at=now,
            sign_in_count=1,
        )
        db.add(record)
        try:
            db.commit()
        except IntegrityError:
            # Another request inserted the row first
            db.rollback()
            record = get_sign_in(db, entra_user_id)
            if record is None:
                raise
            record.last_signed_in_at = now  # type: ignore
            record.sign_in_count = record.sign_in_count + 1  # type: ignore
            db.commit()
    else:
        record.last_signed_in_at = now  # type: ignore
        record.sign_in_count = record.sign_in_count + 1  # type: ignore
        db.commit()

    db.refresh(record)
    return record
