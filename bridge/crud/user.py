"""
CRUD operations for legacy users and their Entra migration state.
"""

from typing import Any, Dict, List, Optional

from sqlalchemy import and_, func, update
from sqlalchemy.orm import Session

from bridge.core.logging import get_logger
from bridge.models.user import User, utcnow

logger = get_logger(__name__)


def get_user_by_id(db: Session, user_id: int) -> Optional[User]:
    """
    Get a user by ID.

    Args:
        db: Database session
        user_id: User ID

    Returns:
        User object or None if not found
    """
    return db.query(User).filter(User.id == user_id).first()


def get_user_by_email(db: Session, email: str) -> Optional[User]:
    """
    Get a user by email.

    Args:
        db: Database session
        email: Email address

    Returns:
        User object or None if not found
    """
    return db.query(User).filter(User.email == email).first()


def get_user_by_entra_id(db: Session, entra_user_id: str) -> Optional[User]:
    """
    Get a user by the object id of their Entra identity.

    Args:
        db: Database session
        entra_user_id: Entra user object id

    Returns:
        User object or None if not found
    """
    return db.query(User).filter(User.entra_user_id == entra_user_id).first()


def get_users_for_migration(
    db: Session, limit: Optional[int] = None, active_only: bool = True
) -> List[User]:
    """
    Get users that have not yet been migrated to Entra.

    Candidates are returned oldest first so that consecutive runs walk the
    table in the same order.

    Args:
        db: Database session
        limit: Maximum number of users to return (None for all)
        active_only: Only include active accounts

    Returns:
        List of User objects ordered by created_at, then id
    """
    query = db.query(User).filter(User.migrated_to_entra.is_(False))
    if active_only:
        query = query.filter(User.is_active.is_(True))
    query = query.order_by(User.created_at.asc(), User.id.asc())
    if limit is not None:
        query = query.limit(limit)
    return query.all()


def mark_user_as_migrated(db: Session, user_id: int, entra_user_id: str) -> bool:
    """
    Record the Entra identity of a user.

    The update only applies while the user is still unmigrated, so two
    writers racing on the same user cannot both succeed.

    Args:
        db: Database session
        user_id: Database user ID
        entra_user_id: Entra user object id

    Returns:
        True if this call flipped the flag, False if the user was missing
        or already migrated
    """
    result = db.execute(
        update(User)
        .where(and_(User.id == user_id, User.migrated_to_entra.is_(False)))
        .values(
            migrated_to_entra=True,
            entra_user_id=entra_user_id,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()

    marked = result.rowcount == 1
    if marked:
        logger.info(
            "User marked as migrated",
            extra={"user_id": user_id, "entra_user_id": entra_user_id},
        )
    else:
        logger.warning(
            "Mark migrated did not apply",
            extra={"user_id": user_id, "entra_user_id": entra_user_id},
        )
    return marked


def update_user_password_hash(db: Session, user_id: int, password_hash: str) -> bool:
    """
    Replace a user's password hash.

    Args:
        db: Database session
        user_id: Database user ID
        password_hash: New bcrypt hash

    Returns:
        True if the user exists and was updated, False otherwise
    """
    user = get_user_by_id(db, user_id=user_id)
    if not user:
        return False

    user.password = password_hash  # type: ignore
    user.updated_at = utcnow()  # type: ignore
    db.commit()
    return True


def get_migration_stats(db: Session) -> Dict[str, Any]:
    """
    Summarise migration progress across the whole table.

    Args:
        db: Database session

    Returns:
        Dictionary with total, migrated, pending and percent_complete
    """
    total = db.query(func.count(User.id)).scalar() or 0
    migrated = (
        db.query(func.count(User.id)).filter(User.migrated_to_entra.is_(True)).scalar()
        or 0
    )
    pending = (
        db.query(func.count(User.id))
        .filter(
            and_(User.migrated_to_entra.is_(False), User.is_active.is_(True))
        )
        .scalar()
        or 0
    )
    percent_complete = round(migrated / total * 100, 2) if total else 0.0

    return {
        "total": total,
        "migrated": migrated,
        "pending": pending,
        "percent_complete": percent_complete,
    }
