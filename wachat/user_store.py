"""
User lookups, contact upsert and presence flags.

Profile editing lives elsewhere; this module only covers what the
conversation engine and the webhook importer need.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from wachat.models import User
from wachat.utils import utcnow

logger = logging.getLogger(__name__)


def get_user(db: Session, wa_id: str) -> Optional[User]:
    return db.scalar(select(User).where(User.wa_id == wa_id))


def upsert_user(
    db: Session,
    wa_id: str,
    name: Optional[str] = None,
    phone_number: Optional[str] = None,
    is_verified: bool = True,
) -> User:
    """
    Create or update a user keyed by wa_id (idempotent).

    Existing users keep their wa_id; name and last_seen are refreshed.
    """
    user = get_user(db, wa_id)
    if user is None:
        user = User(
            wa_id=wa_id,
            phone_number=phone_number or wa_id,
            name=name or "Unknown User",
            is_verified=is_verified,
            last_seen=utcnow(),
        )
        db.add(user)
        try:
            db.commit()
            logger.info(f"User created: {wa_id}")
        except IntegrityError:
            # Concurrent upsert won the insert
            db.rollback()
            user = get_user(db, wa_id)
        return user

    if name:
        user.name = name
    user.is_verified = user.is_verified or is_verified
    user.last_seen = utcnow()
    db.commit()
    logger.debug(f"User updated: {wa_id}")
    return user


def set_presence(db: Session, wa_id: str, is_online: bool, at: Optional[datetime] = None) -> Optional[User]:
    """Persist online flag and last-seen time. Returns None for unknown users."""
    user = get_user(db, wa_id)
    if user is None:
        logger.warning(f"Presence update for unknown user: {wa_id}")
        return None
    user.is_online = is_online
    user.last_seen = at or utcnow()
    db.commit()
    return user


def count_users(db: Session) -> int:
    return db.scalar(select(func.count(User.id))) or 0
