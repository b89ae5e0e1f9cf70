"""
Directional block relationships.

Blocks are stored per ordered pair; the send path checks both directions.
"""

import logging
from typing import List, Optional

from sqlalchemy import delete, or_, and_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from wachat.errors import AlreadyBlocked, NotBlocked, ValidationError
from wachat.models import BlockedUser

logger = logging.getLogger(__name__)


def block(db: Session, blocked_by: str, target: str, reason: Optional[str] = None) -> BlockedUser:
    """
    Record that blocked_by blocks target.

    Raises:
        ValidationError: a user tried to block themselves
        AlreadyBlocked: the ordered pair already exists
    """
    if blocked_by == target:
        raise ValidationError("Users cannot block themselves")

    existing = db.scalar(
        select(BlockedUser).where(
            BlockedUser.blocked_by == blocked_by,
            BlockedUser.blocked_user == target,
        )
    )
    if existing is not None:
        raise AlreadyBlocked("User is already blocked")

    relation = BlockedUser(blocked_by=blocked_by, blocked_user=target)
    if reason:
        relation.reason = reason
    db.add(relation)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise AlreadyBlocked("User is already blocked")

    logger.info(f"User blocked: by={blocked_by}, target={target}")
    return relation


def unblock(db: Session, blocked_by: str, target: str) -> None:
    result = db.execute(
        delete(BlockedUser).where(
            BlockedUser.blocked_by == blocked_by,
            BlockedUser.blocked_user == target,
        )
    )
    db.commit()
    if result.rowcount == 0:
        raise NotBlocked("User is not blocked")
    logger.info(f"User unblocked: by={blocked_by}, target={target}")


def is_blocked_either_direction(db: Session, a: str, b: str) -> bool:
    found = db.scalar(
        select(BlockedUser.id).where(
            or_(
                and_(BlockedUser.blocked_by == a, BlockedUser.blocked_user == b),
                and_(BlockedUser.blocked_by == b, BlockedUser.blocked_user == a),
            )
        ).limit(1)
    )
    return found is not None


def list_blocked(db: Session, blocked_by: str) -> List[BlockedUser]:
    return list(
        db.scalars(
            select(BlockedUser)
            .where(BlockedUser.blocked_by == blocked_by)
            .order_by(BlockedUser.blocked_at.desc())
        )
    )
