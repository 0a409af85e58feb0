from santadraw.db.models import (
    Assignment,
    Base,
    ExclusionRule,
    Group,
    GroupStatus,
    NotificationIntent,
    NotificationType,
    Participant,
    User,
)
from santadraw.db.session import SessionLocal, get_session, init_engine

__all__ = [
    "Assignment",
    "Base",
    "ExclusionRule",
    "Group",
    "GroupStatus",
    "NotificationIntent",
    "NotificationType",
    "Participant",
    "User",
    "SessionLocal",
    "get_session",
    "init_engine",
]
