from __future__ import annotations

import datetime
from decimal import Decimal
from typing import Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import and_, delete, func, or_, select, update

from santadraw.db.models import (
    Assignment,
    ExclusionRule,
    Group,
    NotificationIntent,
    NotificationType,
    Participant,
    User,
)


def normalize_pair(user_a_id: int, user_b_id: int) -> Tuple[int, int]:
    return (user_a_id, user_b_id) if user_a_id < user_b_id else (user_b_id, user_a_id)


def get_user_by_id(session, user_id: int) -> Optional[User]:
    return session.scalar(select(User).where(User.id == user_id))


def get_user_by_telegram_id(session, telegram_id: int) -> Optional[User]:
    return session.scalar(select(User).where(User.telegram_id == telegram_id))


def get_user_by_username(session, telegram_username: str) -> Optional[User]:
    username = telegram_username.lstrip("@")
    return session.scalar(
        select(User).where(func.lower(User.telegram_username) == username.lower())
    )


def upsert_user(
    session,
    telegram_id: int,
    telegram_username: Optional[str],
    display_name: Optional[str],
) -> User:
    user = get_user_by_telegram_id(session, telegram_id)
    if user:
        user.telegram_username = telegram_username
        user.display_name = display_name
        return user

    user = User(
        telegram_id=telegram_id,
        telegram_username=telegram_username,
        display_name=display_name,
    )
    session.add(user)
    session.flush()
    return user


def get_group_by_id(session, group_id: int) -> Optional[Group]:
    return session.scalar(select(Group).where(Group.id == group_id))


def get_group_for_update(session, group_id: int) -> Optional[Group]:
    return session.scalar(
        select(Group)
        .where(Group.id == group_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )


def get_group_by_chat_id(session, telegram_chat_id: int) -> Optional[Group]:
    return session.scalar(select(Group).where(Group.telegram_chat_id == telegram_chat_id))


def create_group(
    session,
    name: str,
    owner_user_id: int,
    telegram_chat_id: Optional[int] = None,
) -> Group:
    group = Group(name=name, owner_user_id=owner_user_id, telegram_chat_id=telegram_chat_id)
    session.add(group)
    session.flush()
    return group


def claim_group_draw(
    session,
    group_id: int,
    budget: Decimal,
    drawn_at: datetime.datetime,
) -> bool:
    result = session.execute(
        update(Group)
        .where(and_(Group.id == group_id, Group.draw_completed_at.is_(None)))
        .values(budget=budget, draw_completed_at=drawn_at, updated_at=drawn_at)
        .execution_options(synchronize_session="fetch")
    )
    return (result.rowcount or 0) == 1


def lock_open_group(session, group_id: int, now: datetime.datetime) -> bool:
    """Take the group's write lock while it is still open.

    Blocks behind an in-flight draw on the same row and then matches nothing,
    so callers mutating pre-draw state see the committed outcome.
    """
    result = session.execute(
        update(Group)
        .where(and_(Group.id == group_id, Group.draw_completed_at.is_(None)))
        .values(updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) == 1


def list_groups_for_user(session, user_id: int) -> List[Group]:
    return list(
        session.scalars(
            select(Group)
            .join(Participant, Participant.group_id == Group.id)
            .where(Participant.user_id == user_id)
            .order_by(Group.id)
        ).all()
    )


def get_participant(session, group_id: int, user_id: int) -> Optional[Participant]:
    return session.scalar(
        select(Participant).where(
            and_(Participant.group_id == group_id, Participant.user_id == user_id)
        )
    )


def list_participants(session, group_id: int) -> List[Participant]:
    return list(
        session.scalars(
            select(Participant)
            .where(Participant.group_id == group_id)
            .order_by(Participant.joined_at, Participant.id)
        ).all()
    )


def list_participant_user_ids(session, group_id: int) -> List[int]:
    return list(
        session.scalars(
            select(Participant.user_id)
            .where(Participant.group_id == group_id)
            .order_by(Participant.joined_at, Participant.id)
        ).all()
    )


def count_participants(session, group_id: int) -> int:
    return session.scalar(
        select(func.count()).select_from(Participant).where(Participant.group_id == group_id)
    )


def add_participant(
    session,
    group_id: int,
    user_id: int,
    budget_suggestion: Optional[Decimal] = None,
    joined_at: Optional[datetime.datetime] = None,
) -> Participant:
    participant = Participant(
        group_id=group_id,
        user_id=user_id,
        budget_suggestion=budget_suggestion,
    )
    if joined_at is not None:
        participant.joined_at = joined_at
    session.add(participant)
    session.flush()
    return participant


def remove_participant(session, participant: Participant) -> int:
    removed_rules = delete_rules_for_user(session, participant.group_id, participant.user_id)
    session.delete(participant)
    session.flush()
    return removed_rules


def list_exclusion_rules(session, group_id: int) -> List[ExclusionRule]:
    return list(
        session.scalars(
            select(ExclusionRule)
            .where(ExclusionRule.group_id == group_id)
            .order_by(ExclusionRule.id)
        ).all()
    )


def list_exclusion_pairs(session, group_id: int) -> List[Tuple[int, int]]:
    rows = session.execute(
        select(ExclusionRule.user_a_id, ExclusionRule.user_b_id)
        .where(ExclusionRule.group_id == group_id)
        .order_by(ExclusionRule.id)
    ).all()
    return [(row[0], row[1]) for row in rows]


def find_exclusion_rule(session, group_id: int, user_a_id: int, user_b_id: int) -> Optional[ExclusionRule]:
    first, second = normalize_pair(user_a_id, user_b_id)
    return session.scalar(
        select(ExclusionRule).where(
            and_(
                ExclusionRule.group_id == group_id,
                ExclusionRule.user_a_id == first,
                ExclusionRule.user_b_id == second,
            )
        )
    )


def add_exclusion_rule(
    session,
    group_id: int,
    user_a_id: int,
    user_b_id: int,
    created_by_user_id: Optional[int],
) -> ExclusionRule:
    first, second = normalize_pair(user_a_id, user_b_id)
    rule = ExclusionRule(
        group_id=group_id,
        user_a_id=first,
        user_b_id=second,
        created_by_user_id=created_by_user_id,
    )
    session.add(rule)
    session.flush()
    return rule


def delete_exclusion_rule(session, rule: ExclusionRule) -> None:
    session.delete(rule)
    session.flush()


def delete_rules_for_user(session, group_id: int, user_id: int) -> int:
    result = session.execute(
        delete(ExclusionRule).where(
            and_(
                ExclusionRule.group_id == group_id,
                or_(ExclusionRule.user_a_id == user_id, ExclusionRule.user_b_id == user_id),
            )
        )
    )
    return result.rowcount or 0


def create_assignments(session, group_id: int, assignments: dict[int, int]) -> List[Assignment]:
    rows = [
        Assignment(group_id=group_id, giver_user_id=giver_id, receiver_user_id=receiver_id)
        for giver_id, receiver_id in assignments.items()
    ]
    session.add_all(rows)
    session.flush()
    return rows


def list_assignments(session, group_id: int) -> List[Assignment]:
    return list(session.scalars(select(Assignment).where(Assignment.group_id == group_id)).all())


def count_assignments(session, group_id: int) -> int:
    return session.scalar(
        select(func.count()).select_from(Assignment).where(Assignment.group_id == group_id)
    )


def get_assignment_for_giver(session, group_id: int, giver_user_id: int) -> Optional[Assignment]:
    return session.scalar(
        select(Assignment).where(
            and_(Assignment.group_id == group_id, Assignment.giver_user_id == giver_user_id)
        )
    )


def get_assignment_for_receiver(session, group_id: int, receiver_user_id: int) -> Optional[Assignment]:
    return session.scalar(
        select(Assignment).where(
            and_(Assignment.group_id == group_id, Assignment.receiver_user_id == receiver_user_id)
        )
    )


def add_notification_intents(session, intents: Iterable[NotificationIntent]) -> List[NotificationIntent]:
    rows = list(intents)
    session.add_all(rows)
    session.flush()
    return rows


def find_pending_wish_intent(
    session,
    group_id: int,
    user_id: int,
    window_end: datetime.datetime,
    max_attempts: int,
) -> Optional[NotificationIntent]:
    return session.scalar(
        select(NotificationIntent)
        .where(
            and_(
                NotificationIntent.group_id == group_id,
                NotificationIntent.user_id == user_id,
                NotificationIntent.type == NotificationType.WISH_UPDATED,
                NotificationIntent.sent_at.is_(None),
                NotificationIntent.failed_at.is_(None),
                NotificationIntent.attempt_count < max_attempts,
                NotificationIntent.send_after <= window_end,
            )
        )
        .order_by(NotificationIntent.send_after)
        .limit(1)
    )


def select_due_intents(
    session,
    now: datetime.datetime,
    max_attempts: int,
    limit: int,
) -> List[NotificationIntent]:
    stmt = (
        select(NotificationIntent)
        .where(NotificationIntent.sent_at.is_(None))
        .where(NotificationIntent.failed_at.is_(None))
        .where(NotificationIntent.send_after <= now)
        .where(NotificationIntent.attempt_count < max_attempts)
        .order_by(NotificationIntent.send_after, NotificationIntent.id)
        .limit(limit)
        .with_for_update(skip_locked=True)
    )
    return list(session.scalars(stmt).all())


def select_stranded_intents(
    session,
    now: datetime.datetime,
    max_attempts: int,
    limit: int,
) -> List[NotificationIntent]:
    """Final-attempt claims whose lease ran out without a recorded outcome."""
    stmt = (
        select(NotificationIntent)
        .where(NotificationIntent.sent_at.is_(None))
        .where(NotificationIntent.failed_at.is_(None))
        .where(NotificationIntent.attempt_count >= max_attempts)
        .where(NotificationIntent.send_after <= now)
        .order_by(NotificationIntent.send_after, NotificationIntent.id)
        .limit(limit)
        .with_for_update(skip_locked=True)
    )
    return list(session.scalars(stmt).all())


def get_intent(session, intent_id: int) -> Optional[NotificationIntent]:
    return session.scalar(select(NotificationIntent).where(NotificationIntent.id == intent_id))


def get_intents(session, intent_ids: Sequence[int]) -> List[NotificationIntent]:
    if not intent_ids:
        return []
    return list(
        session.scalars(
            select(NotificationIntent).where(NotificationIntent.id.in_(list(intent_ids)))
        ).all()
    )


def list_intents(
    session,
    group_id: Optional[int] = None,
    user_id: Optional[int] = None,
    notification_type: Optional[NotificationType] = None,
) -> List[NotificationIntent]:
    stmt = select(NotificationIntent)
    if group_id is not None:
        stmt = stmt.where(NotificationIntent.group_id == group_id)
    if user_id is not None:
        stmt = stmt.where(NotificationIntent.user_id == user_id)
    if notification_type is not None:
        stmt = stmt.where(NotificationIntent.type == notification_type)
    return list(session.scalars(stmt.order_by(NotificationIntent.id)).all())


def list_failed_intents(session, limit: int = 100) -> List[NotificationIntent]:
    return list(
        session.scalars(
            select(NotificationIntent)
            .where(NotificationIntent.failed_at.is_not(None))
            .order_by(NotificationIntent.failed_at.desc())
            .limit(limit)
        ).all()
    )
