from __future__ import annotations

import datetime
from typing import Iterable, List, Optional

from loguru import logger

from santadraw.db import Group, NotificationIntent, NotificationType, repo


def schedule_outcome_notifications(
    session,
    group: Group,
    user_ids: Iterable[int],
    drawn_at: datetime.datetime,
) -> List[NotificationIntent]:
    """One outcome-ready intent per participant, due at the draw instant.

    Only adds to the session; the caller's transaction decides whether the
    intents exist.
    """
    intents = repo.add_notification_intents(
        session,
        (
            NotificationIntent(
                type=NotificationType.OUTCOME_READY,
                user_id=user_id,
                group_id=group.id,
                send_after=drawn_at,
                attempt_count=0,
            )
            for user_id in user_ids
        ),
    )
    logger.bind(group_id=group.id, count=len(intents)).info("Scheduled outcome notifications")
    return intents


def schedule_wish_updated(
    session,
    group: Group,
    editor_user_id: int,
    now: datetime.datetime,
    delay_seconds: int,
    max_attempts: int,
) -> Optional[NotificationIntent]:
    """Tell the giver of ``editor_user_id`` that the wish changed.

    Edits inside one debounce window collapse into the intent created by the
    first edit, which stays due at first edit + delay.
    """
    if not group.is_drawn:
        return None

    assignment = repo.get_assignment_for_receiver(session, group.id, editor_user_id)
    if assignment is None:
        logger.bind(group_id=group.id, user_id=editor_user_id).warning(
            "No assignment found for wish editor, skipping notification"
        )
        return None

    giver_user_id = assignment.giver_user_id
    window_end = now + datetime.timedelta(seconds=delay_seconds)
    existing = repo.find_pending_wish_intent(
        session,
        group.id,
        giver_user_id,
        window_end=window_end,
        max_attempts=max_attempts,
    )
    if existing is not None:
        logger.bind(group_id=group.id, user_id=giver_user_id, intent_id=existing.id).info(
            "Wish notification already pending, not scheduling another"
        )
        return None

    [intent] = repo.add_notification_intents(
        session,
        [
            NotificationIntent(
                type=NotificationType.WISH_UPDATED,
                user_id=giver_user_id,
                group_id=group.id,
                send_after=window_end,
                attempt_count=0,
            )
        ],
    )
    logger.bind(group_id=group.id, user_id=giver_user_id, intent_id=intent.id).info(
        "Scheduled wish notification for {send_after}", send_after=intent.send_after
    )
    return intent
