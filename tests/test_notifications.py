import datetime

from santadraw.db import NotificationType, repo
from santadraw.services import draw, group_flow

DRAWN_AT = datetime.datetime(2026, 12, 1, 12, 0, 0)
DELAY = 3600
MAX_ATTEMPTS = 5


def _wish_intents(session, group_id):
    return repo.list_intents(session, group_id=group_id, notification_type=NotificationType.WISH_UPDATED)


def _edit(session, group, user, content, at):
    return group_flow.update_wish(
        session, group.id, user.id, content, delay_seconds=DELAY, max_attempts=MAX_ATTEMPTS, now=at
    )


def _drawn_group(session, make_group):
    group, users = make_group(4)
    draw.execute_draw(session, group.id, users[0].id, "20", now=DRAWN_AT)
    session.commit()
    return group, users


def test_no_wish_notification_before_draw(session, make_group):
    group, users = make_group(4)
    update = _edit(session, group, users[1], "A scarf", DRAWN_AT)
    assert update.notification is None
    assert _wish_intents(session, group.id) == []
    assert group_flow.get_wish(session, group.id, users[1].id) == "A scarf"


def test_wish_notification_targets_giver(session, make_group):
    group, users = _drawn_group(session, make_group)
    editor = users[2]
    giver_id = repo.get_assignment_for_receiver(session, group.id, editor.id).giver_user_id

    update = _edit(session, group, editor, "Books", DRAWN_AT + datetime.timedelta(minutes=5))

    assert update.notification is not None
    assert update.notification.user_id == giver_id
    assert update.notification.send_after == DRAWN_AT + datetime.timedelta(minutes=5, seconds=DELAY)


def test_rapid_edits_collapse_into_one_intent(session, make_group):
    group, users = _drawn_group(session, make_group)
    first_edit = DRAWN_AT + datetime.timedelta(minutes=1)
    for minute in range(10):
        _edit(session, group, users[1], f"Edit {minute}", first_edit + datetime.timedelta(minutes=minute))
    session.commit()

    intents = _wish_intents(session, group.id)
    assert len(intents) == 1
    assert intents[0].send_after == first_edit + datetime.timedelta(seconds=DELAY)
    assert group_flow.get_wish(session, group.id, users[1].id) == "Edit 9"


def test_edit_after_delivery_schedules_again(session, make_group):
    group, users = _drawn_group(session, make_group)
    first = _edit(session, group, users[1], "Socks", DRAWN_AT)
    first.notification.sent_at = DRAWN_AT + datetime.timedelta(seconds=DELAY)
    session.flush()

    later = DRAWN_AT + datetime.timedelta(seconds=DELAY + 60)
    second = _edit(session, group, users[1], "Warm socks", later)

    assert second.notification is not None
    assert second.notification.id != first.notification.id
    assert len(_wish_intents(session, group.id)) == 2


def test_exhausted_intent_does_not_block_new_one(session, make_group):
    group, users = _drawn_group(session, make_group)
    first = _edit(session, group, users[1], "Tea", DRAWN_AT)
    first.notification.attempt_count = MAX_ATTEMPTS
    first.notification.failed_at = DRAWN_AT + datetime.timedelta(hours=3)
    session.flush()

    second = _edit(session, group, users[1], "Coffee", DRAWN_AT + datetime.timedelta(hours=4))
    assert second.notification is not None


def test_edits_by_different_recipients_are_independent(session, make_group):
    group, users = _drawn_group(session, make_group)
    _edit(session, group, users[1], "Lego", DRAWN_AT)
    _edit(session, group, users[2], "Puzzle", DRAWN_AT)

    intents = _wish_intents(session, group.id)
    assert len(intents) == 2
    assert len({intent.user_id for intent in intents}) == 2
