import datetime
from decimal import Decimal

import pytest

from santadraw.db import repo
from santadraw.services import draw, group_flow
from santadraw.services.errors import (
    AlreadyDrawn,
    Forbidden,
    InfeasibleConstraints,
    NotFound,
    ValidationError,
)
from santadraw.services.feasibility import ERROR_MIN_PARTICIPANTS


def test_owner_is_first_participant(session, make_user):
    owner = make_user(display_name="Olga")
    group = group_flow.create_group(session, owner, "  Family  ", budget_suggestion="30")

    assert group.name == "Family"
    assert group.owner_user_id == owner.id
    assert repo.list_participant_user_ids(session, group.id) == [owner.id]
    assert repo.get_participant(session, group.id, owner.id).budget_suggestion == Decimal("30.00")


def test_group_name_is_required(session, make_user):
    with pytest.raises(ValidationError):
        group_flow.create_group(session, make_user(), "   ")


def test_join_twice_is_reported(session, make_group, make_user):
    group, _ = make_group(3)
    newcomer = make_user()
    assert group_flow.join_group(session, group, newcomer).added
    result = group_flow.join_group(session, group, newcomer)
    assert not result.added
    assert repo.count_participants(session, group.id) == 4


def test_join_with_invalid_suggestion(session, make_group, make_user):
    group, _ = make_group(3)
    with pytest.raises(ValidationError):
        group_flow.join_group(session, group, make_user(), budget_suggestion="1.999")


def test_join_and_leave_rejected_after_draw(session, make_group, make_user):
    group, users = make_group(3)
    draw.execute_draw(session, group.id, users[0].id, "10")
    with pytest.raises(AlreadyDrawn):
        group_flow.join_group(session, group, make_user())
    with pytest.raises(AlreadyDrawn):
        group_flow.leave_group(session, group, users[1].id)


def test_leave_drops_exclusion_rules(session, make_group):
    group, users = make_group(5)
    owner = users[0]
    group_flow.add_exclusion_rule(session, group.id, owner.id, users[1].id, users[2].id)
    group_flow.add_exclusion_rule(session, group.id, owner.id, users[3].id, users[4].id)

    removed = group_flow.leave_group(session, group, users[1].id)

    assert removed == 1
    assert repo.list_exclusion_pairs(session, group.id) == [repo.normalize_pair(users[3].id, users[4].id)]
    assert users[1].id not in repo.list_participant_user_ids(session, group.id)


def test_owner_cannot_leave(session, make_group):
    group, users = make_group(3)
    with pytest.raises(Forbidden):
        group_flow.leave_group(session, group, users[0].id)


def test_owner_removes_participant_with_their_rules(session, make_group):
    group, users = make_group(5)
    owner = users[0]
    group_flow.add_exclusion_rule(session, group.id, owner.id, users[1].id, users[2].id)
    group_flow.add_exclusion_rule(session, group.id, owner.id, users[3].id, users[1].id)
    group_flow.add_exclusion_rule(session, group.id, owner.id, users[3].id, users[4].id)

    removed = group_flow.remove_participant(session, group.id, owner.id, users[1].id)

    assert removed == 2
    assert repo.list_exclusion_pairs(session, group.id) == [repo.normalize_pair(users[3].id, users[4].id)]
    assert users[1].id not in repo.list_participant_user_ids(session, group.id)


def test_remove_participant_checks(session, make_group, make_user):
    group, users = make_group(4)
    owner = users[0]

    with pytest.raises(Forbidden):
        group_flow.remove_participant(session, group.id, users[1].id, users[2].id)
    with pytest.raises(ValidationError):
        group_flow.remove_participant(session, group.id, owner.id, owner.id)
    with pytest.raises(NotFound):
        group_flow.remove_participant(session, group.id, owner.id, make_user().id)
    assert len(repo.list_participant_user_ids(session, group.id)) == 4

    draw.execute_draw(session, group.id, owner.id, "10")
    with pytest.raises(AlreadyDrawn):
        group_flow.remove_participant(session, group.id, owner.id, users[1].id)
    assert repo.count_assignments(session, group.id) == 4


def test_budget_suggestions_overview(session, make_group):
    group, users = make_group(4)
    group_flow.set_budget_suggestion(session, group, users[1].id, "25")
    group_flow.set_budget_suggestion(session, group, users[2].id, "10.5")

    overview = group_flow.budget_suggestions(session, group.id, users[0].id)

    assert overview.suggestions == [Decimal("10.50"), Decimal("25.00")]
    assert overview.suggestions_received == 2
    assert overview.participant_count == 4
    assert overview.current_budget is None

    with pytest.raises(Forbidden):
        group_flow.budget_suggestions(session, group.id, users[1].id)


def test_exclusion_rule_validation(session, make_group, make_user):
    group, users = make_group(4)
    owner = users[0]

    with pytest.raises(ValidationError):
        group_flow.add_exclusion_rule(session, group.id, owner.id, users[1].id, users[1].id)
    with pytest.raises(Forbidden):
        group_flow.add_exclusion_rule(session, group.id, users[1].id, users[2].id, users[3].id)
    with pytest.raises(NotFound):
        group_flow.add_exclusion_rule(session, group.id, owner.id, users[1].id, make_user().id)
    with pytest.raises(NotFound):
        group_flow.add_exclusion_rule(session, 9999, owner.id, users[1].id, users[2].id)

    view = group_flow.add_exclusion_rule(session, group.id, owner.id, users[2].id, users[1].id)
    assert view.rule.pair == repo.normalize_pair(users[1].id, users[2].id)
    assert view.warnings == []

    with pytest.raises(ValidationError):
        group_flow.add_exclusion_rule(session, group.id, owner.id, users[1].id, users[2].id)


def test_exclusion_rule_that_breaks_the_draw_is_rejected(session, make_group):
    group, users = make_group(3)
    with pytest.raises(InfeasibleConstraints):
        group_flow.add_exclusion_rule(session, group.id, users[0].id, users[1].id, users[2].id)
    assert repo.list_exclusion_rules(session, group.id) == []


def test_exclusion_rule_in_small_group_warns(session, make_group):
    group, users = make_group(2)
    view = group_flow.add_exclusion_rule(session, group.id, users[0].id, users[0].id, users[1].id)
    assert view.warnings == [ERROR_MIN_PARTICIPANTS]


def test_remove_and_list_exclusion_rules(session, make_group):
    group, users = make_group(4)
    owner = users[0]
    group_flow.add_exclusion_rule(session, group.id, owner.id, users[1].id, users[2].id)
    assert len(group_flow.list_exclusion_rules(session, group.id, owner.id)) == 1

    group_flow.remove_exclusion_rule(session, group.id, owner.id, users[2].id, users[1].id)
    assert group_flow.list_exclusion_rules(session, group.id, owner.id) == []

    with pytest.raises(NotFound):
        group_flow.remove_exclusion_rule(session, group.id, owner.id, users[1].id, users[2].id)
    with pytest.raises(Forbidden):
        group_flow.list_exclusion_rules(session, group.id, users[1].id)


def test_exclusion_rules_frozen_after_draw(session, make_group):
    group, users = make_group(4)
    draw.execute_draw(session, group.id, users[0].id, "10")
    with pytest.raises(AlreadyDrawn):
        group_flow.add_exclusion_rule(session, group.id, users[0].id, users[1].id, users[2].id)


def test_wish_validation(session, make_group, make_user):
    group, users = make_group(3)
    with pytest.raises(ValidationError):
        group_flow.update_wish(session, group.id, users[1].id, "x" * 1001, delay_seconds=60, max_attempts=3)
    with pytest.raises(Forbidden):
        group_flow.update_wish(session, group.id, make_user().id, "Socks", delay_seconds=60, max_attempts=3)

    update = group_flow.update_wish(session, group.id, users[1].id, "   ", delay_seconds=60, max_attempts=3)
    assert update.content is None


def test_my_assignment(session, make_group):
    group, users = make_group(3)

    with pytest.raises(NotFound):
        group_flow.get_my_assignment(session, group.id, users[0].id)

    drawn_at = datetime.datetime(2026, 12, 5, 18, 30)
    result = draw.execute_draw(session, group.id, users[0].id, "12.5", now=drawn_at)
    recipient_id = result.assignments[users[0].id]
    group_flow.update_wish(session, group.id, recipient_id, "Chocolate", delay_seconds=60, max_attempts=3)

    details = group_flow.get_my_assignment(session, group.id, users[0].id)
    assert details.recipient.id == recipient_id
    assert details.group_name == "Office party"
    assert details.budget == Decimal("12.50")
    assert details.drawn_at == drawn_at
    assert details.wish_content == "Chocolate"
    assert details.has_wish


def test_my_assignment_requires_membership(session, make_group, make_user):
    group, users = make_group(3)
    draw.execute_draw(session, group.id, users[0].id, "10")
    with pytest.raises(Forbidden):
        group_flow.get_my_assignment(session, group.id, make_user().id)


def test_resolve_user_group(session, make_user):
    user = make_user()
    assert group_flow.resolve_user_group(session, user.id, None) is None

    first = group_flow.create_group(session, user, "First", telegram_chat_id=-100)
    assert group_flow.resolve_user_group(session, user.id, None) == first

    second = group_flow.create_group(session, user, "Second")
    assert group_flow.resolve_user_group(session, user.id, None) is None
    assert group_flow.resolve_user_group(session, user.id, str(second.id)) == second
    assert group_flow.resolve_user_group(session, user.id, "-100") == first
    assert group_flow.resolve_user_group(session, user.id, "abc") is None


def test_format_user_label_escapes(make_user):
    user = make_user(username="a<b>")
    assert group_flow.format_user_label(user) == "@a&lt;b&gt;"
