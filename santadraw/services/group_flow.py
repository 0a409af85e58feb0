from __future__ import annotations

import datetime
import html
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional

from loguru import logger

from santadraw.core.clock import utcnow
from santadraw.db import ExclusionRule, Group, NotificationIntent, Participant, User, repo
from santadraw.services import notifications
from santadraw.services.draw import parse_budget
from santadraw.services.errors import (
    AlreadyDrawn,
    Forbidden,
    InfeasibleConstraints,
    NotFound,
    ValidationError,
)
from santadraw.services.feasibility import (
    ERROR_MIN_PARTICIPANTS,
    MIN_PARTICIPANTS,
    validate_feasibility,
)

WISH_MAX_LENGTH = 1000
GROUP_NAME_MAX_LENGTH = 100


@dataclass(frozen=True)
class JoinResult:
    added: bool
    message: str
    group: Group
    user: User


@dataclass(frozen=True)
class BudgetSuggestions:
    group_id: int
    suggestions: List[Decimal]
    participant_count: int
    current_budget: Optional[Decimal]

    @property
    def suggestions_received(self) -> int:
        return len(self.suggestions)


@dataclass(frozen=True)
class WishUpdate:
    group_id: int
    content: Optional[str]
    updated_at: datetime.datetime
    notification: Optional[NotificationIntent] = None


@dataclass(frozen=True)
class MyAssignment:
    group_id: int
    group_name: str
    budget: Optional[Decimal]
    drawn_at: datetime.datetime
    recipient: User
    wish_content: Optional[str] = None
    wish_updated_at: Optional[datetime.datetime] = None

    @property
    def has_wish(self) -> bool:
        return bool(self.wish_content and self.wish_content.strip())


@dataclass(frozen=True)
class ExclusionRuleView:
    rule: ExclusionRule
    user_a: User
    user_b: User
    warnings: List[str] = field(default_factory=list)


def format_user_label(user: User) -> str:
    if user.telegram_username:
        return f"@{html.escape(user.telegram_username)}"
    if user.display_name:
        return html.escape(user.display_name)
    return f"user-{user.telegram_id}"


def format_user_display(user: User) -> str:
    if user.display_name:
        return html.escape(user.display_name)
    if user.telegram_username:
        return f"@{html.escape(user.telegram_username)}"
    return f"user-{user.telegram_id}"


def format_budget(amount: Optional[Decimal]) -> Optional[str]:
    if amount is None:
        return None
    return f"{amount:.2f}"


def ensure_user(
    session,
    telegram_id: int,
    telegram_username: Optional[str],
    first_name: Optional[str],
    last_name: Optional[str],
) -> User:
    display_name = " ".join(filter(None, [first_name, last_name])) or None
    return repo.upsert_user(session, telegram_id, telegram_username, display_name)


def register_private_chat(
    session,
    telegram_id: int,
    telegram_username: Optional[str],
    first_name: Optional[str],
    last_name: Optional[str],
) -> User:
    user = ensure_user(session, telegram_id, telegram_username, first_name, last_name)
    user.has_private_chat = True
    return user


def _load_group(session, group_id: int, for_update: bool = False) -> Group:
    group = repo.get_group_for_update(session, group_id) if for_update else repo.get_group_by_id(session, group_id)
    if group is None:
        raise NotFound("Group not found.")
    return group


def _require_owner(group: Group, user_id: int, action: str) -> None:
    if group.owner_user_id != user_id:
        raise Forbidden(f"Only the group owner can {action}.")


def _lock_open(session, group: Group, message: str) -> None:
    """Serialize a pre-draw change behind any draw of the same group."""
    if group.is_drawn or not repo.lock_open_group(session, group.id, utcnow()):
        raise AlreadyDrawn(message)


def _require_participant(session, group: Group, user_id: int) -> Participant:
    participant = repo.get_participant(session, group.id, user_id)
    if participant is None:
        raise Forbidden("You are not a participant in this group.")
    return participant


def _parse_suggestion(budget_suggestion) -> Optional[Decimal]:
    if budget_suggestion is None or budget_suggestion == "":
        return None
    return parse_budget(budget_suggestion)


def create_group(
    session,
    owner: User,
    name: str,
    telegram_chat_id: Optional[int] = None,
    budget_suggestion=None,
) -> Group:
    name = (name or "").strip()
    if not name:
        raise ValidationError(["Group name is required"])
    if len(name) > GROUP_NAME_MAX_LENGTH:
        raise ValidationError([f"Group name must be at most {GROUP_NAME_MAX_LENGTH} characters"])

    group = repo.create_group(session, name, owner.id, telegram_chat_id)
    repo.add_participant(session, group.id, owner.id, _parse_suggestion(budget_suggestion))
    logger.bind(group_id=group.id, owner_id=owner.id).info("Group created")
    return group


def get_or_create_chat_group(session, telegram_chat_id: int, title: Optional[str], creator: User) -> Group:
    group = repo.get_group_by_chat_id(session, telegram_chat_id)
    if group:
        if title and group.name != title and not group.is_drawn:
            group.name = title[:GROUP_NAME_MAX_LENGTH]
        return group
    return create_group(session, creator, (title or f"Group {telegram_chat_id}")[:GROUP_NAME_MAX_LENGTH], telegram_chat_id)


def join_group(session, group: Group, user: User, budget_suggestion=None) -> JoinResult:
    _lock_open(session, group, "This group has already completed the draw and no longer accepts participants.")
    if repo.get_participant(session, group.id, user.id):
        return JoinResult(False, "You are already in this Secret Santa game!", group, user)

    repo.add_participant(session, group.id, user.id, _parse_suggestion(budget_suggestion))
    logger.bind(group_id=group.id, user_id=user.id).info("Participant joined")
    return JoinResult(True, "You have joined the Secret Santa game!", group, user)


def leave_group(session, group: Group, user_id: int) -> int:
    """Remove a participant before the draw. Returns the number of dropped exclusion rules."""
    _lock_open(session, group, "Participants cannot leave after the draw.")
    if group.owner_user_id == user_id:
        raise Forbidden("The group owner cannot leave the group.")
    participant = repo.get_participant(session, group.id, user_id)
    if participant is None:
        raise NotFound("You are not a participant in this group.")
    removed_rules = repo.remove_participant(session, participant)
    logger.bind(group_id=group.id, user_id=user_id, removed_rules=removed_rules).info("Participant left")
    return removed_rules


def remove_participant(session, group_id: int, requester_user_id: int, user_id: int) -> int:
    """Owner drops a member before the draw, along with their exclusion rules."""
    group = _load_group(session, group_id, for_update=True)
    if group.owner_user_id != requester_user_id:
        logger.bind(group_id=group.id, user_id=requester_user_id).warning(
            "Non-owner attempted to remove a participant"
        )
        raise Forbidden("Only the group owner can remove participants.")
    _lock_open(session, group, "Participants cannot be removed after the draw.")
    if user_id == group.owner_user_id:
        raise ValidationError(["The group owner cannot be removed"])
    participant = repo.get_participant(session, group.id, user_id)
    if participant is None:
        raise NotFound("That user is not a participant in this group.")
    removed_rules = repo.remove_participant(session, participant)
    logger.bind(group_id=group.id, user_id=user_id, removed_rules=removed_rules).info(
        "Participant removed by owner"
    )
    return removed_rules


def list_participants(session, group: Group) -> List[User]:
    return [participant.user for participant in repo.list_participants(session, group.id)]


def set_budget_suggestion(session, group: Group, user_id: int, amount) -> Optional[Decimal]:
    _lock_open(session, group, "The budget is final once the draw is completed.")
    participant = _require_participant(session, group, user_id)
    participant.budget_suggestion = _parse_suggestion(amount)
    return participant.budget_suggestion


def budget_suggestions(session, group_id: int, requester_user_id: int) -> BudgetSuggestions:
    group = _load_group(session, group_id)
    _require_owner(group, requester_user_id, "view budget suggestions")
    participants = repo.list_participants(session, group.id)
    suggestions = sorted(
        participant.budget_suggestion
        for participant in participants
        if participant.budget_suggestion is not None
    )
    return BudgetSuggestions(
        group_id=group.id,
        suggestions=suggestions,
        participant_count=len(participants),
        current_budget=group.budget,
    )


def add_exclusion_rule(
    session,
    group_id: int,
    requester_user_id: int,
    user_a_id: int,
    user_b_id: int,
) -> ExclusionRuleView:
    if user_a_id == user_b_id:
        raise ValidationError(["Cannot create exclusion rule for the same user"])

    group = _load_group(session, group_id, for_update=True)
    _require_owner(group, requester_user_id, "manage exclusion rules")
    _lock_open(session, group, "Cannot add exclusion rules after the draw has been completed.")

    participant_ids = repo.list_participant_user_ids(session, group.id)
    if user_a_id not in participant_ids or user_b_id not in participant_ids:
        raise NotFound("One or both users are not participants in this group.")
    if repo.find_exclusion_rule(session, group.id, user_a_id, user_b_id):
        raise ValidationError(["This exclusion rule already exists"])

    warnings: List[str] = []
    if len(participant_ids) >= MIN_PARTICIPANTS:
        exclusions = repo.list_exclusion_pairs(session, group.id) + [(user_a_id, user_b_id)]
        report = validate_feasibility(participant_ids, exclusions)
        if not report.feasible:
            logger.bind(group_id=group.id, errors=report.errors).warning(
                "Exclusion rule would make the draw impossible"
            )
            raise InfeasibleConstraints(report.errors, message="This exclusion rule would make a valid draw impossible")
    else:
        warnings.append(ERROR_MIN_PARTICIPANTS)

    rule = repo.add_exclusion_rule(session, group.id, user_a_id, user_b_id, requester_user_id)
    logger.bind(group_id=group.id, rule_id=rule.id).info("Exclusion rule created")
    return ExclusionRuleView(rule=rule, user_a=rule.user_a, user_b=rule.user_b, warnings=warnings)


def remove_exclusion_rule(
    session,
    group_id: int,
    requester_user_id: int,
    user_a_id: int,
    user_b_id: int,
) -> None:
    group = _load_group(session, group_id, for_update=True)
    _require_owner(group, requester_user_id, "manage exclusion rules")
    _lock_open(session, group, "Cannot remove exclusion rules after the draw has been completed.")
    rule = repo.find_exclusion_rule(session, group.id, user_a_id, user_b_id)
    if rule is None:
        raise NotFound("Exclusion rule not found.")
    repo.delete_exclusion_rule(session, rule)
    logger.bind(group_id=group.id, user_a=user_a_id, user_b=user_b_id).info("Exclusion rule removed")


def list_exclusion_rules(session, group_id: int, requester_user_id: int) -> List[ExclusionRuleView]:
    group = _load_group(session, group_id)
    _require_owner(group, requester_user_id, "view exclusion rules")
    return [
        ExclusionRuleView(rule=rule, user_a=rule.user_a, user_b=rule.user_b)
        for rule in repo.list_exclusion_rules(session, group.id)
    ]


def update_wish(
    session,
    group_id: int,
    user_id: int,
    content: Optional[str],
    delay_seconds: int,
    max_attempts: int,
    now: Optional[datetime.datetime] = None,
) -> WishUpdate:
    content = (content or "").strip() or None
    if content is not None and len(content) > WISH_MAX_LENGTH:
        raise ValidationError([f"Wishlist must be at most {WISH_MAX_LENGTH} characters"])

    group = _load_group(session, group_id)
    participant = _require_participant(session, group, user_id)
    now = now or utcnow()
    participant.wish_content = content
    participant.wish_updated_at = now
    session.flush()

    intent = notifications.schedule_wish_updated(
        session,
        group,
        user_id,
        now=now,
        delay_seconds=delay_seconds,
        max_attempts=max_attempts,
    )
    logger.bind(group_id=group.id, user_id=user_id).info("Wishlist updated")
    return WishUpdate(group_id=group.id, content=content, updated_at=now, notification=intent)


def get_wish(session, group_id: int, user_id: int) -> Optional[str]:
    group = _load_group(session, group_id)
    return _require_participant(session, group, user_id).wish_content


def get_my_assignment(session, group_id: int, user_id: int) -> MyAssignment:
    group = _load_group(session, group_id)
    if not group.is_drawn:
        raise NotFound("Draw has not been completed yet.")
    _require_participant(session, group, user_id)

    assignment = repo.get_assignment_for_giver(session, group.id, user_id)
    if assignment is None:
        logger.bind(group_id=group.id, user_id=user_id).warning("No assignment found for participant")
        raise NotFound("No assignment found for this group.")

    recipient_participant = repo.get_participant(session, group.id, assignment.receiver_user_id)
    return MyAssignment(
        group_id=group.id,
        group_name=group.name,
        budget=group.budget,
        drawn_at=group.draw_completed_at,
        recipient=assignment.receiver,
        wish_content=recipient_participant.wish_content if recipient_participant else None,
        wish_updated_at=recipient_participant.wish_updated_at if recipient_participant else None,
    )


def resolve_user_group(session, user_id: int, group_identifier: Optional[str]) -> Optional[Group]:
    groups = repo.list_groups_for_user(session, user_id)
    if not groups:
        return None

    if group_identifier:
        try:
            identifier = int(group_identifier)
        except ValueError:
            return None
        for group in groups:
            if group.id == identifier or group.telegram_chat_id == identifier:
                return group
        return None

    if len(groups) == 1:
        return groups[0]
    return None
