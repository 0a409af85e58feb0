from __future__ import annotations

import datetime
import random
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Dict, List, Optional

from loguru import logger
from sqlalchemy.exc import IntegrityError

from santadraw.core.clock import utcnow
from santadraw.db import Group, repo
from santadraw.services import notifications
from santadraw.services.assignment import DEFAULT_MAX_ATTEMPTS, generate_assignments
from santadraw.services.errors import (
    AlreadyDrawn,
    Forbidden,
    InfeasibleConstraints,
    NotFound,
    ValidationError,
)
from santadraw.services.feasibility import FeasibilityReport, validate_feasibility

MIN_BUDGET = Decimal("0.01")
MAX_BUDGET = Decimal("99999999.99")
CENTS = Decimal("0.01")

WARNING_ALREADY_DRAWN = "Draw has already been completed for this group"


@dataclass(frozen=True)
class DrawValidation:
    group_id: int
    feasible: bool
    can_draw: bool
    participant_count: int
    exclusion_count: int
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class DrawResult:
    group_id: int
    assignments: Dict[int, int]
    budget: Decimal
    drawn_at: datetime.datetime
    notification_count: int

    @property
    def participant_count(self) -> int:
        return len(self.assignments)


def parse_budget(value) -> Decimal:
    """Positive amount in currency units with at most two decimals."""
    if isinstance(value, float):
        value = str(value)
    if isinstance(value, str):
        value = value.strip().replace(",", ".")
    try:
        amount = Decimal(value)
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise ValidationError(["Budget must be a valid decimal value"]) from exc

    if not amount.is_finite():
        raise ValidationError(["Budget must be a valid decimal value"])
    if amount < MIN_BUDGET or amount > MAX_BUDGET:
        raise ValidationError([f"Budget must be between {MIN_BUDGET} and {MAX_BUDGET}"])
    if amount != amount.quantize(CENTS):
        raise ValidationError(["Budget must have at most 2 decimal places"])
    return amount.quantize(CENTS)


def _load_group(session, group_id: int, for_update: bool = False) -> Group:
    group = repo.get_group_for_update(session, group_id) if for_update else repo.get_group_by_id(session, group_id)
    if group is None:
        raise NotFound("Group not found.")
    return group


def _require_owner(group: Group, requester_user_id: int, action: str) -> None:
    if group.owner_user_id != requester_user_id:
        logger.bind(group_id=group.id, user_id=requester_user_id).warning(
            "Non-owner attempted to {action}", action=action
        )
        raise Forbidden(f"Only the group owner can {action}.")


def check_feasibility(session, group_id: int) -> FeasibilityReport:
    participant_ids = repo.list_participant_user_ids(session, group_id)
    exclusions = repo.list_exclusion_pairs(session, group_id)
    return validate_feasibility(participant_ids, exclusions)


def validate_draw(session, group_id: int, requester_user_id: int) -> DrawValidation:
    group = _load_group(session, group_id)
    _require_owner(group, requester_user_id, "validate the draw")

    report = check_feasibility(session, group.id)
    warnings = [WARNING_ALREADY_DRAWN] if group.is_drawn else []
    validation = DrawValidation(
        group_id=group.id,
        feasible=report.feasible,
        can_draw=report.feasible and not group.is_drawn,
        participant_count=report.participant_count,
        exclusion_count=report.exclusion_count,
        errors=list(report.errors),
        warnings=warnings,
    )
    logger.bind(
        group_id=group.id,
        feasible=validation.feasible,
        can_draw=validation.can_draw,
        participants=validation.participant_count,
        exclusions=validation.exclusion_count,
    ).info("Draw validated")
    return validation


def execute_draw(
    session,
    group_id: int,
    requester_user_id: int,
    budget,
    now: Optional[datetime.datetime] = None,
    rng: Optional[random.Random] = None,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> DrawResult:
    """Move a group from Open to Drawn.

    Everything happens in the caller's transaction: the group row is locked,
    the guard is re-checked by a conditional update, and assignments plus
    outcome notifications are added. Any exception leaves the caller to roll
    back, so a failed draw writes nothing.
    """
    group = _load_group(session, group_id, for_update=True)
    if group.is_drawn:
        raise AlreadyDrawn()
    _require_owner(group, requester_user_id, "run the draw")
    final_budget = parse_budget(budget)

    # Claim before reading participants and rules: the claim holds the write
    # lock that membership and rule changes wait on, so the reads below are final.
    drawn_at = now or utcnow()
    if not repo.claim_group_draw(session, group.id, final_budget, drawn_at):
        raise AlreadyDrawn()

    participant_ids = repo.list_participant_user_ids(session, group.id)
    exclusions = repo.list_exclusion_pairs(session, group.id)
    report = validate_feasibility(participant_ids, exclusions)
    if not report.feasible:
        logger.bind(group_id=group.id, errors=report.errors).warning("Draw rejected as infeasible")
        raise InfeasibleConstraints(report.errors)

    assignments = generate_assignments(
        participant_ids,
        exclusions=exclusions,
        rng=rng or random.SystemRandom(),
        max_attempts=max_attempts,
    )

    try:
        repo.create_assignments(session, group.id, assignments)
    except IntegrityError as exc:
        raise AlreadyDrawn("Assignments already exist for this group.") from exc

    intents = notifications.schedule_outcome_notifications(session, group, participant_ids, drawn_at)

    logger.bind(
        group_id=group.id,
        participants=len(assignments),
        exclusions=report.exclusion_count,
    ).info("Draw completed")
    return DrawResult(
        group_id=group.id,
        assignments=assignments,
        budget=final_budget,
        drawn_at=drawn_at,
        notification_count=len(intents),
    )
