from __future__ import annotations

import random
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from loguru import logger

from santadraw.services.constraints import (
    CandidateGraph,
    ParticipantId,
    build_candidate_graph,
    find_duplicates,
    givers_without_candidates,
    is_valid_assignment,
)
from santadraw.services.errors import InfeasibleConstraints
from santadraw.services.feasibility import (
    ERROR_DUPLICATE_PARTICIPANTS,
    ERROR_NO_CANDIDATES,
    ERROR_NO_COMPLETE_ASSIGNMENT,
    maximum_matching,
)

DEFAULT_MAX_ATTEMPTS = 200
STEPS_PER_ATTEMPT = 5000
SHUFFLE_ROUNDS_PER_PARTICIPANT = 8


class _StepBudgetExceeded(Exception):
    pass


def _backtrack_once(
    participants: List[ParticipantId],
    graph: CandidateGraph,
    position: Dict[ParticipantId, int],
    rng: random.Random,
    max_steps: int,
) -> Optional[Dict[ParticipantId, ParticipantId]]:
    steps = 0
    assignments: Dict[ParticipantId, ParticipantId] = {}
    remaining: Set[ParticipantId] = set(participants)

    def backtrack() -> bool:
        nonlocal steps
        if len(assignments) == len(participants):
            return True
        steps += 1
        if steps > max_steps:
            raise _StepBudgetExceeded

        # Most constrained giver first; ties fall to the shuffled order.
        unassigned = [giver for giver in participants if giver not in assignments]
        giver = min(unassigned, key=lambda g: len(graph[g] & remaining))
        choices = sorted(graph[giver] & remaining, key=position.__getitem__)
        rng.shuffle(choices)
        for receiver in choices:
            assignments[giver] = receiver
            remaining.remove(receiver)
            if backtrack():
                return True
            remaining.add(receiver)
            assignments.pop(giver, None)
        return False

    try:
        found = backtrack()
    except _StepBudgetExceeded:
        return None
    if not found:
        # The search finished without hitting its cap, so it covered every option.
        raise InfeasibleConstraints([ERROR_NO_COMPLETE_ASSIGNMENT])
    return assignments


def _shuffle_matching(
    assignments: Dict[ParticipantId, ParticipantId],
    graph: CandidateGraph,
    rng: random.Random,
) -> Dict[ParticipantId, ParticipantId]:
    """Random walk over valid assignments by swapping two givers' recipients."""
    givers = list(assignments)
    if len(givers) < 2:
        return assignments
    for _ in range(SHUFFLE_ROUNDS_PER_PARTICIPANT * len(givers)):
        first, second = rng.sample(givers, 2)
        first_receiver = assignments[first]
        second_receiver = assignments[second]
        if second_receiver in graph[first] and first_receiver in graph[second]:
            assignments[first] = second_receiver
            assignments[second] = first_receiver
    return assignments


def _in_input_order(
    participant_ids: Sequence[ParticipantId],
    assignments: Dict[ParticipantId, ParticipantId],
) -> Dict[ParticipantId, ParticipantId]:
    return {giver: assignments[giver] for giver in participant_ids}


def generate_assignments(
    participant_ids: Sequence[ParticipantId],
    exclusions: Optional[Iterable[Tuple[ParticipantId, ParticipantId]]] = None,
    seed: Optional[int] = None,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    rng: Optional[random.Random] = None,
) -> Dict[ParticipantId, ParticipantId]:
    """Pick one giver -> receiver derangement that respects the exclusions.

    Randomized backtracking is tried up to ``max_attempts`` times, each
    attempt on a freshly shuffled participant order and capped at a fixed
    number of search steps. When the budget runs out the assignment is solved
    as a bipartite matching and then scrambled with random valid swaps.
    Raises InfeasibleConstraints when no valid assignment exists.
    """
    if len(participant_ids) < 2:
        raise InfeasibleConstraints(["At least 2 participants are required."])
    if find_duplicates(participant_ids):
        raise InfeasibleConstraints([ERROR_DUPLICATE_PARTICIPANTS])

    rng = rng or random.Random(seed)
    graph = build_candidate_graph(participant_ids, exclusions)
    if givers_without_candidates(graph):
        raise InfeasibleConstraints([ERROR_NO_CANDIDATES])

    position = {participant: index for index, participant in enumerate(participant_ids)}
    participants = list(participant_ids)

    for attempt in range(max_attempts):
        rng.shuffle(participants)
        assignments = _backtrack_once(participants, graph, position, rng, STEPS_PER_ATTEMPT)
        if assignments is not None:
            logger.bind(participants=len(participants), attempt=attempt + 1).debug(
                "Assignment found by randomized search"
            )
            return _in_input_order(participant_ids, assignments)

    matching = maximum_matching(graph, rng=rng)
    if len(matching) != len(participants):
        raise InfeasibleConstraints([ERROR_NO_COMPLETE_ASSIGNMENT])

    assignments = _shuffle_matching(matching, graph, rng)
    if not is_valid_assignment(assignments, graph):
        raise InfeasibleConstraints([ERROR_NO_COMPLETE_ASSIGNMENT])
    logger.bind(participants=len(participants), attempts=max_attempts).info(
        "Assignment found by matching fallback"
    )
    return _in_input_order(participant_ids, assignments)
