"""Draw feasibility.

A draw is possible exactly when the bipartite graph of givers to permitted
recipients has a perfect matching. Every giver having at least one candidate
is necessary but not sufficient: three givers whose only candidate is the
same person pass that check and still cannot all be served.
"""
from __future__ import annotations

import random
from collections import deque
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from santadraw.services.constraints import (
    CandidateGraph,
    ParticipantId,
    build_candidate_graph,
    find_duplicates,
    givers_without_candidates,
    normalize_exclusions,
)

MIN_PARTICIPANTS = 3

ERROR_MIN_PARTICIPANTS = f"Minimum {MIN_PARTICIPANTS} participants required for draw"
ERROR_DUPLICATE_PARTICIPANTS = "Duplicate participant IDs detected"
ERROR_NO_CANDIDATES = "Exclusion rules eliminate all valid recipients for at least one participant"
ERROR_NO_COMPLETE_ASSIGNMENT = (
    "Exclusion rules leave a group of participants with fewer possible recipients than "
    "givers, so no complete assignment exists"
)


@dataclass(frozen=True)
class FeasibilityReport:
    feasible: bool
    participant_count: int
    exclusion_count: int
    errors: List[str] = field(default_factory=list)


def _ordered(values, position: Dict[ParticipantId, int], rng: Optional[random.Random]) -> list:
    ordered = sorted(values, key=position.__getitem__)
    if rng is not None:
        rng.shuffle(ordered)
    return ordered


def _augment(
    root: ParticipantId,
    graph: CandidateGraph,
    match_of_giver: Dict[ParticipantId, ParticipantId],
    match_of_recipient: Dict[ParticipantId, ParticipantId],
    position: Dict[ParticipantId, int],
    rng: Optional[random.Random],
) -> bool:
    # Breadth-first search for an alternating path from root to a free recipient.
    reached_from: Dict[ParticipantId, ParticipantId] = {}
    visited = {root}
    queue = deque([root])
    while queue:
        giver = queue.popleft()
        for recipient in _ordered(graph[giver], position, rng):
            if recipient in reached_from:
                continue
            reached_from[recipient] = giver
            owner = match_of_recipient.get(recipient)
            if owner is None:
                current: Optional[ParticipantId] = recipient
                while current is not None:
                    path_giver = reached_from[current]
                    previous = match_of_giver.get(path_giver)
                    match_of_giver[path_giver] = current
                    match_of_recipient[current] = path_giver
                    current = previous
                return True
            if owner not in visited:
                visited.add(owner)
                queue.append(owner)
    return False


def maximum_matching(
    graph: CandidateGraph,
    rng: Optional[random.Random] = None,
) -> Dict[ParticipantId, ParticipantId]:
    """Maximum giver -> recipient matching by repeated augmenting paths.

    With an rng the givers and their candidates are visited in random order,
    so equally valid matchings are not always found in input order.
    """
    position = {participant: index for index, participant in enumerate(graph)}
    match_of_giver: Dict[ParticipantId, ParticipantId] = {}
    match_of_recipient: Dict[ParticipantId, ParticipantId] = {}
    for giver in _ordered(graph, position, rng):
        _augment(giver, graph, match_of_giver, match_of_recipient, position, rng)
    return match_of_giver


def validate_feasibility(
    participant_ids: Sequence[ParticipantId],
    exclusions: Optional[Iterable[Tuple[ParticipantId, ParticipantId]]] = None,
) -> FeasibilityReport:
    exclusions = list(exclusions or [])
    participant_count = len(participant_ids)
    exclusion_count = len(normalize_exclusions(participant_ids, exclusions))

    def report(errors: List[str]) -> FeasibilityReport:
        return FeasibilityReport(
            feasible=not errors,
            participant_count=participant_count,
            exclusion_count=exclusion_count,
            errors=errors,
        )

    if participant_count < MIN_PARTICIPANTS:
        return report([ERROR_MIN_PARTICIPANTS])
    if find_duplicates(participant_ids):
        return report([ERROR_DUPLICATE_PARTICIPANTS])

    graph = build_candidate_graph(participant_ids, exclusions)
    if givers_without_candidates(graph):
        return report([ERROR_NO_CANDIDATES])
    if len(maximum_matching(graph)) != participant_count:
        return report([ERROR_NO_COMPLETE_ASSIGNMENT])
    return report([])
