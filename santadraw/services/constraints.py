from __future__ import annotations

from typing import Dict, Hashable, Iterable, List, Optional, Sequence, Set, Tuple

ParticipantId = Hashable
CandidateGraph = Dict[ParticipantId, Set[ParticipantId]]


def find_duplicates(participant_ids: Sequence[ParticipantId]) -> List[ParticipantId]:
    seen: Set[ParticipantId] = set()
    duplicates: List[ParticipantId] = []
    for participant_id in participant_ids:
        if participant_id in seen and participant_id not in duplicates:
            duplicates.append(participant_id)
        seen.add(participant_id)
    return duplicates


def normalize_exclusions(
    participant_ids: Sequence[ParticipantId],
    exclusions: Optional[Iterable[Tuple[ParticipantId, ParticipantId]]],
) -> Set[frozenset]:
    """Unordered exclusion pairs restricted to the given participants.

    Self pairs and pairs naming someone outside the participant set carry no
    constraint and are dropped.
    """
    members = set(participant_ids)
    pairs: Set[frozenset] = set()
    for first, second in exclusions or ():
        if first == second:
            continue
        if first not in members or second not in members:
            continue
        pairs.add(frozenset((first, second)))
    return pairs


def build_candidate_graph(
    participant_ids: Sequence[ParticipantId],
    exclusions: Optional[Iterable[Tuple[ParticipantId, ParticipantId]]] = None,
) -> CandidateGraph:
    """Permitted giver -> recipient edges.

    C(p) = P minus p minus everyone sharing an exclusion pair with p. The
    result keeps the input order of P as its key order.
    """
    duplicates = find_duplicates(participant_ids)
    if duplicates:
        raise ValueError(f"Duplicate participant ids: {duplicates!r}")

    graph: CandidateGraph = {
        giver: set(participant_ids) - {giver} for giver in participant_ids
    }
    for pair in normalize_exclusions(participant_ids, exclusions):
        first, second = tuple(pair)
        graph[first].discard(second)
        graph[second].discard(first)
    return graph


def givers_without_candidates(graph: CandidateGraph) -> List[ParticipantId]:
    return [giver for giver, candidates in graph.items() if not candidates]


def is_valid_assignment(
    assignments: Dict[ParticipantId, ParticipantId],
    graph: CandidateGraph,
) -> bool:
    if set(assignments) != set(graph):
        return False
    if len(set(assignments.values())) != len(assignments):
        return False
    return all(receiver in graph[giver] for giver, receiver in assignments.items())
