"""Path rules: rootedness, ranking and shortest known recipes.

Steps are any objects exposing ``input_a``, ``input_b``, ``result_name`` and
``result_glyph``.
"""

from collections import deque
from typing import Iterable, Sequence

from alchemy.domain.keys import STARTER_ELEMENTS, element_identity, is_starter, normalize_key


def unrooted_inputs(steps: Sequence) -> list[str]:
    """Inputs that are neither starters nor results of an earlier step."""
    available = {element_identity(name) for name, _ in STARTER_ELEMENTS}
    missing = []
    for step in steps:
        for name in (step.input_a, step.input_b):
            if element_identity(name) not in available:
                missing.append(name)
        available.add(element_identity(step.result_name))
    return missing


def is_rooted(steps: Sequence) -> bool:
    return bool(steps) and not unrooted_inputs(steps)


def terminates_at(steps: Sequence, target: str) -> bool:
    return bool(steps) and element_identity(steps[-1].result_name) == element_identity(target)


def produces_starter(steps: Sequence) -> bool:
    return any(is_starter(step.result_name) for step in steps)


def path_signature(steps: Sequence) -> tuple:
    """Identity of a path for de-duplication: its ordered keys and results."""
    return tuple(
        (normalize_key(step.input_a, step.input_b), element_identity(step.result_name))
        for step in steps
    )


def rank_paths(paths: Sequence, conflict_counts: Sequence[int]) -> list[int]:
    """Indices of ``paths`` ordered by fewest conflicts, then fewest steps.

    ``sorted`` is stable, so remaining ties keep generation order.
    """
    return sorted(
        range(len(paths)),
        key=lambda index: (conflict_counts[index], len(paths[index])),
    )


def shortest_known_path(combinations: Iterable, target: str) -> list | None:
    """Minimal recipe from the starters to ``target`` over known combinations.

    Expands the set of reachable elements one round at a time, so the first
    round that reaches an element gives it a path with the fewest rounds.
    Returns ``[]`` for starters and ``None`` when ``target`` is unreachable.
    """
    if is_starter(target):
        return []

    by_pair: dict[tuple[str, str], object] = {}
    for combination in combinations:
        pair = tuple(sorted((element_identity(combination.input_a), element_identity(combination.input_b))))
        by_pair.setdefault(pair, combination)

    paths: dict[str, list] = {element_identity(name): [] for name, _ in STARTER_ELEMENTS}
    target_identity = element_identity(target)
    frontier = deque(paths.keys())

    while frontier and target_identity not in paths:
        reached_this_round = []
        known = list(paths.keys())
        for _ in range(len(frontier)):
            current = frontier.popleft()
            for other in known:
                pair = tuple(sorted((current, other)))
                combination = by_pair.get(pair)
                if combination is None:
                    continue
                result = element_identity(combination.result_name)
                if result in paths or any(result == r for r, _ in reached_this_round):
                    continue
                merged = list(paths[current])
                for step in paths[other]:
                    if step not in merged:
                        merged.append(step)
                merged.append(combination)
                reached_this_round.append((result, merged))
        for result, path in reached_this_round:
            if result not in paths:
                paths[result] = path
                frontier.append(result)

    return paths.get(target_identity)
