"""
Dependency Resolver
===================

Orders features so prerequisites come first (Kahn's algorithm, ties broken
by priority then by original position) and answers whether a feature's
prerequisites are done.
"""

from __future__ import annotations

import heapq
from typing import Any, Iterable

from automode.models import Feature, FeatureStatus

# A dependency counts as satisfied once it reached one of these statuses
COMPLETED_STATUSES = frozenset({
    FeatureStatus.VERIFIED.value,
    FeatureStatus.WAITING_APPROVAL.value,
    "completed",
})

_DEFAULT_PRIORITY = 2


def resolve_dependencies(features: list[Feature]) -> dict[str, Any]:
    """
    Topologically sort ``features``.

    Dependencies on ids outside the list are ignored for ordering. Features
    caught in a cycle are appended in their original order and reported.

    Returns:
        {"ordered_features": [...], "circular_dependencies": [[id, ...], ...]}
    """
    by_id = {f.id: f for f in features}
    position = {f.id: i for i, f in enumerate(features)}
    indegree = {f.id: 0 for f in features}
    dependents: dict[str, list[str]] = {f.id: [] for f in features}

    for feature in features:
        for dep_id in set(feature.dependencies or []):
            if dep_id in by_id and dep_id != feature.id:
                indegree[feature.id] += 1
                dependents[dep_id].append(feature.id)

    def sort_key(fid: str) -> tuple[int, int]:
        priority = by_id[fid].priority
        return (priority if priority is not None else _DEFAULT_PRIORITY, position[fid])

    heap = [(sort_key(fid), fid) for fid, degree in indegree.items() if degree == 0]
    heapq.heapify(heap)

    ordered: list[Feature] = []
    while heap:
        _, fid = heapq.heappop(heap)
        ordered.append(by_id[fid])
        for child in dependents[fid]:
            indegree[child] -= 1
            if indegree[child] == 0:
                heapq.heappush(heap, (sort_key(child), child))

    remaining = [f for f in features if indegree[f.id] > 0]
    cycles = _find_cycles(remaining)
    ordered.extend(remaining)

    return {"ordered_features": ordered, "circular_dependencies": cycles}


def _find_cycles(features: list[Feature]) -> list[list[str]]:
    ids = {f.id for f in features}
    deps = {f.id: [d for d in f.dependencies or [] if d in ids] for f in features}
    seen: set[str] = set()
    cycles: list[list[str]] = []

    for start in deps:
        if start in seen:
            continue
        path: list[str] = []
        node: str | None = start
        while node is not None and node not in path and node not in seen:
            path.append(node)
            node = deps[node][0] if deps[node] else None
        if node is not None and node in path:
            cycles.append(path[path.index(node):])
        seen.update(path)

    return cycles


def are_dependencies_satisfied(feature: Feature, all_features: Iterable[Feature]) -> bool:
    """
    True when every dependency has completed.

    A dependency that is no longer in the store does not block the feature.
    """
    if not feature.dependencies:
        return True
    statuses = {f.id: f.status for f in all_features}
    for dep_id in feature.dependencies:
        status = statuses.get(dep_id)
        if status is not None and status not in COMPLETED_STATUSES:
            return False
    return True
