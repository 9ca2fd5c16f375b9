"""
Consolidation -- prune weak patterns and merge near-duplicates.

Planning is pure: given a namespace's patterns and vectors it decides what to
delete and what to fold together. The store then applies the plan inside one
exclusive transaction, so readers see either the namespace before the pass or
after it.
"""

import logging
from typing import Any, Dict, List, Sequence

import numpy as np

from patternbank.confidence import clamp_confidence
from patternbank.errors import ValidationError
from patternbank.store import ConsolidationPlan, MergeGroup, PatternStore
from patternbank.types import Pattern

logger = logging.getLogger("patternbank.consolidation")

DEFAULT_MIN_USAGE = 1
DEFAULT_DEDUP_THRESHOLD = 0.95


def _survivor_key(pattern: Pattern):
    # Most used first; ties go to higher confidence, then the oldest, then id.
    return (-pattern.usage_count, -pattern.confidence, pattern.created_at, pattern.id)


def merged_confidence(group: Sequence[Pattern]) -> float:
    """Usage-weighted mean confidence; plain mean when nobody has been used."""
    total_usage = sum(p.usage_count for p in group)
    if total_usage > 0:
        value = sum(p.confidence * p.usage_count for p in group) / total_usage
    else:
        value = sum(p.confidence for p in group) / len(group)
    return round(clamp_confidence(value), 10)


def _duplicate_groups(patterns: List[Pattern], vectors: Dict[str, List[float]], threshold: float) -> List[List[Pattern]]:
    """Union-find over pairs whose cosine similarity exceeds the threshold."""
    if len(patterns) < 2:
        return []
    matrix = np.asarray([vectors[p.id] for p in patterns], dtype=np.float64)
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms[norms == 0.0] = 1.0
    unit = matrix / norms
    sims = unit @ unit.T

    parent = list(range(len(patterns)))

    def find(i: int) -> int:
        while parent[i] != i:
            parent[i] = parent[parent[i]]
            i = parent[i]
        return i

    rows, cols = np.nonzero(np.triu(sims > threshold, k=1))
    for i, j in zip(rows.tolist(), cols.tolist()):
        ri, rj = find(i), find(j)
        if ri != rj:
            parent[max(ri, rj)] = min(ri, rj)

    groups: Dict[int, List[Pattern]] = {}
    for i, pattern in enumerate(patterns):
        groups.setdefault(find(i), []).append(pattern)
    return [g for _, g in sorted(groups.items()) if len(g) > 1]


def plan_consolidation(
    patterns: List[Pattern],
    vectors: Dict[str, List[float]],
    confidence_floor: float,
    min_usage: int = DEFAULT_MIN_USAGE,
    dedup_threshold: float = DEFAULT_DEDUP_THRESHOLD,
) -> ConsolidationPlan:
    prune_ids = sorted(p.id for p in patterns if p.confidence < confidence_floor and p.usage_count < min_usage)
    pruned = set(prune_ids)
    candidates = sorted((p for p in patterns if p.id not in pruned and p.id in vectors), key=lambda p: p.id)

    merges: List[MergeGroup] = []
    for group in _duplicate_groups(candidates, vectors, dedup_threshold):
        ordered = sorted(group, key=_survivor_key)
        survivor, absorbed = ordered[0], ordered[1:]
        used = [p.last_used_at for p in group if p.last_used_at is not None]
        merges.append(
            MergeGroup(
                survivor_id=survivor.id,
                absorbed_ids=sorted(p.id for p in absorbed),
                confidence=merged_confidence(group),
                usage_count=sum(p.usage_count for p in group),
                last_used_at=max(used) if used else None,
            )
        )
    return ConsolidationPlan(prune_ids, merges)


def consolidate(
    store: PatternStore,
    namespace: str,
    confidence_floor: float,
    min_usage: int = DEFAULT_MIN_USAGE,
    dedup_threshold: float = DEFAULT_DEDUP_THRESHOLD,
    dry_run: bool = False,
) -> Dict[str, Any]:
    """Run one consolidation pass over a namespace and return a report."""
    if not 0.0 <= confidence_floor <= 1.0:
        raise ValidationError(f"confidence_floor {confidence_floor} outside [0, 1]")
    if min_usage < 0:
        raise ValidationError("min_usage must be >= 0")
    if not 0.0 < dedup_threshold <= 1.0:
        raise ValidationError(f"dedup_threshold {dedup_threshold} outside (0, 1]")

    before = {}

    def planner(patterns, vectors):
        before["count"] = len(patterns)
        return plan_consolidation(patterns, vectors, confidence_floor, min_usage, dedup_threshold)

    plan, stats = store.consolidate(namespace, planner, dry_run=dry_run)
    removed = stats["pruned"] + stats["merged"]
    report: Dict[str, Any] = {
        "namespace": namespace,
        "dry_run": dry_run,
        "patterns_before": before.get("count", 0),
        "patterns_after": before.get("count", 0) - removed,
        "groups_found": len(plan.merges),
        "details": [{"kept": g.survivor_id, "absorbed": list(g.absorbed_ids)} for g in plan.merges],
        "pruned_ids": list(plan.prune_ids),
    }
    report.update(stats)

    if not dry_run and removed:
        logger.info(
            "Consolidated %s: pruned %d, merged %d into %d survivors, re-pointed %d links",
            namespace,
            stats["pruned"],
            stats["merged"],
            len(plan.merges),
            stats["links_repointed"],
        )
    return report
