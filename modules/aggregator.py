"""
Recommendation Aggregator for cl-autopilot

Merges the per-strategy scores of one cycle into a single ranked list of
peers to open channels with.

Procedure:
1. Drop strategies that failed this cycle (recorded with the reason)
2. Build the candidate set: every snapshot node except our own node, our
   current peers, explicitly excluded ids and nodes below the capacity /
   channel-count thresholds
3. Normalize each surviving strategy over the candidates, independently
   (min-max or rank), so no raw scale dominates
4. Re-normalize the weights over the surviving strategies and sum the
   weighted normalized scores
5. Sort descending, ties by node id, and keep the top K

Failure policy: a failed strategy only removes its own contribution. If
no strategy survives, NoUsableStrategyError is raised and the caller
keeps the previous list.

Author: Lightning Goats Team
"""

import math
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from .errors import NoUsableStrategyError, StrategyComputationError
from .graph import GraphSnapshot
from .heuristics import StrategyScore


# =============================================================================
# CONSTANTS
# =============================================================================

NORMALIZE_MINMAX = "minmax"
NORMALIZE_RANK = "rank"

TIE_BREAK_NODE_ID = "node_id"
TIE_BREAK_RANDOM = "random"

# Strategy whose normalized score orders near-ties with TIE_BREAK_RANDOM
RANDOM_STRATEGY_NAME = "random"

# Decimal places kept in RPC output
SCORE_DISPLAY_PRECISION = 6


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass(frozen=True)
class Recommendation:
    """One recommended peer."""
    node_id: str
    score: float
    # (strategy, weighted normalized contribution), in strategy order
    breakdown: Tuple[Tuple[str, float], ...]
    alias: str = ""
    total_capacity_sats: int = 0
    channel_count: int = 0

    def contribution(self, strategy: str) -> float:
        for name, value in self.breakdown:
            if name == strategy:
                return value
        return 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "node_id": self.node_id,
            "alias": self.alias,
            "score": round(self.score, SCORE_DISPLAY_PRECISION),
            "breakdown": {
                name: round(value, SCORE_DISPLAY_PRECISION)
                for name, value in self.breakdown
            },
            "total_capacity_sats": self.total_capacity_sats,
            "channel_count": self.channel_count,
        }


@dataclass(frozen=True)
class AggregationResult:
    """Output of one aggregation."""
    recommendations: Tuple[Recommendation, ...]
    strategies_succeeded: Tuple[str, ...]
    # (strategy, reason)
    strategies_failed: Tuple[Tuple[str, str], ...]
    # weights after re-normalization over the surviving strategies
    effective_weights: Tuple[Tuple[str, float], ...]
    candidate_count: int = 0


@dataclass(frozen=True)
class RecommendationSet:
    """
    The unit the scheduler publishes: one cycle's recommendations plus
    the metadata the operator tooling renders.
    """
    cycle_id: int
    timestamp: int
    recommendations: Tuple[Recommendation, ...]
    strategies_succeeded: Tuple[str, ...] = ()
    strategies_failed: Tuple[Tuple[str, str], ...] = ()
    effective_weights: Tuple[Tuple[str, float], ...] = ()
    node_count: int = 0
    channel_count: int = 0
    candidate_count: int = 0
    our_node_id: str = ""

    def node_ids(self) -> List[str]:
        return [r.node_id for r in self.recommendations]

    def find(self, node_id: str) -> Optional[Tuple[int, Recommendation]]:
        """(1-based rank, recommendation) for node_id, or None."""
        for rank, rec in enumerate(self.recommendations, start=1):
            if rec.node_id == node_id:
                return rank, rec
        return None

    def to_dict(self, limit: Optional[int] = None) -> Dict[str, Any]:
        recs = self.recommendations if limit is None else self.recommendations[:limit]
        return {
            "cycle_id": self.cycle_id,
            "timestamp": self.timestamp,
            "recommendations": [r.to_dict() for r in recs],
            "strategies_succeeded": list(self.strategies_succeeded),
            "strategies_failed": {name: reason for name, reason in self.strategies_failed},
            "effective_weights": {
                name: round(w, SCORE_DISPLAY_PRECISION) for name, w in self.effective_weights
            },
            "node_count": self.node_count,
            "channel_count": self.channel_count,
            "candidate_count": self.candidate_count,
        }


# =============================================================================
# NORMALIZATION
# =============================================================================

def normalize_minmax(values: Mapping[str, float]) -> Dict[str, float]:
    """
    Scale to [0, 1] by (v - min) / (max - min).

    A constant (or empty) set maps to 0.0 everywhere: a strategy that
    cannot tell candidates apart contributes nothing.
    """
    if not values:
        return {}
    low = min(values.values())
    high = max(values.values())
    span = high - low
    if span <= 0 or math.isnan(span):
        return {k: 0.0 for k in values}
    return {k: (v - low) / span for k, v in values.items()}


def normalize_rank(values: Mapping[str, float]) -> Dict[str, float]:
    """
    Scale by rank: lowest 0.0, highest 1.0, equal values share their
    average rank. A constant set maps to 0.0 everywhere.
    """
    if not values:
        return {}
    ordered = sorted(values.items(), key=lambda kv: (kv[1], kv[0]))
    if ordered[0][1] == ordered[-1][1]:
        return {k: 0.0 for k in values}

    n = len(ordered)
    ranks: Dict[str, float] = {}
    i = 0
    while i < n:
        j = i
        while j + 1 < n and ordered[j + 1][1] == ordered[i][1]:
            j += 1
        avg_rank = (i + j) / 2.0
        for k in range(i, j + 1):
            ranks[ordered[k][0]] = avg_rank / (n - 1)
        i = j + 1
    return ranks


NORMALIZERS = {
    NORMALIZE_MINMAX: normalize_minmax,
    NORMALIZE_RANK: normalize_rank,
}


# =============================================================================
# AGGREGATOR
# =============================================================================

StrategyOutcome = Union[StrategyScore, BaseException, None]


class Aggregator:
    """
    Combines strategy scores into ranked recommendations.

    Stateless between calls; safe to share across cycles.
    """

    def __init__(self, plugin=None):
        self.plugin = plugin

    def _log(self, message: str, level: str = "debug") -> None:
        if self.plugin:
            self.plugin.log(f"AGGREGATOR: {message}", level=level)

    # =========================================================================
    # CANDIDATES
    # =========================================================================

    def select_candidates(self, snapshot: GraphSnapshot, our_node_id: str, *,
                          excluded: Iterable[str] = (),
                          min_capacity_sats: int = 0,
                          min_channels: int = 0,
                          require_address: bool = False) -> List[str]:
        """
        Node ids eligible for recommendation, sorted.

        Our own node and its current peers stay in the graph for scoring
        but are never candidates.
        """
        blocked = set(excluded)
        if our_node_id:
            blocked.add(our_node_id)
            blocked.update(snapshot.neighbors(our_node_id))

        candidates = []
        for idx, node in enumerate(snapshot.nodes):
            if node.node_id in blocked:
                continue
            if snapshot.total_capacities[idx] < min_capacity_sats:
                continue
            if len(snapshot.adjacency[idx]) < min_channels:
                continue
            if require_address and not node.addresses:
                continue
            candidates.append(node.node_id)
        return candidates

    # =========================================================================
    # AGGREGATION
    # =========================================================================

    def aggregate(self, results: Mapping[str, StrategyOutcome],
                  weights: Mapping[str, float], snapshot: GraphSnapshot,
                  our_node_id: str, *, top_k: int,
                  excluded: Iterable[str] = (),
                  min_capacity_sats: int = 0,
                  min_channels: int = 0,
                  require_address: bool = False,
                  normalization: str = NORMALIZE_MINMAX,
                  tie_quantum: float = 0.0,
                  tie_breaker: str = TIE_BREAK_NODE_ID) -> AggregationResult:
        """
        Rank candidates by the weighted sum of normalized strategy scores.

        Args:
            results: strategy name -> StrategyScore, or the exception it
                raised (None counts as a failure too)
            weights: strategy name -> configured weight; only strategies
                listed here take part
            snapshot: Graph the scores were computed on
            our_node_id: Operator node, excluded with its peers
            top_k: Maximum number of recommendations
            excluded: Extra node ids to leave out (e.g. peers with a
                channel still opening)
            min_capacity_sats: Minimum total capacity of a candidate
            min_channels: Minimum channel count of a candidate
            require_address: Skip candidates without announced addresses
            normalization: "minmax" or "rank"
            tie_quantum: Bucket width for near-equal combined scores
                (0 disables)
            tie_breaker: Order inside a bucket: "node_id" or "random"

        Returns:
            AggregationResult

        Raises:
            NoUsableStrategyError: no strategy produced scores
            ValueError: unknown normalization, top_k < 1
        """
        if top_k < 1:
            raise ValueError("top_k must be positive")
        normalizer = NORMALIZERS.get(normalization)
        if normalizer is None:
            raise ValueError(f"unknown normalization {normalization!r}")

        succeeded: Dict[str, StrategyScore] = {}
        failed: Dict[str, str] = {}
        for name in weights:
            outcome = results.get(name)
            if isinstance(outcome, StrategyScore):
                succeeded[name] = outcome
            elif isinstance(outcome, StrategyComputationError):
                failed[name] = outcome.reason
            elif isinstance(outcome, BaseException):
                failed[name] = f"{type(outcome).__name__}: {outcome}"
            else:
                failed[name] = "no result"

        for name, reason in failed.items():
            self._log(f"Dropping strategy {name} for this cycle: {reason}", level="warn")

        total_weight = sum(weights[name] for name in succeeded)
        if not succeeded or total_weight <= 0:
            raise NoUsableStrategyError(failed)

        effective = {name: weights[name] / total_weight for name in succeeded}

        candidates = self.select_candidates(
            snapshot, our_node_id,
            excluded=excluded,
            min_capacity_sats=min_capacity_sats,
            min_channels=min_channels,
            require_address=require_address,
        )

        normalized: Dict[str, Dict[str, float]] = {}
        for name, score in succeeded.items():
            normalized[name] = normalizer({c: score.get(c) for c in candidates})

        ranked = []
        for node_id in candidates:
            breakdown = tuple(
                (name, normalized[name][node_id] * effective[name]) for name in succeeded
            )
            combined = sum(value for _, value in breakdown)
            ranked.append((node_id, combined, breakdown))

        random_scores = normalized.get(RANDOM_STRATEGY_NAME, {})

        def sort_key(item):
            node_id, combined, _ = item
            if tie_quantum > 0:
                bucket = math.floor(combined / tie_quantum)
                secondary = 0.0
                if tie_breaker == TIE_BREAK_RANDOM:
                    secondary = -random_scores.get(node_id, 0.0)
                return (-bucket, secondary, node_id)
            return (-combined, node_id)

        ranked.sort(key=sort_key)

        recommendations = []
        for node_id, combined, breakdown in ranked[:top_k]:
            node = snapshot.get_node(node_id)
            recommendations.append(Recommendation(
                node_id=node_id,
                score=combined,
                breakdown=breakdown,
                alias=node.alias if node else "",
                total_capacity_sats=snapshot.total_capacity(node_id),
                channel_count=snapshot.degree(node_id),
            ))

        self._log(
            f"Ranked {len(candidates)} candidates with "
            f"{', '.join(succeeded)}; kept {len(recommendations)}"
        )

        return AggregationResult(
            recommendations=tuple(recommendations),
            strategies_succeeded=tuple(succeeded),
            strategies_failed=tuple(sorted(failed.items())),
            effective_weights=tuple(effective.items()),
            candidate_count=len(candidates),
        )
