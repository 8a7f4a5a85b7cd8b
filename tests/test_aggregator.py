"""
Tests for the recommendation Aggregator.

Tests:
- Candidate selection (own node, current peers, thresholds)
- Normalization (min-max, rank, constant sets)
- Strict total ordering and Top-K
- Partial strategy failure and NoUsableStrategyError
- Near-tie policy
- 5-node end-to-end ranking

Author: Lightning Goats Team
"""

from types import MappingProxyType
from unittest.mock import MagicMock

import pytest

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from modules.aggregator import (
    Aggregator, RecommendationSet, normalize_minmax, normalize_rank,
)
from modules.config import AutopilotConfig
from modules.errors import NoUsableStrategyError, StrategyComputationError
from modules.graph import ChannelInfo, GraphSnapshot, NodeInfo
from modules.heuristics import StrategyScore, build_strategies


# =============================================================================
# HELPERS
# =============================================================================

def build(node_ids, edges, addresses=None):
    addresses = addresses or {}
    return GraphSnapshot.build(
        [NodeInfo(n, alias=f"{n}-alias", addresses=addresses.get(n, ())) for n in node_ids],
        [ChannelInfo(a, b, cap) for a, b, cap in edges],
    )


def score(name, values):
    return StrategyScore(strategy=name, scores=MappingProxyType(dict(values)))


@pytest.fixture
def snapshot():
    """ME - A, plus a ring of candidates B..E."""
    return build(
        ["ME", "A", "B", "C", "D", "E"],
        [
            ("ME", "A", 100),
            ("A", "B", 100),
            ("B", "C", 200),
            ("C", "D", 300),
            ("D", "E", 400),
        ],
    )


@pytest.fixture
def aggregator():
    return Aggregator(plugin=MagicMock())


# =============================================================================
# NORMALIZATION
# =============================================================================

class TestNormalization:

    def test_minmax(self):
        assert normalize_minmax({"a": 2.0, "b": 4.0, "c": 3.0}) == {"a": 0.0, "b": 1.0, "c": 0.5}

    def test_minmax_constant_is_zero(self):
        assert normalize_minmax({"a": 5.0, "b": 5.0}) == {"a": 0.0, "b": 0.0}

    def test_minmax_empty(self):
        assert normalize_minmax({}) == {}

    def test_rank_with_ties(self):
        result = normalize_rank({"a": 1.0, "b": 10.0, "c": 10.0, "d": 0.0})
        assert result["d"] == 0.0
        assert result["a"] == pytest.approx(1 / 3)
        assert result["b"] == result["c"] == pytest.approx(2.5 / 3)

    def test_rank_constant_is_zero(self):
        assert normalize_rank({"a": 1.0, "b": 1.0}) == {"a": 0.0, "b": 0.0}


# =============================================================================
# CANDIDATES
# =============================================================================

class TestCandidates:

    def test_excludes_self_and_peers(self, aggregator, snapshot):
        candidates = aggregator.select_candidates(snapshot, "ME")
        assert "ME" not in candidates
        assert "A" not in candidates
        assert candidates == ["B", "C", "D", "E"]

    def test_explicit_exclusions(self, aggregator, snapshot):
        candidates = aggregator.select_candidates(snapshot, "ME", excluded={"C"})
        assert candidates == ["B", "D", "E"]

    def test_capacity_and_channel_thresholds(self, aggregator, snapshot):
        # totals: B=300, C=500, D=700, E=400; E has a single channel
        assert aggregator.select_candidates(snapshot, "ME", min_capacity_sats=450) == ["C", "D"]
        assert aggregator.select_candidates(snapshot, "ME", min_channels=2) == ["B", "C", "D"]

    def test_require_address(self, aggregator):
        snap = build("ABC", [("A", "B", 1), ("B", "C", 1)], addresses={"B": ("1.2.3.4:9735",)})
        assert aggregator.select_candidates(snap, "", require_address=True) == ["B"]

    def test_unknown_own_node(self, aggregator, snapshot):
        candidates = aggregator.select_candidates(snapshot, "NOT-IN-GRAPH")
        assert len(candidates) == len(snapshot)


# =============================================================================
# AGGREGATION
# =============================================================================

class TestAggregate:

    def test_weighted_sum_and_order(self, aggregator, snapshot):
        results = {
            "centrality": score("centrality", {"B": 0, "C": 4, "D": 2, "E": 0}),
            "richness": score("richness", {"B": 0, "C": 0, "D": 10, "E": 5}),
        }
        result = aggregator.aggregate(
            results, {"centrality": 0.5, "richness": 0.5}, snapshot, "ME", top_k=10,
        )
        ids = [r.node_id for r in result.recommendations]
        # C: 0.5, D: 0.25 + 0.5, E: 0.25, B: 0
        assert ids == ["D", "C", "E", "B"]
        top = result.recommendations[0]
        assert top.score == pytest.approx(0.75)
        assert top.contribution("centrality") == pytest.approx(0.25)
        assert top.contribution("richness") == pytest.approx(0.5)
        assert top.alias == "D-alias"
        assert top.channel_count == 2
        assert top.total_capacity_sats == 700

    def test_never_recommends_self_or_peers(self, aggregator, snapshot):
        results = {"richness": score("richness", {"ME": 100, "A": 99, "B": 1})}
        result = aggregator.aggregate(results, {"richness": 1.0}, snapshot, "ME", top_k=10)
        ids = [r.node_id for r in result.recommendations]
        assert "ME" not in ids
        assert "A" not in ids

    def test_strictly_ordered_ties_by_node_id(self, aggregator, snapshot):
        results = {"richness": score("richness", {"B": 1, "C": 1, "D": 1, "E": 1})}
        result = aggregator.aggregate(results, {"richness": 1.0}, snapshot, "ME", top_k=10)
        assert [r.node_id for r in result.recommendations] == ["B", "C", "D", "E"]
        assert len({r.node_id for r in result.recommendations}) == 4

    def test_top_k_truncates(self, aggregator, snapshot):
        results = {"richness": score("richness", {"B": 1, "C": 2, "D": 3, "E": 4})}
        result = aggregator.aggregate(results, {"richness": 1.0}, snapshot, "ME", top_k=2)
        assert [r.node_id for r in result.recommendations] == ["E", "D"]
        assert result.candidate_count == 4

    def test_partial_failure_drops_only_that_strategy(self, aggregator, snapshot):
        results = {
            "centrality": StrategyComputationError("centrality", "timed out after 1s"),
            "richness": score("richness", {"B": 1, "C": 2, "D": 3, "E": 4}),
        }
        result = aggregator.aggregate(
            results, {"centrality": 0.5, "richness": 0.5}, snapshot, "ME", top_k=10,
        )
        assert result.strategies_succeeded == ("richness",)
        assert result.strategies_failed == (("centrality", "timed out after 1s"),)
        assert dict(result.effective_weights) == {"richness": 1.0}
        assert result.recommendations[0].node_id == "E"
        assert result.recommendations[0].score == pytest.approx(1.0)

    def test_missing_and_raw_exception_results(self, aggregator, snapshot):
        results = {
            "centrality": RuntimeError("boom"),
            "richness": score("richness", {"B": 1}),
        }
        result = aggregator.aggregate(
            results, {"centrality": 1, "richness": 1, "random": 1}, snapshot, "ME", top_k=10,
        )
        failed = dict(result.strategies_failed)
        assert failed["centrality"] == "RuntimeError: boom"
        assert failed["random"] == "no result"

    def test_all_failed_raises(self, aggregator, snapshot):
        results = {"richness": StrategyComputationError("richness", "crashed")}
        with pytest.raises(NoUsableStrategyError) as exc_info:
            aggregator.aggregate(results, {"richness": 1.0}, snapshot, "ME", top_k=10)
        assert exc_info.value.failures == {"richness": "crashed"}

    def test_zero_weight_survivors_raise(self, aggregator, snapshot):
        results = {"richness": score("richness", {"B": 1})}
        with pytest.raises(NoUsableStrategyError):
            aggregator.aggregate(results, {"richness": 0.0}, snapshot, "ME", top_k=10)

    def test_rank_normalization(self, aggregator, snapshot):
        results = {"richness": score("richness", {"B": 1, "C": 1000, "D": 2, "E": 3})}
        result = aggregator.aggregate(
            results, {"richness": 1.0}, snapshot, "ME", top_k=10, normalization="rank",
        )
        scores = {r.node_id: r.score for r in result.recommendations}
        assert scores["C"] == pytest.approx(1.0)
        assert scores["E"] == pytest.approx(2 / 3)

    def test_invalid_arguments(self, aggregator, snapshot):
        results = {"richness": score("richness", {})}
        with pytest.raises(ValueError):
            aggregator.aggregate(results, {"richness": 1.0}, snapshot, "ME", top_k=0)
        with pytest.raises(ValueError):
            aggregator.aggregate(results, {"richness": 1.0}, snapshot, "ME", top_k=1,
                                 normalization="zscore")

    def test_failure_logged(self, aggregator, snapshot):
        results = {
            "centrality": StrategyComputationError("centrality", "boom"),
            "richness": score("richness", {"B": 1}),
        }
        aggregator.aggregate(results, {"centrality": 1, "richness": 1}, snapshot, "ME", top_k=1)
        levels = [c.kwargs.get("level") for c in aggregator.plugin.log.call_args_list]
        assert "warn" in levels


class TestTiePolicy:

    def test_quantum_groups_near_ties_by_node_id(self, aggregator, snapshot):
        results = {"richness": score("richness", {"B": 0.0, "C": 0.995, "D": 1.0, "E": 0.5})}
        plain = aggregator.aggregate(results, {"richness": 1.0}, snapshot, "ME", top_k=4)
        assert [r.node_id for r in plain.recommendations][:2] == ["D", "C"]

        bucketed = aggregator.aggregate(results, {"richness": 1.0}, snapshot, "ME", top_k=4,
                                        tie_quantum=0.3)
        # C and D share the top bucket; node id decides
        assert [r.node_id for r in bucketed.recommendations] == ["C", "D", "E", "B"]

    def test_random_tie_breaker(self, aggregator, snapshot):
        results = {
            "richness": score("richness", {"B": 0.0, "C": 1.0, "D": 1.0, "E": 0.0}),
            "random": score("random", {"B": 0.1, "C": 0.2, "D": 0.9, "E": 0.5}),
        }
        result = aggregator.aggregate(
            results, {"richness": 1.0, "random": 0.01}, snapshot, "ME", top_k=4,
            tie_quantum=0.5, tie_breaker="random",
        )
        assert [r.node_id for r in result.recommendations][:2] == ["D", "C"]


class TestRecommendationSet:

    def test_find_and_to_dict(self, aggregator, snapshot):
        results = {"richness": score("richness", {"B": 1, "C": 2, "D": 3, "E": 4})}
        agg = aggregator.aggregate(results, {"richness": 1.0}, snapshot, "ME", top_k=3)
        rec_set = RecommendationSet(
            cycle_id=3, timestamp=1000, recommendations=agg.recommendations,
            strategies_succeeded=agg.strategies_succeeded,
            effective_weights=agg.effective_weights, our_node_id="ME",
        )
        assert rec_set.node_ids() == ["E", "D", "C"]
        rank, rec = rec_set.find("D")
        assert rank == 2
        assert rec.node_id == "D"
        assert rec_set.find("B") is None

        data = rec_set.to_dict(limit=1)
        assert data["cycle_id"] == 3
        assert len(data["recommendations"]) == 1
        assert data["recommendations"][0]["node_id"] == "E"
        assert data["effective_weights"] == {"richness": 1.0}


# =============================================================================
# END TO END
# =============================================================================

class TestEndToEnd:
    """
    A, B hang off C; C connects to D and E; D-E is a large channel.

        A   B
         \\ /
          C --- E
          |    /
          D --/

    C lies on every shortest path from A or B to anything else (hop
    betweenness C=5, everyone else 0). E has the largest total capacity.
    """

    def test_top_two(self):
        snap = build("ABCDE", [
            ("A", "C", 1_000_000),
            ("B", "C", 1_000_000),
            ("C", "D", 1_000_000),
            ("C", "E", 10_000_000),
            ("D", "E", 50_000_000),
        ])
        cfg = AutopilotConfig(
            centrality_weight=1.0, richness_weight=1.0, random_weight=0.0,
            centrality_sample_size=0, min_capacity_sats=0, min_channels=0,
        ).snapshot()
        weights = cfg.strategy_weights()
        assert set(weights) == {"centrality", "richness"}

        strategies = build_strategies(cfg)
        results = {name: s.score(snap) for name, s in strategies.items()}
        assert results["centrality"].get("C") == pytest.approx(5.0)
        assert results["richness"].get("E") > results["richness"].get("D")

        result = Aggregator().aggregate(
            results, weights, snap, "", top_k=2,
            min_capacity_sats=cfg.min_capacity_sats, min_channels=cfg.min_channels,
        )
        # C: 0.5 + 0.5 * 0.626, E: 0.5 * 1.0, D: 0.5 * 0.960
        assert [r.node_id for r in result.recommendations] == ["C", "E"]
        assert result.recommendations[0].score == pytest.approx(0.8132, abs=1e-3)
        assert result.recommendations[1].score == pytest.approx(0.5)
