"""
Scoring strategies for cl-autopilot.

Every strategy turns one GraphSnapshot into a score per node id. Scores
from different strategies live on different scales; the Aggregator
normalizes them before combining.

Strategies are registered in a fixed list (STRATEGY_CLASSES) and built
from a config snapshot at the start of each cycle. They keep no state
between cycles and only read the snapshot, so several of them can run on
the same snapshot in parallel.

Strategies:
- centrality: betweenness or closeness (see centrality.py)
- richness:   total channel capacity, optionally log-scaled
- random:     seeded per-node random value, for exploration

Author: Lightning Goats Team
"""

import hashlib
import math
import time
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional

from .centrality import compute_centrality
from .graph import GraphSnapshot


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass(frozen=True)
class StrategyScore:
    """Scores produced by one strategy for one snapshot."""
    strategy: str
    scores: Mapping[str, float]
    elapsed_seconds: float = 0.0

    def get(self, node_id: str) -> float:
        return self.scores.get(node_id, 0.0)


# =============================================================================
# BASE CLASS
# =============================================================================

class Strategy:
    """
    Base class for scoring strategies.

    Subclasses set `name` and implement _compute().
    """

    name = ""

    def __init__(self, plugin=None):
        self.plugin = plugin

    def _log(self, message: str, level: str = "debug") -> None:
        if self.plugin:
            self.plugin.log(f"STRATEGY[{self.name}]: {message}", level=level)

    def _compute(self, snapshot: GraphSnapshot, cancel_event=None) -> Dict[str, float]:
        raise NotImplementedError

    def score(self, snapshot: GraphSnapshot, cancel_event=None) -> StrategyScore:
        """
        Score every node of the snapshot.

        Args:
            snapshot: Graph to score (never modified)
            cancel_event: threading.Event checked during long computations

        Raises:
            CycleCancelled: cancel_event was set
        """
        started = time.monotonic()
        scores = self._compute(snapshot, cancel_event)
        elapsed = time.monotonic() - started
        self._log(f"scored {len(scores)} nodes in {elapsed:.3f}s")
        return StrategyScore(
            strategy=self.name,
            scores=MappingProxyType(dict(scores)),
            elapsed_seconds=elapsed,
        )

    def describe(self) -> Dict[str, Any]:
        return {"name": self.name}


# =============================================================================
# CENTRALITY
# =============================================================================

class CentralityStrategy(Strategy):
    """Structural importance on shortest paths between other nodes."""

    name = "centrality"

    def __init__(self, mode: str = "betweenness", distance: str = "hops",
                 sample_size: int = 0, seed: int = 0, plugin=None):
        super().__init__(plugin)
        self.mode = mode
        self.distance = distance
        self.sample_size = sample_size
        self.seed = seed

    def _compute(self, snapshot, cancel_event=None):
        return compute_centrality(
            snapshot,
            mode=self.mode,
            distance=self.distance,
            sample_size=self.sample_size,
            seed=self.seed,
            cancel_event=cancel_event,
        )

    def describe(self):
        return {
            "name": self.name,
            "mode": self.mode,
            "distance": self.distance,
            "sample_size": self.sample_size,
            "seed": self.seed,
        }


# =============================================================================
# RICHNESS
# =============================================================================

class RichnessStrategy(Strategy):
    """
    Aggregate channel capacity.

    Strictly monotonic in total capacity: more capacity always means a
    strictly higher score, also where log1p() or float conversion would
    round two capacities to the same value.
    """

    name = "richness"

    def __init__(self, log_scale: bool = True, plugin=None):
        super().__init__(plugin)
        self.log_scale = log_scale

    def _scale(self, capacity: int) -> float:
        if self.log_scale:
            return math.log1p(capacity)
        return float(capacity)

    def _compute(self, snapshot, cancel_event=None):
        by_capacity: Dict[int, float] = {}
        previous: Optional[float] = None
        for capacity in sorted(set(snapshot.total_capacities)):
            value = self._scale(capacity)
            if previous is not None and value <= previous:
                value = math.nextafter(previous, math.inf)
            by_capacity[capacity] = value
            previous = value

        return {
            node.node_id: by_capacity[snapshot.total_capacities[idx]]
            for idx, node in enumerate(snapshot.nodes)
        }

    def describe(self):
        return {"name": self.name, "log_scale": self.log_scale}


# =============================================================================
# RANDOM
# =============================================================================

def seeded_unit_value(seed: int, node_id: str) -> float:
    """
    Deterministic value in [0, 1) keyed by seed and node id.

    Independent of enumeration order and of every other node.
    """
    digest = hashlib.sha256(f"{seed}:{node_id}".encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big") / 2.0 ** 64


class RandomStrategy(Strategy):
    """Exploration: keeps the list from collapsing onto the same hubs."""

    name = "random"

    def __init__(self, seed: int = 0, plugin=None):
        super().__init__(plugin)
        self.seed = seed

    def _compute(self, snapshot, cancel_event=None):
        return {
            node.node_id: seeded_unit_value(self.seed, node.node_id)
            for node in snapshot.nodes
        }

    def describe(self):
        return {"name": self.name, "seed": self.seed}


# =============================================================================
# REGISTRY
# =============================================================================

STRATEGY_CLASSES = {
    CentralityStrategy.name: CentralityStrategy,
    RichnessStrategy.name: RichnessStrategy,
    RandomStrategy.name: RandomStrategy,
}


def build_strategies(cfg, cycle_seed: int = 0, plugin=None) -> Dict[str, Strategy]:
    """
    Instantiate the strategies that run this cycle.

    Args:
        cfg: AutopilotConfigSnapshot
        cycle_seed: Seed for the random strategy when cfg.random_seed is
            None (the scheduler passes the cycle timestamp)
        plugin: Plugin for logging

    Returns:
        name -> Strategy for every enabled strategy with a positive weight,
        in registry order
    """
    weights = cfg.strategy_weights()
    random_seed = cfg.random_seed if cfg.random_seed is not None else cycle_seed
    options = {
        CentralityStrategy.name: {
            "mode": cfg.centrality_mode,
            "distance": cfg.centrality_distance,
            "sample_size": cfg.centrality_sample_size,
            "seed": cfg.centrality_seed,
        },
        RichnessStrategy.name: {"log_scale": cfg.richness_log_scale},
        RandomStrategy.name: {"seed": random_seed},
    }
    return {
        name: cls(plugin=plugin, **options[name])
        for name, cls in STRATEGY_CLASSES.items()
        if name in weights
    }
