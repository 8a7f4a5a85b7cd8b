"""
Centrality computation over a GraphSnapshot.

Betweenness uses Brandes' algorithm: one single-source shortest path
search per source node, followed by back-propagation of path
dependencies. For an undirected graph every pair is seen from both ends,
so the accumulated value is halved.

https://www.cl.cam.ac.uk/teaching/1617/MLRD/handbook/brandes.html

Closeness uses the Wasserman-Faust form: (r / sum of distances to the r
reaching sources) scaled by r over the number of sources other than
the node itself. Unreachable pairs contribute nothing, so disconnected
components never produce infinities, and a small island cannot outrank
a well connected hub.

Large graphs can be approximated by running the search from a
deterministic sample of sources. Betweenness estimates are scaled by
n / k so sampled and exact runs stay on the same scale.

Author: Lightning Goats Team
"""

import heapq
import math
import random
from collections import deque
from typing import Dict, List, Sequence, Tuple

from .errors import CycleCancelled
from .graph import GraphSnapshot


# =============================================================================
# CONSTANTS
# =============================================================================

MODE_BETWEENNESS = "betweenness"
MODE_CLOSENESS = "closeness"

DISTANCE_HOPS = "hops"
DISTANCE_INVERSE_CAPACITY = "inverse_capacity"

# Relative tolerance when comparing weighted path lengths
PATH_LENGTH_REL_TOL = 1e-12


def _check_cancel(cancel_event) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise CycleCancelled("centrality computation cancelled")


# =============================================================================
# SOURCE SAMPLING
# =============================================================================

def select_sources(snapshot: GraphSnapshot, sample_size: int, seed: int) -> List[int]:
    """
    Pick source node indices for the shortest path searches.

    Returns every index when sample_size is 0 or not smaller than the
    graph. Otherwise draws sample_size indices with random.Random(seed);
    node indices follow sorted node ids, so the sample only depends on
    the node set and the seed.
    """
    n = len(snapshot)
    if sample_size <= 0 or n <= sample_size:
        return list(range(n))
    rng = random.Random(seed)
    return sorted(rng.sample(range(n), sample_size))


# =============================================================================
# SINGLE-SOURCE SHORTEST PATHS
# =============================================================================

def _sssp_hops(snapshot: GraphSnapshot, s: int):
    """
    BFS from s.

    Returns:
        (order, preds, sigma, dist) where order lists reached nodes by
        non-decreasing distance, preds[w] the predecessors of w on
        shortest paths and sigma[w] the number of shortest paths s->w.
    """
    n = len(snapshot)
    dist: List[float] = [-1.0] * n
    sigma: List[float] = [0.0] * n
    preds: List[List[int]] = [[] for _ in range(n)]
    order: List[int] = []

    dist[s] = 0.0
    sigma[s] = 1.0
    queue = deque([s])

    while queue:
        v = queue.popleft()
        order.append(v)
        for w, _c in snapshot.adjacency[v]:
            if dist[w] < 0:
                dist[w] = dist[v] + 1
                queue.append(w)
            if dist[w] == dist[v] + 1:
                sigma[w] += sigma[v]
                preds[w].append(v)

    return order, preds, sigma, dist


def _sssp_inverse_capacity(snapshot: GraphSnapshot, s: int):
    """
    Dijkstra from s with edge length 1 / capacity.

    Zero-capacity channels cannot carry a payment and are skipped.
    Same return shape as _sssp_hops.
    """
    n = len(snapshot)
    dist: List[float] = [-1.0] * n
    sigma: List[float] = [0.0] * n
    preds: List[List[int]] = [[] for _ in range(n)]
    order: List[int] = []
    seen: Dict[int, float] = {s: 0.0}
    done = [False] * n

    sigma[s] = 1.0
    counter = 0
    # (distance, tiebreak counter, predecessor or -1, node)
    heap: List[Tuple[float, int, int, int]] = [(0.0, counter, -1, s)]

    while heap:
        d, _, pred, v = heapq.heappop(heap)
        if done[v]:
            continue
        if pred >= 0:
            sigma[v] += sigma[pred]
        done[v] = True
        dist[v] = d
        order.append(v)

        for w, c_idx in snapshot.adjacency[v]:
            capacity = snapshot.edge_capacity(c_idx)
            if capacity <= 0 or done[w]:
                continue
            vw = d + 1.0 / capacity
            known = seen.get(w)
            if known is not None and math.isclose(vw, known, rel_tol=PATH_LENGTH_REL_TOL):
                sigma[w] += sigma[v]
                preds[w].append(v)
            elif known is None or vw < known:
                seen[w] = vw
                counter += 1
                heapq.heappush(heap, (vw, counter, v, w))
                sigma[w] = 0.0
                preds[w] = [v]

    return order, preds, sigma, dist


def _sssp(snapshot: GraphSnapshot, s: int, distance: str):
    if distance == DISTANCE_INVERSE_CAPACITY:
        return _sssp_inverse_capacity(snapshot, s)
    return _sssp_hops(snapshot, s)


# =============================================================================
# BETWEENNESS
# =============================================================================

def betweenness(snapshot: GraphSnapshot, sources: Sequence[int],
                distance: str = DISTANCE_HOPS, cancel_event=None) -> List[float]:
    """
    Betweenness centrality per node index.

    Args:
        snapshot: Graph to analyze
        sources: Source indices (all nodes for the exact value)
        distance: DISTANCE_HOPS or DISTANCE_INVERSE_CAPACITY
        cancel_event: Checked before every source; raises CycleCancelled

    Returns:
        List indexed like snapshot.nodes
    """
    n = len(snapshot)
    centrality = [0.0] * n
    if n == 0 or not sources:
        return centrality

    for s in sources:
        _check_cancel(cancel_event)
        order, preds, sigma, _dist = _sssp(snapshot, s, distance)

        delta = [0.0] * n
        while order:
            w = order.pop()
            coeff = (1.0 + delta[w]) / sigma[w]
            for v in preds[w]:
                delta[v] += sigma[v] * coeff
            if w != s:
                centrality[w] += delta[w]

    # Undirected: each path is counted from both endpoints
    scale = 0.5 * (n / len(sources))
    return [c * scale for c in centrality]


# =============================================================================
# CLOSENESS
# =============================================================================

def closeness(snapshot: GraphSnapshot, sources: Sequence[int],
              distance: str = DISTANCE_HOPS, cancel_event=None) -> List[float]:
    """
    Closeness centrality per node index, Wasserman-Faust normalized:
    (r / total) * (r / possible), where r is the number of other
    sources reaching the node, total the summed distance to them and
    possible the number of sources other than the node. Nodes reached by
    no source score 0.
    """
    n = len(snapshot)
    totals = [0.0] * n
    reached = [0] * n

    if distance == DISTANCE_HOPS:
        # Hop distances come straight from the snapshot's BFS primitive
        for s in sources:
            _check_cancel(cancel_event)

            def visit(node_id: str, depth: int) -> bool:
                if depth > 0:
                    v = snapshot.index_of(node_id)
                    totals[v] += depth
                    reached[v] += 1
                return True

            snapshot.bfs(snapshot.node_id_at(s), visit)
    else:
        for s in sources:
            _check_cancel(cancel_event)
            order, _preds, _sigma, dist = _sssp(snapshot, s, distance)
            for v in order:
                if v != s:
                    totals[v] += dist[v]
                    reached[v] += 1

    source_set = set(sources)
    scores = []
    for v in range(n):
        possible = len(source_set) - (1 if v in source_set else 0)
        if totals[v] <= 0 or possible <= 0:
            scores.append(0.0)
            continue
        r = reached[v]
        scores.append((r / totals[v]) * (r / possible))
    return scores


# =============================================================================
# ENTRY POINT
# =============================================================================

def compute_centrality(snapshot: GraphSnapshot, mode: str = MODE_BETWEENNESS,
                       distance: str = DISTANCE_HOPS, sample_size: int = 0,
                       seed: int = 0, cancel_event=None) -> Dict[str, float]:
    """
    Centrality score per node id.

    Degree-zero nodes always score 0.

    Raises:
        ValueError: unknown mode or distance
        CycleCancelled: cancel_event was set during the computation
    """
    if mode not in (MODE_BETWEENNESS, MODE_CLOSENESS):
        raise ValueError(f"unknown centrality mode {mode!r}")
    if distance not in (DISTANCE_HOPS, DISTANCE_INVERSE_CAPACITY):
        raise ValueError(f"unknown distance metric {distance!r}")

    sources = select_sources(snapshot, sample_size, seed)
    if mode == MODE_BETWEENNESS:
        values = betweenness(snapshot, sources, distance, cancel_event)
    else:
        values = closeness(snapshot, sources, distance, cancel_event)

    scores: Dict[str, float] = {}
    for idx, node in enumerate(snapshot.nodes):
        scores[node.node_id] = values[idx] if snapshot.adjacency[idx] else 0.0
    return scores

