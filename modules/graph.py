"""
Graph Model for cl-autopilot

Immutable, index-based snapshot of the public channel graph.

Nodes are assigned a dense integer index (sorted by node id, so the same
input always yields the same indices). Channels are stored as index pairs
and the adjacency lists are tuples, which lets several strategies read one
snapshot from different threads without any locking.

A snapshot is built once per refresh cycle and is never mutated afterwards;
the next cycle builds a new one.

Author: Lightning Goats Team
"""

from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional, Tuple

from .errors import MalformedGraphError


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass(frozen=True)
class NodeInfo:
    """A node as announced in the gossip graph."""
    node_id: str
    alias: str = ""
    addresses: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ChannelInfo:
    """
    An undirected channel between two nodes.

    Fee attributes are optional; the feed fills them when the gossip
    carries a channel_update.
    """
    node1: str
    node2: str
    capacity_sats: int
    short_channel_id: str = ""
    base_fee_msat: Optional[int] = None
    fee_per_millionth: Optional[int] = None

    def pair_key(self) -> Tuple[str, str]:
        """Order-independent endpoint pair."""
        if self.node1 <= self.node2:
            return (self.node1, self.node2)
        return (self.node2, self.node1)


# =============================================================================
# SNAPSHOT
# =============================================================================

@dataclass(frozen=True)
class GraphSnapshot:
    """
    Point-in-time view of the channel graph.

    Use GraphSnapshot.build() rather than the constructor; build() checks
    the invariants and derives the adjacency indices.
    """
    nodes: Tuple[NodeInfo, ...]
    channels: Tuple[ChannelInfo, ...]
    # index i -> tuple of (neighbor index, channel index)
    adjacency: Tuple[Tuple[Tuple[int, int], ...], ...]
    total_capacities: Tuple[int, ...]
    _index: Dict[str, int] = field(repr=False, compare=False)

    @classmethod
    def build(cls, nodes: Iterable[NodeInfo],
              channels: Iterable[ChannelInfo]) -> "GraphSnapshot":
        """
        Build a snapshot from a full node and channel listing.

        Raises:
            MalformedGraphError: duplicate node, dangling or self-loop edge,
                negative capacity, or two channels between the same pair
        """
        node_list = sorted(nodes, key=lambda n: n.node_id)
        index: Dict[str, int] = {}
        for i, node in enumerate(node_list):
            if not node.node_id:
                raise MalformedGraphError("node with empty id")
            if node.node_id in index:
                raise MalformedGraphError(f"duplicate node {node.node_id}")
            index[node.node_id] = i

        channel_list = list(channels)
        adjacency: List[List[Tuple[int, int]]] = [[] for _ in node_list]
        capacities = [0] * len(node_list)
        seen_pairs = set()

        for c_idx, ch in enumerate(channel_list):
            if ch.node1 == ch.node2:
                raise MalformedGraphError(f"self-loop channel on {ch.node1}")
            if ch.capacity_sats < 0:
                raise MalformedGraphError(
                    f"negative capacity on channel {ch.node1}-{ch.node2}"
                )
            for endpoint in (ch.node1, ch.node2):
                if endpoint not in index:
                    raise MalformedGraphError(
                        f"channel {ch.short_channel_id or '?'} references "
                        f"unknown node {endpoint}"
                    )
            key = ch.pair_key()
            if key in seen_pairs:
                raise MalformedGraphError(
                    f"duplicate channel between {key[0]} and {key[1]}"
                )
            seen_pairs.add(key)

            u, v = index[ch.node1], index[ch.node2]
            adjacency[u].append((v, c_idx))
            adjacency[v].append((u, c_idx))
            capacities[u] += ch.capacity_sats
            capacities[v] += ch.capacity_sats

        # Sorted neighbor lists keep traversal order independent of feed order
        frozen_adjacency = tuple(tuple(sorted(adj)) for adj in adjacency)

        return cls(
            nodes=tuple(node_list),
            channels=tuple(channel_list),
            adjacency=frozen_adjacency,
            total_capacities=tuple(capacities),
            _index=index,
        )

    # =========================================================================
    # INDEX ACCESS
    # =========================================================================

    def __len__(self) -> int:
        return len(self.nodes)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._index

    def has_node(self, node_id: str) -> bool:
        return node_id in self._index

    def index_of(self, node_id: str) -> int:
        """Dense index for a node id. Raises KeyError for unknown nodes."""
        return self._index[node_id]

    def node_id_at(self, idx: int) -> str:
        return self.nodes[idx].node_id

    def node_ids(self) -> List[str]:
        """All node ids in index order (sorted)."""
        return [n.node_id for n in self.nodes]

    def get_node(self, node_id: str) -> Optional[NodeInfo]:
        idx = self._index.get(node_id)
        if idx is None:
            return None
        return self.nodes[idx]

    def neighbor_indices(self, idx: int) -> Tuple[int, ...]:
        return tuple(v for v, _ in self.adjacency[idx])

    def edge_capacity(self, c_idx: int) -> int:
        return self.channels[c_idx].capacity_sats

    # =========================================================================
    # QUERIES
    # =========================================================================

    def neighbors(self, node_id: str) -> FrozenSet[str]:
        """Ids of nodes sharing a channel with node_id (empty if unknown)."""
        idx = self._index.get(node_id)
        if idx is None:
            return frozenset()
        return frozenset(self.nodes[v].node_id for v, _ in self.adjacency[idx])

    def degree(self, node_id: str) -> int:
        """Number of channels of node_id (0 if unknown)."""
        idx = self._index.get(node_id)
        if idx is None:
            return 0
        return len(self.adjacency[idx])

    def total_capacity(self, node_id: str) -> int:
        """Sum of capacities of all channels of node_id, in sats."""
        idx = self._index.get(node_id)
        if idx is None:
            return 0
        return self.total_capacities[idx]

    def channel_between(self, a: str, b: str) -> Optional[ChannelInfo]:
        ia = self._index.get(a)
        ib = self._index.get(b)
        if ia is None or ib is None:
            return None
        for v, c_idx in self.adjacency[ia]:
            if v == ib:
                return self.channels[c_idx]
        return None

    def bfs(self, source: str, visitor: Callable[[str, int], Optional[bool]]) -> int:
        """
        Breadth-first expansion from source.

        visitor(node_id, depth) is called once per reached node, source
        first at depth 0. If it returns False the node's neighbors are not
        expanded; any other return value continues.

        Returns:
            Number of nodes visited

        Raises:
            KeyError: source is not in the snapshot
        """
        start = self._index[source]
        depth = {start: 0}
        queue = deque([start])
        visited = 0

        while queue:
            u = queue.popleft()
            visited += 1
            if visitor(self.nodes[u].node_id, depth[u]) is False:
                continue
            for v, _ in self.adjacency[u]:
                if v not in depth:
                    depth[v] = depth[u] + 1
                    queue.append(v)

        return visited

    def stats(self) -> Dict[str, int]:
        return {
            "node_count": len(self.nodes),
            "channel_count": len(self.channels),
            "total_capacity_sats": sum(c.capacity_sats for c in self.channels),
        }
