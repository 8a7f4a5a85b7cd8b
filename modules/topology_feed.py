"""
Topology feed for cl-autopilot

Reads the public channel graph from lightningd and turns it into the
node / channel listing GraphSnapshot.build() expects. Every fetch is a
full replacement of the previous topology, never a diff.

RPC calls used:
- getinfo:          our node id
- listnodes:        aliases and announced addresses
- listchannels:     public channels (one entry per direction)
- listpeerchannels: our own channels, including ones still opening

listchannels reports each channel once per direction; the two halves are
merged by short_channel_id. Parallel channels between the same two nodes
are merged into one edge (capacities summed, cheapest fee policy kept),
since the graph model allows a single edge per pair.

Author: Lightning Goats Team
"""

import time
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from pyln.client import RpcError

from .errors import TopologyFeedError
from .graph import ChannelInfo, NodeInfo


# =============================================================================
# CONSTANTS
# =============================================================================

# Local channel states that no longer count as an existing channel
CLOSED_CHANNEL_STATES = frozenset({
    "CHANNELD_SHUTTING_DOWN",
    "CLOSINGD_SIGEXCHANGE",
    "CLOSINGD_COMPLETE",
    "AWAITING_UNILATERAL",
    "FUNDING_SPEND_SEEN",
    "ONCHAIN",
    "CLOSED",
})


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass(frozen=True)
class TopologyData:
    """One full delivery of the topology feed."""
    nodes: Tuple[NodeInfo, ...]
    channels: Tuple[ChannelInfo, ...]
    # Peers we already have (or are opening) a channel with
    local_peers: FrozenSet[str] = frozenset()
    our_node_id: str = ""
    fetched_at: int = 0


# =============================================================================
# PARSING HELPERS
# =============================================================================

def parse_msat(value: Any) -> int:
    """
    Parse an msat amount as returned by the various lightningd versions:
    int, "1234msat" string, or {"msat": 1234}.
    """
    if value is None:
        return 0
    if isinstance(value, bool):
        raise ValueError(f"not an amount: {value!r}")
    # pyln Millisatoshi
    if hasattr(value, "millisatoshis"):
        return int(value.millisatoshis)
    if isinstance(value, int):
        return value
    if isinstance(value, dict):
        return parse_msat(value.get("msat", 0))
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("msat"):
            text = text[:-4]
        return int(text)
    return int(value)


def channel_capacity_sats(entry: Dict[str, Any]) -> int:
    """Capacity of a listchannels entry in sats (amount_msat preferred)."""
    if entry.get("amount_msat") is not None:
        return parse_msat(entry["amount_msat"]) // 1000
    return int(entry.get("satoshis", 0) or 0)


def format_address(addr: Dict[str, Any]) -> str:
    """listnodes address dict -> host:port string."""
    host = addr.get("address", "")
    port = addr.get("port")
    if not host:
        return ""
    if port:
        if addr.get("type") == "ipv6":
            return f"[{host}]:{port}"
        return f"{host}:{port}"
    return host


# =============================================================================
# FEED
# =============================================================================

class ListChannelsFeed:
    """
    Topology feed backed by lightningd JSON-RPC.

    Args:
        rpc: LightningRpc (plugin.rpc)
        plugin: Plugin reference for logging
    """

    def __init__(self, rpc, plugin=None):
        self.rpc = rpc
        self.plugin = plugin
        self._our_node_id: Optional[str] = None

    def _log(self, msg: str, level: str = "debug") -> None:
        if self.plugin:
            self.plugin.log(f"TOPOLOGY_FEED: {msg}", level=level)

    def get_our_node_id(self) -> str:
        """Our node id from getinfo (cached, it never changes)."""
        if self._our_node_id is None:
            try:
                self._our_node_id = self.rpc.getinfo().get("id", "")
            except RpcError as e:
                raise TopologyFeedError(f"getinfo failed: {e}") from e
        return self._our_node_id

    def fetch(self) -> TopologyData:
        """
        Fetch a complete topology.

        Raises:
            TopologyFeedError: an RPC call failed or returned garbage
        """
        our_node_id = self.get_our_node_id()
        try:
            raw_nodes = self.rpc.listnodes().get("nodes", [])
            raw_channels = self.rpc.listchannels().get("channels", [])
            raw_local = self.rpc.listpeerchannels().get("channels", [])
        except RpcError as e:
            raise TopologyFeedError(f"topology RPC failed: {e}") from e

        try:
            channels = self._merge_channels(raw_channels)
            nodes = self._collect_nodes(raw_nodes, channels)
        except (TypeError, ValueError, AttributeError) as e:
            raise TopologyFeedError(f"unparseable topology data: {e}") from e

        local_peers = self._collect_local_peers(raw_local)

        self._log(
            f"Fetched {len(nodes)} nodes, {len(channels)} channels, "
            f"{len(local_peers)} local peers"
        )

        return TopologyData(
            nodes=tuple(nodes),
            channels=tuple(channels),
            local_peers=local_peers,
            our_node_id=our_node_id,
            fetched_at=int(time.time()),
        )

    # =========================================================================
    # MERGING
    # =========================================================================

    def _merge_channels(self, raw_channels: List[Dict[str, Any]]) -> List[ChannelInfo]:
        """Collapse directional halves and parallel channels into one edge per pair."""
        # scid -> (pair, capacity, active, fee policies)
        by_scid: Dict[str, Dict[str, Any]] = {}
        for entry in raw_channels:
            source = entry.get("source", "")
            dest = entry.get("destination", "")
            scid = entry.get("short_channel_id", "")
            if not source or not dest or not scid or source == dest:
                continue

            pair = (source, dest) if source <= dest else (dest, source)
            record = by_scid.get(scid)
            if record is None:
                record = {
                    "pair": pair,
                    "capacity": channel_capacity_sats(entry),
                    "active": False,
                    "base_fees": [],
                    "ppm_fees": [],
                }
                by_scid[scid] = record

            if entry.get("active", True):
                record["active"] = True
            if entry.get("base_fee_millisatoshi") is not None:
                record["base_fees"].append(int(entry["base_fee_millisatoshi"]))
            if entry.get("fee_per_millionth") is not None:
                record["ppm_fees"].append(int(entry["fee_per_millionth"]))

        by_pair: Dict[Tuple[str, str], Dict[str, Any]] = {}
        for scid in sorted(by_scid):
            record = by_scid[scid]
            if not record["active"]:
                continue
            merged = by_pair.get(record["pair"])
            if merged is None:
                merged = {"scid": scid, "capacity": 0, "base_fees": [], "ppm_fees": []}
                by_pair[record["pair"]] = merged
            merged["capacity"] += record["capacity"]
            merged["base_fees"].extend(record["base_fees"])
            merged["ppm_fees"].extend(record["ppm_fees"])

        channels = []
        for (node1, node2), merged in sorted(by_pair.items()):
            channels.append(ChannelInfo(
                node1=node1,
                node2=node2,
                capacity_sats=merged["capacity"],
                short_channel_id=merged["scid"],
                base_fee_msat=min(merged["base_fees"]) if merged["base_fees"] else None,
                fee_per_millionth=min(merged["ppm_fees"]) if merged["ppm_fees"] else None,
            ))
        return channels

    def _collect_nodes(self, raw_nodes: List[Dict[str, Any]],
                       channels: List[ChannelInfo]) -> List[NodeInfo]:
        """Announced nodes plus channel endpoints missing from listnodes."""
        nodes: Dict[str, NodeInfo] = {}
        for entry in raw_nodes:
            node_id = entry.get("nodeid", "")
            if not node_id or node_id in nodes:
                continue
            addresses = tuple(
                a for a in (format_address(addr) for addr in entry.get("addresses", []) or [])
                if a
            )
            nodes[node_id] = NodeInfo(
                node_id=node_id,
                alias=entry.get("alias", "") or "",
                addresses=addresses,
            )

        for ch in channels:
            for endpoint in (ch.node1, ch.node2):
                if endpoint not in nodes:
                    nodes[endpoint] = NodeInfo(node_id=endpoint)

        return list(nodes.values())

    def _collect_local_peers(self, raw_local: List[Dict[str, Any]]) -> FrozenSet[str]:
        peers = set()
        for entry in raw_local:
            peer_id = entry.get("peer_id")
            if not peer_id:
                continue
            if entry.get("state") in CLOSED_CHANNEL_STATES:
                continue
            peers.add(peer_id)
        return frozenset(peers)
