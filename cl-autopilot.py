#!/usr/bin/env python3
"""
cl-autopilot: Channel Peer Recommendations for Core Lightning

Periodically snapshots the public channel graph, scores every node with a
set of strategies and keeps a ranked list of peers worth opening a
channel with. The plugin never opens channels itself; it only publishes
recommendations for the operator (or another plugin) to act on.

STRATEGIES:
-----------
- centrality: nodes on many shortest paths between other nodes
- richness:   nodes with a lot of total channel capacity
- random:     seeded exploration so the list does not collapse onto hubs

Scores are normalized per strategy and combined by configured weights.
Our own node, our current peers and peers with a channel still opening
are never recommended.

Dependencies:
- pyln-client: Core Lightning plugin framework

Author: Lightning Goats Team
"""

import os
import signal
import sys
from typing import Any, Dict

from pyln.client import Plugin

# lightningd starts us from an arbitrary cwd
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from modules import rpc_commands  # noqa: E402
from modules.config import OPTION_DEFAULTS, AutopilotConfig  # noqa: E402
from modules.errors import AutopilotError  # noqa: E402
from modules.rpc_commands import AutopilotContext  # noqa: E402
from modules.scheduler import RefreshScheduler  # noqa: E402
from modules.topology_feed import ListChannelsFeed  # noqa: E402


plugin = Plugin()

config = None
scheduler = None
ctx = None


# =============================================================================
# PLUGIN OPTIONS
# =============================================================================

def _option_default(value: Any) -> str:
    if value is None:
        return ''
    if isinstance(value, bool):
        return 'true' if value else 'false'
    return str(value)


for _name, (_attr, _default, _description) in OPTION_DEFAULTS.items():
    plugin.add_option(
        name=_name,
        default=_option_default(_default),
        description=_description
    )


# =============================================================================
# INITIALIZATION
# =============================================================================

@plugin.init()
def init(options: Dict[str, Any], configuration: Dict[str, Any], plugin: Plugin, **kwargs):
    """
    Initialize the autopilot.

    1. Parse and validate options (invalid config disables the plugin)
    2. Create the topology feed and the refresh scheduler
    3. Start the ticker; the first cycle runs immediately
    """
    global config, scheduler, ctx

    plugin.log("Initializing cl-autopilot plugin...")

    try:
        config = AutopilotConfig.from_options(options)
        config.validate_or_raise()
    except AutopilotError as e:
        plugin.log(f"Invalid configuration: {e}", level='broken')
        return {"disable": f"invalid configuration: {e}"}

    warning = config.weight_sum_warning()
    if warning:
        plugin.log(f"Configuration: {warning}", level='warn')

    feed = ListChannelsFeed(plugin.rpc, plugin)
    try:
        our_pubkey = config.our_node_id or feed.get_our_node_id()
    except AutopilotError as e:
        plugin.log(f"Could not determine our node id: {e}", level='warn')
        our_pubkey = ''

    scheduler = RefreshScheduler(config, feed, plugin=plugin, our_node_id=our_pubkey)
    ctx = AutopilotContext(
        config=config,
        scheduler=scheduler,
        our_pubkey=our_pubkey,
        log=lambda msg, level='info': plugin.log(msg, level=level),
    )

    def handle_shutdown_signal(signum, frame):
        """
        Handle SIGTERM (`lightning-cli plugin stop cl-autopilot`).

        Stops the ticker and aborts an in-flight cycle without publishing.
        """
        plugin.log("Received SIGTERM, initiating clean shutdown...", level='info')
        if scheduler:
            scheduler.stop()
        sys.exit(0)

    signal.signal(signal.SIGTERM, handle_shutdown_signal)

    scheduler.start()

    plugin.log(
        f"cl-autopilot initialized: refresh every {config.refresh_interval}s, "
        f"top {config.top_k}, weights {config.snapshot().strategy_weights()}"
    )


# =============================================================================
# RPC METHODS
# =============================================================================

@plugin.method("autopilot-recommendations")
def autopilot_recommendations(plugin: Plugin, limit=None) -> Dict[str, Any]:
    """
    Get the current channel peer recommendations.

    Usage: lightning-cli autopilot-recommendations [limit]
    """
    if ctx is None:
        return {"error": "Plugin not fully initialized"}
    return rpc_commands.recommendations(ctx, limit=limit)


@plugin.method("autopilot-explain")
def autopilot_explain(plugin: Plugin, node_id: str) -> Dict[str, Any]:
    """
    Show rank and per-strategy score breakdown of one node.

    Usage: lightning-cli autopilot-explain <node_id>
    """
    if ctx is None:
        return {"error": "Plugin not fully initialized"}
    return rpc_commands.explain(ctx, node_id)


@plugin.method("autopilot-status")
def autopilot_status(plugin: Plugin) -> Dict[str, Any]:
    """
    Get scheduler state, counters and active configuration.

    Usage: lightning-cli autopilot-status
    """
    if ctx is None:
        return {"error": "Plugin not fully initialized"}
    return rpc_commands.status(ctx)


@plugin.method("autopilot-refresh")
def autopilot_refresh(plugin: Plugin, wait=False) -> Dict[str, Any]:
    """
    Recompute the recommendations now.

    Returns immediately unless wait=true, which blocks this plugin's
    RPC handling until the cycle finishes.

    Usage: lightning-cli autopilot-refresh [wait]
    """
    if ctx is None:
        return {"error": "Plugin not fully initialized"}
    return rpc_commands.refresh(ctx, wait=wait)


# =============================================================================
# ENTRY POINT
# =============================================================================

if __name__ == "__main__":
    plugin.run()
