"""
Tests for the autopilot-* RPC handlers.

Handlers run against a real RefreshScheduler over a mocked feed, so the
returned dicts are the ones lightningd would serialize.

Author: Lightning Goats Team
"""

import threading
from unittest.mock import MagicMock

import pytest

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from modules import rpc_commands
from modules.config import AutopilotConfig
from modules.errors import TopologyFeedError
from modules.graph import ChannelInfo, NodeInfo
from modules.rpc_commands import AutopilotContext
from modules.scheduler import RefreshScheduler
from modules.topology_feed import TopologyData


def make_topology():
    nodes = tuple(NodeInfo(n, alias=n.lower()) for n in ("ME", "A", "B", "C", "D"))
    channels = (
        ChannelInfo("ME", "A", 1_000),
        ChannelInfo("A", "B", 2_000),
        ChannelInfo("B", "C", 3_000),
        ChannelInfo("C", "D", 4_000),
    )
    return TopologyData(nodes=nodes, channels=channels, our_node_id="ME")


@pytest.fixture
def ctx():
    config = AutopilotConfig(
        random_seed=1, min_capacity_sats=0, min_channels=0, top_k=2,
        centrality_sample_size=0,
    )
    feed = MagicMock()
    feed.fetch.return_value = make_topology()
    scheduler = RefreshScheduler(config, feed, plugin=MagicMock(), clock=lambda: 500)
    log = MagicMock()
    yield AutopilotContext(config=config, scheduler=scheduler, our_pubkey="ME", log=log)
    scheduler.stop(timeout=5)


class TestRecommendations:

    def test_empty_before_first_cycle(self, ctx):
        result = rpc_commands.recommendations(ctx)
        assert result["count"] == 0
        assert result["recommendations"] == []
        assert result["phase"] == "idle"

    def test_after_refresh(self, ctx):
        rpc_commands.refresh(ctx, wait=True)
        result = rpc_commands.recommendations(ctx)
        assert result["count"] == 2
        assert result["cycle_id"] == 1
        assert result["timestamp"] == 500
        ids = [r["node_id"] for r in result["recommendations"]]
        assert "ME" not in ids and "A" not in ids
        assert set(result["recommendations"][0]["breakdown"]) == {"centrality", "richness", "random"}

    def test_limit(self, ctx):
        rpc_commands.refresh(ctx, wait=True)
        assert rpc_commands.recommendations(ctx, limit=1)["count"] == 1
        assert rpc_commands.recommendations(ctx, limit="1")["count"] == 1

    @pytest.mark.parametrize("limit", [0, -3, "abc"])
    def test_invalid_limit(self, ctx, limit):
        assert "error" in rpc_commands.recommendations(ctx, limit=limit)

    def test_not_initialized(self):
        ctx = AutopilotContext(config=None, scheduler=None)
        assert "error" in rpc_commands.recommendations(ctx)
        assert "error" in rpc_commands.status(ctx)
        assert "error" in rpc_commands.refresh(ctx)
        assert "error" in rpc_commands.explain(ctx, "A")


class TestExplain:

    def test_recommended_node(self, ctx):
        rpc_commands.refresh(ctx, wait=True)
        top = rpc_commands.recommendations(ctx)["recommendations"][0]
        result = rpc_commands.explain(ctx, top["node_id"])
        assert result["recommended"] is True
        assert result["rank"] == 1
        assert result["score"] == top["score"]
        assert set(result["effective_weights"]) == {"centrality", "richness", "random"}

    def test_own_node(self, ctx):
        rpc_commands.refresh(ctx, wait=True)
        result = rpc_commands.explain(ctx, "ME")
        assert result["recommended"] is False
        assert "own node" in result["reason"]

    def test_before_first_cycle(self, ctx):
        assert "error" in rpc_commands.explain(ctx, "A")

    def test_missing_node_id(self, ctx):
        assert "error" in rpc_commands.explain(ctx, "")


class TestStatusAndRefresh:

    def test_status(self, ctx):
        result = rpc_commands.status(ctx)
        assert result["our_pubkey"] == "ME"
        assert result["scheduler"]["phase"] == "idle"
        assert result["config"]["top_k"] == 2
        assert result["strategy_weights"] == {"centrality": 0.5, "richness": 0.3, "random": 0.2}
        assert "warning" not in result

    def test_status_weight_warning(self, ctx):
        ctx.config.centrality_weight = 2.0
        assert "warning" in rpc_commands.status(ctx)

    def test_refresh_reports_cycle(self, ctx):
        result = rpc_commands.refresh(ctx, wait=True)
        assert result["outcome"] == "published"
        assert result["recommendation_count"] == 2
        ctx.log.assert_called_once()

    def test_refresh_failure(self, ctx):
        ctx.scheduler.feed.fetch.side_effect = TopologyFeedError("rpc down")
        result = rpc_commands.refresh(ctx, wait=True)
        assert result["outcome"] == "failed"
        assert "rpc down" in result["error"]

    def test_refresh_returns_without_waiting_for_cycle(self, ctx):
        entered = threading.Event()
        release = threading.Event()

        def slow_fetch():
            entered.set()
            release.wait(5)
            return make_topology()

        ctx.scheduler.feed.fetch.side_effect = slow_fetch

        result = rpc_commands.refresh(ctx)
        assert result["started"] is True
        assert entered.wait(5)
        assert result["status"]["cycle_in_flight"] is True

        # A second request while the cycle runs is a no-op
        again = rpc_commands.refresh(ctx, wait="false")
        assert again["started"] is False
        assert again["outcome"] == "dropped"

        release.set()
        ctx.scheduler._worker.join(5)
        assert rpc_commands.recommendations(ctx)["cycle_id"] == 1
