"""
RPC Command Handlers for cl-autopilot

This module contains the implementation logic for autopilot-* RPC commands.
The actual @plugin.method() decorators live in cl-autopilot.py, which
creates thin wrappers that call these handler functions.

Design Pattern:
    - Each handler receives an AutopilotContext with all dependencies
    - Handlers never raise; failures are returned as {"error": ...}
"""

from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Optional

# Upper bound for the limit parameter of autopilot-recommendations
MAX_LIMIT = 1000


@dataclass
class AutopilotContext:
    """
    Context object holding the dependencies of the RPC handlers.
    """
    config: Any     # AutopilotConfig
    scheduler: Any  # RefreshScheduler
    our_pubkey: str = ""
    log: Callable[[str, str], None] = None  # Logger function: (msg, level) -> None


def _parse_limit(limit) -> Optional[int]:
    if limit is None:
        return None
    limit = int(limit)
    if limit < 1:
        raise ValueError("limit must be positive")
    return min(limit, MAX_LIMIT)


def _parse_flag(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes")
    return bool(value)


# =============================================================================
# RECOMMENDATION COMMANDS
# =============================================================================

def recommendations(ctx: AutopilotContext, limit=None) -> Dict[str, Any]:
    """
    Get the currently published channel peer recommendations.

    Args:
        limit: Return at most this many entries (default: all, i.e. Top-K)

    Returns:
        Dict with the ranked list and the metadata of the cycle that
        produced it.
    """
    if not ctx.scheduler:
        return {"error": "Autopilot not initialized"}

    try:
        limit = _parse_limit(limit)
    except (TypeError, ValueError) as e:
        return {"error": f"Invalid limit: {e}"}

    current = ctx.scheduler.get_current()
    if current is None:
        status = ctx.scheduler.get_status()
        return {
            "recommendations": [],
            "count": 0,
            "message": "No recommendations published yet",
            "phase": status.get("phase"),
            "last_error": status.get("last_error", ""),
        }

    result = current.to_dict(limit=limit)
    result["count"] = len(result["recommendations"])
    return result


def explain(ctx: AutopilotContext, node_id: str) -> Dict[str, Any]:
    """
    Explain the score of one node in the published list.

    Returns:
        Rank, combined score and per-strategy contribution, or a
        "not recommended" answer with the likely reason.
    """
    if not ctx.scheduler:
        return {"error": "Autopilot not initialized"}
    if not node_id or not isinstance(node_id, str):
        return {"error": "node_id is required"}

    current = ctx.scheduler.get_current()
    if current is None:
        return {"error": "No recommendations published yet"}

    found = current.find(node_id)
    if found is None:
        if node_id == current.our_node_id:
            reason = "this is our own node"
        else:
            reason = "not in the current top list"
        return {
            "node_id": node_id,
            "recommended": False,
            "reason": reason,
            "cycle_id": current.cycle_id,
        }

    rank, rec = found
    return {
        "node_id": node_id,
        "recommended": True,
        "rank": rank,
        "cycle_id": current.cycle_id,
        "effective_weights": dict(current.effective_weights),
        **rec.to_dict(),
    }


# =============================================================================
# STATUS / CONTROL COMMANDS
# =============================================================================

def status(ctx: AutopilotContext) -> Dict[str, Any]:
    """
    Get scheduler state, counters and the active configuration.
    """
    if not ctx.scheduler or not ctx.config:
        return {"error": "Autopilot not initialized"}

    result = {
        "our_pubkey": ctx.our_pubkey,
        "scheduler": ctx.scheduler.get_status(),
        "config": asdict(ctx.config.snapshot()),
        "strategy_weights": ctx.config.snapshot().strategy_weights(),
    }
    warning = ctx.config.weight_sum_warning()
    if warning:
        result["warning"] = warning
    return result


def refresh(ctx: AutopilotContext, wait=False) -> Dict[str, Any]:
    """
    Start a refresh cycle now.

    By default the cycle runs on the scheduler's worker thread and this
    returns at once, so other RPCs are not blocked behind a long
    centrality run. Poll autopilot-status for the result.

    Args:
        wait: Run the cycle in the calling thread and return its report

    Returns:
        {"started": bool, "status": ...} or, with wait, the cycle report;
        a cycle already in flight makes the request a no-op ("dropped").
    """
    if not ctx.scheduler:
        return {"error": "Autopilot not initialized"}

    if not _parse_flag(wait):
        started = ctx.scheduler.trigger()
        if ctx.log:
            ctx.log(f"Manual refresh {'started' if started else 'dropped'}", "info")
        return {
            "started": started,
            "outcome": "started" if started else "dropped",
            "status": ctx.scheduler.get_status(),
        }

    report = ctx.scheduler.run_cycle()
    if ctx.log:
        ctx.log(f"Manual refresh finished: {report.outcome}", "info")

    result = report.to_dict()
    if report.outcome == "failed":
        result["error"] = report.error
    return result
