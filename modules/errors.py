"""
Error taxonomy for cl-autopilot.

Every cycle is an independent attempt: none of these errors leaves the
plugin in an unrecoverable state. Cycle-level failures keep the previously
published recommendations in place.
"""


class AutopilotError(Exception):
    """Base class for all cl-autopilot errors."""


class ConfigurationError(AutopilotError):
    """Invalid configuration, detected before any cycle runs."""


class MalformedGraphError(AutopilotError):
    """Topology feed produced an inconsistent snapshot."""


class TopologyFeedError(AutopilotError):
    """The topology feed could not deliver a snapshot (RPC failure)."""


class StrategyComputationError(AutopilotError):
    """One strategy failed or timed out; recovered by the aggregator."""

    def __init__(self, strategy: str, reason: str):
        super().__init__(f"{strategy}: {reason}")
        self.strategy = strategy
        self.reason = reason


class NoUsableStrategyError(AutopilotError):
    """Every strategy failed this cycle."""

    def __init__(self, failures):
        names = ", ".join(sorted(failures)) or "none configured"
        super().__init__(f"no usable strategy (failed: {names})")
        self.failures = dict(failures)


class CycleCancelled(AutopilotError):
    """Shutdown was requested while a cycle was in flight."""
