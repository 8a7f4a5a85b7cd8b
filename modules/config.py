"""
Configuration for cl-autopilot

AutopilotConfig holds the live, mutable settings (updated when the plugin
is reconfigured). Each refresh cycle works on an immutable snapshot taken
at cycle start, so a reconfiguration never changes settings halfway
through a cycle.

Author: Lightning Goats Team
"""

import math
from dataclasses import asdict, dataclass, fields
from typing import Any, Dict, Optional

from .errors import ConfigurationError


# Strategy names, in the fixed order they are registered and run
STRATEGY_NAMES = ("centrality", "richness", "random")

VALID_CENTRALITY_MODES = ("betweenness", "closeness")
VALID_DISTANCE_METRICS = ("hops", "inverse_capacity")
VALID_NORMALIZATIONS = ("minmax", "rank")
VALID_TIE_BREAKERS = ("node_id", "random")

# Tolerance when checking that weights add up to 1.0 (warning only)
WEIGHT_SUM_TOLERANCE = 1e-6


# Plugin option name -> (config field, default, description)
OPTION_DEFAULTS = {
    "autopilot-refresh-interval": ("refresh_interval", 600, "Seconds between recommendation refreshes"),
    "autopilot-top-k": ("top_k", 10, "Number of peers to recommend"),
    "autopilot-min-capacity-sats": ("min_capacity_sats", 1_000_000, "Minimum total capacity of a recommended peer"),
    "autopilot-min-channels": ("min_channels", 2, "Minimum channel count of a recommended peer"),
    "autopilot-centrality-enabled": ("centrality_enabled", True, "Enable the centrality strategy"),
    "autopilot-centrality-weight": ("centrality_weight", 0.5, "Weight of the centrality strategy"),
    "autopilot-centrality-mode": ("centrality_mode", "betweenness", "betweenness or closeness"),
    "autopilot-centrality-distance": ("centrality_distance", "hops", "hops or inverse_capacity"),
    "autopilot-centrality-sample-size": ("centrality_sample_size", 500, "Max source nodes for centrality (0 = all)"),
    "autopilot-centrality-seed": ("centrality_seed", 0, "Seed for centrality source sampling"),
    "autopilot-richness-enabled": ("richness_enabled", True, "Enable the richness strategy"),
    "autopilot-richness-weight": ("richness_weight", 0.3, "Weight of the richness strategy"),
    "autopilot-richness-log-scale": ("richness_log_scale", True, "Log-scale total capacity"),
    "autopilot-random-enabled": ("random_enabled", True, "Enable the random exploration strategy"),
    "autopilot-random-weight": ("random_weight", 0.2, "Weight of the random strategy"),
    "autopilot-random-seed": ("random_seed", None, "Seed for random scores (unset = reseed every cycle)"),
    "autopilot-normalization": ("normalization", "minmax", "minmax or rank"),
    "autopilot-tie-quantum": ("tie_quantum", 0.0, "Combined scores closer than this rank as ties (0 = off)"),
    "autopilot-tie-breaker": ("tie_breaker", "node_id", "node_id or random"),
    "autopilot-strategy-timeout": ("strategy_timeout", 120.0, "Seconds before a strategy run is abandoned"),
    "autopilot-require-address": ("require_address", False, "Only recommend peers with announced addresses"),
    "autopilot-node-id": ("our_node_id", "", "Override our node id (default: getinfo)"),
}


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("1", "true", "yes", "on"):
        return True
    if text in ("0", "false", "no", "off"):
        return False
    raise ConfigurationError(f"not a boolean: {value!r}")


@dataclass(frozen=True)
class AutopilotConfigSnapshot:
    """Immutable copy of AutopilotConfig used for one cycle."""
    refresh_interval: int
    top_k: int
    min_capacity_sats: int
    min_channels: int
    centrality_enabled: bool
    centrality_weight: float
    centrality_mode: str
    centrality_distance: str
    centrality_sample_size: int
    centrality_seed: int
    richness_enabled: bool
    richness_weight: float
    richness_log_scale: bool
    random_enabled: bool
    random_weight: float
    random_seed: Optional[int]
    normalization: str
    tie_quantum: float
    tie_breaker: str
    strategy_timeout: float
    require_address: bool
    our_node_id: str

    def strategy_weights(self) -> Dict[str, float]:
        """
        Weights of the strategies that should run this cycle.

        A strategy runs when it is enabled and has a positive weight.
        Order follows STRATEGY_NAMES.
        """
        weights = {}
        for name in STRATEGY_NAMES:
            if getattr(self, f"{name}_enabled") and getattr(self, f"{name}_weight") > 0:
                weights[name] = float(getattr(self, f"{name}_weight"))
        return weights


@dataclass
class AutopilotConfig:
    """
    Live plugin configuration.

    Defaults match OPTION_DEFAULTS. Call snapshot() at the start of a
    cycle and validate() whenever values change.
    """
    refresh_interval: int = 600
    top_k: int = 10
    min_capacity_sats: int = 1_000_000
    min_channels: int = 2
    centrality_enabled: bool = True
    centrality_weight: float = 0.5
    centrality_mode: str = "betweenness"
    centrality_distance: str = "hops"
    centrality_sample_size: int = 500
    centrality_seed: int = 0
    richness_enabled: bool = True
    richness_weight: float = 0.3
    richness_log_scale: bool = True
    random_enabled: bool = True
    random_weight: float = 0.2
    random_seed: Optional[int] = None
    normalization: str = "minmax"
    tie_quantum: float = 0.0
    tie_breaker: str = "node_id"
    strategy_timeout: float = 120.0
    require_address: bool = False
    our_node_id: str = ""

    @classmethod
    def from_options(cls, options: Dict[str, Any]) -> "AutopilotConfig":
        """
        Build a config from plugin options.

        Unknown options are ignored; missing ones keep their default.
        Options arrive as strings from lightningd and are coerced to the
        type of the field's default.

        Raises:
            ConfigurationError: a value cannot be parsed
        """
        config = cls()
        for option, (attr, default, _desc) in OPTION_DEFAULTS.items():
            if option not in options:
                continue
            raw = options[option]
            if raw is None or raw == "":
                continue
            config.set_value(attr, raw)
        return config

    def set_value(self, attr: str, raw: Any) -> None:
        """Coerce and set one field from its raw option value."""
        defaults = {f.name: f.default for f in fields(self)}
        if attr not in defaults:
            raise ConfigurationError(f"unknown setting {attr}")

        # Coerce by the type of the default, not of the current value
        current = defaults[attr]
        try:
            if attr == "random_seed":
                value = None if raw is None or str(raw).strip() == "" else int(raw)
            elif isinstance(current, bool):
                value = _parse_bool(raw)
            elif isinstance(current, int):
                value = int(raw)
            elif isinstance(current, float):
                value = float(raw)
            else:
                value = str(raw)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"invalid value for {attr}: {raw!r} ({e})") from e

        setattr(self, attr, value)

    def snapshot(self) -> AutopilotConfigSnapshot:
        """Freeze the current values for one cycle."""
        return AutopilotConfigSnapshot(**asdict(self))

    def validate(self) -> Optional[str]:
        """
        Check all values.

        Returns:
            None if valid, otherwise a description of the first problem
        """
        if self.refresh_interval <= 0:
            return "refresh_interval must be positive"
        if self.top_k <= 0:
            return "top_k must be a positive integer"
        if self.min_capacity_sats < 0:
            return "min_capacity_sats must not be negative"
        if self.min_channels < 0:
            return "min_channels must not be negative"
        if self.centrality_sample_size < 0:
            return "centrality_sample_size must not be negative"
        if not (self.strategy_timeout > 0):
            return "strategy_timeout must be positive"
        if self.tie_quantum < 0 or math.isnan(self.tie_quantum):
            return "tie_quantum must not be negative"

        for name in STRATEGY_NAMES:
            weight = getattr(self, f"{name}_weight")
            if math.isnan(weight) or math.isinf(weight) or weight < 0:
                return f"{name}_weight must be a non-negative number"

        if self.centrality_mode not in VALID_CENTRALITY_MODES:
            return f"centrality_mode must be one of {', '.join(VALID_CENTRALITY_MODES)}"
        if self.centrality_distance not in VALID_DISTANCE_METRICS:
            return f"centrality_distance must be one of {', '.join(VALID_DISTANCE_METRICS)}"
        if self.normalization not in VALID_NORMALIZATIONS:
            return f"normalization must be one of {', '.join(VALID_NORMALIZATIONS)}"
        if self.tie_breaker not in VALID_TIE_BREAKERS:
            return f"tie_breaker must be one of {', '.join(VALID_TIE_BREAKERS)}"
        if self.tie_breaker == "random" and self.tie_quantum > 0 and not self.random_enabled:
            return "tie_breaker=random requires the random strategy to be enabled"

        if not any(getattr(self, f"{name}_enabled") for name in STRATEGY_NAMES):
            return "at least one strategy must be enabled"
        if not self.snapshot().strategy_weights():
            return "all enabled strategy weights are zero"

        return None

    def validate_or_raise(self) -> None:
        """validate(), raising ConfigurationError on failure."""
        error = self.validate()
        if error is not None:
            raise ConfigurationError(error)

    def weight_sum_warning(self) -> Optional[str]:
        """Weights need not add up to 1.0, but it usually indicates a typo."""
        total = sum(self.snapshot().strategy_weights().values())
        if abs(total - 1.0) > WEIGHT_SUM_TOLERANCE:
            return f"total strategy weight is {total:g}, expected 1.0"
        return None
