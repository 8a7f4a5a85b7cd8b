"""
Refresh Scheduler for cl-autopilot

Drives the periodic recommendation cycle:

    idle -> building -> scoring -> aggregating -> published -> idle

- building:    fetch the topology and build an immutable GraphSnapshot
- scoring:     run the enabled strategies in parallel on that snapshot
- aggregating: merge the scores into the ranked list
- published:   swap the new list in atomically

Thread Safety:
- Single flight: a tick that arrives while a cycle is running is dropped,
  never queued
- The published RecommendationSet is replaced by reference under a lock
  and only if it belongs to a newer cycle than the current one
- Shutdown sets an event observed by the strategies (once per traversal
  source) and by the scheduler between phases; an aborted cycle never
  publishes anything
- Config is read through config.snapshot() once per cycle

Failure policy: a failed cycle (bad topology, every strategy failed)
leaves the previously published list in place and is reported through
the error reporter.

Author: Lightning Goats Team
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

from .aggregator import Aggregator, RecommendationSet
from .config import STRATEGY_NAMES
from .errors import (
    CycleCancelled,
    MalformedGraphError,
    NoUsableStrategyError,
    StrategyComputationError,
    TopologyFeedError,
)
from .graph import GraphSnapshot
from .heuristics import build_strategies


# =============================================================================
# CONSTANTS
# =============================================================================

# Seconds to wait for the ticker / worker threads on stop()
STOP_JOIN_TIMEOUT = 10.0

OUTCOME_PUBLISHED = "published"
OUTCOME_FAILED = "failed"
OUTCOME_ABORTED = "aborted"
OUTCOME_DROPPED = "dropped"
OUTCOME_STALE = "stale"


class CyclePhase(Enum):
    """Scheduler state machine."""
    IDLE = "idle"
    BUILDING = "building"
    SCORING = "scoring"
    AGGREGATING = "aggregating"
    PUBLISHED = "published"


@dataclass(frozen=True)
class CycleReport:
    """What happened in one cycle (or one dropped tick)."""
    cycle_id: int
    outcome: str
    started_at: int
    finished_at: int
    error: str = ""
    error_kind: str = ""
    strategies_failed: Tuple[Tuple[str, str], ...] = ()
    recommendation_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cycle_id": self.cycle_id,
            "outcome": self.outcome,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "error": self.error,
            "error_kind": self.error_kind,
            "strategies_failed": {name: reason for name, reason in self.strategies_failed},
            "recommendation_count": self.recommendation_count,
        }


# =============================================================================
# SCHEDULER
# =============================================================================

class RefreshScheduler:
    """
    Owns the cycle lifecycle and the currently published recommendations.

    Args:
        config: AutopilotConfig (snapshot taken per cycle)
        feed: Object with fetch() -> TopologyData
        plugin: Plugin reference for logging
        aggregator: Aggregator (default: new one)
        publisher: Called with every newly published RecommendationSet
        error_reporter: Called as (kind, message, details) for cycle
            failures and dropped strategies (default: log at warn)
        our_node_id: Fallback operator node id when neither the config
            nor the feed provides one
        clock: Wall clock in seconds (for tests)
    """

    def __init__(self, config, feed, plugin=None, aggregator: Aggregator = None,
                 publisher: Callable[[RecommendationSet], None] = None,
                 error_reporter: Callable[[str, str, Dict[str, Any]], None] = None,
                 our_node_id: str = "", clock: Callable[[], float] = time.time):
        self.config = config
        self.feed = feed
        self.plugin = plugin
        self.aggregator = aggregator or Aggregator(plugin=plugin)
        self.publisher = publisher
        self.error_reporter = error_reporter or self._default_error_reporter
        self.our_node_id = our_node_id
        self.clock = clock

        # Single-flight guard: held for the whole duration of a cycle
        self._cycle_lock = threading.Lock()
        # Guards phase, counters and last report
        self._state_lock = threading.Lock()
        # Guards the published set
        self._publish_lock = threading.Lock()

        self._shutdown_event = threading.Event()
        self._cycle_cancel: Optional[threading.Event] = None
        self._executor: Optional[ThreadPoolExecutor] = None
        self._ticker: Optional[threading.Thread] = None
        self._worker: Optional[threading.Thread] = None

        self._phase = CyclePhase.IDLE
        self._next_cycle_id = 1
        self._current: Optional[RecommendationSet] = None
        self._last_report: Optional[CycleReport] = None
        self._last_error: str = ""
        self._counters = {
            "cycles_started": 0,
            "cycles_published": 0,
            "cycles_failed": 0,
            "cycles_aborted": 0,
            "ticks_dropped": 0,
            "strategy_failures": 0,
        }

    def _log(self, msg: str, level: str = "info") -> None:
        if self.plugin:
            self.plugin.log(f"[Scheduler] {msg}", level=level)

    def _default_error_reporter(self, kind: str, message: str, details: Dict[str, Any]) -> None:
        self._log(f"{kind}: {message}", level="warn")

    def _report_error(self, kind: str, message: str, details: Dict[str, Any]) -> None:
        try:
            self.error_reporter(kind, message, details)
        except Exception as e:
            self._log(f"Error reporter failed: {e}", level="error")

    # =========================================================================
    # STATE
    # =========================================================================

    @property
    def phase(self) -> CyclePhase:
        with self._state_lock:
            return self._phase

    def _set_phase(self, phase: CyclePhase) -> None:
        with self._state_lock:
            self._phase = phase

    def _bump(self, counter: str) -> None:
        with self._state_lock:
            self._counters[counter] += 1

    def is_running(self) -> bool:
        """True while a cycle is in flight."""
        return self._cycle_lock.locked()

    def get_current(self) -> Optional[RecommendationSet]:
        """The published recommendations, or None before the first success."""
        with self._publish_lock:
            return self._current

    def get_status(self) -> Dict[str, Any]:
        current = self.get_current()
        with self._state_lock:
            status = {
                "phase": self._phase.value,
                "running": self._ticker is not None and self._ticker.is_alive(),
                "cycle_in_flight": self._cycle_lock.locked(),
                "shutting_down": self._shutdown_event.is_set(),
                "last_error": self._last_error,
                "last_cycle": self._last_report.to_dict() if self._last_report else None,
                **self._counters,
            }
        status["published_cycle_id"] = current.cycle_id if current else None
        status["published_at"] = current.timestamp if current else None
        status["published_count"] = len(current.recommendations) if current else 0
        return status

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def start(self) -> None:
        """Start the ticker thread. The first cycle runs immediately."""
        if self._ticker is not None and self._ticker.is_alive():
            return
        self._shutdown_event.clear()
        self._ticker = threading.Thread(
            target=self._ticker_loop, name="autopilot-ticker", daemon=True
        )
        self._ticker.start()
        self._log("Refresh scheduler started")

    def stop(self, timeout: float = STOP_JOIN_TIMEOUT) -> None:
        """
        Signal shutdown and wait for the threads.

        An in-flight cycle stops at its next checkpoint without publishing.
        """
        self._shutdown_event.set()
        with self._state_lock:
            cancel = self._cycle_cancel
        if cancel is not None:
            cancel.set()

        for thread in (self._ticker, self._worker):
            if thread is not None and thread is not threading.current_thread():
                thread.join(timeout=timeout)

        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None
        self._log("Refresh scheduler stopped")

    def _ticker_loop(self) -> None:
        while not self._shutdown_event.is_set():
            self.trigger()
            interval = max(1, int(self.config.refresh_interval))
            if self._shutdown_event.wait(interval):
                break

    def trigger(self) -> bool:
        """
        Start a cycle on a worker thread.

        Returns:
            False if the tick was dropped (cycle in flight or shutting down)
        """
        if self._shutdown_event.is_set():
            return False
        if not self._cycle_lock.acquire(blocking=False):
            self._bump("ticks_dropped")
            self._log("Cycle still running, dropping tick", level="debug")
            return False

        def run():
            try:
                self._execute_cycle()
            finally:
                self._cycle_lock.release()

        self._worker = threading.Thread(target=run, name="autopilot-cycle", daemon=True)
        self._worker.start()
        return True

    def run_cycle(self) -> CycleReport:
        """
        Run one cycle in the calling thread.

        Same single-flight rule as trigger(): returns a "dropped" report
        if another cycle is in flight.
        """
        now = int(self.clock())
        if self._shutdown_event.is_set() or not self._cycle_lock.acquire(blocking=False):
            self._bump("ticks_dropped")
            return CycleReport(cycle_id=0, outcome=OUTCOME_DROPPED,
                               started_at=now, finished_at=now)
        try:
            return self._execute_cycle()
        finally:
            self._cycle_lock.release()

    # =========================================================================
    # CYCLE
    # =========================================================================

    def _checkpoint(self, cancel: threading.Event) -> None:
        if self._shutdown_event.is_set() or cancel.is_set():
            raise CycleCancelled("shutdown requested")

    def _get_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=len(STRATEGY_NAMES),
                thread_name_prefix="autopilot-strategy",
            )
        return self._executor

    def _execute_cycle(self) -> CycleReport:
        """One full cycle. Caller holds _cycle_lock."""
        cfg = self.config.snapshot()
        cancel = threading.Event()
        with self._state_lock:
            cycle_id = self._next_cycle_id
            self._next_cycle_id += 1
            self._cycle_cancel = cancel
            self._counters["cycles_started"] += 1
        started = int(self.clock())
        failed_strategies: Tuple[Tuple[str, str], ...] = ()

        self._log(f"Starting cycle {cycle_id}", level="debug")

        try:
            self._checkpoint(cancel)
            self._set_phase(CyclePhase.BUILDING)
            topology = self.feed.fetch()
            snapshot = GraphSnapshot.build(topology.nodes, topology.channels)
            our_node_id = (
                cfg.our_node_id
                or getattr(topology, "our_node_id", "")
                or self.our_node_id
            )
            excluded = getattr(topology, "local_peers", frozenset())
            self._checkpoint(cancel)

            self._set_phase(CyclePhase.SCORING)
            weights = cfg.strategy_weights()
            results = self._run_strategies(cfg, snapshot, cancel, cycle_seed=started)
            self._checkpoint(cancel)

            self._set_phase(CyclePhase.AGGREGATING)
            result = self.aggregator.aggregate(
                results, weights, snapshot, our_node_id,
                top_k=cfg.top_k,
                excluded=excluded,
                min_capacity_sats=cfg.min_capacity_sats,
                min_channels=cfg.min_channels,
                require_address=cfg.require_address,
                normalization=cfg.normalization,
                tie_quantum=cfg.tie_quantum,
                tie_breaker=cfg.tie_breaker,
            )
            failed_strategies = result.strategies_failed
            self._checkpoint(cancel)

            stats = snapshot.stats()
            rec_set = RecommendationSet(
                cycle_id=cycle_id,
                timestamp=started,
                recommendations=result.recommendations,
                strategies_succeeded=result.strategies_succeeded,
                strategies_failed=result.strategies_failed,
                effective_weights=result.effective_weights,
                node_count=stats["node_count"],
                channel_count=stats["channel_count"],
                candidate_count=result.candidate_count,
                our_node_id=our_node_id,
            )

            if not self._publish(rec_set):
                return self._finish(cycle_id, OUTCOME_STALE, started,
                                    strategies_failed=failed_strategies)

            self._bump("cycles_published")
            self._log(
                f"Cycle {cycle_id} published {len(rec_set.recommendations)} "
                f"recommendations from {stats['node_count']} nodes"
                + (f" (dropped: {', '.join(n for n, _ in failed_strategies)})"
                   if failed_strategies else "")
            )
            return self._finish(cycle_id, OUTCOME_PUBLISHED, started,
                                strategies_failed=failed_strategies,
                                recommendation_count=len(rec_set.recommendations))

        except CycleCancelled:
            self._bump("cycles_aborted")
            self._log(f"Cycle {cycle_id} aborted by shutdown", level="info")
            return self._finish(cycle_id, OUTCOME_ABORTED, started)

        except (TopologyFeedError, MalformedGraphError) as e:
            return self._fail(cycle_id, started, "building", e)

        except NoUsableStrategyError as e:
            return self._fail(cycle_id, started, "scoring", e,
                              strategies_failed=tuple(sorted(e.failures.items())))

        except Exception as e:
            return self._fail(cycle_id, started, "internal", e)

        finally:
            with self._state_lock:
                if self._cycle_cancel is cancel:
                    self._cycle_cancel = None
                self._phase = CyclePhase.IDLE
            # Let abandoned strategy runs stop at their next checkpoint
            cancel.set()

    def _fail(self, cycle_id: int, started: int, kind: str, error: Exception,
              strategies_failed: Tuple[Tuple[str, str], ...] = ()) -> CycleReport:
        self._bump("cycles_failed")
        message = f"{type(error).__name__}: {error}"
        with self._state_lock:
            self._last_error = message
        self._log(f"Cycle {cycle_id} failed ({kind}): {message}", level="warn")
        self._report_error(f"cycle_{kind}_failed", message, {"cycle_id": cycle_id})
        return self._finish(cycle_id, OUTCOME_FAILED, started, error=message,
                            error_kind=kind, strategies_failed=strategies_failed)

    def _finish(self, cycle_id: int, outcome: str, started: int, **kwargs) -> CycleReport:
        report = CycleReport(
            cycle_id=cycle_id,
            outcome=outcome,
            started_at=started,
            finished_at=int(self.clock()),
            **kwargs,
        )
        with self._state_lock:
            self._last_report = report
        return report

    def _run_strategies(self, cfg, snapshot: GraphSnapshot, cancel: threading.Event,
                        cycle_seed: int) -> Dict[str, Any]:
        """
        Run every strategy of this cycle in parallel.

        Returns:
            name -> StrategyScore or StrategyComputationError

        Raises:
            CycleCancelled: shutdown during scoring
        """
        strategies = build_strategies(cfg, cycle_seed=cycle_seed, plugin=self.plugin)
        executor = self._get_executor()
        futures = {
            name: executor.submit(strategy.score, snapshot, cancel)
            for name, strategy in strategies.items()
        }

        deadline = time.monotonic() + cfg.strategy_timeout
        results: Dict[str, Any] = {}
        for name, future in futures.items():
            remaining = max(0.0, deadline - time.monotonic())
            try:
                results[name] = future.result(timeout=remaining)
            except FutureTimeoutError:
                future.cancel()
                results[name] = StrategyComputationError(
                    name, f"timed out after {cfg.strategy_timeout:g}s"
                )
            except CycleCancelled:
                if self._shutdown_event.is_set():
                    raise
                results[name] = StrategyComputationError(name, "cancelled")
            except Exception as e:
                results[name] = StrategyComputationError(name, f"{type(e).__name__}: {e}")

        for name, outcome in results.items():
            if isinstance(outcome, StrategyComputationError):
                self._bump("strategy_failures")
                self._report_error(
                    "strategy_failed", str(outcome),
                    {"strategy": name, "reason": outcome.reason},
                )
        return results

    def _publish(self, rec_set: RecommendationSet) -> bool:
        """
        Make rec_set the visible result.

        Returns:
            False if a newer cycle already published (rec_set discarded)
        """
        with self._publish_lock:
            if self._current is not None and rec_set.cycle_id <= self._current.cycle_id:
                self._log(
                    f"Discarding stale cycle {rec_set.cycle_id} "
                    f"(published: {self._current.cycle_id})", level="debug"
                )
                return False
            self._current = rec_set
            self._set_phase(CyclePhase.PUBLISHED)

        # Outside the lock: the publisher may read get_current() / get_status()
        if self.publisher is not None:
            try:
                self.publisher(rec_set)
            except Exception as e:
                self._log(f"Recommendation publisher failed: {e}", level="warn")
        return True
