"""Risk scorer: folds noisy per-category scores into one stable risk number.

Each tick:
1. instant = weighted sum of component scores
2. ewma    = fast-tracking exponential average of instant
3. risk    = leaky integrator that approaches ewma with inertia and
             decays continuously absent reinforcement

A one-tick spike moves `ewma` quickly but `risk` only slightly, so only
sustained elevation can cross escalation thresholds.
"""
import logging
import threading
import time
from typing import Callable, Dict, Mapping, Optional

from stacy.shared.models import RiskSnapshot, SIGNAL_CATEGORIES
from stacy.shared.utils import clamp
from .config import RiskScorerConfig

logger = logging.getLogger(__name__)


def monotonic_ms() -> float:
    """Default clock: monotonic milliseconds."""
    return time.monotonic() * 1000.0


class RiskScorer:
    """Smoothed, decaying risk score over the latest component scores.

    Component updates may arrive from many producer threads; they are
    merged under a small lock and consumed only at tick boundaries.
    Never raises on numeric input.
    """

    def __init__(
        self,
        config: Optional[RiskScorerConfig] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        """Initialize scorer.

        Args:
            config: Smoothing and decay constants
            clock: Millisecond clock used when tick() gets no timestamp
        """
        self.config = config or RiskScorerConfig()
        self._clock = clock or monotonic_ms
        self._lock = threading.Lock()
        self._components: Dict[str, float] = self._empty_components()
        self._ewma = 0.0
        self._risk = 0.0
        self._last_tick_ms = self._clock()

        logger.info(
            "RISK_SCORER_INITIALIZED",
            extra={
                "weights": dict(self.config.weights),
                "ewma_alpha": self.config.ewma_alpha,
                "leak_per_sec": self.config.leak_per_sec,
                "consume_on_tick": self.config.consume_on_tick,
            }
        )

    @staticmethod
    def _empty_components() -> Dict[str, float]:
        return {category: 0.0 for category in SIGNAL_CATEGORIES}

    @property
    def components(self) -> Dict[str, float]:
        """Copy of the current (not yet consumed) component map."""
        with self._lock:
            return dict(self._components)

    def update_components(self, partial: Mapping[str, float]) -> None:
        """Merge-overwrite the given categories. Last writer wins.

        Values are clamped into the configured bounds. Unknown categories
        are ignored.
        """
        lo, hi = self.config.clamp_min, self.config.clamp_max
        accepted = {}
        for category, value in partial.items():
            if category not in SIGNAL_CATEGORIES:
                logger.warning(
                    "RISK_COMPONENT_UNKNOWN",
                    extra={"category": category}
                )
                continue
            accepted[category] = clamp(value, lo, hi)

        with self._lock:
            self._components.update(accepted)

    def tick(self, now_ms: Optional[float] = None) -> RiskSnapshot:
        """Recompute the risk snapshot.

        Args:
            now_ms: Current time in milliseconds (defaults to the clock)

        Returns:
            RiskSnapshot with every field inside the clamp bounds
        """
        cfg = self.config
        now = self._clock() if now_ms is None else now_ms
        lo, hi = cfg.clamp_min, cfg.clamp_max

        with self._lock:
            dt = max(cfg.min_dt_seconds, (now - self._last_tick_ms) / 1000.0)
            self._last_tick_ms = now

            components = self._components
            if cfg.consume_on_tick:
                self._components = self._empty_components()

            instant = sum(
                cfg.weights.get(category, 0.0) * components.get(category, 0.0)
                for category in SIGNAL_CATEGORIES
            )

            self._ewma += cfg.ewma_alpha * (instant - self._ewma)

            # Approach capped at one full step so long gaps cannot overshoot
            step = min(1.0, cfg.integrator_rate * dt)
            self._risk += step * (self._ewma - self._risk)
            if self._risk > 0:
                self._risk = max(0.0, self._risk - cfg.leak_per_sec * dt)

            self._ewma = clamp(self._ewma, lo, hi)
            self._risk = clamp(self._risk, lo, hi)

            return RiskSnapshot(
                instant=clamp(instant, lo, hi),
                ewma=self._ewma,
                risk=self._risk,
            )

    def reset(self) -> None:
        """Forget all components and smoothed state."""
        with self._lock:
            self._components = self._empty_components()
            self._ewma = 0.0
            self._risk = 0.0
            self._last_tick_ms = self._clock()
        logger.info("RISK_SCORER_RESET")
