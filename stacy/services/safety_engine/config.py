"""Safety engine configuration: scoring constants, thresholds and lexicons.

Every tunable of the risk scorer, the signal router and the escalation
state machine lives here, in one immutable structure with documented
defaults. Risk values use a 0-100 scale; durations are milliseconds.
"""
from dataclasses import dataclass, field
from typing import Dict, Tuple


# Weight of each signal category in the instantaneous score.
# Weights need not sum to 1.0; overshoot above 100 is clamped.
DEFAULT_WEIGHTS: Dict[str, float] = {
    "transcript": 0.45,
    "prosody": 0.25,
    "motion": 0.15,
    "location": 0.15,
}

# Distress phrases matched as case-insensitive substrings (phrase -> score).
# "follow" covers both "following" and "being followed".
DISTRESS_LEXICON: Dict[str, float] = {
    "follow": 40.0,
    "unsafe": 35.0,
    "help": 50.0,
    "afraid": 30.0,
    "stalking": 45.0,
    "can't speak": 70.0,
}

# "not ... afraid/unsafe" dampens the lexicon score instead of zeroing it
NEGATION_PATTERN: str = r"\bnot\b.*\b(afraid|unsafe)\b"

# Covert code phrases that force CRITICAL without alerting a bystander
SAFE_PHRASE_PATTERNS: Tuple[str, ...] = (
    r"\bhow('?s| is) the weather\b",
    r"\bblue banana\b",
)

CANNOT_SPEAK_PHRASES: Tuple[str, ...] = (
    "can't speak",
    "cannot speak",
)


@dataclass(frozen=True)
class RiskScorerConfig:
    """Smoothing and decay constants for the risk scorer."""

    weights: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_WEIGHTS))

    # EWMA blend factor per tick (fast-tracking smoothed signal)
    ewma_alpha: float = 0.35

    # Rate at which `risk` approaches `ewma`, per second
    integrator_rate: float = 0.9

    # Continuous decay of `risk` absent reinforcement, points per second
    leak_per_sec: float = 8.0

    clamp_min: float = 0.0
    clamp_max: float = 100.0

    # Floor for elapsed time between ticks (seconds)
    min_dt_seconds: float = 0.016

    # When True each tick consumes the component map, so a sample
    # influences exactly one tick. False keeps last values sticky.
    consume_on_tick: bool = True

    def __post_init__(self):
        if not 0.0 <= self.clamp_min < self.clamp_max <= 100.0:
            raise ValueError(
                "Clamp bounds must satisfy 0 <= min < max <= 100, "
                f"got [{self.clamp_min}, {self.clamp_max}]"
            )


@dataclass(frozen=True)
class EscalationThresholds:
    """Risk guards and dwell times for debounced threshold transitions."""

    # SAFE -> ELEVATED
    elevate_risk: float = 40.0
    elevate_dwell_ms: int = 3000

    # ELEVATED -> CRITICAL
    critical_risk: float = 70.0
    critical_dwell_ms: int = 1000

    # ELEVATED -> RESOLVED (requires user-safe attestation)
    resolve_risk: float = 25.0
    resolve_dwell_ms: int = 30000

    # CRITICAL -> ELEVATED (requires user-safe attestation)
    deescalate_risk: float = 60.0
    deescalate_dwell_ms: int = 20000


@dataclass(frozen=True)
class SignalRouterConfig:
    """Normalization rules for raw collaborator events."""

    distress_lexicon: Dict[str, float] = field(
        default_factory=lambda: dict(DISTRESS_LEXICON)
    )
    negation_pattern: str = NEGATION_PATTERN
    negation_dampener: float = 0.4
    external_distress_weight: float = 0.6
    safe_phrase_patterns: Tuple[str, ...] = SAFE_PHRASE_PATTERNS
    cannot_speak_phrases: Tuple[str, ...] = CANNOT_SPEAK_PHRASES

    # Location precision bands (meters -> score); poor fixes degrade dispatch
    very_poor_precision_m: float = 500.0
    very_poor_precision_score: float = 40.0
    poor_precision_m: float = 100.0
    poor_precision_score: float = 20.0

    # Precision assumed when a fix carries none
    missing_precision_m: float = 1000.0

    # Prosody stress coefficients
    zcr_coefficient: float = 40.0
    rms_coefficient: float = 0.5
    speech_rate_coefficient: float = 0.2


@dataclass(frozen=True)
class SafetyEngineConfig:
    """Complete configuration surface for one safety session."""

    scorer: RiskScorerConfig = field(default_factory=RiskScorerConfig)
    thresholds: EscalationThresholds = field(default_factory=EscalationThresholds)
    router: SignalRouterConfig = field(default_factory=SignalRouterConfig)

    # Periodic driver cadence
    tick_interval_ms: int = 200

    # Minimum spacing between state-context injections into the voice model
    context_injection_interval_ms: int = 10000
