"""Safety state and signal domain models.

Defines the enums and immutable value objects exchanged between the
signal router, the risk scorer and the escalation state machine.
Risk values everywhere use a 0-100 scale.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Tuple


class EscalationState(Enum):
    """Safety state of one user session.

    SAFE is initial. RESOLVED is terminal until the session is reset.
    """
    SAFE = "SAFE"
    ELEVATED = "ELEVATED"
    CRITICAL = "CRITICAL"
    RESOLVED = "RESOLVED"


class DiscreteTrigger(Enum):
    """Hard triggers evaluated immediately, independent of the risk score."""
    SAFE_PHRASE = "SAFE_PHRASE"              # Covert code phrase spoken
    CANNOT_SPEAK = "CANNOT_SPEAK"            # User says they can't talk
    NOTIFY_NOW = "NOTIFY_NOW"                # Explicit request for help
    CONNECTIVITY_LOST = "CONNECTIVITY_LOST"  # Device went offline
    USER_SAFE = "USER_SAFE"                  # User attests they are safe


class EscalationAction(Enum):
    """Recurring side effects requested while resident in a state.

    Collaborators must treat repeats as idempotent no-ops.
    """
    ENSURE_INCIDENT_STARTED = "ensure_incident_started"
    SUGGEST_NOTIFY_OR_ROUTE = "suggest_notify_or_route"
    NOTIFY_CONTACTS = "notify_contacts_if_not_yet"
    START_RECORDING = "start_recording_if_not_yet"
    START_SAFE_ROUTING = "start_safe_routing_if_not_yet"
    FINALIZE_INCIDENT = "finalize_incident_once"


# Signal categories folded into the risk score
SIGNAL_CATEGORIES: Tuple[str, ...] = ("transcript", "prosody", "motion", "location")


@dataclass(frozen=True)
class RiskSnapshot:
    """Output of one scoring tick.

    `risk` is the authoritative decision input; `instant` and `ewma`
    are exposed for display and diagnostics.
    """
    instant: float
    ewma: float
    risk: float

    def __post_init__(self):
        for name in ("instant", "ewma", "risk"):
            value = getattr(self, name)
            if not 0.0 <= value <= 100.0:
                raise ValueError(f"{name} must be 0-100, got {value}")

    def to_dict(self) -> Dict[str, float]:
        """Convert to dictionary for API responses."""
        return {
            "instant": round(self.instant, 2),
            "ewma": round(self.ewma, 2),
            "risk": round(self.risk, 2),
        }


@dataclass(frozen=True)
class TranscriptSample:
    """A transcribed utterance, optionally with a model-assigned distress score."""
    text: str
    external_distress_score: Optional[float] = None


@dataclass(frozen=True)
class ProsodySample:
    """Voice-stress features extracted from the audio stream."""
    rms: float = 0.0
    zero_crossing_rate: float = 0.0
    speech_rate: float = 0.0


@dataclass(frozen=True)
class LocationSample:
    """Location fix quality. None means the fix carried no precision."""
    precision_meters: Optional[float] = None


@dataclass(frozen=True)
class MotionSample:
    """Pre-fused motion score (0-100)."""
    score: float


@dataclass(frozen=True)
class PendingDebounce:
    """An armed transition candidate waiting out its dwell time."""
    candidate: str
    target: EscalationState
    armed_at_ms: float
    deadline_ms: float

    def elapsed(self, now_ms: float) -> bool:
        return now_ms >= self.deadline_ms
