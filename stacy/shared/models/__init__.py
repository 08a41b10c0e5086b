"""Shared domain models for the Stacy safety companion."""
from .safety import (
    EscalationState,
    DiscreteTrigger,
    EscalationAction,
    SIGNAL_CATEGORIES,
    RiskSnapshot,
    TranscriptSample,
    ProsodySample,
    LocationSample,
    MotionSample,
    PendingDebounce,
)

__all__ = [
    "EscalationState",
    "DiscreteTrigger",
    "EscalationAction",
    "SIGNAL_CATEGORIES",
    "RiskSnapshot",
    "TranscriptSample",
    "ProsodySample",
    "LocationSample",
    "MotionSample",
    "PendingDebounce",
]
