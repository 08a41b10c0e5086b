"""Safety Engine: decides when a user's situation needs escalation.

Turns a stream of noisy voice, text, location and motion signals into a
stable SAFE / ELEVATED / CRITICAL / RESOLVED decision and asks
collaborators to act at each level. It never places calls, records audio
or stores data itself.

Components:
- risk_scorer.py: RiskScorer (weighted sum -> EWMA -> leaky integrator)
- signal_router.py: SignalRouter (raw samples -> components / triggers)
- state_machine.py: EscalationStateMachine (debounced + hard transitions)
- dispatcher.py: ActionDispatcher and the SafetyCollaborator contract
- state_publisher.py: Kinesis publishing of state changes
- session.py: SafetySession periodic driver and SessionRegistry
- http_handler.py: Flask ingestion endpoints

Usage:
    from stacy.services.safety_engine import SafetySession, ActionJournal
    session = SafetySession("sess_123", ActionJournal())
    session.start()
"""

from .config import (
    SafetyEngineConfig,
    RiskScorerConfig,
    EscalationThresholds,
    SignalRouterConfig,
)
from .risk_scorer import RiskScorer
from .signal_router import SignalRouter, TranscriptAssessment
from .state_machine import EscalationStateMachine
from .dispatcher import ActionDispatcher, ActionJournal, SafetyCollaborator
from .state_publisher import StateChangePublisher, StateChangeEvent
from .session import SafetySession, SessionRegistry

__all__ = [
    "SafetyEngineConfig",
    "RiskScorerConfig",
    "EscalationThresholds",
    "SignalRouterConfig",
    "RiskScorer",
    "SignalRouter",
    "TranscriptAssessment",
    "EscalationStateMachine",
    "ActionDispatcher",
    "ActionJournal",
    "SafetyCollaborator",
    "StateChangePublisher",
    "StateChangeEvent",
    "SafetySession",
    "SessionRegistry",
]
