"""Action dispatch boundary between the state machine and collaborators.

The engine only decides *when* to ask for a side effect. Collaborators
(UI, contact notifier, recorder, router, case file) decide *how*, and
own idempotency: every `*_if_not_yet` / `*_once` request may be repeated
on each tick and must be a no-op after the first success.
"""
import heapq
import itertools
import logging
import threading
from collections import deque
from typing import Any, Deque, Dict, List, Sequence, Tuple

from stacy.shared.models import EscalationAction, EscalationState

logger = logging.getLogger(__name__)


ENTRY_BANNERS: Dict[EscalationState, str] = {
    EscalationState.ELEVATED: "Elevated risk. I am logging and ready to notify.",
    EscalationState.CRITICAL: "Critical risk. Notifying contacts and routing you to safety.",
    EscalationState.RESOLVED: "Resolved. Incident saved.",
}

QUICK_REPLIES: List[str] = ["Notify contact", "Route me to safety"]

# One-shot journal entries, kept apart from the per-tick stream
MILESTONE_HOOKS = frozenset({"set_banner", "on_state_change"})


class SafetyCollaborator:
    """Receiver of engine output. Every hook defaults to a no-op.

    Subclasses override the hooks they support.
    """

    def set_banner(self, text: str) -> None:
        pass

    def show_quick_replies(self, options: List[str]) -> None:
        pass

    def render_risk_bar(self, risk: float) -> None:
        pass

    def on_state_change(self, next_state: EscalationState, prev_state: EscalationState) -> None:
        pass

    def inject_state_context(self, state: EscalationState, risk: int) -> None:
        """Feed current state to the voice model (rate-limited by the session)."""

    def ensure_incident_started(self) -> None:
        """Idempotent: start incident documentation if not running."""

    def suggest_notify_or_route(self) -> None:
        pass

    def notify_contacts_if_not_yet(self) -> None:
        """Idempotent: text trusted contacts once per incident."""

    def start_recording_if_not_yet(self) -> None:
        """Idempotent: begin continuous evidence recording."""

    def start_safe_routing_if_not_yet(self) -> None:
        """Idempotent: begin guidance to the nearest safe place."""

    def finalize_incident_once(self) -> None:
        """Idempotent: close and save the incident."""

    def close(self) -> None:
        """Release resources when the session closes."""


class ActionDispatcher:
    """Fans engine requests out to collaborators, isolating each failure.

    A collaborator that raises is logged and skipped; the remaining
    collaborators still receive the request and the engine keeps ticking.
    """

    def __init__(self, *collaborators: SafetyCollaborator):
        self.collaborators: List[SafetyCollaborator] = list(collaborators)

    def add(self, collaborator: SafetyCollaborator) -> None:
        self.collaborators.append(collaborator)

    def _call(self, hook: str, *args: Any) -> None:
        for collaborator in self.collaborators:
            try:
                getattr(collaborator, hook)(*args)
            except Exception as e:
                logger.error(
                    "ACTION_HANDLER_FAILED",
                    extra={
                        "hook": hook,
                        "collaborator": type(collaborator).__name__,
                        "error": str(e),
                        "error_type": type(e).__name__,
                    }
                )

    def on_enter(self, next_state: EscalationState, prev_state: EscalationState) -> None:
        """One-shot effects, exactly once per state entry."""
        banner = ENTRY_BANNERS.get(next_state)
        if banner:
            self._call("set_banner", banner)

        if next_state == EscalationState.ELEVATED:
            self._call("ensure_incident_started")
        elif next_state == EscalationState.RESOLVED:
            self._call("finalize_incident_once")

    def on_action(self, action: EscalationAction) -> None:
        """Recurring per-state request; collaborators de-duplicate."""
        if action == EscalationAction.SUGGEST_NOTIFY_OR_ROUTE:
            self._call("show_quick_replies", list(QUICK_REPLIES))
        self._call(action.value)

    def on_state_change(self, next_state: EscalationState, prev_state: EscalationState) -> None:
        self._call("on_state_change", next_state, prev_state)

    def render_risk_bar(self, risk: float) -> None:
        self._call("render_risk_bar", risk)

    def inject_state_context(self, state: EscalationState, risk: int) -> None:
        self._call("inject_state_context", state, risk)

    def close(self) -> None:
        self._call("close")


class ActionJournal(SafetyCollaborator):
    """Thread-safe record of requests, for polling clients and tests.

    Recurring requests arrive every tick and are kept in a bounded window.
    One-shot entries (banners and state changes) are kept in their own,
    much larger window so the recurring stream never evicts them.
    Risk-bar renders are not journaled; they arrive every tick.
    """

    def __init__(self, maxlen: int = 200, milestone_maxlen: int = 1000):
        self._entries: Deque[Tuple[int, str, tuple]] = deque(maxlen=maxlen)
        self._milestones: Deque[Tuple[int, str, tuple]] = deque(maxlen=milestone_maxlen)
        self._sequence = itertools.count()
        self._lock = threading.Lock()

    def _record(self, name: str, *args: Any) -> None:
        with self._lock:
            target = self._milestones if name in MILESTONE_HOOKS else self._entries
            target.append((next(self._sequence), name, args))

    def entries(self) -> List[Tuple[str, tuple]]:
        """All retained entries in the order they were recorded."""
        with self._lock:
            merged = list(heapq.merge(self._milestones, self._entries))
        return [(name, args) for _, name, args in merged]

    def names(self) -> List[str]:
        return [name for name, _ in self.entries()]

    def count(self, name: str) -> int:
        return self.names().count(name)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._milestones.clear()

    def to_list(self) -> List[Dict[str, Any]]:
        """Convert to JSON-friendly list for API responses."""
        return [
            {"action": name, "args": [_jsonable(arg) for arg in args]}
            for name, args in self.entries()
        ]

    def set_banner(self, text: str) -> None:
        self._record("set_banner", text)

    def show_quick_replies(self, options: Sequence[str]) -> None:
        self._record("show_quick_replies", list(options))

    def on_state_change(self, next_state, prev_state) -> None:
        self._record("on_state_change", next_state, prev_state)

    def inject_state_context(self, state, risk) -> None:
        self._record("inject_state_context", state, risk)

    def ensure_incident_started(self) -> None:
        self._record("ensure_incident_started")

    def suggest_notify_or_route(self) -> None:
        self._record("suggest_notify_or_route")

    def notify_contacts_if_not_yet(self) -> None:
        self._record("notify_contacts_if_not_yet")

    def start_recording_if_not_yet(self) -> None:
        self._record("start_recording_if_not_yet")

    def start_safe_routing_if_not_yet(self) -> None:
        self._record("start_safe_routing_if_not_yet")

    def finalize_incident_once(self) -> None:
        self._record("finalize_incident_once")


def _jsonable(value: Any) -> Any:
    if isinstance(value, EscalationState):
        return value.value
    return value
