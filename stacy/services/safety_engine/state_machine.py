"""Hysteretic escalation state machine.

SAFE -> ELEVATED -> CRITICAL -> RESOLVED, driven by two entry points:

- evaluate(): periodic, debounced threshold transitions. A candidate is
  armed the first tick its guard holds, cancelled the moment the guard
  stops holding, and fires only once its dwell time has elapsed with the
  guard still holding.
- on_trigger(): hard triggers, applied immediately.

Both entry points share one lock, so a trigger can never race a
threshold transition. Any state change cancels every pending candidate.
De-escalation steps down exactly one rung.

Callbacks are queued while the lock is held and delivered after it is
released, so a slow collaborator never stalls the tick or a trigger.
"""
import logging
import threading
from typing import Callable, Dict, List, Optional, Tuple

from stacy.shared.models import (
    DiscreteTrigger,
    EscalationAction,
    EscalationState,
    PendingDebounce,
)
from .config import EscalationThresholds

logger = logging.getLogger(__name__)

EnterCallback = Callable[[EscalationState, EscalationState], None]
ActionCallback = Callable[[EscalationAction], None]

# Hard triggers that force CRITICAL from any state
_FORCE_CRITICAL = frozenset({
    DiscreteTrigger.SAFE_PHRASE,
    DiscreteTrigger.CANNOT_SPEAK,
    DiscreteTrigger.NOTIFY_NOW,
})

# Recurring actions re-issued every evaluate() while resident
_RESIDENT_ACTIONS: Dict[EscalationState, tuple] = {
    EscalationState.SAFE: (),
    EscalationState.ELEVATED: (
        EscalationAction.ENSURE_INCIDENT_STARTED,
        EscalationAction.SUGGEST_NOTIFY_OR_ROUTE,
    ),
    EscalationState.CRITICAL: (
        EscalationAction.NOTIFY_CONTACTS,
        EscalationAction.START_RECORDING,
        EscalationAction.START_SAFE_ROUTING,
    ),
    EscalationState.RESOLVED: (
        EscalationAction.FINALIZE_INCIDENT,
    ),
}

# Debounce candidate names
TO_ELEVATED = "to_elevated"
TO_CRITICAL = "to_critical"
TO_RESOLVED = "to_resolved"
TO_ELEVATED_FROM_CRITICAL = "to_elevated_from_critical"


class EscalationStateMachine:
    """Holds the safety state of one session and decides transitions.

    Callbacks run outside the machine's lock, in the order the machine
    produced them. Whichever caller finds the queue idle drains it; other
    callers return immediately. A raising callback is logged and skipped.
    """

    def __init__(
        self,
        thresholds: Optional[EscalationThresholds] = None,
        on_enter: Optional[EnterCallback] = None,
        on_action: Optional[ActionCallback] = None,
        on_state_change: Optional[EnterCallback] = None,
    ):
        """Initialize machine in SAFE.

        Args:
            thresholds: Risk guards and dwell times
            on_enter: Called once per state entry with (next, prev)
            on_action: Called with each recurring action request
            on_state_change: Called after every transition with (next, prev)
        """
        self.thresholds = thresholds or EscalationThresholds()
        self._on_enter = on_enter or (lambda next_state, prev_state: None)
        self._on_action = on_action or (lambda action: None)
        self._on_state_change = on_state_change or (lambda next_state, prev_state: None)

        self._lock = threading.RLock()
        self._delivering = threading.Lock()
        self._outbox: List[Tuple[str, Callable, tuple]] = []
        self._state = EscalationState.SAFE
        self._pending: Dict[str, PendingDebounce] = {}
        self._user_says_safe = False
        self._last_risk = 0.0
        self._last_ewma = 0.0
        self._closed = False

    @property
    def state(self) -> EscalationState:
        with self._lock:
            return self._state

    @property
    def user_says_safe(self) -> bool:
        with self._lock:
            return self._user_says_safe

    @property
    def closed(self) -> bool:
        return self._closed

    def pending(self) -> List[PendingDebounce]:
        """Snapshot of armed debounce candidates."""
        with self._lock:
            return list(self._pending.values())

    def on_risk_sample(self, risk: float, ewma: float = 0.0) -> None:
        """Record the latest risk sample for the next evaluate()."""
        with self._lock:
            self._last_risk = risk
            self._last_ewma = ewma

    def on_trigger(self, trigger: DiscreteTrigger) -> None:
        """Apply a hard trigger immediately.

        SAFE_PHRASE, CANNOT_SPEAK and NOTIFY_NOW force CRITICAL from any
        state. CONNECTIVITY_LOST forces CRITICAL unless SAFE. USER_SAFE
        latches the user-safe flag while ELEVATED or CRITICAL.
        """
        with self._lock:
            self._apply_trigger(trigger)
        self._deliver()

    def _apply_trigger(self, trigger: DiscreteTrigger) -> None:
        if self._closed:
            logger.info(
                "HARD_TRIGGER_IGNORED",
                extra={"trigger": trigger.value, "reason": "machine_closed"}
            )
            return

        if trigger == DiscreteTrigger.USER_SAFE:
            self._latch_user_safe()
            return

        forces_critical = trigger in _FORCE_CRITICAL or (
            trigger == DiscreteTrigger.CONNECTIVITY_LOST
            and self._state != EscalationState.SAFE
        )
        if not forces_critical:
            logger.info(
                "HARD_TRIGGER_IGNORED",
                extra={"trigger": trigger.value, "state": self._state.value}
            )
            return

        logger.critical(
            "HARD_TRIGGER_RECEIVED",
            extra={
                "trigger": trigger.value,
                "state": self._state.value,
                "action": "FORCE_CRITICAL",
            }
        )

        if self._state == EscalationState.CRITICAL:
            # Fresh danger signal: drop any de-escalation in flight
            self._cancel_all()
            self._user_says_safe = False
            return

        self._transition(EscalationState.CRITICAL, reason=trigger.value)

    def _latch_user_safe(self) -> None:
        if self._state in (EscalationState.ELEVATED, EscalationState.CRITICAL):
            self._user_says_safe = True
            logger.info(
                "USER_SAFE_LATCHED",
                extra={"state": self._state.value}
            )
        else:
            logger.info(
                "USER_SAFE_IGNORED",
                extra={"state": self._state.value}
            )

    def evaluate(self, now_ms: float) -> None:
        """Run one periodic evaluation at logical time `now_ms`.

        Emits the resident state's recurring actions, then re-checks every
        guard of the current state, arming, cancelling or firing its
        debounce candidates.
        """
        with self._lock:
            self._evaluate_guards(now_ms)
        self._deliver()

    def _evaluate_guards(self, now_ms: float) -> None:
        if self._closed:
            return

        for action in _RESIDENT_ACTIONS[self._state]:
            self._queue("on_action", self._on_action, action)

        t = self.thresholds
        risk = self._last_risk

        if self._state == EscalationState.SAFE:
            self._debounce(
                TO_ELEVATED, EscalationState.ELEVATED,
                holds=risk >= t.elevate_risk,
                dwell_ms=t.elevate_dwell_ms,
                now_ms=now_ms,
            )

        elif self._state == EscalationState.ELEVATED:
            if self._debounce(
                TO_CRITICAL, EscalationState.CRITICAL,
                holds=risk >= t.critical_risk,
                dwell_ms=t.critical_dwell_ms,
                now_ms=now_ms,
            ):
                return
            self._debounce(
                TO_RESOLVED, EscalationState.RESOLVED,
                holds=risk < t.resolve_risk and self._user_says_safe,
                dwell_ms=t.resolve_dwell_ms,
                now_ms=now_ms,
            )

        elif self._state == EscalationState.CRITICAL:
            self._debounce(
                TO_ELEVATED_FROM_CRITICAL, EscalationState.ELEVATED,
                holds=risk < t.deescalate_risk and self._user_says_safe,
                dwell_ms=t.deescalate_dwell_ms,
                now_ms=now_ms,
            )

    def _debounce(
        self,
        candidate: str,
        target: EscalationState,
        holds: bool,
        dwell_ms: int,
        now_ms: float,
    ) -> bool:
        """Arm, cancel or fire one candidate. Returns True if it fired."""
        if not holds:
            self._cancel(candidate)
            return False

        pending = self._pending.get(candidate)
        if pending is None:
            self._pending[candidate] = PendingDebounce(
                candidate=candidate,
                target=target,
                armed_at_ms=now_ms,
                deadline_ms=now_ms + dwell_ms,
            )
            logger.info(
                "DEBOUNCE_ARMED",
                extra={
                    "candidate": candidate,
                    "risk": round(self._last_risk, 2),
                    "dwell_ms": dwell_ms,
                }
            )
            return False

        if not pending.elapsed(now_ms):
            return False

        self._transition(target, reason=candidate)
        return True

    def _cancel(self, candidate: str) -> None:
        if self._pending.pop(candidate, None) is not None:
            logger.info(
                "DEBOUNCE_CANCELLED",
                extra={"candidate": candidate, "risk": round(self._last_risk, 2)}
            )

    def _cancel_all(self) -> None:
        for candidate in list(self._pending):
            self._cancel(candidate)

    def _transition(self, next_state: EscalationState, reason: str) -> None:
        """Sole mutator of the state. Clears timers and the user-safe latch."""
        if next_state == self._state:
            return

        prev_state = self._state
        self._cancel_all()
        self._user_says_safe = False
        self._state = next_state

        log = logger.critical if next_state == EscalationState.CRITICAL else logger.warning
        log(
            "ESCALATION_TRANSITION",
            extra={
                "from_state": prev_state.value,
                "to_state": next_state.value,
                "reason": reason,
                "risk": round(self._last_risk, 2),
                "ewma": round(self._last_ewma, 2),
            }
        )

        self._queue("on_enter", self._on_enter, next_state, prev_state)
        self._queue("on_state_change", self._on_state_change, next_state, prev_state)

    def _queue(self, hook: str, callback: Callable, *args) -> None:
        """Hold a callback for delivery once the lock is released."""
        self._outbox.append((hook, callback, args))

    def _deliver(self) -> None:
        """Drain queued callbacks outside the state lock.

        A single drainer at a time keeps callbacks in production order; a
        caller that finds delivery busy leaves its entries to that drainer.
        """
        while True:
            if not self._delivering.acquire(blocking=False):
                return
            try:
                while True:
                    with self._lock:
                        batch, self._outbox = self._outbox, []
                    if not batch:
                        break
                    for hook, callback, args in batch:
                        self._notify(hook, callback, *args)
            finally:
                self._delivering.release()

            # Entries queued between the last drain and the release
            with self._lock:
                if not self._outbox:
                    return

    def _notify(self, hook: str, callback: Callable, *args) -> None:
        """Invoke a callback; a failing handler never corrupts machine state."""
        try:
            callback(*args)
        except Exception as e:
            logger.error(
                "ESCALATION_CALLBACK_FAILED",
                extra={
                    "hook": hook,
                    "state": self._state.value,
                    "error": str(e),
                    "error_type": type(e).__name__,
                }
            )

    def reset(self) -> None:
        """Return to SAFE for a reset session. Fires no callbacks."""
        with self._lock:
            self._cancel_all()
            prev_state = self._state
            self._state = EscalationState.SAFE
            self._user_says_safe = False
            self._last_risk = 0.0
            self._last_ewma = 0.0
            logger.info(
                "ESCALATION_RESET",
                extra={"from_state": prev_state.value}
            )

    def close(self) -> None:
        """Tear down: cancel all candidates. No transition fires afterwards."""
        with self._lock:
            self._cancel_all()
            self._closed = True
            logger.info(
                "ESCALATION_MACHINE_CLOSED",
                extra={"state": self._state.value}
            )
